"""Best-effort dismissal of cookie consent banners."""

import asyncio
import logging

from pagewatch.config import settings

logger = logging.getLogger(__name__)

# Sourcepoint renders its dialog inside an iframe
SOURCEPOINT_IFRAME = 'iframe[title="SP Consent Message"], iframe[id^="sp_message_iframe_"]'
SOURCEPOINT_BUTTONS = (
    'button:has-text("Accepteren"), button:has-text("Accept"), '
    'button:has-text("Akkoord"), button[title="Accepteren"]'
)

ACCEPT_SELECTORS = [
    'button[id*="accept"]',
    'button[id*="Accept"]',
    'button[class*="accept"]',
    'button:has-text("Accepteren")',
    'button:has-text("Akkoord")',
    'button:has-text("Accept")',
    "#onetrust-accept-btn-handler",
    "#gdpr-consent-accept-button",
    'button[data-consent="accept"]',
    'a:has-text("Doorgaan zonder")',
]


async def dismiss_consent(page, click_timeout_ms: int = None) -> bool:
    """
    Try to click away a consent dialog.

    Args:
        page: Playwright page
        click_timeout_ms: Per-click timeout (defaults to config)

    Returns:
        True if something was clicked
    """
    timeout = click_timeout_ms or settings.consent_click_timeout_ms

    try:
        if await page.locator(SOURCEPOINT_IFRAME).count() > 0:
            button = page.frame_locator(SOURCEPOINT_IFRAME).locator(SOURCEPOINT_BUTTONS).first
            await button.click(timeout=timeout)
            logger.debug("Dismissed Sourcepoint consent dialog")
            await asyncio.sleep(0.5)
            return True
    except Exception as e:
        logger.debug(f"Sourcepoint consent dismissal failed: {e}")

    for selector in ACCEPT_SELECTORS:
        try:
            locator = page.locator(selector)
            if await locator.count() > 0:
                await locator.first.click(timeout=timeout)
                logger.debug(f"Dismissed consent banner via {selector}")
                await asyncio.sleep(0.2)
                return True
        except Exception:
            continue

    return False

"""Outbound change notifications.

Supports Discord, Telegram, Slack and generic webhooks. Delivery is
fire-and-forget: failures are logged and counted, never retried.
"""

import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import httpx

from pagewatch import metrics
from pagewatch.config import settings
from pagewatch.db.models import AppSettings
from pagewatch.notify.formatters import (
    NotificationArtifact,
    format_discord_embed,
    format_generic_payload,
    format_slack_blocks,
    format_telegram_message,
)

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class WebhookType(Enum):
    """Supported webhook types."""
    DISCORD = "discord"
    TELEGRAM = "telegram"
    SLACK = "slack"
    GENERIC = "generic"


class NotificationDispatcher:
    """Sends change notifications to the configured webhook."""

    def __init__(self, timeout: float = None):
        self.timeout = timeout or settings.notification_timeout_seconds
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def notify(
        self,
        subject: str,
        plain_body: str,
        html_body: Optional[str],
        artifact: NotificationArtifact,
        config: AppSettings,
    ) -> bool:
        """
        Deliver one notification.

        Args:
            subject: Short title
            plain_body: Plain-text message
            html_body: Optional HTML rendering of the message
            artifact: Structured change details (diff image, values)
            config: Runtime settings holding the webhook configuration

        Returns:
            True if the channel accepted the message
        """
        channel = (config.webhook_type or "discord").lower()
        try:
            webhook_type = WebhookType(channel)
        except ValueError:
            logger.error(f"Unknown webhook type: {config.webhook_type}")
            metrics.record_notification(channel, False)
            return False

        if webhook_type == WebhookType.TELEGRAM:
            if not config.telegram_bot_token or not config.telegram_chat_id:
                logger.info("Telegram not configured; skipping notification")
                return False
        elif not config.webhook_url:
            logger.info("No webhook configured; skipping notification")
            return False

        try:
            if webhook_type == WebhookType.DISCORD:
                success, payload = await self._send_discord(config, artifact)
            elif webhook_type == WebhookType.TELEGRAM:
                success, payload = await self._send_telegram(config, artifact)
            elif webhook_type == WebhookType.SLACK:
                success, payload = await self._send_slack(config, artifact)
            else:
                success, payload = await self._send_generic(
                    config, artifact, subject, plain_body, html_body
                )
        except httpx.HTTPError as e:
            logger.error(f"{channel} notification for monitor {artifact.target_id} failed: {e}")
            success = False

        metrics.record_notification(channel, success)
        if success:
            logger.info(f"Sent {channel} notification for monitor {artifact.target_id}: {subject}")
        return success

    async def _send_discord(
        self,
        config: AppSettings,
        artifact: NotificationArtifact,
    ) -> Tuple[bool, Dict[str, Any]]:
        """Send an embed, attaching the diff image as multipart when present."""
        client = await self._get_client()
        has_image = bool(artifact.diff_png)
        payload = format_discord_embed(artifact, has_image=has_image)

        if has_image:
            response = await client.post(
                config.webhook_url,
                data={"payload_json": json.dumps(payload)},
                files={"files[0]": ("diff.png", artifact.diff_png, "image/png")},
            )
        else:
            response = await client.post(config.webhook_url, json=payload)

        success = response.status_code in (200, 204)
        if not success:
            logger.warning(f"Discord webhook failed: {response.status_code} - {response.text}")
        return success, payload

    async def _send_telegram(
        self,
        config: AppSettings,
        artifact: NotificationArtifact,
    ) -> Tuple[bool, Dict[str, Any]]:
        """Send a message, or a photo with caption when a diff image exists."""
        client = await self._get_client()
        message = format_telegram_message(artifact)
        base = f"{TELEGRAM_API}/bot{config.telegram_bot_token}"

        if artifact.diff_png:
            payload = {
                "chat_id": config.telegram_chat_id,
                "caption": message[:1024],
                "parse_mode": "Markdown",
            }
            response = await client.post(
                f"{base}/sendPhoto",
                data=payload,
                files={"photo": ("diff.png", artifact.diff_png, "image/png")},
            )
        else:
            payload = {
                "chat_id": config.telegram_chat_id,
                "text": message,
                "parse_mode": "Markdown",
                "disable_web_page_preview": False,
            }
            response = await client.post(f"{base}/sendMessage", json=payload)

        success = response.status_code == 200
        if not success:
            logger.warning(f"Telegram send failed: {response.status_code} - {response.text}")
        return success, payload

    async def _send_slack(
        self,
        config: AppSettings,
        artifact: NotificationArtifact,
    ) -> Tuple[bool, Dict[str, Any]]:
        client = await self._get_client()
        payload = format_slack_blocks(artifact)
        response = await client.post(config.webhook_url, json=payload)

        success = response.status_code == 200
        if not success:
            logger.warning(f"Slack webhook failed: {response.status_code} - {response.text}")
        return success, payload

    async def _send_generic(
        self,
        config: AppSettings,
        artifact: NotificationArtifact,
        subject: str,
        plain_body: str,
        html_body: Optional[str],
    ) -> Tuple[bool, Dict[str, Any]]:
        client = await self._get_client()
        payload = format_generic_payload(artifact, subject, plain_body, html_body)
        response = await client.post(config.webhook_url, json=payload)

        success = response.status_code in (200, 201, 202, 204)
        if not success:
            logger.warning(f"Generic webhook failed: {response.status_code} - {response.text}")
        return success, payload

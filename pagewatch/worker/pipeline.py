"""Single-target check: visit, extract, compare, persist, notify."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pagewatch import metrics
from pagewatch.ai.summarizer import ChangeSummarizer
from pagewatch.config import settings
from pagewatch.db.models import AppSettings, CheckHistory, MonitorTarget
from pagewatch.db.repository import MonitorRepository
from pagewatch.detect.change_detector import compare_images, compare_text
from pagewatch.errors import (
    CheckError,
    CheckInternalError,
    ElementNotFound,
    ExtractionEmpty,
    NavigationError,
    NavigationTimeout,
    RenderingEngineUnavailable,
)
from pagewatch.ingest.consent import dismiss_consent
from pagewatch.ingest.price_extractor import PriceCandidate, PriceExtractor
from pagewatch.ingest.session_pool import SessionHandle, SessionPool
from pagewatch.logging_config import get_logger
from pagewatch.notify.dispatcher import NotificationDispatcher
from pagewatch.notify.formatters import (
    NotificationArtifact,
    build_html_body,
    build_plain_body,
    build_subject,
)
from pagewatch.notify.gate import price_allows_notification, should_notify
from pagewatch.storage.screenshots import ScreenshotStore
from pagewatch.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Observation:
    """What one visit read from the page."""

    value: Optional[str] = None
    screenshot: Optional[bytes] = None
    candidate: Optional[PriceCandidate] = None
    navigation_timed_out: bool = False


@dataclass
class PendingCheck:
    """A history record and target changes waiting to be committed."""

    record: CheckHistory
    changes: Dict[str, Any]
    written: List[str] = field(default_factory=list)
    superseded: List[str] = field(default_factory=list)
    artifact: Optional[NotificationArtifact] = None


@dataclass
class SelectorPreview:
    """Result of testing a selector against a live page."""

    url: str
    selector: str
    count: int
    text: Optional[str] = None


class CheckPipeline:
    """
    Runs one target's check end to end.

    Every invocation writes exactly one history record. Errors raised while
    visiting the page are converted into an ``error`` record; only failures to
    persist escape to the caller.
    """

    def __init__(
        self,
        pool: SessionPool,
        repository: MonitorRepository,
        store: ScreenshotStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        summarizer: Optional[ChangeSummarizer] = None,
        extractor: Optional[PriceExtractor] = None,
        navigation_timeout: float = None,
        settle_ms: int = None,
        pixel_threshold: float = None,
    ):
        self.pool = pool
        self.repository = repository
        self.store = store
        self.dispatcher = dispatcher
        self.summarizer = summarizer
        self.extractor = extractor or PriceExtractor()
        self.navigation_timeout = navigation_timeout or settings.navigation_timeout_seconds
        self.settle_ms = settle_ms if settle_ms is not None else settings.page_settle_ms
        self.pixel_threshold = (
            pixel_threshold if pixel_threshold is not None else settings.visual_pixel_threshold
        )

    async def run(
        self,
        target: MonitorTarget,
        handle: Optional[SessionHandle] = None,
        interactive: bool = False,
    ) -> CheckHistory:
        """
        Check a target once.

        Args:
            target: Target to check (detached; updated in place on commit)
            handle: Session shared by a batch; the caller keeps ownership
            interactive: Borrow from the interactive lane when acquiring

        Returns:
            The persisted history record
        """
        log = get_logger(__name__, monitor_id=target.id, mode=target.mode)
        started = time.monotonic()
        config = await self.repository.get_app_settings()

        try:
            if handle is None:
                async with self.pool.session(interactive=interactive) as leased:
                    observation = await self._observe(target, leased)
            else:
                observation = await self._observe(target, handle)
            pending = await self._evaluate(target, observation, config)
        except CheckError as e:
            log.warning(f"Check failed for monitor {target.id} ({e.kind}): {e}")
            pending = self._error_check(target, e)
        except Exception as e:
            log.exception(f"Unexpected error checking monitor {target.id}")
            pending = self._error_check(target, CheckInternalError(f"{type(e).__name__}: {e}"))

        duration = time.monotonic() - started
        pending.record.response_time_ms = int(duration * 1000)
        record = await self._persist(target, pending)

        metrics.record_check(target.mode, record.status, duration, record.error_kind)
        log.info(
            f"Monitor {target.id} checked: {record.status} "
            f"({record.response_time_ms} ms)"
        )

        if pending.artifact is not None:
            await self._notify(pending.artifact, config)

        return record

    async def record_error(self, target: MonitorTarget, error: Exception) -> CheckHistory:
        """Persist an error record for a check that could not start."""
        if not isinstance(error, CheckError):
            error = CheckInternalError(f"{type(error).__name__}: {error}")
        pending = self._error_check(target, error)
        record = await self._persist(target, pending)
        metrics.record_check(target.mode, record.status, 0.0, record.error_kind)
        return record

    async def preview_selector(self, url: str, selector: str) -> SelectorPreview:
        """
        Load a page through the interactive lane and test a selector.

        Raises:
            RenderingEngineUnavailable: No session could be obtained
            NavigationError: The page did not load
        """
        async with self.pool.session(interactive=True) as handle:
            page = await self._open_page(handle)
            try:
                await self._navigate(page, url)
                await page.wait_for_timeout(self.settle_ms)
                await dismiss_consent(page)

                try:
                    elements = await page.query_selector_all(selector)
                except PlaywrightError as e:
                    raise ExtractionEmpty(url, f"invalid selector {selector!r}: {e}") from e

                text = None
                if elements:
                    text = (await elements[0].inner_text()).strip()[: settings.preview_max_chars]
                return SelectorPreview(url=url, selector=selector, count=len(elements), text=text)
            finally:
                await self._close_page(page)

    # ------------------------------------------------------------------
    # Page visit
    # ------------------------------------------------------------------

    async def _observe(self, target: MonitorTarget, handle: SessionHandle) -> Observation:
        page = await self._open_page(handle)
        try:
            timed_out = await self._navigate(page, target.url)
            await page.wait_for_timeout(self.settle_ms)
            await dismiss_consent(page)

            try:
                if target.mode == "visual":
                    observation = Observation(
                        screenshot=await page.screenshot(full_page=True, type="png")
                    )
                elif target.mode == "price":
                    observation = await self._extract_price(page, target)
                else:
                    observation = Observation(value=await self._extract_text(page, target))
            except CheckError as e:
                if timed_out:
                    raise NavigationTimeout(target.url, self.navigation_timeout, detail=str(e)) from e
                raise

            observation.navigation_timed_out = timed_out
            if not timed_out:
                self.pool.record_success()
            return observation
        finally:
            await self._close_page(page)

    async def _open_page(self, handle: SessionHandle):
        """
        Open a tab in the leased context.

        Raises:
            RenderingEngineUnavailable: The context or its browser has gone away
        """
        try:
            return await handle.new_page()
        except PlaywrightError as e:
            handle.broken = True
            self.pool.record_failure("new_page")
            raise RenderingEngineUnavailable(f"Browser session unusable: {e}") from e

    async def _navigate(self, page, url: str) -> bool:
        """
        Load the page. A timeout is soft and reported via the return value.

        Returns:
            True if navigation timed out
        """
        try:
            await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self.navigation_timeout * 1000,
            )
            return False
        except PlaywrightTimeoutError:
            logger.warning(
                f"Navigation to {url} timed out after {self.navigation_timeout:.0f}s; "
                f"extracting from partial page"
            )
            self.pool.record_failure("navigation timeout")
            return True
        except PlaywrightError as e:
            self.pool.record_failure(f"navigation error: {e}")
            raise NavigationError(url, str(e)) from e

    async def _extract_text(self, page, target: MonitorTarget) -> str:
        """Read the selector's text, retrying while it is missing or empty."""
        attempts = max(1, target.retry_count or 0)
        delay = target.retry_delay_seconds or 0
        selector = None if target.is_full_page else target.selector.strip()
        matched = False

        attempt = 0
        while attempt < attempts:
            attempt += 1
            text = ""
            if selector is None:
                matched = True
                text = await page.inner_text("body")
            else:
                try:
                    element = await page.query_selector(selector)
                except PlaywrightError as e:
                    logger.debug(f"Selector {selector!r} failed on attempt {attempt}: {e}")
                    element = None
                if element is not None:
                    matched = True
                    text = await element.inner_text()

            text = (text or "").strip()
            if text:
                return text

            if attempt < attempts:
                logger.debug(
                    f"Attempt {attempt}/{attempts} found nothing for monitor {target.id}; "
                    f"retrying in {delay}s"
                )
                await asyncio.sleep(delay)

        if not matched:
            raise ElementNotFound(selector, target.url, attempts)
        raise ExtractionEmpty(target.url, f"{selector or 'body'} has no text")

    async def _extract_price(self, page, target: MonitorTarget) -> Observation:
        screenshot = None
        try:
            screenshot = await page.screenshot(full_page=True, type="png")
        except PlaywrightError as e:
            logger.warning(f"Price screenshot failed for monitor {target.id}: {e}")

        html = await page.content()

        element_text = None
        if not target.is_full_page:
            try:
                element = await page.query_selector(target.selector.strip())
            except PlaywrightError as e:
                logger.debug(f"Price selector {target.selector!r} failed: {e}")
                element = None
            if element is not None:
                element_text = (await element.inner_text()).strip() or None

        page_text = None
        if element_text is None:
            try:
                page_text = await page.inner_text("body")
            except PlaywrightError:
                page_text = ""

        candidate = self.extractor.extract(html, element_text=element_text, page_text=page_text)
        if candidate is None:
            raise ExtractionEmpty(target.url, "no price found")

        return Observation(value=candidate.display, screenshot=screenshot, candidate=candidate)

    async def _close_page(self, page):
        try:
            await page.close()
        except Exception as e:
            logger.debug(f"Error closing page (ignored): {e}")

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    async def _evaluate(
        self,
        target: MonitorTarget,
        observation: Observation,
        config: AppSettings,
    ) -> PendingCheck:
        if target.mode == "visual":
            return await self._evaluate_visual(target, observation)
        return await self._evaluate_value(target, observation, config)

    async def _evaluate_value(
        self,
        target: MonitorTarget,
        observation: Observation,
        config: AppSettings,
    ) -> PendingCheck:
        """Text and price modes compare the extracted string."""
        now = utcnow()
        candidate = observation.candidate
        record = CheckHistory(status="unchanged", value=observation.value)
        changes: Dict[str, Any] = {"last_check_at": now, "failure_count": 0}
        pending = PendingCheck(record=record, changes=changes)

        if candidate is not None:
            record.price = candidate.price
            record.currency = candidate.currency
            changes["last_price"] = candidate.price
            changes["last_currency"] = candidate.currency

        if observation.screenshot is not None:
            ref = self.store.save(target.id, "current", observation.screenshot)
            pending.written.append(ref)
            changes["last_screenshot"] = ref
            if target.last_screenshot:
                pending.superseded.append(target.last_screenshot)

        # A target switched from visual mode has a baseline but no stored value
        if not target.has_baseline or target.last_value is None:
            changes["has_baseline"] = True
            changes["last_value"] = observation.value
            logger.info(f"Monitor {target.id} baselined")
            return pending

        change = compare_text(target.last_value, observation.value)
        if not change.changed:
            return pending

        record.status = "changed"
        record.diff_text = change.diff
        changes["last_value"] = observation.value
        changes["last_change_at"] = now
        if observation.screenshot is not None:
            history_ref = self.store.save(target.id, "history_current", observation.screenshot)
            pending.written.append(history_ref)
            record.current_screenshot = history_ref

        hint = f"price in {candidate.currency}" if candidate is not None else None
        if self.summarizer is not None:
            record.ai_summary = await self.summarizer.summarize(
                target.last_value, observation.value, hint=hint, config=config
            )

        if not should_notify(observation.value, target.notify_rules):
            logger.info(f"Change on monitor {target.id} suppressed by notification rules")
            metrics.record_suppressed("rules")
        elif candidate is not None and not price_allows_notification(
            candidate.price,
            _decimal_or_none(target.price_threshold_min),
            _decimal_or_none(target.price_threshold_max),
        ):
            logger.info(
                f"Price change on monitor {target.id} to {candidate.display} "
                f"outside alert thresholds"
            )
            metrics.record_suppressed("price_threshold")
        else:
            pending.artifact = NotificationArtifact(
                target_id=target.id,
                target_name=target.name or target.url,
                url=target.url,
                mode=target.mode,
                old_value=target.last_value,
                new_value=observation.value,
                diff_text=change.diff,
                ai_summary=record.ai_summary,
                price=candidate.price if candidate is not None else None,
                currency=candidate.currency if candidate is not None else None,
            )
        return pending

    async def _evaluate_visual(self, target: MonitorTarget, observation: Observation) -> PendingCheck:
        now = utcnow()
        record = CheckHistory(status="unchanged")
        changes: Dict[str, Any] = {"last_check_at": now, "failure_count": 0}
        pending = PendingCheck(record=record, changes=changes)

        previous = self.store.read(target.last_screenshot) if target.has_baseline else None
        if previous is None:
            # First run, or the previous image is gone: start over from this one
            ref = self.store.save(target.id, "current", observation.screenshot)
            pending.written.append(ref)
            pending.superseded.extend(r for r in (target.last_screenshot, target.last_diff) if r)
            changes.update(has_baseline=True, last_screenshot=ref, last_diff=None)
            logger.info(f"Monitor {target.id} visual baseline captured")
            return pending

        result = await asyncio.to_thread(
            compare_images, previous, observation.screenshot, self.pixel_threshold
        )
        record.value = f"{result.diff_pixels}/{result.total_pixels} pixels differ"
        if not result.changed:
            return pending

        current_ref = self.store.save(target.id, "current", observation.screenshot)
        pending.written.append(current_ref)
        changes.update(last_screenshot=current_ref, last_change_at=now)
        pending.superseded.append(target.last_screenshot)

        if result.diff_png is not None:
            diff_ref = self.store.save(target.id, "diff", result.diff_png)
            pending.written.append(diff_ref)
            changes["last_diff"] = diff_ref
            if target.last_diff:
                pending.superseded.append(target.last_diff)

        # History keeps its own copies so later checks can prune freely
        record.status = "changed"
        record.previous_screenshot = self.store.save(target.id, "history_previous", previous)
        record.current_screenshot = self.store.save(target.id, "history_current", observation.screenshot)
        pending.written.extend([record.previous_screenshot, record.current_screenshot])
        if result.diff_png is not None:
            record.diff_screenshot = self.store.save(target.id, "history_diff", result.diff_png)
            pending.written.append(record.diff_screenshot)

        pending.artifact = NotificationArtifact(
            target_id=target.id,
            target_name=target.name or target.url,
            url=target.url,
            mode=target.mode,
            diff_png=result.diff_png,
            diff_pixels=result.diff_pixels,
        )
        return pending

    def _error_check(self, target: MonitorTarget, error: CheckError) -> PendingCheck:
        record = CheckHistory(
            status="error",
            error_kind=error.kind,
            error_message=str(error)[:2000],
        )
        changes = {
            "last_check_at": utcnow(),
            "failure_count": (target.failure_count or 0) + 1,
        }
        return PendingCheck(record=record, changes=changes)

    # ------------------------------------------------------------------
    # Persistence & notification
    # ------------------------------------------------------------------

    async def _persist(self, target: MonitorTarget, pending: PendingCheck) -> CheckHistory:
        try:
            record = await self.repository.record_check(target, pending.record, **pending.changes)
        except Exception:
            logger.error(
                f"Failed to persist check for monitor {target.id}; "
                f"removing {len(pending.written)} new screenshot(s)"
            )
            for ref in pending.written:
                self.store.delete(ref)
            raise

        for ref in pending.superseded:
            self.store.delete(ref)
        return record

    async def _notify(self, artifact: NotificationArtifact, config: AppSettings):
        if self.dispatcher is None:
            return
        try:
            await self.dispatcher.notify(
                build_subject(artifact),
                build_plain_body(artifact),
                build_html_body(artifact),
                artifact,
                config,
            )
        except Exception as e:
            logger.error(f"Notification for monitor {artifact.target_id} failed: {e}")


def _decimal_or_none(value) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))

"""Bounded pool of Playwright browser contexts.

The pool owns one Chromium browser and hands out browser contexts as leased
``SessionHandle`` objects. It enforces a hard ceiling on concurrently leased
sessions, keeps a separate (smaller) lane for interactive requests, tracks
consecutive failures, and can tear everything down and relaunch on demand.
"""

import asyncio
import itertools
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from pagewatch.config import settings
from pagewatch.errors import RenderingEngineUnavailable
from pagewatch import metrics

logger = logging.getLogger(__name__)


# Stealth browser launch args
STEALTH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-infobars",
    "--disable-extensions",
    "--disable-gpu",
    "--mute-audio",
]

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
]

HIDE_WEBDRIVER_SCRIPT = "Object.defineProperty(navigator, 'webdriver', { get: () => undefined });"


class PlaywrightLauncher:
    """Starts Playwright and launches Chromium."""

    def __init__(self, headless: Optional[bool] = None):
        self.headless = settings.headless if headless is None else headless
        self._playwright = None

    async def launch(self):
        """Launch a new browser instance."""
        from playwright.async_api import async_playwright

        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self.headless,
            args=STEALTH_ARGS,
        )

    async def stop(self):
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


@dataclass
class PoolStats:
    """Read-only snapshot of pool state (consumed by the health endpoint)."""
    total: int
    in_use: int
    available: int
    consecutive_errors: int
    healthy: bool


@dataclass(eq=False)
class SessionHandle:
    """A leased browser context. Release exactly once via the pool."""
    id: int
    context: Any
    generation: int
    interactive: bool = False
    acquired_at: float = field(default_factory=time.monotonic)
    released: bool = False
    broken: bool = False

    async def new_page(self):
        return await self.context.new_page()


class SessionPool:
    """
    Bounded, self-healing pool of browser contexts.

    Features:
    - Hard ceiling on leased sessions (asyncio.Semaphore)
    - Separate interactive lane so previews cannot starve scheduled checks
    - Lazy browser launch and relaunch when the browser disconnects
    - Liveness probe on idle contexts before reuse
    - Consecutive-error tracking with a health flag and force_reset()
    """

    def __init__(
        self,
        max_sessions: int = None,
        max_interactive: int = None,
        error_threshold: int = None,
        acquire_timeout: float = None,
        probe_timeout: float = None,
        launcher: Any = None,
        proxy: Optional[dict] = None,
    ):
        """
        Initialize the pool.

        Args:
            max_sessions: Maximum concurrently leased sessions (defaults to config)
            max_interactive: Maximum concurrent interactive leases (defaults to config)
            error_threshold: Consecutive errors before the pool reports unhealthy
            acquire_timeout: Seconds a caller may wait for a session
            probe_timeout: Seconds allowed for the idle-context liveness probe
            launcher: Object with async ``launch()`` / ``stop()`` (Playwright by default)
            proxy: Optional Playwright proxy dict applied to new contexts
        """
        self.max_sessions = max_sessions or settings.session_pool_size
        self.max_interactive = min(
            max_interactive or settings.interactive_max_concurrent, self.max_sessions
        )
        self.error_threshold = error_threshold or settings.pool_error_threshold
        self.acquire_timeout = (
            acquire_timeout if acquire_timeout is not None else settings.pool_acquire_timeout_seconds
        )
        self.probe_timeout = probe_timeout or settings.pool_probe_timeout_seconds
        self.proxy = proxy

        self._launcher = launcher or PlaywrightLauncher()
        self._slots = asyncio.Semaphore(self.max_sessions)
        self._interactive_slots = asyncio.Semaphore(self.max_interactive)
        self._lock = asyncio.Lock()

        self._browser = None
        self._generation = 0
        self._idle: List[Any] = []
        self._in_use: Dict[int, SessionHandle] = {}
        self._ids = itertools.count(1)
        self._consecutive_errors = 0

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    async def acquire(self, interactive: bool = False) -> SessionHandle:
        """
        Lease a session, suspending until one is free.

        Args:
            interactive: Use the interactive lane (previews, manual checks)

        Returns:
            SessionHandle owned by the caller until released

        Raises:
            RenderingEngineUnavailable: Timed out waiting or the browser failed to launch
        """
        deadline = time.monotonic() + self.acquire_timeout
        took_interactive = False

        try:
            if interactive:
                await self._wait_for(self._interactive_slots, deadline)
                took_interactive = True
            await self._wait_for(self._slots, deadline)
        except asyncio.TimeoutError:
            if took_interactive:
                self._interactive_slots.release()
            logger.warning(
                f"Timed out after {self.acquire_timeout:.0f}s waiting for a browser session "
                f"(in use: {len(self._in_use)}/{self.max_sessions}, interactive={interactive})"
            )
            raise RenderingEngineUnavailable("Timed out waiting for a free browser session")

        try:
            context = await self._checkout_context()
        except Exception as e:
            self._slots.release()
            if took_interactive:
                self._interactive_slots.release()
            self.record_failure(f"launch: {type(e).__name__}")
            logger.error(f"Failed to obtain browser context: {type(e).__name__}: {e}")
            raise RenderingEngineUnavailable(f"Browser unavailable: {e}") from e

        handle = SessionHandle(
            id=next(self._ids),
            context=context,
            generation=self._generation,
            interactive=interactive,
        )
        self._in_use[handle.id] = handle
        metrics.update_pool_gauges(len(self._in_use), self._consecutive_errors)
        logger.debug(
            f"Leased session {handle.id} ({len(self._in_use)}/{self.max_sessions} in use)"
        )
        return handle

    async def release(self, handle: SessionHandle) -> None:
        """Return a session to the pool. Releasing twice is a logged no-op."""
        if handle.released:
            logger.warning(f"Session {handle.id} released twice; ignoring")
            return
        handle.released = True
        self._in_use.pop(handle.id, None)

        try:
            recyclable = (
                not handle.broken
                and handle.generation == self._generation
                and self._browser is not None
                and len(self._idle) < self.max_sessions
            )
            if recyclable:
                self._idle.append(handle.context)
            else:
                await self._close_quietly(handle.context)
        finally:
            self._slots.release()
            if handle.interactive:
                self._interactive_slots.release()
            metrics.update_pool_gauges(len(self._in_use), self._consecutive_errors)
            logger.debug(f"Released session {handle.id}")

    @asynccontextmanager
    async def session(self, interactive: bool = False) -> AsyncIterator[SessionHandle]:
        """Lease a session for the duration of an ``async with`` block."""
        handle = await self.acquire(interactive=interactive)
        try:
            yield handle
        finally:
            await self.release(handle)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def record_success(self) -> None:
        """A session was used successfully; reset the error streak."""
        if self._consecutive_errors:
            logger.info(f"Pool recovered after {self._consecutive_errors} consecutive error(s)")
        self._consecutive_errors = 0
        metrics.update_pool_gauges(len(self._in_use), 0)

    def record_failure(self, reason: str = "") -> None:
        """An acquisition or navigation failed."""
        self._consecutive_errors += 1
        metrics.update_pool_gauges(len(self._in_use), self._consecutive_errors)
        if self._consecutive_errors == self.error_threshold:
            logger.error(
                f"Browser pool unhealthy: {self._consecutive_errors} consecutive errors"
                f"{f' (last: {reason})' if reason else ''}"
            )
        else:
            logger.debug(f"Pool error streak {self._consecutive_errors}: {reason}")

    @property
    def healthy(self) -> bool:
        return self._consecutive_errors < self.error_threshold

    def stats(self) -> PoolStats:
        in_use = len(self._in_use)
        return PoolStats(
            total=self.max_sessions,
            in_use=in_use,
            available=self.max_sessions - in_use,
            consecutive_errors=self._consecutive_errors,
            healthy=self.healthy,
        )

    async def force_reset(self, reason: str = "manual") -> None:
        """
        Tear down the browser and every idle context, then relaunch.

        Sessions leased before the reset stay valid for their holders only as
        far as the old browser allows; on release they are closed rather than
        recycled.
        """
        logger.warning(
            f"Force-resetting browser pool (reason: {reason}, "
            f"errors: {self._consecutive_errors}, in use: {len(self._in_use)})"
        )
        async with self._lock:
            self._generation += 1
            idle, self._idle = self._idle, []
            for context in idle:
                await self._close_quietly(context)
            await self._shutdown_browser()
            self._consecutive_errors = 0
            metrics.record_pool_reset(reason)
            metrics.update_pool_gauges(len(self._in_use), 0)

            try:
                await self._ensure_browser()
            except Exception as e:
                self._consecutive_errors += 1
                logger.error(f"Browser relaunch after reset failed: {type(e).__name__}: {e}")
                raise RenderingEngineUnavailable(f"Relaunch failed: {e}") from e

    async def configure_proxy(self, proxy: Optional[dict]) -> None:
        """Switch proxy; takes effect for contexts created after a reset."""
        if proxy == self.proxy:
            return
        self.proxy = proxy
        logger.info(f"Browser proxy set to {proxy['server'] if proxy else 'none'}")
        if self._browser is not None:
            await self.force_reset(reason="proxy_changed")

    async def close(self) -> None:
        """Close every context and the browser."""
        async with self._lock:
            self._generation += 1
            idle, self._idle = self._idle, []
            for context in idle:
                await self._close_quietly(context)
            await self._shutdown_browser()
        try:
            await self._launcher.stop()
        except Exception as e:
            logger.error(f"Error stopping browser launcher: {e}")
        logger.info("Browser pool closed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    async def _wait_for(semaphore: asyncio.Semaphore, deadline: float) -> None:
        remaining = max(0.0, deadline - time.monotonic())
        await asyncio.wait_for(semaphore.acquire(), timeout=remaining)

    async def _checkout_context(self):
        async with self._lock:
            browser = await self._ensure_browser()
            while self._idle:
                context = self._idle.pop()
                if await self._is_alive(context):
                    return context
                logger.info("Discarding stale browser context")
                await self._close_quietly(context)
            return await self._new_context(browser)

    async def _ensure_browser(self):
        if self._browser is not None and self._browser_connected():
            return self._browser

        if self._browser is not None:
            logger.warning("Browser disconnected; relaunching")
            self._generation += 1
            idle, self._idle = self._idle, []
            for context in idle:
                await self._close_quietly(context)
            await self._shutdown_browser()

        logger.info("Launching browser")
        self._browser = await self._launcher.launch()
        return self._browser

    def _browser_connected(self) -> bool:
        try:
            return bool(self._browser.is_connected())
        except Exception:
            return False

    async def _new_context(self, browser):
        options = {
            "user_agent": random.choice(USER_AGENTS),
            "viewport": {"width": 1280, "height": 800},
            "ignore_https_errors": True,
        }
        if self.proxy:
            options["proxy"] = self.proxy
        context = await browser.new_context(**options)
        await context.add_init_script(HIDE_WEBDRIVER_SCRIPT)
        return context

    async def _is_alive(self, context) -> bool:
        try:
            await asyncio.wait_for(context.cookies(), timeout=self.probe_timeout)
            return True
        except Exception:
            return False

    async def _shutdown_browser(self):
        if self._browser is None:
            return
        try:
            await self._browser.close()
        except Exception as e:
            logger.debug(f"Error closing browser (ignored): {e}")
        self._browser = None

    @staticmethod
    async def _close_quietly(context):
        try:
            await context.close()
        except Exception as e:
            logger.debug(f"Error closing browser context (ignored): {e}")

"""Due-target selection and dispatch."""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pagewatch import metrics
from pagewatch.config import settings
from pagewatch.db.models import CheckHistory, MonitorTarget
from pagewatch.db.repository import MonitorRepository
from pagewatch.errors import RenderingEngineUnavailable
from pagewatch.ingest.session_pool import SessionPool
from pagewatch.utils.clock import utcnow
from pagewatch.worker.pipeline import CheckPipeline

logger = logging.getLogger(__name__)

# Labels offered by the UI
INTERVAL_MINUTES = {
    "1m": 1,
    "5m": 5,
    "30m": 30,
    "1h": 60,
    "8h": 480,
    "24h": 1440,
    "1w": 10080,
}

UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
INTERVAL_RE = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$", re.IGNORECASE)


def parse_interval(label: Optional[str]) -> timedelta:
    """
    Convert an interval label like "30m" or "1w" to a timedelta.

    Unknown or zero-length labels fall back to the configured default.
    """
    if label in INTERVAL_MINUTES:
        return timedelta(minutes=INTERVAL_MINUTES[label])

    match = INTERVAL_RE.match(label or "")
    if match:
        seconds = int(match.group(1)) * UNIT_SECONDS[match.group(2).lower()]
        if seconds > 0:
            return timedelta(seconds=seconds)

    logger.debug(f"Unparseable interval {label!r}; using default")
    return timedelta(minutes=settings.default_interval_minutes)


def next_check_at(target: MonitorTarget) -> Optional[datetime]:
    """When the target is next due (None means immediately)."""
    if target.last_check_at is None:
        return None
    return target.last_check_at + parse_interval(target.interval)


def is_due(target: MonitorTarget, now: datetime) -> bool:
    due_at = next_check_at(target)
    return due_at is None or now >= due_at


@dataclass
class SchedulerHealth:
    """Aggregate scheduler status for the deep health endpoint."""

    healthy: bool
    last_successful_check: Optional[datetime]
    last_tick_at: Optional[datetime]
    due_targets: int
    scheduler_errors: int


class CheckScheduler:
    """
    Periodic dispatcher of due targets.

    Text and price targets due on the same tick are checked one after another
    on a single shared session; each visual target gets its own session. The
    shared batch and the visual targets run concurrently, capped by
    ``max_concurrent_checks``.
    """

    def __init__(
        self,
        repository: MonitorRepository,
        pipeline: CheckPipeline,
        pool: SessionPool,
        max_concurrent: int = None,
        stale_seconds: int = None,
    ):
        self.repository = repository
        self.pipeline = pipeline
        self.pool = pool
        self.max_concurrent = max_concurrent or settings.max_concurrent_checks
        self.stale_seconds = stale_seconds or settings.scheduler_stale_seconds

        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._target_locks: Dict[int, asyncio.Lock] = {}
        self._ticking = False

        self.started_at = utcnow()
        self.last_tick_at: Optional[datetime] = None
        self.last_successful_check: Optional[datetime] = None
        self.due_count = 0
        self.scheduler_errors = 0

    def _lock_for(self, target_id: int) -> asyncio.Lock:
        lock = self._target_locks.get(target_id)
        if lock is None:
            lock = self._target_locks[target_id] = asyncio.Lock()
        return lock

    def _prune_locks(self, active_ids) -> None:
        """Forget locks of deleted or paused targets that nobody holds."""
        for target_id in list(self._target_locks):
            if target_id not in active_ids and not self._target_locks[target_id].locked():
                del self._target_locks[target_id]

    async def tick(self, now: Optional[datetime] = None) -> int:
        """
        Check every due target once.

        Returns:
            Number of targets that were due
        """
        if self._ticking:
            logger.info("Previous tick still running; skipping")
            return 0

        self._ticking = True
        try:
            now = now or utcnow()
            targets = await self.repository.list_active_targets()
            self._prune_locks({t.id for t in targets})
            due = [t for t in targets if is_due(t, now)]
            self.last_tick_at = now
            self.due_count = len(due)

            if not due:
                metrics.record_scheduler_run(True, 0)
                return 0

            logger.info(f"Tick: {len(due)} of {len(targets)} active monitors due")
            await self._sync_proxy()

            shared = [t for t in due if t.mode != "visual"]
            visual = [t for t in due if t.mode == "visual"]

            jobs = []
            if shared:
                jobs.append(self._run_shared_batch(shared))
            jobs.extend(self._run_single(t) for t in visual)

            results = await asyncio.gather(*jobs, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    self.scheduler_errors += 1
                    logger.error(f"Check job failed: {type(result).__name__}: {result}")

            metrics.record_scheduler_run(True, len(due))
            return len(due)

        except Exception as e:
            self.scheduler_errors += 1
            metrics.record_scheduler_run(False, self.due_count)
            logger.exception(f"Scheduler tick failed: {e}")
            return 0
        finally:
            self._ticking = False

    async def check_now(self, target_id: int) -> CheckHistory:
        """
        Manually check one target through the interactive lane.

        Raises:
            LookupError: Unknown target id
        """
        target = await self.repository.get_target(target_id)
        if target is None:
            raise LookupError(f"Monitor {target_id} not found")

        record = await self._check(target.id, interactive=True, require_active=False)
        if record is None:
            raise LookupError(f"Monitor {target_id} not found")
        return record

    async def list_due(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Due-ness of every active target."""
        now = now or utcnow()
        targets = await self.repository.list_active_targets()
        return [
            {
                "id": t.id,
                "name": t.name,
                "mode": t.mode,
                "due": is_due(t, now),
                "next_check_at": next_check_at(t),
            }
            for t in targets
        ]

    def health(self, now: Optional[datetime] = None) -> SchedulerHealth:
        """
        Unhealthy when targets are due but nothing has succeeded for
        ``scheduler_stale_seconds``.
        """
        now = now or utcnow()
        reference = self.last_successful_check or self.started_at
        stale = (now - reference).total_seconds() > self.stale_seconds
        return SchedulerHealth(
            healthy=not (self.due_count > 0 and stale),
            last_successful_check=self.last_successful_check,
            last_tick_at=self.last_tick_at,
            due_targets=self.due_count,
            scheduler_errors=self.scheduler_errors,
        )

    async def _run_shared_batch(self, targets: List[MonitorTarget]):
        async with self._slots:
            try:
                handle = await self.pool.acquire()
            except RenderingEngineUnavailable as e:
                logger.error(f"No browser session for {len(targets)} text/price monitor(s): {e}")
                for target in targets:
                    await self._check(target.id, failure=e)
                return

            remaining = list(targets)
            try:
                while remaining:
                    target = remaining.pop(0)
                    try:
                        await self._check(target.id, handle=handle)
                    except Exception as e:
                        self.scheduler_errors += 1
                        logger.error(f"Monitor {target.id} check aborted: {type(e).__name__}: {e}")

                    if handle.broken and remaining:
                        logger.warning(
                            f"Shared session {handle.id} died; re-acquiring for "
                            f"{len(remaining)} remaining monitor(s)"
                        )
                        await self.pool.release(handle)
                        handle = None
                        try:
                            handle = await self.pool.acquire()
                        except RenderingEngineUnavailable as e:
                            logger.error(f"No replacement browser session: {e}")
                            for rest in remaining:
                                await self._check(rest.id, failure=e)
                            return
            finally:
                if handle is not None:
                    await self.pool.release(handle)

    async def _run_single(self, target: MonitorTarget):
        async with self._slots:
            await self._check(target.id)

    async def _check(
        self,
        target_id: int,
        handle=None,
        interactive: bool = False,
        require_active: bool = True,
        failure: Optional[Exception] = None,
    ) -> Optional[CheckHistory]:
        """Run the pipeline under the target's lock, on a freshly loaded row."""
        async with self._lock_for(target_id):
            target = await self.repository.get_target(target_id)
            if target is None or (require_active and not target.active):
                logger.info(f"Monitor {target_id} removed or paused before its check")
                return None

            if failure is not None:
                record = await self.pipeline.record_error(target, failure)
            else:
                record = await self.pipeline.run(target, handle=handle, interactive=interactive)

        if record.status != "error":
            self.last_successful_check = utcnow()
        return record

    async def _sync_proxy(self):
        try:
            config = await self.repository.get_app_settings()
            await self.pool.configure_proxy(config.playwright_proxy)
        except Exception as e:
            logger.warning(f"Could not apply proxy settings: {e}")

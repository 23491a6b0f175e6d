"""Persistence access used by the scheduler and check pipeline."""

import logging
from typing import Any, List, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pagewatch.db.models import AppSettings, CheckHistory, MonitorTarget

logger = logging.getLogger(__name__)

# Columns the pipeline is allowed to write on a target
PIPELINE_FIELDS = frozenset({
    "last_check_at",
    "last_change_at",
    "last_value",
    "last_screenshot",
    "last_diff",
    "last_price",
    "last_currency",
    "has_baseline",
    "failure_count",
})


class MonitorRepository:
    """
    Thin repository over an async session factory.

    Every method opens its own short-lived session, so objects handed out are
    detached and safe to pass across tasks (the factory must use
    ``expire_on_commit=False``).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_active_targets(self) -> List[MonitorTarget]:
        """Load all active targets ordered by id."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(MonitorTarget)
                .where(MonitorTarget.active == True)  # noqa: E712
                .order_by(MonitorTarget.id)
            )
            return list(result.scalars().all())

    async def get_target(self, target_id: int) -> Optional[MonitorTarget]:
        async with self._session_factory() as db:
            return await db.get(MonitorTarget, target_id)

    async def record_check(
        self,
        target: MonitorTarget,
        record: CheckHistory,
        **changes: Any,
    ) -> CheckHistory:
        """
        Append a history record and apply target state changes atomically.

        Args:
            target: Target the check ran for (detached instance, updated in place)
            record: New history record
            **changes: Pipeline-owned target columns to update

        Returns:
            The persisted history record
        """
        unknown = set(changes) - PIPELINE_FIELDS
        if unknown:
            raise ValueError(f"Pipeline may not write target fields: {sorted(unknown)}")

        record.monitor_id = target.id
        async with self._session_factory() as db:
            stored = await db.get(MonitorTarget, target.id)
            if stored is None:
                raise LookupError(f"Monitor {target.id} no longer exists")
            for field, value in changes.items():
                setattr(stored, field, value)
            db.add(record)
            await db.commit()
            await db.refresh(record)

        for field, value in changes.items():
            setattr(target, field, value)
        return record

    async def list_history(self, target_id: int, limit: int = 50) -> List[CheckHistory]:
        """Most recent history records for a target, newest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(CheckHistory)
                .where(CheckHistory.monitor_id == target_id)
                .order_by(CheckHistory.created_at.desc(), CheckHistory.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_app_settings(self) -> AppSettings:
        """Load the singleton settings row, falling back to defaults if absent."""
        async with self._session_factory() as db:
            row = await db.get(AppSettings, 1)
        if row is None:
            return AppSettings(
                id=1,
                ai_enabled=False,
                ai_model="gpt-3.5-turbo",
                webhook_type="discord",
            )
        return row

    async def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        try:
            async with self._session_factory() as db:
                await db.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database ping failed: {e}")
            return False

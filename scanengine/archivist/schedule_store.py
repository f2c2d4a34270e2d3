"""
Schedule storage: read enabled schedules, patch run status, resolve presets.

The engine never creates or deletes schedules; it only transitions
last_run_status / last_run_at / last_run_message.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update

from .models import AccountPreset, Schedule, STATUS_ERROR, STATUS_RUNNING, utc_now

logger = logging.getLogger(__name__)

# Fields the engine is allowed to patch
PATCHABLE_FIELDS = {"last_run_at", "last_run_status", "last_run_message"}


class ScheduleStore(ABC):
    """Abstract schedule storage."""

    @abstractmethod
    async def list_enabled(self) -> list[Schedule]:
        """All schedules with enabled = true."""

    @abstractmethod
    async def patch(self, schedule_id: str, **fields: Any) -> None:
        """Update run-status fields of one schedule."""

    @abstractmethod
    async def reset_stale_running(self, started_before: datetime, message: str) -> list[str]:
        """Move schedules stuck in running since before `started_before` to error.

        Implemented as a conditional update so a schedule that finished in the
        meantime is never overwritten. Returns the ids that were reset.
        """

    @abstractmethod
    async def get_preset(self, preset_id: str, owner_id: str) -> Optional[AccountPreset]:
        """A saved account group, only if owned by owner_id."""

    @abstractmethod
    async def recent_presets(self, owner_id: str, limit: int) -> list[AccountPreset]:
        """The owner's most recently updated presets."""

    @staticmethod
    def _check_fields(fields: dict[str, Any]) -> None:
        unknown = set(fields) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch schedule fields: {sorted(unknown)}")


class InMemoryScheduleStore(ScheduleStore):
    """Process-local schedule store."""

    def __init__(self, schedules: Optional[list[Schedule]] = None, presets: Optional[list[AccountPreset]] = None):
        self.schedules: dict[str, Schedule] = {s.id: s for s in (schedules or [])}
        self.presets: dict[str, AccountPreset] = {p.id: p for p in (presets or [])}

    def add(self, schedule: Schedule) -> Schedule:
        self.schedules[schedule.id] = schedule
        return schedule

    def add_preset(self, preset: AccountPreset) -> AccountPreset:
        self.presets[preset.id] = preset
        return preset

    async def list_enabled(self) -> list[Schedule]:
        return [s for s in self.schedules.values() if s.enabled]

    async def patch(self, schedule_id: str, **fields: Any) -> None:
        self._check_fields(fields)
        schedule = self.schedules.get(schedule_id)
        if schedule is None:
            logger.warning(f"Patch for unknown schedule {schedule_id} ignored")
            return
        for name, value in fields.items():
            setattr(schedule, name, value)
        schedule.updated_at = utc_now()

    async def reset_stale_running(self, started_before: datetime, message: str) -> list[str]:
        reset = []
        for schedule in self.schedules.values():
            if (
                schedule.last_run_status == STATUS_RUNNING
                and schedule.last_run_at is not None
                and schedule.last_run_at < started_before
            ):
                schedule.last_run_status = STATUS_ERROR
                schedule.last_run_message = message
                reset.append(schedule.id)
        return reset

    async def get_preset(self, preset_id: str, owner_id: str) -> Optional[AccountPreset]:
        preset = self.presets.get(preset_id)
        if preset is None or preset.owner_id != owner_id:
            return None
        return preset

    async def recent_presets(self, owner_id: str, limit: int) -> list[AccountPreset]:
        owned = [p for p in self.presets.values() if p.owner_id == owner_id]
        owned.sort(key=lambda p: p.updated_at, reverse=True)
        return owned[:limit]


class PostgresScheduleStore(ScheduleStore):
    """Schedule store backed by the schedules / account_presets tables."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def list_enabled(self) -> list[Schedule]:
        async with self._session_factory() as session:
            result = await session.execute(select(Schedule).where(Schedule.enabled.is_(True)))
            return list(result.scalars().all())

    async def patch(self, schedule_id: str, **fields: Any) -> None:
        self._check_fields(fields)
        async with self._session_factory() as session:
            await session.execute(
                update(Schedule)
                .where(Schedule.id == schedule_id)
                .values(**fields, updated_at=utc_now())
            )
            await session.commit()

    async def reset_stale_running(self, started_before: datetime, message: str) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Schedule)
                .where(
                    Schedule.last_run_status == STATUS_RUNNING,
                    Schedule.last_run_at < started_before,
                )
                .values(last_run_status=STATUS_ERROR, last_run_message=message, updated_at=utc_now())
                .returning(Schedule.id)
            )
            reset = [row[0] for row in result.fetchall()]
            await session.commit()
            return reset

    async def get_preset(self, preset_id: str, owner_id: str) -> Optional[AccountPreset]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AccountPreset).where(
                    AccountPreset.id == preset_id,
                    AccountPreset.owner_id == owner_id,
                )
            )
            return result.scalar_one_or_none()

    async def recent_presets(self, owner_id: str, limit: int) -> list[AccountPreset]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AccountPreset)
                .where(AccountPreset.owner_id == owner_id)
                .order_by(AccountPreset.updated_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

"""Operator-entered visits with timed mode changes."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from rental_automation.config import AutomationConfig, ModeTag
from rental_automation.core.actions import ActionExecutor
from rental_automation.core.reconciler import Timers
from rental_automation.core.timeutil import localize
from rental_automation.db.models import ManualVisit, ModeChange
from rental_automation.db.stores import VisitStore
from rental_automation.scheduler.timers import JobKind, TimerHandle, TimerJob

logger = logging.getLogger(__name__)


class ManualVisitScheduler:
    """Schedules each mode change of every stored visit.

    The store is authoritative; the timer handles here are rebuilt from it on
    start-up and whenever the file is edited by hand.
    """

    def __init__(
        self,
        config: AutomationConfig,
        timers: Timers,
        executor: ActionExecutor,
        store: VisitStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config = config
        self._timers = timers
        self._executor = executor
        self._store = store
        self._clock = clock or (lambda: datetime.now(config.tz))
        self._lock = asyncio.Lock()
        self._handles: dict[str, list[TimerHandle]] = {}

        timers.register(JobKind.VISIT_MODE_CHANGE, self.on_timer)

    def _cancel_visit(self, visit_id: str) -> None:
        for handle in self._handles.pop(visit_id, []):
            handle.cancel()

    def _schedule_visit(self, visit: ManualVisit, now: datetime) -> None:
        handles = []
        for index, change in enumerate(visit.sorted_changes()):
            fires_at = localize(change.time, self._config.tz)
            if fires_at <= now:
                continue
            handles.append(
                self._timers.schedule(
                    TimerJob(JobKind.VISIT_MODE_CHANGE, visit.id, fires_at, index)
                )
            )
        self._handles[visit.id] = handles
        logger.info(f"Scheduled {len(handles)} mode change(s) for {visit.label}")

    def handles_for(self, visit_id: str) -> list[TimerHandle]:
        return list(self._handles.get(visit_id, []))

    def list(self) -> list[ManualVisit]:
        return self._store.list()

    async def initialize(self) -> None:
        """Load stored visits, drop finished ones and schedule the rest."""
        async with self._lock:
            for visit_id in list(self._handles):
                self._cancel_visit(visit_id)

            now = self._clock()
            for visit in self._store.list():
                last = localize(visit.sorted_changes()[-1].time, self._config.tz)
                if last <= now:
                    logger.info(f"Removing finished visit {visit.label}")
                    self._store.delete(visit.id)
                    continue
                self._schedule_visit(visit, now)

    async def add(self, visit: ManualVisit) -> ManualVisit:
        """Store and schedule a new visit.

        Raises:
            ValueError: If its last mode change is not in the future
        """
        tz = self._config.tz
        changes = sorted(
            (ModeChange(time=localize(c.time, tz), mode=c.mode) for c in visit.mode_changes),
            key=lambda c: c.time,
        )

        async with self._lock:
            now = self._clock()
            if changes[-1].time <= now:
                raise ValueError("Visit has no mode changes in the future")

            stored = self._store.add(visit.model_copy(update={"id": None, "mode_changes": changes}))
            self._schedule_visit(stored, now)
            return stored

    async def remove(self, visit_id: str) -> None:
        """Delete a visit and cancel its pending mode changes.

        Raises:
            KeyError: If no such visit exists
        """
        async with self._lock:
            deleted = self._store.delete(visit_id)
            had_timers = visit_id in self._handles
            self._cancel_visit(visit_id)
            if not deleted and not had_timers:
                raise KeyError(f"Visit {visit_id} not found")

    async def on_timer(self, job: TimerJob) -> None:
        async with self._lock:
            visit = self._store.get(job.key)
            if visit is None:
                logger.warning(f"Mode change fired for unknown visit {job.key}")
                self._handles.pop(job.key, None)
                return

            changes = visit.sorted_changes()
            if job.index >= len(changes) or localize(
                changes[job.index].time, self._config.tz
            ) != job.fires_at:
                logger.warning(f"Ignoring stale mode change {job.index} for {visit.label}")
                return

            change = changes[job.index]
            is_last = job.index == len(changes) - 1

        logger.info(f"Visit {visit.label}: {change.mode.value} mode change")
        try:
            if change.mode == ModeTag.CHECKIN:
                if visit.phone:
                    await self._executor.program_code(visit.phone, visit.label)
                await self._executor.apply_mode(ModeTag.CHECKIN, visit.label)
            elif change.mode == ModeTag.CHECKOUT:
                if visit.phone:
                    await self._executor.remove_code(visit.phone, visit.label)
                await self._executor.apply_mode(ModeTag.CHECKOUT, visit.label)
            else:
                await self._executor.arriving_soon(visit.label)
        finally:
            if is_last:
                async with self._lock:
                    self._store.delete(visit.id)
                    self._handles.pop(visit.id, None)
                logger.info(f"Visit {visit.label} complete, removed")

"""One-shot timers and the periodic tick, backed by APScheduler."""

import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from enum import Enum
from typing import Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class JobKind(str, Enum):
    """Type of timed job."""

    CHECKIN = "checkin"
    CHECKOUT = "checkout"
    ARRIVING_SOON = "arriving_soon"
    VISIT_MODE_CHANGE = "visit_mode_change"


@dataclass(frozen=True)
class TimerJob:
    """What a timer does when it fires.

    Handlers look up current state by ``key`` instead of trusting data
    captured at scheduling time.
    """

    kind: JobKind
    key: str
    fires_at: datetime
    index: int = 0


class TimerHandle:
    """A scheduled job that can be cancelled until it fires."""

    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"

    def __init__(
        self,
        job: TimerJob,
        job_id: str,
        on_cancel: Optional[Callable[["TimerHandle"], None]] = None,
    ):
        self.job = job
        self.job_id = job_id
        self.state = self.PENDING
        self._on_cancel = on_cancel

    @property
    def pending(self) -> bool:
        return self.state == self.PENDING

    def mark_fired(self) -> None:
        if self.state == self.PENDING:
            self.state = self.FIRED

    def cancel(self) -> bool:
        """Cancel the job. Safe to call at any time.

        Returns:
            True if a pending job was cancelled
        """
        if self.state != self.PENDING:
            return False
        self.state = self.CANCELLED
        if self._on_cancel:
            self._on_cancel(self)
        return True

    def __repr__(self) -> str:
        return f"<TimerHandle {self.job_id} {self.state}>"


def cancel_handle(handle: Optional[TimerHandle]) -> bool:
    """Cancel a possibly-absent handle."""
    return handle.cancel() if handle is not None else False


JobHandler = Callable[[TimerJob], Awaitable[None]]


class TimerScheduler:
    """Fires typed jobs at absolute instants.

    One handler is registered per job kind. Handlers run as tasks on the event
    loop and may overlap with each other and with reconciliation.
    """

    def __init__(self, timezone: Optional[tzinfo] = None):
        if timezone is not None:
            self._scheduler = AsyncIOScheduler(timezone=timezone)
        else:
            self._scheduler = AsyncIOScheduler()
        self._handlers: dict[JobKind, JobHandler] = {}
        self._pending: dict[str, TimerHandle] = {}
        self._ids = itertools.count(1)

    def register(self, kind: JobKind, handler: JobHandler) -> None:
        """Set the handler invoked when a job of this kind fires."""
        self._handlers[kind] = handler

    def start(self) -> None:
        """Start the scheduler."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Timer scheduler started")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Timer scheduler stopped")

    def add_tick(
        self,
        callback: Callable[[], Awaitable[None]],
        seconds: int,
        job_id: str = "tick",
        run_now: bool = False,
    ) -> None:
        """Run a callback every ``seconds``, optionally starting right away."""
        extra = {"next_run_time": datetime.now(self._scheduler.timezone)} if run_now else {}
        self._scheduler.add_job(
            callback,
            IntervalTrigger(seconds=seconds),
            id=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            **extra,
        )

    def schedule(self, job: TimerJob) -> TimerHandle:
        """Arrange for a job to fire at ``job.fires_at``."""
        # Unique per call so a replaced job never collides with its predecessor
        job_id = f"{job.kind.value}_{job.key}_{job.index}_{next(self._ids)}"
        handle = TimerHandle(job, job_id, on_cancel=self._remove)

        self._scheduler.add_job(
            self._fire,
            DateTrigger(run_date=job.fires_at),
            args=[handle],
            id=job_id,
            misfire_grace_time=None,
        )
        self._pending[job_id] = handle
        logger.debug(f"Scheduled {job.kind.value} for {job.key} at {job.fires_at.isoformat()}")
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> bool:
        """Cancel a job. No-op if absent, fired or already cancelled."""
        return cancel_handle(handle)

    def _remove(self, handle: TimerHandle) -> None:
        self._pending.pop(handle.job_id, None)
        try:
            self._scheduler.remove_job(handle.job_id)
        except JobLookupError:
            pass
        logger.debug(f"Cancelled {handle.job.kind.value} for {handle.job.key}")

    async def _fire(self, handle: TimerHandle) -> None:
        if not handle.pending:
            return
        handle.mark_fired()
        self._pending.pop(handle.job_id, None)

        handler = self._handlers.get(handle.job.kind)
        if handler is None:
            logger.error(f"No handler registered for {handle.job.kind.value} jobs")
            return

        try:
            await handler(handle.job)
        except Exception as e:
            logger.error(
                f"Error running {handle.job.kind.value} job for {handle.job.key}: {e}",
                exc_info=True,
            )

    def pending_jobs(self) -> list[TimerJob]:
        """Get all jobs that have not fired or been cancelled."""
        return [handle.job for handle in self._pending.values()]

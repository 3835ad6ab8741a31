"""Reservation reconciliation: diff feed windows against scheduled jobs."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from rental_automation.config import AutomationConfig
from rental_automation.core.actions import ActionExecutor
from rental_automation.core.timeutil import at_time_of_day, calendar_day, localize
from rental_automation.db.stores import LateCheckoutStore
from rental_automation.feeds.ical_source import (
    EventFetchError,
    ReservationEvent,
    extract_reservation,
)
from rental_automation.notifications import Notifier
from rental_automation.scheduler.timers import JobKind, TimerHandle, TimerJob, cancel_handle

logger = logging.getLogger(__name__)


class Timers(Protocol):
    def register(
        self, kind: JobKind, handler: Callable[[TimerJob], Awaitable[None]]
    ) -> None: ...

    def schedule(self, job: TimerJob) -> TimerHandle: ...


class EventSource(Protocol):
    async def fetch_events(self) -> list[ReservationEvent]: ...


@dataclass
class ScheduleEntry:
    """A reservation currently being tracked, with its live timers."""

    reservation_number: str
    start: datetime
    end: datetime
    feed_end: datetime
    phone_number: str
    platform: str
    summary: str = ""
    arriving: Optional[datetime] = None
    late_checkout_override: Optional[datetime] = None
    start_job: Optional[TimerHandle] = field(default=None, repr=False)
    end_job: Optional[TimerHandle] = field(default=None, repr=False)
    arriving_job: Optional[TimerHandle] = field(default=None, repr=False)
    cancelled: bool = False

    def same_window(self, other: "ScheduleEntry") -> bool:
        return (
            self.start == other.start
            and self.end == other.end
            and self.platform == other.platform
            and self.arriving == other.arriving
        )

    def cancel_timers(self) -> None:
        cancel_handle(self.start_job)
        cancel_handle(self.end_job)
        cancel_handle(self.arriving_job)
        self.start_job = None
        self.end_job = None
        self.arriving_job = None

    def to_dict(self) -> dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "reservation_number": self.reservation_number,
            "platform": self.platform,
            "summary": self.summary,
            "phone_number": self.phone_number,
            "start": _iso(self.start),
            "end": _iso(self.end),
            "arriving": _iso(self.arriving),
            "late_checkout_override": _iso(self.late_checkout_override),
            "cancelled": self.cancelled,
            "jobs": {
                "checkin": bool(self.start_job and self.start_job.pending),
                "checkout": bool(self.end_job and self.end_job.pending),
                "arriving_soon": bool(self.arriving_job and self.arriving_job.pending),
            },
        }


class ReservationTable:
    """The reservation table. Mutate only while holding ``lock``."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self._entries: dict[str, ScheduleEntry] = {}

    def get(self, reservation_number: str) -> Optional[ScheduleEntry]:
        return self._entries.get(reservation_number)

    def put(self, entry: ScheduleEntry) -> None:
        self._entries[entry.reservation_number] = entry

    def delete(self, reservation_number: str) -> Optional[ScheduleEntry]:
        return self._entries.pop(reservation_number, None)

    def list(self) -> list[ScheduleEntry]:
        return sorted(self._entries.values(), key=lambda e: e.start)

    def __contains__(self, reservation_number: str) -> bool:
        return reservation_number in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class ReconcileSummary:
    """Counts from one reconciliation pass."""

    created: int = 0
    rescheduled: int = 0
    unchanged: int = 0
    skipped: int = 0
    expired: int = 0
    cancelled: int = 0


class ReconciliationEngine:
    """Keeps timed check-in/check-out jobs in step with the reservation feed."""

    def __init__(
        self,
        config: AutomationConfig,
        timers: Timers,
        executor: ActionExecutor,
        late_checkouts: LateCheckoutStore,
        source: Optional[EventSource] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config = config
        self._timers = timers
        self._executor = executor
        self._late_checkouts = late_checkouts
        self._source = source
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(config.tz))
        self.table = ReservationTable()
        self._tasks: set[asyncio.Task] = set()
        self._polling = False
        self.last_reconciled: Optional[datetime] = None

        for kind in (JobKind.CHECKIN, JobKind.CHECKOUT, JobKind.ARRIVING_SOON):
            timers.register(kind, self.on_timer)

    # Window computation

    def compute_window(
        self, event: ReservationEvent
    ) -> tuple[datetime, datetime, Optional[datetime]]:
        """Check-in, check-out and arriving-soon instants for an event."""
        tz = self._config.tz
        start_day = calendar_day(event.start, tz)
        end_day = calendar_day(event.end, tz)

        start = at_time_of_day(start_day, self._config.arrival_time, tz)
        end = at_time_of_day(end_day, self._config.departure_time, tz)

        arriving = None
        if self._config.arriving_soon_time is not None:
            arriving_day = start_day - timedelta(days=self._config.arriving_soon_days_before)
            arriving = at_time_of_day(arriving_day, self._config.arriving_soon_time, tz)

        return start, end, arriving

    def _arrange_jobs(self, entry: ScheduleEntry, now: datetime) -> None:
        """Schedule whichever of the entry's jobs are still in the future."""
        key = entry.reservation_number
        if entry.start > now:
            entry.start_job = self._timers.schedule(TimerJob(JobKind.CHECKIN, key, entry.start))
        if entry.end > now:
            entry.end_job = self._timers.schedule(TimerJob(JobKind.CHECKOUT, key, entry.end))
        if entry.arriving is not None and entry.arriving > now:
            entry.arriving_job = self._timers.schedule(
                TimerJob(JobKind.ARRIVING_SOON, key, entry.arriving)
            )

    # Reconciliation

    async def run_pass(self) -> Optional[ReconcileSummary]:
        """Fetch the feeds and reconcile. Skipped if a pass is already running."""
        if self._source is None:
            logger.warning("No event source configured, nothing to reconcile")
            return None
        if self._polling:
            logger.info("Reconciliation already in progress, skipping")
            return None

        self._polling = True
        try:
            try:
                events = await self._source.fetch_events()
            except EventFetchError as e:
                logger.error(f"Skipping reconciliation, could not fetch events: {e}")
                if self._notifier:
                    await self._notifier.notify(f"Calendar fetch failed: {e}")
                return None
            return await self.reconcile(events)
        finally:
            self._polling = False

    async def reconcile(self, events: Iterable[ReservationEvent]) -> ReconcileSummary:
        """Bring the reservation table and its timers in line with ``events``."""
        summary = ReconcileSummary()
        unparseable: list[ReservationEvent] = []

        async with self.table.lock:
            now = self._clock()
            overrides = self._late_checkouts.all()
            current: set[str] = set()

            for event in events:
                details = extract_reservation(event, self._config.pattern_for(event.platform))
                if details is None:
                    logger.warning(
                        f"Could not find reservation number and phone in {event!r}, skipping"
                    )
                    summary.skipped += 1
                    unparseable.append(event)
                    continue

                reservation_number = details.reservation_number
                if reservation_number in current:
                    logger.warning(f"Duplicate event for {reservation_number}, ignoring")
                    continue

                start, feed_end, arriving = self.compute_window(event)
                end = feed_end

                late_checkout = None
                override = overrides.get(reservation_number)
                if override is not None:
                    override = localize(override, self._config.tz)
                    if override > feed_end and override > now:
                        late_checkout = override
                        end = override
                    else:
                        logger.info(
                            f"Discarding stale late checkout {override.isoformat()} "
                            f"for {reservation_number}"
                        )
                        self._late_checkouts.delete(reservation_number)

                if end <= now:
                    summary.expired += 1
                    continue

                fresh = ScheduleEntry(
                    reservation_number=reservation_number,
                    start=start,
                    end=end,
                    feed_end=feed_end,
                    phone_number=details.phone_number,
                    platform=event.platform,
                    summary=event.summary,
                    arriving=arriving,
                    late_checkout_override=late_checkout,
                )

                existing = self.table.get(reservation_number)
                if existing is None:
                    logger.info(
                        f"New reservation {reservation_number} ({event.platform}): "
                        f"{start.isoformat()} - {end.isoformat()}"
                    )
                    self._arrange_jobs(fresh, now)
                    self.table.put(fresh)
                    summary.created += 1
                elif not existing.same_window(fresh):
                    logger.info(
                        f"Rescheduling {reservation_number}: "
                        f"{existing.start.isoformat()} - {existing.end.isoformat()} "
                        f"({existing.platform}) -> {start.isoformat()} - {end.isoformat()} "
                        f"({event.platform})"
                    )
                    existing.cancel_timers()
                    self._arrange_jobs(fresh, now)
                    self.table.put(fresh)
                    summary.rescheduled += 1
                else:
                    # Jobs look the entry up when they fire, so in-place updates are enough
                    if existing.cancelled:
                        logger.info(f"Reservation {reservation_number} is back in the feed")
                    existing.phone_number = fresh.phone_number
                    existing.summary = fresh.summary
                    existing.feed_end = fresh.feed_end
                    existing.late_checkout_override = fresh.late_checkout_override
                    existing.cancelled = False
                    summary.unchanged += 1

                current.add(reservation_number)

            for entry in self.table.list():
                if entry.reservation_number not in current:
                    if self._handle_missing(entry, now):
                        summary.cancelled += 1

            self.last_reconciled = now

        if unparseable and self._notifier:
            await self._notifier.notify(
                f"{len(unparseable)} reservation(s) missing a reservation number or phone: "
                + ", ".join(e.summary for e in unparseable)
            )

        logger.info(
            f"Reconciled: {summary.created} new, {summary.rescheduled} rescheduled, "
            f"{summary.unchanged} unchanged, {summary.cancelled} cancelled, "
            f"{summary.skipped} unparseable, {summary.expired} past"
        )
        return summary

    def _handle_missing(self, entry: ScheduleEntry, now: datetime) -> bool:
        """Deal with an entry whose reservation left the feed. Caller holds the table lock.

        Returns:
            True if this pass newly treated it as a cancellation
        """
        reservation_number = entry.reservation_number
        cancel_handle(entry.start_job)
        cancel_handle(entry.arriving_job)
        entry.start_job = None
        entry.arriving_job = None

        if now >= entry.end:
            # Stay is over; the checkout job has already run
            cancel_handle(entry.end_job)
            self.table.delete(reservation_number)
            logger.debug(f"Dropped finished reservation {reservation_number}")
            return False

        if now < entry.start:
            logger.info(f"Reservation {reservation_number} cancelled before arrival, removing")
            cancel_handle(entry.end_job)
            self.table.delete(reservation_number)
            return True

        # Guest is in residence
        if self._config.run_checkout_immediately_if_reservation_is_cancelled_mid_stay:
            logger.info(
                f"Reservation {reservation_number} cancelled mid-stay, running check-out now"
            )
            cancel_handle(entry.end_job)
            self.table.delete(reservation_number)
            self._spawn(
                self._executor.check_out(entry.phone_number, reservation_number)
            )
            return True

        if entry.cancelled:
            return False
        entry.cancelled = True
        logger.info(
            f"Reservation {reservation_number} cancelled mid-stay, check-out stays "
            f"scheduled for {entry.end.isoformat()}"
        )
        return True

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for actions started by reconciliation to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Timer dispatch

    async def on_timer(self, job: TimerJob) -> None:
        """Run the action for a fired job against the entry's current state."""
        async with self.table.lock:
            entry = self.table.get(job.key)
            if entry is None:
                logger.warning(f"{job.kind.value} fired for unknown reservation {job.key}")
                return

            if job.kind == JobKind.CHECKIN:
                expected = entry.start
            elif job.kind == JobKind.CHECKOUT:
                expected = entry.end
            else:
                expected = entry.arriving

            if expected != job.fires_at:
                logger.warning(
                    f"Ignoring stale {job.kind.value} job for {job.key} "
                    f"({job.fires_at.isoformat()})"
                )
                return

            if job.kind == JobKind.CHECKIN:
                entry.start_job = None
            elif job.kind == JobKind.CHECKOUT:
                entry.end_job = None
                self.table.delete(job.key)
            else:
                entry.arriving_job = None

            phone_number = entry.phone_number
            reservation_number = entry.reservation_number

        if job.kind == JobKind.CHECKIN:
            await self._executor.check_in(phone_number, reservation_number)
        elif job.kind == JobKind.CHECKOUT:
            await self._executor.check_out(phone_number, reservation_number)
        else:
            await self._executor.arriving_soon(reservation_number)

    # Operator operations

    def list_schedules(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.table.list()]

    async def set_late_checkout(self, reservation_number: str, when: datetime) -> ScheduleEntry:
        """Extend a reservation's check-out.

        Raises:
            KeyError: If the reservation is not being tracked
            ValueError: If ``when`` is not in the future or not after check-in
        """
        when = localize(when, self._config.tz)

        async with self.table.lock:
            now = self._clock()
            entry = self.table.get(reservation_number)
            if entry is None:
                raise KeyError(f"Reservation {reservation_number} not found")
            if when <= now:
                raise ValueError("Late checkout must be in the future")
            if when <= entry.start:
                raise ValueError("Late checkout must be after check-in")

            self._late_checkouts.set(reservation_number, when)

            if when <= entry.feed_end:
                logger.info(
                    f"Late checkout {when.isoformat()} for {reservation_number} is not after "
                    f"the scheduled check-out {entry.feed_end.isoformat()}"
                )
                if entry.late_checkout_override is None:
                    return entry
                # Drop the earlier extension
                when = entry.feed_end
                override = None
            else:
                override = when

            cancel_handle(entry.end_job)
            entry.end = when
            entry.late_checkout_override = override
            entry.end_job = self._timers.schedule(
                TimerJob(JobKind.CHECKOUT, reservation_number, when)
            )
            logger.info(f"Check-out for {reservation_number} moved to {when.isoformat()}")
            return entry

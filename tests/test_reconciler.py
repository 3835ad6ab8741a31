"""Tests for the reservation reconciliation engine."""

from datetime import date, datetime, time

import pytest

from rental_automation.core.reconciler import ReconciliationEngine
from rental_automation.db.stores import LateCheckoutStore
from rental_automation.feeds.ical_source import EventFetchError, ReservationEvent
from rental_automation.scheduler.timers import JobKind

from conftest import UTC, Clock, make_config


def event(start, end, reservation="RES123ABCDE", phone="4821", platform="direct", **kwargs):
    return ReservationEvent(
        start=start,
        end=end,
        summary=kwargs.pop("summary", "Reserved"),
        description=kwargs.pop(
            "description", f"Reservation {reservation}\nPhone ends {phone}"
        ),
        platform=platform,
        **kwargs,
    )


JUNE_STAY = event(date(2024, 6, 1), date(2024, 6, 3))


class StaticSource:
    def __init__(self, events=None, error=None):
        self.events = events or []
        self.error = error

    async def fetch_events(self):
        if self.error:
            raise self.error
        return list(self.events)


@pytest.fixture
def clock():
    return Clock(datetime(2024, 5, 20, 12, 0, tzinfo=UTC))


@pytest.fixture
def late_checkouts(tmp_path):
    return LateCheckoutStore(tmp_path / "late_checkouts.json", write_cooldown_seconds=0)


@pytest.fixture
def make_engine(fake_timers, recording_executor, late_checkouts, clock, notifier):
    def _make(config=None, source=None):
        return ReconciliationEngine(
            config or make_config(),
            fake_timers,
            recording_executor,
            late_checkouts,
            source=source,
            notifier=notifier,
            clock=clock,
        )

    return _make


class TestWindows:
    @pytest.mark.asyncio
    async def test_builds_window_from_configured_times(self, make_engine, fake_timers):
        engine = make_engine()

        summary = await engine.reconcile([JUNE_STAY])

        assert summary.created == 1
        entry = engine.table.get("RES123ABCDE")
        assert entry.start == datetime(2024, 6, 1, 15, 0, tzinfo=UTC)
        assert entry.end == datetime(2024, 6, 3, 11, 0, tzinfo=UTC)
        assert entry.phone_number == "4821"
        assert entry.arriving is None

        kinds = sorted(h.job.kind.value for h in fake_timers.pending())
        assert kinds == ["checkin", "checkout"]

    @pytest.mark.asyncio
    async def test_arriving_soon_days_before(self, make_engine, fake_timers):
        engine = make_engine(make_config(arriving_soon_time=time(10, 0), arriving_soon_days_before=1))

        await engine.reconcile([JUNE_STAY])

        entry = engine.table.get("RES123ABCDE")
        assert entry.arriving == datetime(2024, 5, 31, 10, 0, tzinfo=UTC)
        assert len(fake_timers.pending(JobKind.ARRIVING_SOON)) == 1

    @pytest.mark.asyncio
    async def test_timed_events_use_local_calendar_day(self, make_engine):
        engine = make_engine(make_config(timezone="America/New_York"))
        # 02:00 UTC on June 1st is still May 31st in New York
        stay = event(
            datetime(2024, 6, 1, 2, 0, tzinfo=UTC),
            datetime(2024, 6, 3, 16, 0, tzinfo=UTC),
        )

        await engine.reconcile([stay])

        entry = engine.table.get("RES123ABCDE")
        assert entry.start.date() == date(2024, 5, 31)
        assert entry.start.hour == 15
        assert entry.end.date() == date(2024, 6, 3)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_second_identical_pass_is_a_no_op(self, make_engine, fake_timers):
        engine = make_engine()

        await engine.reconcile([JUNE_STAY])
        scheduled = len(fake_timers.handles)
        summary = await engine.reconcile([JUNE_STAY])

        assert summary.unchanged == 1
        assert summary.created == summary.rescheduled == summary.cancelled == 0
        assert len(fake_timers.handles) == scheduled
        assert fake_timers.cancelled == []

    @pytest.mark.asyncio
    async def test_changed_dates_reschedule(self, make_engine, fake_timers):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])
        original = list(fake_timers.pending())

        summary = await engine.reconcile([event(date(2024, 6, 1), date(2024, 6, 4))])

        assert summary.rescheduled == 1
        assert all(h.state == "cancelled" for h in original)
        entry = engine.table.get("RES123ABCDE")
        assert entry.end == datetime(2024, 6, 4, 11, 0, tzinfo=UTC)
        assert entry.end_job.job.fires_at == entry.end
        assert len(fake_timers.pending()) == 2

    @pytest.mark.asyncio
    async def test_platform_change_reschedules(self, make_engine, fake_timers):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])

        summary = await engine.reconcile(
            [event(date(2024, 6, 1), date(2024, 6, 3), platform="other")]
        )

        assert summary.rescheduled == 1
        assert engine.table.get("RES123ABCDE").platform == "other"
        assert len(fake_timers.pending()) == 2

    @pytest.mark.asyncio
    async def test_phone_change_updates_in_place(self, make_engine, fake_timers):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])

        summary = await engine.reconcile(
            [event(date(2024, 6, 1), date(2024, 6, 3), phone="9999")]
        )

        assert summary.unchanged == 1
        assert engine.table.get("RES123ABCDE").phone_number == "9999"
        assert fake_timers.cancelled == []

    @pytest.mark.asyncio
    async def test_past_reservations_are_not_scheduled(self, make_engine, fake_timers):
        engine = make_engine()

        summary = await engine.reconcile([event(date(2024, 5, 1), date(2024, 5, 5))])

        assert summary.expired == 1
        assert len(engine.table) == 0
        assert fake_timers.handles == []

    @pytest.mark.asyncio
    async def test_in_progress_stay_only_schedules_checkout(self, make_engine, fake_timers, clock):
        clock.now = datetime(2024, 6, 2, 10, 0, tzinfo=UTC)
        engine = make_engine()

        await engine.reconcile([JUNE_STAY])

        assert [h.job.kind for h in fake_timers.pending()] == [JobKind.CHECKOUT]

    @pytest.mark.asyncio
    async def test_unparseable_event_is_skipped_and_notified(self, make_engine, notifier):
        engine = make_engine()
        bad = event(date(2024, 6, 10), date(2024, 6, 12), description="no details here",
                    summary="Reserved")

        summary = await engine.reconcile([bad, JUNE_STAY])

        assert summary.skipped == 1
        assert summary.created == 1
        assert len(notifier.messages) == 1

    @pytest.mark.asyncio
    async def test_duplicate_events_keep_the_first(self, make_engine, fake_timers):
        engine = make_engine()

        await engine.reconcile([JUNE_STAY, event(date(2024, 6, 1), date(2024, 6, 9))])

        assert len(engine.table) == 1
        assert engine.table.get("RES123ABCDE").end.date() == date(2024, 6, 3)
        assert len(fake_timers.handles) == 2


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_arrival(self, make_engine, fake_timers, recording_executor):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])

        summary = await engine.reconcile([])

        assert summary.cancelled == 1
        assert "RES123ABCDE" not in engine.table
        assert fake_timers.pending() == []
        assert recording_executor.calls == []

    @pytest.mark.asyncio
    async def test_mid_stay_runs_checkout_when_configured(
        self, make_engine, fake_timers, recording_executor, clock
    ):
        config = make_config(run_checkout_immediately_if_reservation_is_cancelled_mid_stay=True)
        engine = make_engine(config)
        await engine.reconcile([JUNE_STAY])

        clock.now = datetime(2024, 6, 2, 10, 0, tzinfo=UTC)
        summary = await engine.reconcile([])
        await engine.drain()

        assert summary.cancelled == 1
        assert "RES123ABCDE" not in engine.table
        assert fake_timers.pending() == []
        assert recording_executor.calls == [("check_out", "4821", "RES123ABCDE")]

    @pytest.mark.asyncio
    async def test_mid_stay_keeps_checkout_by_default(
        self, make_engine, fake_timers, recording_executor, clock
    ):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])

        clock.now = datetime(2024, 6, 2, 10, 0, tzinfo=UTC)
        first = await engine.reconcile([])
        second = await engine.reconcile([])

        assert first.cancelled == 1
        assert second.cancelled == 0
        entry = engine.table.get("RES123ABCDE")
        assert entry.cancelled
        assert entry.end_job.pending
        assert recording_executor.calls == []

    @pytest.mark.asyncio
    async def test_returning_reservation_clears_cancelled_flag(self, make_engine, clock):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])
        clock.now = datetime(2024, 6, 2, 10, 0, tzinfo=UTC)
        await engine.reconcile([])

        await engine.reconcile([JUNE_STAY])

        assert not engine.table.get("RES123ABCDE").cancelled


class TestTimers:
    @pytest.mark.asyncio
    async def test_checkin_and_checkout_fire_actions(
        self, make_engine, fake_timers, recording_executor
    ):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])

        await fake_timers.fire(fake_timers.pending(JobKind.CHECKIN)[0])
        await fake_timers.fire(fake_timers.pending(JobKind.CHECKOUT)[0])

        assert recording_executor.calls == [
            ("check_in", "4821", "RES123ABCDE"),
            ("check_out", "4821", "RES123ABCDE"),
        ]
        assert "RES123ABCDE" not in engine.table

    @pytest.mark.asyncio
    async def test_checkin_uses_current_phone(self, make_engine, fake_timers, recording_executor):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])
        await engine.reconcile([event(date(2024, 6, 1), date(2024, 6, 3), phone="7777")])

        await fake_timers.fire(fake_timers.pending(JobKind.CHECKIN)[0])

        assert recording_executor.calls == [("check_in", "7777", "RES123ABCDE")]

    @pytest.mark.asyncio
    async def test_stale_job_is_ignored(self, make_engine, fake_timers, recording_executor):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])
        stale = engine.table.get("RES123ABCDE").end_job.job
        await engine.reconcile([event(date(2024, 6, 1), date(2024, 6, 4))])

        await engine.on_timer(stale)

        assert recording_executor.calls == []
        assert engine.table.get("RES123ABCDE").end_job.pending

    @pytest.mark.asyncio
    async def test_arriving_soon_fires(self, make_engine, fake_timers, recording_executor):
        engine = make_engine(make_config(arriving_soon_time=time(9, 0)))
        await engine.reconcile([JUNE_STAY])

        await fake_timers.fire(fake_timers.pending(JobKind.ARRIVING_SOON)[0])

        assert recording_executor.calls == [("arriving_soon", "RES123ABCDE")]


class TestLateCheckout:
    @pytest.mark.asyncio
    async def test_extends_checkout_and_survives_reconcile(
        self, make_engine, fake_timers, late_checkouts, clock
    ):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])
        clock.now = datetime(2024, 6, 2, 12, 0, tzinfo=UTC)
        old_checkout = engine.table.get("RES123ABCDE").end_job
        late = datetime(2024, 6, 3, 18, 0, tzinfo=UTC)

        entry = await engine.set_late_checkout("RES123ABCDE", late)

        assert entry.end == late
        assert old_checkout.state == "cancelled"
        assert entry.end_job.job.fires_at == late
        assert late_checkouts.get("RES123ABCDE") == late

        cancelled_before = len(fake_timers.cancelled)
        summary = await engine.reconcile([JUNE_STAY])
        assert summary.unchanged == 1
        assert len(fake_timers.cancelled) == cancelled_before
        assert engine.table.get("RES123ABCDE").end == late

    @pytest.mark.asyncio
    async def test_stale_override_is_pruned(self, make_engine, late_checkouts, clock):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])
        clock.now = datetime(2024, 6, 2, 12, 0, tzinfo=UTC)
        await engine.set_late_checkout("RES123ABCDE", datetime(2024, 6, 3, 18, 0, tzinfo=UTC))

        clock.now = datetime(2024, 6, 3, 18, 30, tzinfo=UTC)
        summary = await engine.reconcile([JUNE_STAY])

        assert summary.expired == 1
        assert late_checkouts.all() == {}

    @pytest.mark.asyncio
    async def test_override_applies_to_a_fresh_table(self, make_engine, late_checkouts):
        late = datetime(2024, 6, 3, 18, 0, tzinfo=UTC)
        late_checkouts.set("RES123ABCDE", late)
        engine = make_engine()

        await engine.reconcile([JUNE_STAY])

        entry = engine.table.get("RES123ABCDE")
        assert entry.end == late
        assert entry.feed_end == datetime(2024, 6, 3, 11, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_not_later_than_feed_checkout_is_a_no_op(self, make_engine, late_checkouts):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])
        early = datetime(2024, 6, 3, 10, 0, tzinfo=UTC)

        entry = await engine.set_late_checkout("RES123ABCDE", early)

        assert entry.end == datetime(2024, 6, 3, 11, 0, tzinfo=UTC)
        assert late_checkouts.get("RES123ABCDE") == early

    @pytest.mark.asyncio
    async def test_lowering_below_feed_checkout_restores_it(
        self, make_engine, fake_timers, late_checkouts, clock
    ):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])
        clock.now = datetime(2024, 6, 2, 12, 0, tzinfo=UTC)
        feed_end = datetime(2024, 6, 3, 11, 0, tzinfo=UTC)
        extended = await engine.set_late_checkout(
            "RES123ABCDE", datetime(2024, 6, 3, 18, 0, tzinfo=UTC)
        )
        extended_job = extended.end_job

        entry = await engine.set_late_checkout(
            "RES123ABCDE", datetime(2024, 6, 3, 10, 30, tzinfo=UTC)
        )

        assert entry.end == feed_end
        assert entry.late_checkout_override is None
        assert extended_job.state == "cancelled"
        assert entry.end_job.pending
        assert entry.end_job.job.fires_at == feed_end
        assert [h.job.fires_at for h in fake_timers.pending(JobKind.CHECKOUT)] == [feed_end]

        cancelled_before = len(fake_timers.cancelled)
        summary = await engine.reconcile([JUNE_STAY])
        assert summary.unchanged == 1
        assert len(fake_timers.cancelled) == cancelled_before
        assert late_checkouts.all() == {}

    @pytest.mark.asyncio
    async def test_rejects_invalid_times(self, make_engine):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])

        with pytest.raises(KeyError):
            await engine.set_late_checkout("NOPE", datetime(2024, 6, 3, 18, 0, tzinfo=UTC))
        with pytest.raises(ValueError, match="future"):
            await engine.set_late_checkout("RES123ABCDE", datetime(2024, 5, 1, tzinfo=UTC))
        with pytest.raises(ValueError, match="after check-in"):
            await engine.set_late_checkout("RES123ABCDE", datetime(2024, 6, 1, 9, 0, tzinfo=UTC))


class TestRunPass:
    @pytest.mark.asyncio
    async def test_fetch_failure_leaves_table_alone(self, make_engine, notifier):
        engine = make_engine(source=StaticSource([JUNE_STAY]))
        assert (await engine.run_pass()).created == 1

        engine._source = StaticSource(error=EventFetchError("airbnb feed failed"))
        assert await engine.run_pass() is None

        assert "RES123ABCDE" in engine.table
        assert any("Calendar fetch failed" in m for m in notifier.messages)

    @pytest.mark.asyncio
    async def test_without_source_returns_none(self, make_engine):
        assert await make_engine().run_pass() is None

    @pytest.mark.asyncio
    async def test_list_schedules(self, make_engine):
        engine = make_engine()
        await engine.reconcile([JUNE_STAY])

        [row] = engine.list_schedules()

        assert row["reservation_number"] == "RES123ABCDE"
        assert row["start"] == "2024-06-01T15:00:00+00:00"
        assert row["jobs"] == {"checkin": True, "checkout": True, "arriving_soon": False}

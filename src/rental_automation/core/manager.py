"""Main automation manager that orchestrates all components."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rental_automation.config import Settings, build_automation_config
from rental_automation.core.actions import ActionExecutor
from rental_automation.core.reconciler import ReconcileSummary, ReconciliationEngine
from rental_automation.core.visits import ManualVisitScheduler
from rental_automation.db.models import ManualVisit
from rental_automation.db.stores import LateCheckoutStore, VisitStore
from rental_automation.devices.client import DeviceApiClient
from rental_automation.devices.locks import LockProgrammer
from rental_automation.devices.modes import ModeController
from rental_automation.feeds.ical_source import ICalEventSource
from rental_automation.notifications import Notifier
from rental_automation.scheduler.timers import TimerScheduler

logger = logging.getLogger(__name__)


class AutomationManager:
    """Main manager coordinating reservations, visits and devices."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.config = build_automation_config(settings)

        self._device_client = DeviceApiClient(
            settings.device_api_url,
            settings.device_api_token,
            timeout=settings.device_api_timeout,
        )
        self._notifier = Notifier(settings.notify_url)
        self._source = ICalEventSource(
            settings.calendar_feeds,
            attempts=settings.feed_fetch_attempts,
            retry_interval=settings.feed_retry_interval,
            allow_empty=settings.allow_empty_feed,
        )

        data_dir = Path(settings.data_dir)
        self._visit_store = VisitStore(
            data_dir / "visits.json",
            write_cooldown_seconds=settings.store_write_cooldown_seconds,
        )
        self._late_checkouts = LateCheckoutStore(
            data_dir / "late_checkouts.json",
            write_cooldown_seconds=settings.store_write_cooldown_seconds,
        )

        self._timers = TimerScheduler(timezone=self.config.tz)
        locks = LockProgrammer(
            self._device_client,
            max_attempts=settings.code_set_max_attempts,
            backoff_seconds=settings.code_retry_backoff_seconds,
            settle_seconds=settings.code_settle_seconds,
        )
        modes = ModeController(
            self._device_client, cooldown_seconds=settings.mode_cooldown_seconds
        )
        self._executor = ActionExecutor(self.config, locks, modes, self._notifier)

        self.engine = ReconciliationEngine(
            self.config,
            self._timers,
            self._executor,
            self._late_checkouts,
            source=self._source,
            notifier=self._notifier,
        )
        self.visits = ManualVisitScheduler(
            self.config, self._timers, self._executor, self._visit_store
        )
        self._running = False

    async def start(self) -> None:
        """Start timers, schedule stored visits and kick off the first reconciliation."""
        if self._running:
            return
        self._running = True

        logger.info(
            f"Starting rental automation ({len(self.settings.calendar_feeds)} feed(s), "
            f"{len(self.config.lock_devices)} lock(s), timezone {self.config.timezone})"
        )

        self._timers.start()

        await self.visits.initialize()
        self._visit_store.file.start_watching(
            self.visits.initialize,
            interval=self.settings.store_watch_interval_seconds,
        )

        # First pass runs on the scheduler, not inline with startup
        self._timers.add_tick(self._tick, self.settings.calendar_poll_interval, run_now=True)
        logger.info("Rental automation started")

    async def stop(self) -> None:
        """Stop the manager."""
        self._running = False
        self._timers.stop()
        await self._visit_store.file.stop_watching()
        await self.engine.drain()
        await self._device_client.close()
        await self._source.close()
        await self._notifier.close()
        logger.info("Rental automation stopped")

    async def _tick(self) -> None:
        try:
            await self.engine.run_pass()
        except Exception as e:
            logger.error(f"Error during reconciliation: {e}", exc_info=True)

    # Operations exposed to the API

    def list_reservations(self) -> list[dict]:
        return self.engine.list_schedules()

    async def reconcile_now(self) -> Optional[ReconcileSummary]:
        return await self.engine.run_pass()

    def list_visits(self) -> list[ManualVisit]:
        return self.visits.list()

    async def add_visit(self, visit: ManualVisit) -> ManualVisit:
        return await self.visits.add(visit)

    async def delete_visit(self, visit_id: str) -> None:
        await self.visits.remove(visit_id)

    async def set_late_checkout(self, reservation_number: str, when: datetime) -> dict:
        entry = await self.engine.set_late_checkout(reservation_number, when)
        return entry.to_dict()

    async def health_check(self) -> dict:
        """Perform a health check on all components."""
        hub_healthy = await self._device_client.health_check()
        last = self.engine.last_reconciled

        return {
            "running": self._running,
            "hub": hub_healthy,
            "reservations": len(self.engine.table),
            "pending_jobs": len(self._timers.pending_jobs()),
            "last_reconciled": last.isoformat() if last else None,
        }

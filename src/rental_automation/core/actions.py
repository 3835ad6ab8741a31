"""Check-in, check-out and arriving-soon actions."""

import logging
from typing import Optional

from rental_automation.config import AutomationConfig, ModeTag
from rental_automation.devices.locks import LockProgrammer
from rental_automation.devices.modes import ModeController
from rental_automation.notifications import Notifier

logger = logging.getLogger(__name__)

REASON_PREFIXES = {
    ModeTag.CHECKIN: "check-in",
    ModeTag.CHECKOUT: "check-out",
    ModeTag.ARRIVING_SOON: "arriving-soon",
}


class ActionExecutor:
    """Maps a lifecycle transition onto lock and mode calls.

    Every sub-action is best-effort: a failure is logged (and notified) and
    the remaining sub-actions still run.
    """

    def __init__(
        self,
        config: AutomationConfig,
        locks: LockProgrammer,
        modes: ModeController,
        notifier: Optional[Notifier] = None,
    ):
        self._config = config
        self._locks = locks
        self._modes = modes
        self._notifier = notifier

    async def _notify(self, message: str) -> None:
        if self._notifier:
            await self._notifier.notify(message, title="Rental Automation Alert")

    async def check_in(self, phone: Optional[str], reservation_tag: str) -> None:
        """Program the guest code, then switch to the check-in mode."""
        logger.info(f"Running check-in for {reservation_tag}")
        await self.program_code(phone, reservation_tag)
        await self.apply_mode(ModeTag.CHECKIN, reservation_tag)

    async def check_out(self, phone: Optional[str], reservation_tag: str) -> None:
        """Remove the guest code, then switch to the check-out mode."""
        logger.info(f"Running check-out for {reservation_tag}")
        await self.remove_code(phone, reservation_tag)
        await self.apply_mode(ModeTag.CHECKOUT, reservation_tag)

    async def arriving_soon(self, reservation_tag: str) -> None:
        """Switch to the arriving-soon mode."""
        logger.info(f"Running arriving-soon for {reservation_tag}")
        if not self._config.mode_for(ModeTag.ARRIVING_SOON):
            logger.error(
                f"Arriving-soon fired for {reservation_tag} but no arriving-soon mode is configured"
            )
            await self._notify(f"No arriving-soon mode configured for {reservation_tag}")
            return
        await self.apply_mode(ModeTag.ARRIVING_SOON, reservation_tag)

    async def program_code(self, phone: Optional[str], reservation_tag: str) -> None:
        if not phone:
            logger.warning(f"No code for {reservation_tag}, skipping lock programming")
            return
        if not self._config.lock_devices:
            logger.debug("No locks configured, skipping lock programming")
            return
        try:
            results = await self._locks.set_code(
                self._config.lock_devices,
                self._config.lock_code_slot,
                phone,
                reservation_tag,
            )
        except Exception as e:
            logger.error(f"Lock programming for {reservation_tag} failed: {e}", exc_info=True)
            await self._notify(f"Could not set lock code for {reservation_tag}: {e}")
            return

        failed = [r for r in results.values() if not r.success]
        if failed:
            desc = "; ".join(f"{r.device_id}: {r.error}" for r in failed)
            await self._notify(f"Lock code for {reservation_tag} NOT set on {desc}")

    async def remove_code(self, phone: Optional[str], reservation_tag: str) -> None:
        if not self._config.lock_devices:
            logger.debug("No locks configured, skipping code removal")
            return
        try:
            results = await self._locks.remove_code(
                self._config.lock_devices, self._config.lock_code_slot
            )
        except Exception as e:
            logger.error(f"Code removal for {reservation_tag} failed: {e}", exc_info=True)
            await self._notify(f"Could not remove lock code {phone or ''} for {reservation_tag}: {e}")
            return

        failed = [r for r in results.values() if not r.success]
        if failed:
            desc = "; ".join(f"{r.device_id}: {r.error}" for r in failed)
            await self._notify(f"Lock code {phone or ''} for {reservation_tag} NOT removed on {desc}")

    async def apply_mode(self, tag: ModeTag, reservation_tag: str) -> None:
        """Set the mode configured for a transition, if there is one."""
        mode_name = self._config.mode_for(tag)
        if not mode_name:
            logger.debug(f"No {tag.value} mode configured")
            return
        try:
            await self._modes.set_mode(mode_name, f"{REASON_PREFIXES[tag]}:{reservation_tag}")
        except Exception as e:
            logger.error(f"Setting mode {mode_name} for {reservation_tag} failed: {e}", exc_info=True)
            await self._notify(f"Could not set mode {mode_name} for {reservation_tag}: {e}")

"""House mode changes with duplicate suppression."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from rental_automation.devices.client import DeviceApiClient

logger = logging.getLogger(__name__)


class ModeController:
    """Sets the hub's house mode by name.

    Repeat requests for the same (mode, reason) pair inside the cooldown
    window are dropped, which absorbs duplicate triggers from overlapping
    schedules.
    """

    def __init__(
        self,
        client: DeviceApiClient,
        cooldown_seconds: float = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._client = client
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # (mode name lowercased, reason) -> when it was last applied
        self._recent: dict[tuple[str, str], datetime] = {}

    def _prune(self, now: datetime) -> None:
        for key, applied_at in list(self._recent.items()):
            if now - applied_at >= self._cooldown:
                del self._recent[key]

    async def set_mode(self, mode_name: str, reason_tag: str) -> bool:
        """Activate a house mode.

        Args:
            mode_name: Mode name, matched case-insensitively
            reason_tag: Why the mode is being set (e.g. "check-in:HMABC123")

        Returns:
            True if an activation call was issued
        """
        now = self._clock()
        self._prune(now)

        key = (mode_name.lower(), reason_tag)
        if key in self._recent:
            logger.info(
                f"Mode {mode_name!r} for {reason_tag} already applied at "
                f"{self._recent[key].isoformat()}, skipping"
            )
            return False
        # Claim the slot before awaiting so an overlapping trigger sees it
        self._recent[key] = now

        try:
            modes = await self._client.get_modes()
            mode = next((m for m in modes if m.name.lower() == mode_name.lower()), None)
            if mode is None:
                logger.error(
                    f"Mode {mode_name!r} not found; known modes: "
                    f"{', '.join(m.name for m in modes) or 'none'}"
                )
                del self._recent[key]
                return False

            if mode.active:
                logger.info(f"Mode {mode.name} is already active ({reason_tag})")
                return False

            await self._client.activate_mode(mode.id)
            logger.info(f"Mode set to {mode.name} ({reason_tag})")
            return True
        except Exception:
            self._recent.pop(key, None)
            raise

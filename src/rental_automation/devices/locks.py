"""Lock code programming with retry-and-verify."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import httpx

from rental_automation.devices.client import (
    DeviceApiClient,
    LockCodeParseError,
    code_at_slot,
)

logger = logging.getLogger(__name__)


class CodeMismatchError(Exception):
    """The code read back from a lock differs from the one written."""

    def __init__(self, device_id: str, slot: str, expected: str, actual: Optional[str]):
        super().__init__(
            f"Lock {device_id} slot {slot} reads {actual!r}, expected {expected!r}"
        )
        self.device_id = device_id
        self.slot = slot
        self.expected = expected
        self.actual = actual


@dataclass
class LockCodeResult:
    """Outcome of a code operation on one lock."""

    device_id: str
    success: bool
    attempts: int = 0
    error: Optional[str] = None


class LockProgrammer:
    """Programs and removes the guest code slot on a set of locks.

    Locks are processed one at a time so only one retry sequence talks to the
    hub at any moment; a failure on one lock never stops the others.
    """

    def __init__(
        self,
        client: DeviceApiClient,
        max_attempts: int = 3,
        backoff_seconds: float = 30.0,
        settle_seconds: float = 5.0,
    ):
        self._client = client
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._settle = settle_seconds
        self._device_ids: dict[str, str] = {}

    async def resolve_locks(self, selectors: Iterable[str]) -> list[str]:
        """Map lock selectors (device IDs or labels) onto device IDs.

        Selectors that match no known device are passed through unchanged so a
        hub listing failure does not block programming by ID.
        """
        selectors = list(selectors)
        unknown = [
            s for s in selectors
            if s not in self._device_ids and s.lower() not in self._device_ids
        ]
        if unknown:
            try:
                devices = await self._client.get_devices()
            except httpx.HTTPError as e:
                logger.warning(f"Could not list devices to resolve locks: {e}")
                devices = []
            for device in devices:
                self._device_ids[device.id] = device.id
                for alias in (device.label, device.name):
                    if alias:
                        self._device_ids.setdefault(alias.lower(), device.id)

        resolved = []
        for selector in selectors:
            device_id = self._device_ids.get(selector) or self._device_ids.get(selector.lower())
            if device_id is None:
                logger.debug(f"Lock selector {selector!r} not found on hub, using as ID")
                device_id = selector
            resolved.append(device_id)
        return resolved

    async def set_code(
        self, lock_selector: Iterable[str], slot: str, phone: str, reservation_tag: str
    ) -> dict[str, LockCodeResult]:
        """Program a code on every targeted lock, verifying each by read-back.

        Args:
            lock_selector: Lock device IDs or labels
            slot: Code slot to program
            phone: The code (phone fragment) to set
            reservation_tag: Name stored with the code on the lock

        Returns:
            Result per device ID
        """
        results: dict[str, LockCodeResult] = {}
        for device_id in await self.resolve_locks(lock_selector):
            results[device_id] = await self._set_code_with_verify(
                device_id, slot, phone, reservation_tag
            )
        return results

    async def _set_code_with_verify(
        self, device_id: str, slot: str, phone: str, reservation_tag: str
    ) -> LockCodeResult:
        last_error: Optional[str] = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                logger.info(
                    f"Setting code on lock {device_id} slot {slot} for {reservation_tag} "
                    f"(attempt {attempt}/{self._max_attempts})"
                )
                await self._client.set_code(device_id, slot, phone, reservation_tag)
                await asyncio.sleep(self._settle)
                await self._client.refresh(device_id)
                await asyncio.sleep(self._settle)

                lock_codes = await self._client.get_lock_codes(device_id)
                actual = code_at_slot(lock_codes, slot)
                if actual != phone:
                    raise CodeMismatchError(device_id, slot, phone, actual)

                logger.info(f"Code verified on lock {device_id} slot {slot}")
                return LockCodeResult(device_id=device_id, success=True, attempts=attempt)

            except LockCodeParseError as e:
                logger.error(f"Unreadable code table on lock {device_id}, giving up: {e}")
                return LockCodeResult(
                    device_id=device_id, success=False, attempts=attempt, error=str(e)
                )
            except (CodeMismatchError, httpx.HTTPError) as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    f"Code set failed on lock {device_id} "
                    f"(attempt {attempt}/{self._max_attempts}): {last_error}"
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._backoff)
            except Exception as e:
                logger.error(
                    f"Unexpected error setting code on lock {device_id}, giving up: {e}",
                    exc_info=True,
                )
                return LockCodeResult(
                    device_id=device_id, success=False, attempts=attempt, error=str(e)
                )

        logger.error(
            f"Code set on lock {device_id} slot {slot} failed after "
            f"{self._max_attempts} attempts: {last_error}"
        )
        return LockCodeResult(
            device_id=device_id,
            success=False,
            attempts=self._max_attempts,
            error=last_error,
        )

    async def remove_code(
        self, lock_selector: Iterable[str], slot: str
    ) -> dict[str, LockCodeResult]:
        """Delete the code in a slot on every targeted lock. No verification, no retry."""
        results: dict[str, LockCodeResult] = {}
        for device_id in await self.resolve_locks(lock_selector):
            try:
                await self._client.delete_code(device_id, slot)
                logger.info(f"Removed code from lock {device_id} slot {slot}")
                results[device_id] = LockCodeResult(device_id=device_id, success=True, attempts=1)
            except Exception as e:
                logger.error(f"Failed to remove code from lock {device_id} slot {slot}: {e}")
                results[device_id] = LockCodeResult(
                    device_id=device_id, success=False, attempts=1, error=str(e)
                )
        return results

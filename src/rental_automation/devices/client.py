"""Device automation API client (hub Maker-style HTTP API)."""

import json
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import httpx


class LockCodeParseError(ValueError):
    """The lock's code table could not be read back. Not worth retrying."""


@dataclass
class Device:
    """A device known to the hub."""

    id: str
    label: Optional[str] = None
    name: Optional[str] = None


@dataclass
class HouseMode:
    """A house mode known to the hub."""

    id: str
    name: str
    active: bool = False


def parse_lock_codes(attributes: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Extract the ``lockCodes`` table from a device attribute list.

    The hub reports ``lockCodes`` as a JSON string keyed by slot, e.g.
    ``{"3": {"code": "4821", "name": "HMABC123"}}``.

    Raises:
        LockCodeParseError: If the attribute is missing or its value is malformed
    """
    if not isinstance(attributes, list):
        raise LockCodeParseError("Device attributes are not a list")

    for attribute in attributes:
        if not isinstance(attribute, dict) or attribute.get("name") != "lockCodes":
            continue
        value = attribute.get("currentValue", attribute.get("value"))
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise LockCodeParseError(f"lockCodes is not valid JSON: {e}") from e
        if not isinstance(value, dict):
            raise LockCodeParseError(f"lockCodes has unexpected type {type(value).__name__}")
        return value

    raise LockCodeParseError("Device reported no lockCodes attribute")


def code_at_slot(lock_codes: dict[str, dict[str, Any]], slot: str) -> Optional[str]:
    """Get the code programmed at a slot, or None if the slot is empty.

    Raises:
        LockCodeParseError: If the slot entry is malformed
    """
    entry = lock_codes.get(str(slot))
    if entry is None:
        return None
    if not isinstance(entry, dict):
        raise LockCodeParseError(f"Slot {slot} entry is not an object")
    code = entry.get("code")
    if code is None:
        return None
    return str(code)


class DeviceApiClient:
    """Client for the hub's key-authenticated device automation API."""

    def __init__(self, url: str, token: str, timeout: float = 30.0):
        """Initialize the client.

        Args:
            url: API base URL (e.g., "http://192.168.1.20/apps/api/12")
            token: Access token sent with every request
            timeout: Request timeout in seconds
        """
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str) -> Any:
        """Issue an authenticated GET and return the decoded JSON body (or None)."""
        client = await self._get_client()
        response = await client.get(
            f"{self.url}/{path}",
            params={"access_token": self.token},
        )
        response.raise_for_status()
        return response.json() if response.content else None

    # Devices

    async def get_devices(self) -> list[Device]:
        """List all devices exposed to the API."""
        data = await self._get("devices") or []
        return [
            Device(
                id=str(item.get("id")),
                label=item.get("label"),
                name=item.get("name"),
            )
            for item in data
        ]

    async def set_code(self, device_id: str, slot: str, code: str, tag: str) -> None:
        """Write a code into a lock slot.

        Args:
            device_id: Lock device ID
            slot: Code slot on the lock
            code: The code to set
            tag: Human-readable code name stored alongside it
        """
        # Commas delimit the command arguments
        safe_tag = quote(tag.replace(",", " "), safe="")
        await self._get(f"devices/{device_id}/setCode/{slot},{code},{safe_tag}")

    async def delete_code(self, device_id: str, slot: str) -> None:
        """Remove the code in a lock slot."""
        await self._get(f"devices/{device_id}/deleteCode/{slot}")

    async def refresh(self, device_id: str) -> None:
        """Ask the device to report its current state."""
        await self._get(f"devices/{device_id}/refresh")

    async def get_lock_codes(self, device_id: str) -> dict[str, dict[str, Any]]:
        """Read back a lock's code table, keyed by slot.

        Raises:
            LockCodeParseError: If the payload is malformed
        """
        try:
            data = await self._get(f"devices/{device_id}/getCodes")
        except json.JSONDecodeError as e:
            raise LockCodeParseError(f"Lock {device_id} returned a non-JSON reply: {e}") from e
        attributes = data.get("attributes") if isinstance(data, dict) else data
        return parse_lock_codes(attributes)

    # Modes

    async def get_modes(self) -> list[HouseMode]:
        """List the hub's house modes."""
        data = await self._get("modes") or []
        return [
            HouseMode(
                id=str(item.get("id")),
                name=str(item.get("name", "")),
                active=bool(item.get("active", False)),
            )
            for item in data
        ]

    async def activate_mode(self, mode_id: str) -> None:
        """Make a house mode the active one."""
        await self._get(f"modes/{mode_id}")

    async def health_check(self) -> bool:
        """Check if the hub API is reachable.

        Returns:
            True if the hub answered the mode listing
        """
        try:
            await self.get_modes()
            return True
        except Exception:
            return False

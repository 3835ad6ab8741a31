"""Shared fixtures: fake hub, fake timers, recording executor."""

from __future__ import annotations

import copy
import itertools
from datetime import datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
import pytest

from rental_automation.config import AutomationConfig, ModeTag
from rental_automation.devices.client import Device, HouseMode, LockCodeParseError
from rental_automation.scheduler.timers import JobKind, TimerHandle, TimerJob

UTC = timezone.utc


class Clock:
    """A settable clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeTimers:
    """Records scheduled jobs; tests fire them by hand."""

    def __init__(self):
        self.handlers: dict[JobKind, Callable[[TimerJob], Awaitable[None]]] = {}
        self.handles: list[TimerHandle] = []
        self._ids = itertools.count(1)

    def register(self, kind: JobKind, handler) -> None:
        self.handlers[kind] = handler

    def schedule(self, job: TimerJob) -> TimerHandle:
        handle = TimerHandle(job, f"fake_{next(self._ids)}")
        self.handles.append(handle)
        return handle

    def pending(self, kind: Optional[JobKind] = None) -> list[TimerHandle]:
        return [
            h for h in self.handles
            if h.pending and (kind is None or h.job.kind == kind)
        ]

    @property
    def cancelled(self) -> list[TimerHandle]:
        return [h for h in self.handles if h.state == TimerHandle.CANCELLED]

    async def fire(self, handle: TimerHandle) -> None:
        assert handle.pending, f"{handle} is not pending"
        handle.mark_fired()
        await self.handlers[handle.job.kind](handle.job)


class FakeDeviceClient:
    """In-memory stand-in for the hub API."""

    def __init__(self):
        self.devices = [
            Device(id="11", label="Front Door", name="Schlage BE469"),
            Device(id="12", label="Back Door", name="Schlage BE469"),
        ]
        self.modes = [
            HouseMode(id="1", name="Home", active=True),
            HouseMode(id="2", name="Away"),
            HouseMode(id="3", name="Guest"),
        ]
        self.codes: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple] = []
        # device_id -> code the lock reports regardless of what was written
        self.wrong_readback: dict[str, str] = {}
        self.malformed: set[str] = set()
        self.failing_writes: dict[str, int] = {}
        self.failing_deletes: set[str] = set()

    async def get_devices(self) -> list[Device]:
        self.calls.append(("get_devices",))
        return list(self.devices)

    async def set_code(self, device_id: str, slot: str, code: str, tag: str) -> None:
        self.calls.append(("set_code", device_id, slot, code, tag))
        if self.failing_writes.get(device_id, 0) > 0:
            self.failing_writes[device_id] -= 1
            raise httpx.ConnectError("hub unreachable")
        self.codes.setdefault(device_id, {})[slot] = {"code": code, "name": tag}

    async def refresh(self, device_id: str) -> None:
        self.calls.append(("refresh", device_id))

    async def get_lock_codes(self, device_id: str) -> dict[str, dict[str, Any]]:
        self.calls.append(("get_lock_codes", device_id))
        if device_id in self.malformed:
            raise LockCodeParseError("lockCodes is not valid JSON")
        codes = copy.deepcopy(self.codes.get(device_id, {}))
        if device_id in self.wrong_readback:
            for entry in codes.values():
                entry["code"] = self.wrong_readback[device_id]
        return codes

    async def delete_code(self, device_id: str, slot: str) -> None:
        self.calls.append(("delete_code", device_id, slot))
        if device_id in self.failing_deletes:
            raise httpx.ConnectError("hub unreachable")
        self.codes.get(device_id, {}).pop(slot, None)

    async def get_modes(self) -> list[HouseMode]:
        self.calls.append(("get_modes",))
        return [copy.copy(m) for m in self.modes]

    async def activate_mode(self, mode_id: str) -> None:
        self.calls.append(("activate_mode", mode_id))
        for mode in self.modes:
            mode.active = mode.id == mode_id

    def calls_named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


class RecordingExecutor:
    """Records the actions the engines ask for."""

    def __init__(self):
        self.calls: list[tuple] = []

    async def check_in(self, phone, reservation_tag):
        self.calls.append(("check_in", phone, reservation_tag))

    async def check_out(self, phone, reservation_tag):
        self.calls.append(("check_out", phone, reservation_tag))

    async def arriving_soon(self, reservation_tag):
        self.calls.append(("arriving_soon", reservation_tag))

    async def program_code(self, phone, reservation_tag):
        self.calls.append(("program_code", phone, reservation_tag))

    async def remove_code(self, phone, reservation_tag):
        self.calls.append(("remove_code", phone, reservation_tag))

    async def apply_mode(self, tag, reservation_tag):
        self.calls.append(("apply_mode", tag, reservation_tag))


class RecordingNotifier:
    def __init__(self):
        self.messages: list[str] = []

    async def notify(self, message: str, title: str = "") -> None:
        self.messages.append(message)


def make_config(**overrides) -> AutomationConfig:
    values = {
        "timezone": "UTC",
        "arrival_time": time(15, 0),
        "departure_time": time(11, 0),
        "modes": {
            ModeTag.CHECKIN: "Home",
            ModeTag.CHECKOUT: "Away",
            ModeTag.ARRIVING_SOON: None,
        },
        "lock_devices": ("11", "12"),
        "lock_code_slot": "3",
    }
    values.update(overrides)
    return AutomationConfig(**values)


@pytest.fixture
def config() -> AutomationConfig:
    return make_config()


@pytest.fixture
def fake_timers() -> FakeTimers:
    return FakeTimers()


@pytest.fixture
def fake_client() -> FakeDeviceClient:
    return FakeDeviceClient()


@pytest.fixture
def recording_executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()

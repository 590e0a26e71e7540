"""
Pytest Fixtures for Kiosk Screen Agent Tests

Provides an in-memory identity store, a temporary local state file and
mock process controls used across all test files.
"""

from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from src.common.identity_store import (
    RecordNotFound,
    ScreenRecord,
    UniqueConstraintError,
)
from src.screen.assignment import AssignmentHandler
from src.screen.local_state import load_local_state
from src.screen.state_machine import ScreenStateMachine


class FakeSubscription:
    """Stand-in for a realtime subscription."""

    def __init__(self, registry: Dict[str, list], key: str, callback):
        self._registry = registry
        self._key = key
        self._callback = callback
        self.state = "joined"

    async def unsubscribe(self) -> None:
        callbacks = self._registry.get(self._key, [])
        if self._callback in callbacks:
            callbacks.remove(self._callback)
        self.state = "closed"


class FakeIdentityStore:
    """
    In-memory identity store with the async IdentityStore interface.

    Queue failures with fail_next(method, exc, ...); each call to that
    method raises the next queued exception before touching the data.
    """

    def __init__(self):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.row_subscribers: Dict[str, List[Callable]] = defaultdict(list)
        self.broadcast_subscribers: Dict[str, List[Callable]] = defaultdict(list)
        self.states: List[str] = []
        self._next_id = 1

    # -- failure injection ------------------------------------------------

    def fail_next(self, method: str, *errors: Exception) -> None:
        self.failures[method].extend(errors)

    def _maybe_fail(self, method: str) -> None:
        if self.failures[method]:
            raise self.failures[method].pop(0)

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    # -- IdentityStore interface -----------------------------------------

    async def insert(self, fields: Dict[str, Any]) -> ScreenRecord:
        self.calls.append(("insert", dict(fields)))
        self._maybe_fail("insert")
        if any(row["code"] == fields["code"] for row in self.rows.values()):
            raise UniqueConstraintError("duplicate code")
        screen_id = f"screen-{self._next_id}"
        self._next_id += 1
        row = {"id": screen_id, "assigned_path": None, **fields}
        self.rows[screen_id] = row
        return ScreenRecord.from_row(row)

    async def get_by_id(self, screen_id: str) -> ScreenRecord:
        self.calls.append(("get_by_id", screen_id))
        self._maybe_fail("get_by_id")
        if screen_id not in self.rows:
            raise RecordNotFound(screen_id)
        return ScreenRecord.from_row(self.rows[screen_id])

    async def get_by_code(self, code: str) -> ScreenRecord:
        self.calls.append(("get_by_code", code))
        self._maybe_fail("get_by_code")
        for row in self.rows.values():
            if row["code"] == code:
                return ScreenRecord.from_row(row)
        raise RecordNotFound(code)

    async def update(self, screen_id: str, fields: Dict[str, Any]) -> ScreenRecord:
        self.calls.append(("update", screen_id, dict(fields)))
        self._maybe_fail("update")
        if screen_id not in self.rows:
            raise RecordNotFound(screen_id)
        self.rows[screen_id].update(fields)
        return ScreenRecord.from_row(self.rows[screen_id])

    async def subscribe_to_row_change(self, screen_id: str, on_change) -> FakeSubscription:
        self.calls.append(("subscribe_to_row_change", screen_id))
        self.row_subscribers[screen_id].append(on_change)
        return FakeSubscription(self.row_subscribers, screen_id, on_change)

    async def subscribe_to_broadcast(self, channel_id: str, event_name: str, on_event) -> FakeSubscription:
        self.calls.append(("subscribe_to_broadcast", channel_id, event_name))
        key = f"{channel_id}:{event_name}"
        self.broadcast_subscribers[key].append(on_event)
        return FakeSubscription(self.broadcast_subscribers, key, on_event)

    def channel_states(self) -> List[str]:
        return list(self.states)

    # -- operator side -----------------------------------------------------

    def add_record(self, code: str, assigned_path: Optional[str] = None,
                   screen_id: Optional[str] = None) -> ScreenRecord:
        screen_id = screen_id or f"screen-{self._next_id}"
        self._next_id += 1
        self.rows[screen_id] = {"id": screen_id, "code": code, "assigned_path": assigned_path}
        return ScreenRecord.from_row(self.rows[screen_id])

    def operator_assign(self, screen_id: str, path: Optional[str], push: bool = True) -> None:
        self.rows[screen_id]["assigned_path"] = path
        if push:
            record = ScreenRecord.from_row(self.rows[screen_id])
            for callback in list(self.row_subscribers[screen_id]):
                callback(record)

    def operator_delete(self, screen_id: str) -> None:
        del self.rows[screen_id]

    def broadcast(self, channel_id: str, event_name: str, payload: Optional[dict] = None) -> None:
        for callback in list(self.broadcast_subscribers[f"{channel_id}:{event_name}"]):
            callback(payload or {})


@pytest.fixture
def store():
    """In-memory identity store."""
    return FakeIdentityStore()


@pytest.fixture
def state_file(tmp_path):
    return str(tmp_path / "state" / "state.json")


@pytest.fixture
def local_state(state_file):
    """LocalState backed by a temporary JSON file."""
    return load_local_state(state_file)


@pytest.fixture
def machine():
    return ScreenStateMachine()


@pytest.fixture
def navigator():
    """Mock navigator recording navigate() calls."""
    nav = MagicMock()
    nav.current_url = None
    return nav


@pytest.fixture
def restarter():
    """Mock restarter recording restart() calls."""
    return MagicMock()


@pytest.fixture
def handler(machine, local_state, navigator, restarter):
    return AssignmentHandler(machine, local_state, navigator, restarter)


@pytest.fixture
def no_sleep():
    """Awaitable sleep replacement that records requested delays."""
    delays = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep

"""
End-to-end pairing scenarios against the in-memory store.

A fresh screen registers, shows its code, and is assigned by an
operator through either the poll or the push side.
"""

import pytest

from src.screen.assignment import AssignmentHandler, AssignmentWatcher
from src.screen.heartbeat import HeartbeatLoop
from src.screen.local_state import load_local_state
from src.screen.registrar import Registrar
from src.screen.state_machine import ScreenState, ScreenStateMachine


@pytest.fixture
def boot(store, machine, local_state, handler, no_sleep):
    """Run one boot with a fixed pairing code."""
    async def _boot():
        registrar = Registrar(
            store, machine, local_state, handler,
            user_agent="test-agent/1.0",
            code_generator=lambda exclude=None: "7K4P",
            sleep=no_sleep,
        )
        return await registrar.run()
    return _boot


@pytest.fixture
def heartbeat(store, machine, local_state, handler, restarter):
    return HeartbeatLoop(
        store, machine, local_state, handler, restarter,
        user_agent="test-agent/1.0",
    )


@pytest.mark.asyncio
async def test_assignment_via_poll(store, machine, local_state, navigator, boot, heartbeat):
    result = await boot()
    assert result.pairing_code == "7K4P"
    assert machine.state == ScreenState.WAITING

    for _ in range(3):
        await heartbeat.tick()
    assert machine.state == ScreenState.WAITING
    navigator.navigate.assert_not_called()

    store.operator_assign(result.screen_id, "/tv1", push=False)
    await heartbeat.tick()

    assert machine.state == ScreenState.ASSIGNED
    assert local_state.last_known_assigned_path == "/tv1"
    navigator.navigate.assert_called_once_with("/tv1")


@pytest.mark.asyncio
async def test_assignment_via_push(store, machine, local_state, navigator, handler, boot, heartbeat):
    result = await boot()
    watcher = AssignmentWatcher(store, result.screen_id, handler)
    await watcher.start()

    store.operator_assign(result.screen_id, "/tv1")
    assert machine.state == ScreenState.ASSIGNED

    await heartbeat.tick()

    navigator.navigate.assert_called_once_with("/tv1")
    assert local_state.last_known_assigned_path == "/tv1"
    await watcher.stop()


@pytest.mark.asyncio
async def test_next_boot_takes_fast_path(store, state_file, navigator, restarter, boot, no_sleep):
    first = await boot()
    store.operator_assign(first.screen_id, "/tv1", push=False)

    # Simulated restart: fresh objects over the same state file
    local_state = load_local_state(state_file)
    local_state.last_known_assigned_path = "/tv1"
    machine = ScreenStateMachine()
    handler = AssignmentHandler(machine, local_state, navigator, restarter)
    registrar = Registrar(store, machine, local_state, handler,
                          user_agent="test-agent/1.0", sleep=no_sleep)

    second = await registrar.run()

    assert second.path == "fast"
    assert second.screen_id == first.screen_id
    assert store.count("insert") == 1
    navigator.navigate.assert_called_once_with("/tv1")


@pytest.mark.asyncio
async def test_operator_delete_forces_repair(store, local_state, restarter, boot, heartbeat):
    result = await boot()
    store.operator_delete(result.screen_id)

    await heartbeat.tick()

    restarter.restart.assert_called_once_with("screen record deleted")
    assert local_state.device_id is None
    assert local_state.pairing_code is None

"""
Heartbeat & Poll Loop - keeps the screen record alive and picks up
assignments when the push channel is quiet.

Each tick writes the liveness fields and reads back the record. While
WAITING the returned assigned_path is fed to the assignment handler;
while ASSIGNED (resident screen) the same check follows reassignments.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.common.identity_store import IdentityStoreError, RecordNotFound
from src.common.logger import setup_logger
from .assignment import AssignmentHandler
from .local_state import LocalState
from .state_machine import ScreenState, ScreenStateMachine

logger = setup_logger(__name__)

# Columns a heartbeat may write; assigned_path belongs to the operator
HEARTBEAT_FIELDS = frozenset({"last_seen", "current_page", "user_agent", "name"})


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_heartbeat_fields(
    current_page: str,
    user_agent: str,
    name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build the partial update sent as a heartbeat.

    Args:
        current_page: Route currently on screen
        user_agent: Diagnostic agent string
        name: Hostname label, omitted when unknown

    Returns:
        Dict containing only liveness/diagnostic columns
    """
    fields = {
        "last_seen": utc_now_iso(),
        "current_page": current_page,
        "user_agent": user_agent,
    }
    if name:
        fields["name"] = name
    return fields


class HeartbeatLoop:
    """Periodic heartbeat and assignment poll."""

    DEFAULT_INTERVAL = 30  # seconds between ticks

    def __init__(
        self,
        store,
        machine: ScreenStateMachine,
        local_state: LocalState,
        handler: AssignmentHandler,
        restarter,
        user_agent: str,
        name: Optional[str] = None,
        interval: float = DEFAULT_INTERVAL,
    ):
        """
        Initialize the heartbeat loop.

        Args:
            store: IdentityStore (async)
            machine: Screen state machine
            local_state: Persisted identity
            handler: Assignment handler fed with polled values
            restarter: Object with restart(reason)
            user_agent: Diagnostic agent string
            name: Hostname label
            interval: Seconds between ticks (default: 30)
        """
        self._store = store
        self._machine = machine
        self._local_state = local_state
        self._handler = handler
        self._restarter = restarter
        self.user_agent = user_agent
        self.name = name
        self.interval = interval

        self._running = False

        # Track last heartbeat
        self._last_heartbeat_time: Optional[float] = None
        self._last_heartbeat_success: bool = False
        self._consecutive_failures = 0
        self._total_ticks = 0

    async def tick(self) -> None:
        """
        Run one heartbeat + poll.

        A missing record clears local state and restarts the process.
        Any other store error is logged and left for the next tick.
        """
        screen_id = self._local_state.device_id
        if not screen_id:
            logger.warning("Heartbeat skipped: no device id")
            return

        self._total_ticks += 1
        fields = build_heartbeat_fields(self._handler.current_page, self.user_agent, self.name)

        try:
            record = await self._store.update(screen_id, fields)
        except RecordNotFound:
            logger.warning("Screen record %s was deleted, re-registering", screen_id)
            self._running = False
            self._local_state.clear()
            self._restarter.restart("screen record deleted")
            return
        except IdentityStoreError as e:
            self._last_heartbeat_success = False
            self._consecutive_failures += 1
            logger.warning(
                "Heartbeat failed (%d in a row): %s", self._consecutive_failures, e
            )
            return

        self._last_heartbeat_time = time.time()
        self._last_heartbeat_success = True
        self._consecutive_failures = 0
        logger.debug("Heartbeat sent (%s)", self._machine.state.name)

        if self._machine.state in (ScreenState.WAITING, ScreenState.ASSIGNED):
            self._handler.observe(record.assigned_path, source="poll")

    async def run(self) -> None:
        """Tick every interval until stopped; a tick never overlaps the next."""
        self._running = True
        logger.info("Heartbeat loop started (interval: %ss)", self.interval)

        while self._running:
            await asyncio.sleep(self.interval)
            if not self._running:
                break
            try:
                await self.tick()
            except Exception as e:
                logger.error("Unexpected heartbeat error: %s", e)

        logger.info("Heartbeat loop stopped")

    def stop(self) -> None:
        self._running = False

    def is_running(self) -> bool:
        return self._running

    def get_last_heartbeat_info(self) -> Dict[str, Any]:
        """
        Get information about the last heartbeat.

        Returns:
            Dictionary with last heartbeat details
        """
        return {
            "last_time": self._last_heartbeat_time,
            "last_success": self._last_heartbeat_success,
            "consecutive_failures": self._consecutive_failures,
            "total_ticks": self._total_ticks,
        }

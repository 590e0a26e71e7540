"""
Assignment handling for the screen agent.

Assignments reach the device through two independent sources: the
heartbeat/poll loop and the realtime row subscription. Both feed the
same AssignmentHandler.observe(), which is idempotent, so whichever
source sees an assignment first wins and the other becomes a no-op.
"""

from typing import Any, Dict, Optional

from src.common.identity_store import ScreenRecord
from src.common.logger import setup_logger
from src.common.realtime import Subscription
from .local_state import LocalState
from .state_machine import ScreenEvent, ScreenState, ScreenStateMachine

logger = setup_logger(__name__)

# Route reported as current_page until an assignment is displayed
PAIRING_PAGE = "/screen"

RELOAD_EVENT = "reload"


def command_channel_id(screen_id: str) -> str:
    """Broadcast channel carrying operator commands for one screen."""
    return f"screen-cmd-{screen_id}"


class AssignmentHandler:
    """Single sink for observed assignments (poll, push and boot)."""

    def __init__(
        self,
        machine: ScreenStateMachine,
        local_state: LocalState,
        navigator,
        restarter,
    ):
        """
        Args:
            machine: Screen state machine
            local_state: Persisted identity
            navigator: Object with navigate(path)
            restarter: Object with restart(reason)
        """
        self._machine = machine
        self._local_state = local_state
        self._navigator = navigator
        self._restarter = restarter
        self.current_path: Optional[str] = None

    @property
    def current_page(self) -> str:
        """Route currently on screen, as reported in heartbeats."""
        return self.current_path or PAIRING_PAGE

    def observe(self, assigned_path: Optional[str], source: str) -> bool:
        """
        Handle the assigned_path value seen by a source.

        Args:
            assigned_path: Value of the record's assigned_path (may be None)
            source: Where it came from ("boot", "poll", "push"), for logging

        Returns:
            True if the screen navigated or restarted, False for a no-op
        """
        state = self._machine.state

        if not assigned_path:
            if state == ScreenState.ASSIGNED:
                logger.info("Assignment cleared by operator (%s), returning to pairing", source)
                self._local_state.last_known_assigned_path = None
                self._restarter.restart("assignment cleared")
                return True
            return False

        if state == ScreenState.ASSIGNED and assigned_path == self.current_path:
            logger.debug("Assignment %s already applied (%s)", assigned_path, source)
            return False

        if not self._machine.can_apply(ScreenEvent.ASSIGNMENT_OBSERVED):
            logger.warning(
                "Ignoring assignment %s from %s while %s",
                assigned_path, source, state.name,
            )
            return False

        if state == ScreenState.ASSIGNED:
            logger.info("Reassigned %s -> %s (%s)", self.current_path, assigned_path, source)
        else:
            logger.info("Assignment received via %s: %s", source, assigned_path)

        self._local_state.last_known_assigned_path = assigned_path
        self.current_path = assigned_path
        self._machine.apply(ScreenEvent.ASSIGNMENT_OBSERVED)
        self._navigator.navigate(assigned_path)
        return True


class AssignmentWatcher:
    """Push side of assignment detection: a row subscription on this screen."""

    def __init__(self, store, screen_id: str, handler: AssignmentHandler):
        self._store = store
        self.screen_id = screen_id
        self._handler = handler
        self._subscription: Optional[Subscription] = None

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = await self._store.subscribe_to_row_change(
            self.screen_id, self._on_change
        )
        logger.info("Watching screen %s for assignment", self.screen_id)

    def _on_change(self, record: ScreenRecord) -> None:
        if record.id != self.screen_id:
            return
        self._handler.observe(record.assigned_path, source="push")

    async def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()


class CommandListener:
    """Listens for out-of-band operator commands (forced reload)."""

    def __init__(self, store, screen_id: str, restarter):
        self._store = store
        self.screen_id = screen_id
        self._restarter = restarter
        self._subscription: Optional[Subscription] = None

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = await self._store.subscribe_to_broadcast(
            command_channel_id(self.screen_id), RELOAD_EVENT, self._on_reload
        )

    def _on_reload(self, payload: Dict[str, Any]) -> None:
        logger.info("Reload command received")
        self._restarter.restart("reload command")

    async def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()

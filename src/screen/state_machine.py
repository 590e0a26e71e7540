"""
Screen State Machine for Kiosk Screen Agent.
Tracks the boot/registration lifecycle: booting, registering,
waiting for an assignment, and assigned.
"""

from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from src.common.logger import setup_logger

logger = setup_logger(__name__)


class ScreenState(Enum):
    """Represents where the screen is in its registration lifecycle."""
    BOOTING = "booting"            # Checking local state against the store
    REGISTERING = "registering"    # Inserting a fresh screen record
    WAITING = "waiting"            # Showing the pairing code, no assignment yet
    ASSIGNED = "assigned"          # Displaying the operator-assigned route


class ScreenEvent(Enum):
    """Inputs that move the screen between states."""
    REGISTRATION_STARTED = "registration_started"
    REGISTERED = "registered"
    RESTORED_UNASSIGNED = "restored_unassigned"
    ASSIGNMENT_OBSERVED = "assignment_observed"


class StateTransitionError(Exception):
    """Raised when an event is not valid in the current state."""
    pass


TRANSITIONS: Dict[Tuple[ScreenState, ScreenEvent], ScreenState] = {
    (ScreenState.BOOTING, ScreenEvent.REGISTRATION_STARTED): ScreenState.REGISTERING,
    (ScreenState.BOOTING, ScreenEvent.RESTORED_UNASSIGNED): ScreenState.WAITING,
    (ScreenState.BOOTING, ScreenEvent.ASSIGNMENT_OBSERVED): ScreenState.ASSIGNED,
    (ScreenState.REGISTERING, ScreenEvent.REGISTERED): ScreenState.WAITING,
    (ScreenState.WAITING, ScreenEvent.ASSIGNMENT_OBSERVED): ScreenState.ASSIGNED,
    # Resident screen following a reassignment
    (ScreenState.ASSIGNED, ScreenEvent.ASSIGNMENT_OBSERVED): ScreenState.ASSIGNED,
}


def transition(state: ScreenState, event: ScreenEvent) -> ScreenState:
    """
    Compute the state reached by applying event in state.

    Args:
        state: Current state
        event: Event to apply

    Returns:
        The next state

    Raises:
        StateTransitionError: If the event is not valid in this state
    """
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise StateTransitionError(
            f"Invalid transition: {state.name} --{event.name}-->"
        ) from None


class ScreenStateMachine:
    """
    Holds the current ScreenState and applies events through transition().

    All handlers run on the agent's event loop, so no locking is needed.
    """

    def __init__(
        self,
        initial_state: ScreenState = ScreenState.BOOTING,
        on_state_changed: Optional[Callable[['ScreenStateMachine', ScreenState, ScreenState], None]] = None
    ):
        """
        Initialize the screen state machine.

        Args:
            initial_state: Starting state (default: BOOTING)
            on_state_changed: Callback when state changes (self, old_state, new_state)
        """
        self._state = initial_state
        self._previous_state: Optional[ScreenState] = None
        self._on_state_changed = on_state_changed

        logger.debug("ScreenStateMachine initialized in %s state", self._state.name)

    @property
    def state(self) -> ScreenState:
        """Get current state."""
        return self._state

    @property
    def previous_state(self) -> Optional[ScreenState]:
        """Get state before the last change."""
        return self._previous_state

    def set_listener(
        self,
        callback: Optional[Callable[['ScreenStateMachine', ScreenState, ScreenState], None]]
    ) -> None:
        self._on_state_changed = callback

    def can_apply(self, event: ScreenEvent) -> bool:
        """Check whether event is valid in the current state."""
        return (self._state, event) in TRANSITIONS

    def apply(self, event: ScreenEvent) -> bool:
        """
        Apply an event.

        Returns:
            True if the state changed, False for a self-transition

        Raises:
            StateTransitionError: If the event is not valid in this state
        """
        old_state = self._state
        new_state = transition(old_state, event)

        if new_state == old_state:
            logger.debug("Event %s kept state %s", event.name, old_state.name)
            return False

        self._previous_state = old_state
        self._state = new_state
        logger.info("State transition: %s -> %s", old_state.name, new_state.name)

        if self._on_state_changed:
            try:
                self._on_state_changed(self, old_state, new_state)
            except Exception as e:
                logger.error("Error in state change callback: %s", e)

        return True

    @property
    def is_waiting(self) -> bool:
        return self._state == ScreenState.WAITING

    @property
    def is_assigned(self) -> bool:
        return self._state == ScreenState.ASSIGNED

    def get_state_info(self) -> Dict[str, Optional[str]]:
        """
        Get information about current state.

        Returns:
            Dictionary with state and previous_state values
        """
        return {
            "state": self._state.value,
            "previous_state": self._previous_state.value if self._previous_state else None,
        }

    def __repr__(self) -> str:
        """String representation."""
        return f"ScreenStateMachine(state={self._state.name})"

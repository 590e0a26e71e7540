"""
Registrar - the boot sequence of a screen.

Recovery tiers, tried in order:
1. Fast path: device id + cached assignment -> one lookup, then ASSIGNED.
2. Medium path: device id, never assigned -> one lookup, then WAITING
   (or ASSIGNED if the operator assigned while the device was off).
3. Slow path: fresh device -> insert a record with a new pairing code.

A record that no longer exists is an expected outcome (the operator
deleted the screen to force a re-pair): local state is cleared and the
next tier is tried.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from src.common.identity_store import (
    IdentityStoreError,
    RecordNotFound,
    ScreenRecord,
    UniqueConstraintError,
)
from src.common.logger import setup_logger
from .assignment import PAIRING_PAGE, AssignmentHandler
from .code_generator import generate_pairing_code
from .heartbeat import build_heartbeat_fields, utc_now_iso
from .local_state import LocalState
from .state_machine import ScreenEvent, ScreenState, ScreenStateMachine

logger = setup_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_RETRY_DELAY = 2.0


class RegistrationError(Exception):
    """Raised when registration exhausts its retry budget."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class BootCancelled(Exception):
    """Raised internally when teardown interrupts the boot sequence."""
    pass


@dataclass
class BootResult:
    """Outcome of one boot sequence."""
    state: ScreenState
    screen_id: str
    pairing_code: Optional[str] = None
    assigned_path: Optional[str] = None
    path: str = ""


class Registrar:
    """Runs the boot state machine once per process."""

    def __init__(
        self,
        store,
        machine: ScreenStateMachine,
        local_state: LocalState,
        handler: AssignmentHandler,
        user_agent: str,
        name: Optional[str] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        code_generator: Callable[..., str] = generate_pairing_code,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            store: IdentityStore (async)
            machine: Screen state machine (starts in BOOTING)
            local_state: Persisted identity
            handler: Assignment handler used for the ASSIGNED transition
            user_agent: Diagnostic agent string
            name: Hostname label for the record
            max_attempts: Registration retry budget
            retry_delay: Seconds to wait after a transient insert failure
            code_generator: Pairing code factory (accepts exclude=)
            sleep: Awaitable sleep (injected in tests)
        """
        self._store = store
        self._machine = machine
        self._local_state = local_state
        self._handler = handler
        self.user_agent = user_agent
        self.name = name
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._generate_code = code_generator
        self._sleep = sleep
        self._cancelled = False
        self.insert_attempts = 0

    def cancel(self) -> None:
        """Stop the boot sequence at its next resume point."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _checkpoint(self) -> None:
        if self._cancelled:
            raise BootCancelled()

    async def run(self) -> Optional[BootResult]:
        """
        Run the boot sequence.

        Returns:
            BootResult, or None if cancelled mid-flight

        Raises:
            RegistrationError: Registration retries exhausted
        """
        try:
            result = await self._fast_path()
            if result is None:
                result = await self._medium_path()
            if result is None:
                result = await self._legacy_code_path()
            if result is None:
                result = await self._slow_path()
        except BootCancelled:
            logger.info("Boot sequence cancelled")
            return None

        logger.info(
            "Boot complete via %s path: %s (screen %s)",
            result.path, result.state.name, result.screen_id,
        )
        return result

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    async def _fast_path(self) -> Optional[BootResult]:
        device_id = self._local_state.device_id
        cached_path = self._local_state.last_known_assigned_path
        if not (device_id and cached_path):
            return None

        logger.info("Fast path: screen %s, cached route %s", device_id, cached_path)
        try:
            record = await self._lookup(self._store.get_by_id, device_id, retry=False)
        except IdentityStoreError as e:
            logger.warning("Store unreachable (%s), showing cached route %s", e, cached_path)
            return self._assign(device_id, cached_path, "fast")
        if record is None:
            return None

        record = await self._heartbeat(record, current_page=cached_path)
        if record is None:
            return None

        path = record.assigned_path or cached_path
        if path != cached_path:
            logger.info("Assignment changed while offline: %s -> %s", cached_path, path)
        return self._assign(device_id, path, "fast")

    async def _medium_path(self) -> Optional[BootResult]:
        device_id = self._local_state.device_id
        if not device_id:
            return None

        logger.info("Medium path: screen %s, not yet assigned", device_id)
        code = self._local_state.pairing_code
        try:
            record = await self._lookup(self._store.get_by_id, device_id, retry=not code)
        except IdentityStoreError as e:
            logger.warning("Store unreachable (%s), showing cached code %s", e, code)
            return self._wait(device_id, code, "medium")
        if record is None:
            return None

        return await self._resume(record, "medium")

    async def _legacy_code_path(self) -> Optional[BootResult]:
        """State written by older firmware holds only the pairing code."""
        code = self._local_state.pairing_code
        if not code or self._local_state.device_id:
            return None

        logger.info("Recovering screen by pairing code %s", code)
        record = await self._lookup(self._store.get_by_code, code)
        if record is None:
            return None

        self._local_state.device_id = record.id
        return await self._resume(record, "legacy")

    async def _resume(self, record: ScreenRecord, path_name: str) -> Optional[BootResult]:
        """Continue from an existing, reachable record."""
        if record.assigned_path:
            return self._assign(record.id, record.assigned_path, path_name)

        record = await self._heartbeat(record, current_page=PAIRING_PAGE)
        if record is None:
            return None
        if record.assigned_path:
            return self._assign(record.id, record.assigned_path, path_name)
        return self._wait(record.id, record.code or self._local_state.pairing_code, path_name)

    async def _slow_path(self) -> BootResult:
        self._machine.apply(ScreenEvent.REGISTRATION_STARTED)

        code = self._generate_code()
        attempts = 0
        while attempts < self.max_attempts:
            self._checkpoint()
            self.insert_attempts += 1
            try:
                record = await self._store.insert(self._new_record_fields(code))
            except UniqueConstraintError:
                self._checkpoint()
                attempts += 1
                logger.info("Pairing code %s already taken, trying another", code)
                code = self._generate_code(exclude=code)
                continue
            except IdentityStoreError as e:
                self._checkpoint()
                attempts += 1
                logger.warning(
                    "Registration attempt %d/%d failed: %s", attempts, self.max_attempts, e
                )
                if attempts < self.max_attempts:
                    await self._sleep(self.retry_delay)
                continue
            self._checkpoint()

            logger.info("Registered screen %s with code %s", record.id, record.code)
            self._local_state.device_id = record.id
            self._local_state.pairing_code = record.code or code
            self._machine.apply(ScreenEvent.REGISTERED)
            return BootResult(
                state=self._machine.state,
                screen_id=record.id,
                pairing_code=record.code or code,
                path="slow",
            )

        raise RegistrationError(
            f"Registration failed after {attempts} attempts", attempts
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _lookup(self, fetch, key: str, retry: bool = True) -> Optional[ScreenRecord]:
        """
        Fetch an existing record.

        Args:
            fetch: Store coroutine (get_by_id or get_by_code)
            key: Id or code to look up
            retry: Retry transient failures up to max_attempts; if False
                the first IdentityStoreError is raised to the caller

        Returns:
            The record, or None if it no longer exists (local state cleared)

        Raises:
            RegistrationError: Transient failures exhausted the retry budget
        """
        attempts = 0
        while True:
            attempts += 1
            try:
                record = await fetch(key)
            except RecordNotFound:
                self._checkpoint()
                logger.info("Screen %s no longer exists, clearing local state", key)
                self._local_state.clear()
                return None
            except IdentityStoreError as e:
                self._checkpoint()
                if not retry:
                    raise
                if attempts >= self.max_attempts:
                    raise RegistrationError(
                        f"Screen lookup failed after {attempts} attempts: {e}", attempts
                    ) from e
                logger.warning("Lookup attempt %d/%d failed: %s", attempts, self.max_attempts, e)
                await self._sleep(self.retry_delay)
                self._checkpoint()
                continue
            self._checkpoint()
            return record

    def _new_record_fields(self, code: str) -> dict:
        fields = {
            "code": code,
            "last_seen": utc_now_iso(),
            "current_page": PAIRING_PAGE,
            "user_agent": self.user_agent,
        }
        if self.name:
            fields["name"] = self.name
        return fields

    async def _heartbeat(self, record: ScreenRecord, current_page: str) -> Optional[ScreenRecord]:
        """
        Refresh liveness fields on boot.

        Returns:
            The updated record (or the looked-up one on a transient
            failure), None if the record vanished in between
        """
        fields = build_heartbeat_fields(current_page, self.user_agent, self.name)
        try:
            updated = await self._store.update(record.id, fields)
        except RecordNotFound:
            self._checkpoint()
            logger.info("Screen %s deleted during boot, clearing local state", record.id)
            self._local_state.clear()
            return None
        except IdentityStoreError as e:
            self._checkpoint()
            logger.warning("Boot heartbeat failed: %s", e)
            return record
        self._checkpoint()
        return updated

    def _assign(self, screen_id: str, path: str, path_name: str) -> BootResult:
        self._local_state.device_id = screen_id
        self._handler.observe(path, source="boot")
        return BootResult(
            state=self._machine.state,
            screen_id=screen_id,
            pairing_code=self._local_state.pairing_code,
            assigned_path=path,
            path=path_name,
        )

    def _wait(self, screen_id: str, code: Optional[str], path_name: str) -> BootResult:
        if code:
            self._local_state.pairing_code = code
        self._machine.apply(ScreenEvent.RESTORED_UNASSIGNED)
        return BootResult(
            state=self._machine.state,
            screen_id=screen_id,
            pairing_code=code,
            path=path_name,
        )

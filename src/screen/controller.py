"""
ScreenController - wires the registration core for one process lifetime.

Startup flow:
1. Start the realtime socket and the connection health monitor
2. Run the Registrar (fast / medium / slow path)
3. Once WAITING or ASSIGNED: watch for pushed assignments, listen for
   reload commands and run the heartbeat & poll loop
4. Run until a signal, or until a restart replaces the process
"""

import asyncio
import signal
import sys
from typing import List, Optional

from src.common.config import Config
from src.common.device_info import build_user_agent, get_system_hostname
from src.common.identity_store import IdentityStore, ScreenDirectory
from src.common.logger import set_log_level, setup_logger
from src.common.realtime import RealtimeClient
from .assignment import AssignmentHandler, AssignmentWatcher, CommandListener
from .connection_health import ConnectionHealthMonitor
from .display import (
    STATUS_REGISTERING,
    BrowserNavigator,
    BrowserStatusDisplay,
    ConsoleNavigator,
    ConsoleStatusDisplay,
    ProcessRestarter,
)
from .heartbeat import HeartbeatLoop
from .local_state import LocalState, load_local_state
from .registrar import BootResult, Registrar, RegistrationError
from .state_machine import ScreenState, ScreenStateMachine

logger = setup_logger(__name__)


class ScreenController:
    """Owns the state machine, the Registrar and the background loops."""

    def __init__(
        self,
        store,
        local_state: LocalState,
        navigator,
        restarter,
        display,
        realtime: Optional[RealtimeClient] = None,
        hostname: Optional[str] = None,
        heartbeat_interval: float = HeartbeatLoop.DEFAULT_INTERVAL,
        registration_attempts: int = 10,
        registration_retry_delay: float = 2.0,
        health_check_interval: float = 5,
        max_downtime: float = 30,
    ):
        """
        Initialize the controller.

        Args:
            store: IdentityStore (async)
            local_state: Persisted identity
            navigator: Shows assigned routes (navigate(path), close())
            restarter: Forces a full process restart (restart(reason))
            display: Status display for registering/waiting screens
            realtime: Realtime client to run and close with the controller
            hostname: Hostname supplied at launch; cached for later boots
            heartbeat_interval: Seconds between heartbeat/poll ticks
            registration_attempts: Registration retry budget
            registration_retry_delay: Seconds between transient retries
            health_check_interval: Seconds between channel health samples
            max_downtime: Seconds of channel loss tolerated before restart
        """
        self._store = store
        self._local_state = local_state
        self._navigator = navigator
        self._restarter = restarter
        self._display = display
        self._realtime = realtime
        self._heartbeat_interval = heartbeat_interval

        if hostname:
            local_state.hostname_override = hostname
        self.name = hostname or local_state.hostname_override
        self.user_agent = build_user_agent()

        self.machine = ScreenStateMachine(on_state_changed=self._on_state_changed)
        self.handler = AssignmentHandler(self.machine, local_state, navigator, restarter)
        self.registrar = Registrar(
            store,
            self.machine,
            local_state,
            self.handler,
            user_agent=self.user_agent,
            name=self.name,
            max_attempts=registration_attempts,
            retry_delay=registration_retry_delay,
        )
        self.health_monitor = ConnectionHealthMonitor(
            store.channel_states,
            restarter,
            check_interval=health_check_interval,
            max_downtime=max_downtime,
        )

        self.heartbeat: Optional[HeartbeatLoop] = None
        self.watcher: Optional[AssignmentWatcher] = None
        self.commands: Optional[CommandListener] = None
        self.boot_result: Optional[BootResult] = None

        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._stopped = False

    def _on_state_changed(
        self,
        machine: ScreenStateMachine,
        old_state: ScreenState,
        new_state: ScreenState,
    ) -> None:
        """Keep the status display in step with the state machine."""
        if new_state in (ScreenState.BOOTING, ScreenState.REGISTERING):
            self._display.show_status(STATUS_REGISTERING)
        elif new_state == ScreenState.WAITING:
            code = self._local_state.pairing_code
            if code:
                self._display.show_pairing_code(code)

    def _start_task(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.append(task)
        return task

    async def run(self) -> Optional[BootResult]:
        """
        Boot and serve until shutdown() is called.

        Returns:
            The boot result, or None if shutdown interrupted the boot

        Raises:
            RegistrationError: Registration could not complete
        """
        self._stop_event = asyncio.Event()
        self._display.show_status(STATUS_REGISTERING)

        if self._realtime is not None:
            self._start_task(self._realtime.run(), "realtime")
        self._start_task(self.health_monitor.run(), "connection-health")

        try:
            result = await self.registrar.run()
        except RegistrationError as e:
            logger.error("Screen registration failed: %s", e)
            self._display.show_error(str(e))
            raise

        if result is None or self._stopped:
            return None
        self.boot_result = result

        await self._start_background_services(result.screen_id)

        await self._stop_event.wait()
        return result

    async def _start_background_services(self, screen_id: str) -> None:
        """Start push watcher, command listener and heartbeat loop."""
        self.watcher = AssignmentWatcher(self._store, screen_id, self.handler)
        self.commands = CommandListener(self._store, screen_id, self._restarter)
        try:
            await self.watcher.start()
        except Exception as e:
            # Polling still covers assignments without the push channel
            logger.error("Failed to subscribe to assignment updates: %s", e)
        try:
            await self.commands.start()
        except Exception as e:
            logger.error("Failed to subscribe to reload commands: %s", e)

        self.heartbeat = HeartbeatLoop(
            self._store,
            self.machine,
            self._local_state,
            self.handler,
            self._restarter,
            user_agent=self.user_agent,
            name=self.name,
            interval=self._heartbeat_interval,
        )
        self._start_task(self.heartbeat.run(), "heartbeat")
        logger.info("Screen agent running: %s", self.get_status())

    def request_shutdown(self) -> asyncio.Task:
        """Schedule shutdown() once; later calls return the same task."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self.shutdown())
        return self._shutdown_task

    async def shutdown(self) -> None:
        """Tear down timers, subscriptions and the realtime socket."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping screen agent")

        self.registrar.cancel()
        self.health_monitor.stop()
        if self.heartbeat is not None:
            self.heartbeat.stop()
        if self._stop_event is not None:
            self._stop_event.set()

        for listener in (self.watcher, self.commands):
            if listener is None:
                continue
            try:
                await listener.stop()
            except Exception as e:
                logger.error("Error unsubscribing: %s", e)

        if self._realtime is not None:
            await self._realtime.close()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        try:
            await asyncio.to_thread(self._navigator.close)
        except Exception as e:
            logger.error("Error closing display: %s", e)

        logger.info("Screen agent stopped")

    def get_status(self) -> dict:
        """Get agent status for diagnostics."""
        return {
            **self.machine.get_state_info(),
            **self._local_state.get_state_info(),
            "current_page": self.handler.current_page,
            "heartbeat": self.heartbeat.get_last_heartbeat_info() if self.heartbeat else None,
            "connection": self.health_monitor.get_status(),
        }


def build_controller(config: Config, state_file: Optional[str] = None,
                     hostname: Optional[str] = None, console: bool = False) -> ScreenController:
    """Assemble a controller from configuration."""
    local_state = load_local_state(state_file or config.state_path)

    if console or config.display_mode == 'console':
        navigator = ConsoleNavigator(config.base_url)
        display = ConsoleStatusDisplay()
    else:
        navigator = BrowserNavigator(config.base_url, browser=config.browser)
        display = BrowserStatusDisplay(navigator, config.status_page)

    realtime = RealtimeClient(
        config.store_url,
        config.store_api_key,
        heartbeat_interval=config.realtime_heartbeat_interval,
        reconnect_delay=config.realtime_reconnect_delay,
    )
    directory = ScreenDirectory(
        config.store_url,
        config.store_api_key,
        table=config.store_table,
        timeout=config.request_timeout,
    )

    if hostname == 'auto':
        hostname = get_system_hostname()

    return ScreenController(
        IdentityStore(directory, realtime),
        local_state,
        navigator,
        ProcessRestarter(before_exec=navigator.close),
        display,
        realtime=realtime,
        hostname=hostname,
        heartbeat_interval=config.heartbeat_interval,
        registration_attempts=config.registration_attempts,
        registration_retry_delay=config.registration_retry_delay,
        health_check_interval=config.health_check_interval,
        max_downtime=config.max_downtime,
    )


async def serve(controller: ScreenController) -> None:
    """Run a controller until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def _on_signal(signum: int) -> None:
        logger.info("Received signal: %s", signal.Signals(signum).name)
        controller.request_shutdown()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, _on_signal, signum)

    try:
        await controller.run()
    finally:
        await controller.request_shutdown()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the screen agent."""
    import argparse

    parser = argparse.ArgumentParser(description="Kiosk Screen Agent")
    parser.add_argument('--config', help="Config file path")
    parser.add_argument('--hostname', help="Screen name to report ('auto' = system hostname)")
    parser.add_argument('--state-file', help="Local state file override")
    parser.add_argument('--log-level', help="Log level override")
    parser.add_argument('--console', action='store_true', help="Log routes instead of launching a browser")

    args = parser.parse_args(argv)

    config = Config(args.config)
    set_log_level(args.log_level or config.log_level)

    logger.info("Kiosk Screen Agent starting...")

    controller = build_controller(
        config,
        state_file=args.state_file,
        hostname=args.hostname,
        console=args.console,
    )

    try:
        asyncio.run(serve(controller))
    except RegistrationError:
        sys.exit(1)


if __name__ == "__main__":
    main()

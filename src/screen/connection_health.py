"""
Connection Health Monitor for Kiosk Screen Agent.

Samples the state of every realtime channel. When all of them have been
closed or errored for longer than the allowed downtime, the agent is
restarted: nobody is standing in front of a kiosk to notice a silently
stuck subscription.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional

from src.common.logger import setup_logger
from src.common.realtime import CHANNEL_CLOSED, CHANNEL_ERRORED

logger = setup_logger(__name__)

CHECK_INTERVAL = 5     # seconds between samples
MAX_DOWNTIME = 30      # seconds of total channel loss before a restart

DOWN_STATES = frozenset({CHANNEL_CLOSED, CHANNEL_ERRORED})


class ConnectionHealthMonitor:
    """
    Watches push channel health and forces a restart on prolonged loss.

    Usage:
        monitor = ConnectionHealthMonitor(store.channel_states, restarter)
        task = asyncio.create_task(monitor.run())
        ...
        monitor.stop()
    """

    def __init__(
        self,
        channel_states: Callable[[], List[str]],
        restarter,
        check_interval: float = CHECK_INTERVAL,
        max_downtime: float = MAX_DOWNTIME,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            channel_states: Returns the state of every tracked channel
            restarter: Object with restart(reason)
            check_interval: Seconds between samples
            max_downtime: Seconds all channels may be down before restarting
            clock: Monotonic time source (injected in tests)
        """
        self._channel_states = channel_states
        self._restarter = restarter
        self.check_interval = check_interval
        self.max_downtime = max_downtime
        self._clock = clock

        self._disconnected_since: Optional[float] = None
        self._restart_requested = False
        self._running = False
        self._total_checks = 0

    @property
    def disconnected_for(self) -> float:
        """Seconds all channels have been down (0 when healthy)."""
        if self._disconnected_since is None:
            return 0.0
        return self._clock() - self._disconnected_since

    def check(self) -> bool:
        """
        Take one sample.

        Returns:
            True if all channels are currently down
        """
        self._total_checks += 1
        states = self._channel_states()
        all_down = bool(states) and all(state in DOWN_STATES for state in states)

        if not all_down:
            if self._disconnected_since is not None:
                logger.info("Realtime channels recovered after %.1fs", self.disconnected_for)
            self._disconnected_since = None
            return False

        if self._disconnected_since is None:
            self._disconnected_since = self._clock()
            logger.warning("All realtime channels down (%s)", ", ".join(states))
            return True

        downtime = self.disconnected_for
        if downtime >= self.max_downtime and not self._restart_requested:
            self._restart_requested = True
            logger.error("Realtime down for %.1fs, restarting", downtime)
            self._restarter.restart(f"realtime disconnected for {downtime:.0f}s")

        return True

    async def run(self) -> None:
        """Sample every check_interval until stopped."""
        self._running = True
        logger.info(
            "ConnectionHealthMonitor started (interval=%ss, max_downtime=%ss)",
            self.check_interval, self.max_downtime,
        )

        while self._running:
            await asyncio.sleep(self.check_interval)
            if not self._running:
                break
            try:
                self.check()
            except Exception as e:
                logger.error("Health check error: %s", e)

    def stop(self) -> None:
        self._running = False

    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> Dict[str, object]:
        """Get monitor status for diagnostics."""
        return {
            "disconnected_for": self.disconnected_for,
            "restart_requested": self._restart_requested,
            "total_checks": self._total_checks,
        }

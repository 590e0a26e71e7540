"""
Device information reported with every heartbeat.
"""

import platform
import socket
from typing import Optional

AGENT_NAME = "kiosk-screen-agent"
AGENT_VERSION = "0.1.0"


def build_user_agent() -> str:
    """
    Build the diagnostic user agent string stored on the screen record.

    Example: "kiosk-screen-agent/0.1.0 (Linux 6.1.0-rpi7; aarch64; Python 3.11.2)"
    """
    return (
        f"{AGENT_NAME}/{AGENT_VERSION} "
        f"({platform.system()} {platform.release()}; "
        f"{platform.machine()}; Python {platform.python_version()})"
    )


def get_system_hostname() -> Optional[str]:
    """Get the OS hostname, or None if it cannot be read."""
    try:
        return socket.gethostname() or None
    except OSError:
        return None

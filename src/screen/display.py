"""
Process-level controls for the screen agent:
- navigators that put an assigned route on the display
- the restarter that re-enters the boot sequence
- status displays for the registering/waiting screens
"""

import asyncio
import html
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Set

from src.common.logger import setup_logger

logger = setup_logger(__name__)

STATUS_REGISTERING = "Registering..."
STATUS_FAILED = "Registration failed"
PAIRING_TITLE = "Screen Setup"
PAIRING_HINT = "Enter this code in the admin panel to assign a display"

# Chromium flags used by the kiosk image launcher
KIOSK_FLAGS: List[str] = [
    "--noerrdialogs",
    "--disable-infobars",
    "--kiosk",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-sync",
    "--disable-translate",
    "--disable-features=TranslateUI",
    "--disable-pinch",
    "--overscroll-history-navigation=0",
    "--check-for-update-interval=31536000",
    "--disable-component-update",
    "--disable-session-crashed-bubble",
    "--autoplay-policy=no-user-gesture-required",
    "--start-fullscreen",
]

BROWSER_STOP_TIMEOUT = 5


def resolve_route(base_url: str, path: str) -> str:
    """Join an assigned route onto the content base URL."""
    if "://" in path:
        return path
    if not path.startswith("/"):
        path = "/" + path
    return base_url.rstrip("/") + path


def _reap(process: subprocess.Popen) -> None:
    """Wait for a terminated browser, killing it if it ignores SIGTERM."""
    try:
        process.wait(timeout=BROWSER_STOP_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning("Browser did not exit, killing it")
        process.kill()
        process.wait()


class ConsoleNavigator:
    """Navigator for headless runs: logs the route instead of showing it."""

    def __init__(self, base_url: str = ""):
        self.base_url = base_url
        self.current_path: Optional[str] = None
        self.current_url: Optional[str] = None

    def navigate(self, path: str) -> None:
        self.current_path = path
        self.open_url(resolve_route(self.base_url, path))

    def open_url(self, url: str) -> None:
        self.current_url = url
        logger.info("Display -> %s", url)

    def close(self) -> None:
        self.current_url = None


class BrowserNavigator:
    """Keeps one fullscreen kiosk browser process on the current route."""

    def __init__(
        self,
        base_url: str,
        browser: str = "chromium",
        flags: Sequence[str] = tuple(KIOSK_FLAGS),
    ):
        """
        Args:
            base_url: Base URL assigned routes are resolved against
            browser: Browser executable
            flags: Command line flags passed before the URL
        """
        self.base_url = base_url
        self.browser = browser
        self.flags = list(flags)
        self.current_path: Optional[str] = None
        self.current_url: Optional[str] = None
        self._process: Optional[subprocess.Popen] = None
        self._reapers: Set[asyncio.Task] = set()

    def navigate(self, path: str) -> None:
        """Show an assigned route, replacing whatever is on screen."""
        self.current_path = path
        self.open_url(resolve_route(self.base_url, path))

    def open_url(self, url: str) -> None:
        self._release(wait=False)
        logger.info("Launching %s -> %s", self.browser, url)
        try:
            self._process = subprocess.Popen([self.browser, *self.flags, url])
        except OSError as e:
            logger.error("Failed to launch browser %s: %s", self.browser, e)
            self._process = None
            return
        self.current_url = url

    def close(self) -> None:
        """Stop the browser process and wait for it to exit (blocking)."""
        self._release(wait=True)

    def _release(self, wait: bool) -> None:
        """
        Terminate the current browser.

        With wait=False inside a running event loop, the process is reaped
        on a worker thread so a browser slow to exit never stalls the loop.
        """
        process, self._process = self._process, None
        self.current_url = None
        if process is None or process.poll() is not None:
            return

        process.terminate()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if wait or loop is None:
            _reap(process)
            return

        task = loop.create_task(asyncio.to_thread(_reap, process))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)


class ProcessRestarter:
    """
    Re-executes the agent with its original command line.

    Used for every forced recovery: deleted record, prolonged push
    disconnect, broadcast reload command.
    """

    def __init__(
        self,
        argv: Optional[List[str]] = None,
        executable: Optional[str] = None,
        before_exec=None,
    ):
        """
        Args:
            argv: Command line to re-execute (default: sys.orig_argv)
            executable: Interpreter path (default: sys.executable)
            before_exec: Callable run just before exec (e.g. stop the browser)
        """
        self._argv = list(argv) if argv else list(sys.orig_argv)
        self._executable = executable or sys.executable
        self._before_exec = before_exec
        self.requested = False
        self.reason: Optional[str] = None

    def restart(self, reason: str) -> None:
        """Replace this process with a fresh copy; later calls are ignored."""
        if self.requested:
            logger.debug("Restart already requested, ignoring: %s", reason)
            return

        self.requested = True
        self.reason = reason
        logger.warning("Restarting screen agent: %s", reason)

        if self._before_exec:
            try:
                self._before_exec()
            except Exception as e:
                logger.error("Error before restart: %s", e)

        for handler in logging.getLogger("src").handlers:
            handler.flush()
        sys.stdout.flush()
        sys.stderr.flush()

        os.execv(self._executable, self._argv)


class ConsoleStatusDisplay:
    """Prints status banners to stdout."""

    def show_status(self, message: str) -> None:
        print("\n" + "=" * 50)
        print(message)
        print("=" * 50 + "\n")

    def show_pairing_code(self, code: str) -> None:
        print("\n" + "=" * 50)
        print(PAIRING_TITLE.upper())
        print("=" * 50)
        print(f"\nPairing code: {code}")
        print(f"\n{PAIRING_HINT}")
        print("\nAwaiting assignment...")
        print("=" * 50 + "\n")

    def show_error(self, message: str) -> None:
        self.show_status(f"{STATUS_FAILED}: {message}")


PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta http-equiv="refresh" content="5">
<title>{title}</title>
<style>
  html, body {{ margin: 0; width: 100vw; height: 100vh; background: #000; overflow: hidden; }}
  body {{ display: flex; flex-direction: column; align-items: center; justify-content: center;
         font-family: 'Bebas Neue', Impact, sans-serif; }}
  .status {{ color: rgba(255,255,255,0.4); font-size: 2vw; }}
  .code {{ color: #f0f0ff; font-size: min(20vw, 25vh); letter-spacing: 0.3em; line-height: 1;
          text-shadow: 0 0 20px rgba(139,92,246,0.8), 0 0 60px rgba(139,92,246,0.4); }}
  .caption {{ color: rgba(255,255,255,0.3); font-size: min(2.5vw, 3vh); letter-spacing: 0.2em;
             text-transform: uppercase; margin-top: 3vh; }}
  .hint {{ position: fixed; bottom: 3vh; color: rgba(255,255,255,0.15);
          font-size: min(1.2vw, 1.5vh); letter-spacing: 0.15em; }}
</style>
</head>
<body>
{body}
</body>
</html>
"""


class BrowserStatusDisplay:
    """Renders status pages to a local HTML file shown in the kiosk browser."""

    def __init__(self, navigator, page_path: str):
        """
        Args:
            navigator: Navigator whose browser shows the page
            page_path: Where to write the HTML file
        """
        self._navigator = navigator
        self.page_path = Path(page_path)

    def _render(self, title: str, body: str) -> None:
        self.page_path.parent.mkdir(parents=True, exist_ok=True)
        self.page_path.write_text(PAGE_TEMPLATE.format(title=html.escape(title), body=body))

        # The page refreshes itself; only launch the browser once
        page_url = self.page_path.resolve().as_uri()
        if self._navigator.current_url != page_url:
            self._navigator.open_url(page_url)

    def show_status(self, message: str) -> None:
        self._render(message, f'<div class="status">{html.escape(message)}</div>')

    def show_pairing_code(self, code: str) -> None:
        body = (
            f'<div class="code">{html.escape(code)}</div>\n'
            '<div class="caption">Awaiting Assignment...</div>\n'
            f'<div class="hint">{html.escape(PAIRING_HINT)}</div>'
        )
        self._render(PAIRING_TITLE, body)

    def show_error(self, message: str) -> None:
        self.show_status(f"{STATUS_FAILED}: {message}")

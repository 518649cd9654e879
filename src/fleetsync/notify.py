"""Best-effort desktop notifications for FleetSync.

On Linux the ``notify-send`` command is used, on macOS ``osascript``.
Elsewhere, or when the helper is missing, notifications are only logged.
A failed notification is logged and never raised, so it cannot mask the
error being reported.
"""

import logging
import platform
import shutil
import subprocess
from typing import List, Optional

logger = logging.getLogger(__name__)

APP_NAME = "FleetSync"


class Notifier:
    """Sends one-off operator notifications.

    With ``silent=True`` nothing is sent; the message is still logged.
    """

    def __init__(self, silent: bool = False, timeout: float = 10.0) -> None:
        self.silent = silent
        self.timeout = timeout
        self.sent: List[str] = []

    def _command(self, title: str, message: str) -> Optional[List[str]]:
        system = platform.system()
        if system == "Linux" and shutil.which("notify-send"):
            return ["notify-send", "--app-name", APP_NAME, title, message]
        if system == "Darwin" and shutil.which("osascript"):
            script = 'display notification "{}" with title "{}"'.format(
                message.replace('"', "'"), title.replace('"', "'")
            )
            return ["osascript", "-e", script]
        return None

    def notify(self, title: str, message: str) -> bool:
        """Deliver a notification; returns True if it was handed to the OS."""
        self.sent.append(f"{title}: {message}")

        if self.silent:
            logger.debug(f"Notification suppressed (silent): {title}: {message}")
            return False

        command = self._command(title, message)
        if command is None:
            logger.debug(f"No notification backend available: {title}: {message}")
            return False

        try:
            subprocess.run(
                command,
                timeout=self.timeout,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=True,
            )
            logger.debug(f"Notification sent: {title}")
            return True
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Notification '{title}' could not be delivered: {e}")
            return False

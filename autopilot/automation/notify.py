"""
Tool: Notifications
Purpose: Fire-and-forget user notifications for queued and finished actions

Notifiers:
    LogNotifier     - structured log event (always available)
    DesktopNotifier - notify-send on Linux, osascript on macOS

Notification failures never propagate to the daemon: use safe_notify().
"""

from __future__ import annotations

import logging
import platform
import shutil
import subprocess
from typing import Protocol

from autopilot.logging_config import get_logger

logger = get_logger(__name__)

NOTIFY_TIMEOUT_SECONDS = 10


class Notifier(Protocol):
    def notify(self, title: str, body: str) -> None: ...


class LogNotifier:
    """Emits notifications as ``notification`` log events."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def notify(self, title: str, body: str) -> None:
        logger.log(self.level, "notification", title=title, body=body)


class DesktopNotifier:
    """Desktop notifications through the platform's command-line notifier."""

    def __init__(self, app_name: str = "Autopilot", system: str | None = None):
        self.app_name = app_name
        self.system = system or platform.system()

    def command(self, title: str, body: str) -> list[str]:
        if self.system == "Darwin":
            script = (
                f"display notification {_applescript_quote(body)} "
                f"with title {_applescript_quote(self.app_name)} "
                f"subtitle {_applescript_quote(title)}"
            )
            return ["osascript", "-e", script]

        if shutil.which("notify-send") is None:
            raise FileNotFoundError("notify-send is not installed")
        return ["notify-send", "--app-name", self.app_name, title, body]

    def notify(self, title: str, body: str) -> None:
        subprocess.run(
            self.command(title, body),
            check=True,
            capture_output=True,
            timeout=NOTIFY_TIMEOUT_SECONDS,
        )


def _applescript_quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def safe_notify(notifier: Notifier, title: str, body: str) -> bool:
    """Send a notification, logging instead of raising on failure."""
    try:
        notifier.notify(title, body)
        return True
    except Exception as e:
        logger.warning("notify_failed", title=title, error=str(e))
        return False

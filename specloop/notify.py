"""
Desktop notification, fired once when every epic is closed.

Uses osascript on macOS and notify-send elsewhere. A missing tool or a
failed call is a warning, never a stop: by the time we notify, the loop
has already been persisted as complete.
"""

from __future__ import annotations

import shutil
import subprocess
import sys
from typing import Protocol

from loguru import logger


class Notifier(Protocol):
    def notify(self, title: str, message: str) -> bool: ...


class DesktopNotifier:
    def __init__(self, platform: str | None = None):
        self.platform = platform or sys.platform

    def command(self, title: str, message: str) -> list[str] | None:
        """The OS command for this platform, or None when no tool is installed."""
        if self.platform == "darwin":
            if not shutil.which("osascript"):
                return None
            script = f"display notification {_applescript_str(message)} with title {_applescript_str(title)}"
            return ["osascript", "-e", script]
        if shutil.which("notify-send"):
            return ["notify-send", title, message]
        return None

    def notify(self, title: str, message: str) -> bool:
        cmd = self.command(title, message)
        if cmd is None:
            logger.warning(f"[NOTIFY] No desktop notifier available on {self.platform}")
            return False
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=10)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"[NOTIFY] {cmd[0]} failed: {e}")
            return False
        if result.returncode != 0:
            logger.warning(f"[NOTIFY] {cmd[0]} exited {result.returncode}: {result.stderr.strip()}")
            return False
        return True


class NullNotifier:
    def notify(self, title: str, message: str) -> bool:
        return False


def _applescript_str(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'

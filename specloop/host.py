"""
Host runtime seam.

The agent runtime hands the loop idle events and accepts two things
back: structured log lines and a new message into the originating
session. ConsoleHost stands in for the runtime on the command line;
RecordingHost keeps everything in memory for tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol

from loguru import logger
from rich.console import Console
from rich.panel import Panel

LogLevel = Literal["info", "warn", "error"]

_LOGURU_LEVELS = {"info": "INFO", "warn": "WARNING", "error": "ERROR"}


class HostRuntime(Protocol):
    def log(self, service: str, level: LogLevel, message: str) -> None: ...

    def send_message(self, session_id: str | None, text: str) -> None: ...


class ConsoleHost:
    """Routes host logs through loguru and prints dispatched instructions."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def log(self, service: str, level: LogLevel, message: str) -> None:
        logger.bind(service=service).log(_LOGURU_LEVELS[level], message)

    def send_message(self, session_id: str | None, text: str) -> None:
        self.console.print(Panel(
            text,
            title=f"Session {session_id or '-'}",
            border_style="bright_green",
            expand=False,
        ))


@dataclass
class LogRecord:
    service: str
    level: LogLevel
    message: str


@dataclass
class SentMessage:
    session_id: str | None
    text: str


@dataclass
class RecordingHost:
    logs: list[LogRecord] = field(default_factory=list)
    messages: list[SentMessage] = field(default_factory=list)

    def log(self, service: str, level: LogLevel, message: str) -> None:
        self.logs.append(LogRecord(service, level, message))

    def send_message(self, session_id: str | None, text: str) -> None:
        self.messages.append(SentMessage(session_id, text))

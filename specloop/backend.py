"""
SPECLOOP ← Beads Integration

Read-only gateway over the task backend. The loop asks six questions
(ready, in progress, epics, blocked, stats, show-by-id) and never
mutates the board itself; mutations are spelled out inside the
instruction it dispatches.

Every query is best-effort. A failed call is a BackendResult carrying
a BackendError, collapsed to an empty list (or placeholder string)
before it leaves the gateway. A backend hiccup costs one benign idle
cycle, never a crash and never an exception reaching the controller.

Usage:
    backend = BeadsBackend(workdir)
    if backend.is_available():
        ready = backend.ready_tasks()
"""

from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

STATS_PLACEHOLDER = "(unable to get stats)"


# ---------------------------------------------------------------------------
# Read-only views
# ---------------------------------------------------------------------------

class Task(BaseModel):
    """A unit of work as the backend reports it."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    title: str = ""
    status: str = "open"
    parent: str | None = None


class Epic(BaseModel):
    """A grouping entity; its title is the OpenSpec change id."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    title: str = ""
    status: str = "open"

    @property
    def is_closed(self) -> bool:
        return self.status == "closed"


class EntityRef(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    title: str = ""


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackendError:
    """Why a backend call produced no usable data."""
    command: str
    reason: str


@dataclass(frozen=True)
class BackendResult(Generic[T]):
    value: T | None = None
    error: BackendError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: T) -> T:
        """Collapse a failure to the default, leaving a debug trace."""
        if self.error is not None:
            logger.debug(f"[BEADS] {self.error.command} failed: {self.error.reason}")
            return default
        return self.value  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Gateway protocol
# ---------------------------------------------------------------------------

class TaskBackend(Protocol):
    def is_available(self) -> bool: ...

    def ready_tasks(self) -> list[Task]: ...

    def in_progress_tasks(self) -> list[Task]: ...

    def epics(self) -> list[Epic]: ...

    def blocked_tasks(self) -> list[Task]: ...

    def stats_summary(self) -> str: ...

    def lookup(self, entity_id: str) -> EntityRef | None: ...


# ---------------------------------------------------------------------------
# Beads CLI
# ---------------------------------------------------------------------------

class BeadsBackend:
    """
    Interface to the `bd` CLI, run from the working directory.

    All list queries use `--json`; `bd stats` is plain text and only
    its first `stats_lines` lines are kept.
    """

    def __init__(
        self,
        workdir: Path,
        binary: str = "bd",
        stats_lines: int = 10,
        timeout: float | None = None,
    ):
        self.workdir = workdir
        self.binary = binary
        self.stats_lines = stats_lines
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        """Is the bd executable on PATH?"""
        return shutil.which(self.binary) is not None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def ready_tasks(self) -> list[Task]:
        return self._query_tasks("ready", "--json").unwrap_or([])

    def in_progress_tasks(self) -> list[Task]:
        return self._query_tasks("list", "--status", "in_progress", "--json").unwrap_or([])

    def epics(self) -> list[Epic]:
        return self._parse_list(self._run_json("list", "--type", "epic", "--json"), Epic, "list --type epic").unwrap_or([])

    def blocked_tasks(self) -> list[Task]:
        return self._query_tasks("blocked", "--json").unwrap_or([])

    def stats_summary(self) -> str:
        result = self._run("stats")
        if not result.ok:
            return result.unwrap_or(STATS_PLACEHOLDER)
        return "\n".join(result.value.split("\n")[: self.stats_lines])

    def lookup(self, entity_id: str) -> EntityRef | None:
        result = self._run_json("show", entity_id, "--json")
        if not result.ok:
            return result.unwrap_or(None)
        payload = result.value
        # Some bd versions wrap `show` output in a single-element list.
        if isinstance(payload, list) and len(payload) == 1:
            payload = payload[0]
        try:
            return EntityRef.model_validate(payload)
        except ValidationError as e:
            return BackendResult(error=BackendError(f"show {entity_id}", f"unexpected payload: {e}")).unwrap_or(None)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _query_tasks(self, *args: str) -> BackendResult[list[Task]]:
        return self._parse_list(self._run_json(*args), Task, " ".join(args[:-1]))

    @staticmethod
    def _parse_list(result: BackendResult[Any], model: type[M], label: str) -> BackendResult[list[M]]:
        """Validate entries one by one; a malformed entry is dropped, its siblings kept in order."""
        if not result.ok:
            return result
        if not isinstance(result.value, list):
            return BackendResult(error=BackendError(label, f"expected a JSON list, got {type(result.value).__name__}"))
        items = []
        for i, raw in enumerate(result.value):
            try:
                items.append(model.model_validate(raw))
            except ValidationError as e:
                logger.debug(f"[BEADS] {label}: skipping entry {i}: {e}")
        return BackendResult(value=items)

    def _run_json(self, *args: str) -> BackendResult[Any]:
        result = self._run(*args)
        if not result.ok:
            return result
        try:
            return BackendResult(value=json.loads(result.value))
        except json.JSONDecodeError as e:
            return BackendResult(error=BackendError(" ".join(args), f"invalid JSON: {e}"))

    def _run(self, *args: str) -> BackendResult[str]:
        """Run a bd command in the working directory, capturing stdout."""
        cmd = [self.binary, *args]
        label = " ".join(cmd)
        logger.debug(f"[BEADS] Running: {label}")
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(self.workdir),
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            return BackendResult(error=BackendError(label, str(e)))

        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()
            return BackendResult(error=BackendError(label, f"exit {proc.returncode}: {detail}"))
        return BackendResult(value=proc.stdout)


# ---------------------------------------------------------------------------
# In-memory fixtures
# ---------------------------------------------------------------------------

@dataclass
class MemoryBackend:
    """Canned backend for tests and dry runs. Queries named in `failing` return defaults."""
    ready: list[Task] = field(default_factory=list)
    in_progress: list[Task] = field(default_factory=list)
    epic_list: list[Epic] = field(default_factory=list)
    blocked: list[Task] = field(default_factory=list)
    stats: str = "Total: 0"
    entities: dict[str, EntityRef] = field(default_factory=dict)
    available: bool = True
    failing: set[str] = field(default_factory=set)
    calls: list[str] = field(default_factory=list)

    def is_available(self) -> bool:
        self.calls.append("is_available")
        return self.available

    def ready_tasks(self) -> list[Task]:
        return self._answer("ready", self.ready, [])

    def in_progress_tasks(self) -> list[Task]:
        return self._answer("in_progress", self.in_progress, [])

    def epics(self) -> list[Epic]:
        return self._answer("epics", self.epic_list, [])

    def blocked_tasks(self) -> list[Task]:
        return self._answer("blocked", self.blocked, [])

    def stats_summary(self) -> str:
        return self._answer("stats", self.stats, STATS_PLACEHOLDER)

    def lookup(self, entity_id: str) -> EntityRef | None:
        return self._answer("lookup", self.entities.get(entity_id), None)

    def _answer(self, query: str, value: Any, default: Any) -> Any:
        self.calls.append(query)
        if query in self.failing:
            result: BackendResult[Any] = BackendResult(error=BackendError(query, "simulated failure"))
        else:
            result = BackendResult(value=list(value) if isinstance(value, list) else value)
        return result.unwrap_or(default)

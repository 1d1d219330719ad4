"""
SPECLOOP State Store

The loop's only durable memory: one JSON record per working directory.
Loaded at the start of an idle signal, mutated in memory, saved before
the handler returns. Exactly one writer at a time (the host delivers
idle events serially), so there is no locking.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from specloop.config_loader import SpecLoopConfig


class LoopState(BaseModel):
    """Persisted loop state. Field names are the on-disk wire format."""
    active: bool = False
    iteration: int = Field(default=0, ge=0)
    max_iterations: int = 0
    current_task: str | None = None
    # Reserved: persisted but never interpreted.
    stuck_count: int = 0
    verify_commands: list[str] = Field(default_factory=list)
    blocked_reason: str | None = None
    stuck_reason: str | None = None

    @property
    def budget_exhausted(self) -> bool:
        """A positive max_iterations is a hard ceiling; zero or less is unbounded."""
        return self.max_iterations > 0 and self.iteration >= self.max_iterations

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, exclude_none=True)


class StateStore:
    """Reads and writes the LoopState record and the progress notes file."""

    def __init__(self, state_file: Path, progress_file: Path | None = None):
        self.state_file = state_file
        self.progress_file = progress_file

    @classmethod
    def for_workdir(cls, workdir: Path, config: SpecLoopConfig | None = None) -> "StateStore":
        config = config or SpecLoopConfig()
        return cls(config.state_path(workdir), config.progress_path(workdir))

    def load(self) -> LoopState | None:
        """Return the persisted state, or None when absent or unreadable."""
        if not self.state_file.exists():
            return None
        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            return LoopState.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.debug(f"[STATE] Ignoring unreadable state {self.state_file}: {e}")
            return None

    def save(self, state: LoopState) -> None:
        """Replace the state file atomically. Errors propagate."""
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.state_file.name}.",
            suffix=".tmp",
            dir=self.state_file.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(state.to_json())
            os.replace(tmp_name, self.state_file)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"[STATE] Saved {self.state_file} (iteration={state.iteration}, active={state.active})")

    def read_progress(self) -> str | None:
        """Progress notes are written by the executor, never by the loop."""
        if self.progress_file is None or not self.progress_file.exists():
            return None
        return self.progress_file.read_text(encoding="utf-8", errors="replace")

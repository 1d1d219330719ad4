from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from specloop.backend import EntityRef, Epic, MemoryBackend, Task
from specloop.config_loader import SpecLoopConfig
from specloop.controller import LoopController
from specloop.host import RecordingHost
from specloop.state import LoopState, StateStore


@dataclass
class RecordingNotifier:
    sent: list[tuple[str, str]] = field(default_factory=list)

    def notify(self, title: str, message: str) -> bool:
        self.sent.append((title, message))
        return True


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore.for_workdir(tmp_path)


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend(
        ready=[Task(id="bd-7", title="Add retry", status="open", parent="bd-epic-1")],
        epic_list=[Epic(id="bd-epic-1", title="add-retries", status="open")],
        entities={"bd-epic-1": EntityRef(id="bd-epic-1", title="add-retries")},
        stats="Total Issues: 4\nOpen: 1\nClosed: 3",
    )


@pytest.fixture
def host() -> RecordingHost:
    return RecordingHost()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def controller(store, backend, host, notifier) -> LoopController:
    return LoopController(
        store=store,
        backend=backend,
        host=host,
        notifier=notifier,
        config=SpecLoopConfig(),
    )


@pytest.fixture
def active_state(store) -> LoopState:
    state = LoopState(active=True, iteration=2, max_iterations=5)
    store.save(state)
    return state

"""
SPECLOOP Controller: the idle handler

It is NOT smart. It is deterministic.

One call per idle signal:
  - Load state (absent or inactive → do nothing)
  - Require the backend binary
  - Enforce the iteration ceiling
  - Snapshot the board (ready, in progress, epics, blocked when needed)
  - Decide: complete, blocked, wait, or dispatch
  - On dispatch: resolve the change, bump the iteration, persist,
    build the instruction, send it to the session

It never schedules itself. The next step happens only when the host
reports idle again.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from loguru import logger

from specloop.backend import BeadsBackend, Epic, Task, TaskBackend
from specloop.config_loader import SpecLoopConfig, load_config
from specloop.event_bus import SESSION_IDLE, HostEvent
from specloop.host import ConsoleHost, HostRuntime, LogLevel
from specloop.instructions import build_instruction
from specloop.notify import DesktopNotifier, Notifier, NullNotifier
from specloop.state import LoopState, StateStore

BACKEND_MISSING_REASON = "backend not installed"
ALL_BLOCKED_REASON = "All tasks blocked"


class Outcome(str, Enum):
    INACTIVE = "inactive"
    DISPATCHING = "dispatching"
    WAITING = "waiting"
    STOPPED_COMPLETE = "stopped_complete"
    STOPPED_BLOCKED = "stopped_blocked"
    STOPPED_MAX_ITERATIONS = "stopped_max_iterations"
    STOPPED_BACKEND_MISSING = "stopped_backend_missing"

    @property
    def is_stop(self) -> bool:
        return self.value.startswith("stopped_")


# ---------------------------------------------------------------------------
# Decision policy (pure)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackendSnapshot:
    """What the board looked like for one idle signal. `blocked` is None when not queried."""
    ready: list[Task] = field(default_factory=list)
    in_progress: list[Task] = field(default_factory=list)
    epics: list[Epic] = field(default_factory=list)
    blocked: list[Task] | None = None

    @property
    def incomplete_epics(self) -> list[Epic]:
        return [e for e in self.epics if not e.is_closed]

    @property
    def board_idle(self) -> bool:
        """Nothing ready and nothing claimed."""
        return not self.ready and not self.in_progress

    @property
    def needs_blocked(self) -> bool:
        return self.board_idle and bool(self.incomplete_epics)


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    state: LoopState | None
    task: Task | None = None
    level: LogLevel = "info"
    message: str = ""
    change_id: str | None = None
    instruction: str | None = None


def preflight(state: LoopState, backend_available: bool, backend_bin: str = "bd") -> Decision | None:
    """Backend and budget gates, checked before the board is queried. None means proceed."""
    if not backend_available:
        return Decision(
            outcome=Outcome.STOPPED_BACKEND_MISSING,
            state=state.model_copy(update={"active": False, "blocked_reason": BACKEND_MISSING_REASON}),
            level="error",
            message=f"OpenSpec loop requires {backend_bin} (Beads). Install: npm install -g @beads/bd",
        )

    if state.budget_exhausted:
        return Decision(
            outcome=Outcome.STOPPED_MAX_ITERATIONS,
            state=state.model_copy(update={"active": False}),
            message=f"Max iterations ({state.max_iterations}) reached. Stopping loop.",
        )

    return None


def decide(state: LoopState, snapshot: BackendSnapshot) -> Decision:
    """
    Termination and selection policy for an active loop.

    Completion is only declared when ready AND in-progress are both
    empty. With epics still open and nothing blocked, the gap is taken
    as backend lag and the loop waits for the next idle signal.
    """
    if snapshot.board_idle:
        if not snapshot.incomplete_epics:
            return Decision(
                outcome=Outcome.STOPPED_COMPLETE,
                state=state.model_copy(update={"active": False}),
            )

        if snapshot.blocked is None:
            raise ValueError("blocked tasks must be queried when the board is idle with open epics")

        if snapshot.blocked:
            return Decision(
                outcome=Outcome.STOPPED_BLOCKED,
                state=state.model_copy(update={"active": False, "stuck_reason": ALL_BLOCKED_REASON}),
                level="warn",
                message=f"{len(snapshot.blocked)} tasks blocked, no ready tasks. Stopping.",
            )

    if not snapshot.ready:
        if snapshot.in_progress:
            message = f"No ready tasks, {len(snapshot.in_progress)} in progress."
        else:
            message = "No work found."
        return Decision(outcome=Outcome.WAITING, state=state, message=message)

    next_task = snapshot.ready[0]
    return Decision(
        outcome=Outcome.DISPATCHING,
        state=state.model_copy(update={
            "iteration": state.iteration + 1,
            "current_task": next_task.id,
        }),
        task=next_task,
    )


def completion_summary(stats: str, progress: str | None) -> str:
    summary = "OpenSpec Loop Complete (Beads)!\n\n"
    summary += f"Beads Summary:\n{stats}\n\n"
    if progress is not None:
        summary += f"Progress:\n{progress}"
    return summary


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class LoopController:
    """
    Owns one working directory's loop.

    The host guarantees idle events arrive one at a time per directory,
    so load → decide → save needs no locking.
    """

    def __init__(
        self,
        store: StateStore,
        backend: TaskBackend,
        host: HostRuntime,
        notifier: Notifier | None = None,
        config: SpecLoopConfig | None = None,
    ):
        self.store = store
        self.backend = backend
        self.host = host
        self.config = config or SpecLoopConfig()
        if notifier is None:
            notifier = DesktopNotifier() if self.config.notifications.enabled else NullNotifier()
        self.notifier = notifier

    @classmethod
    def for_workdir(
        cls,
        workdir: Path,
        config: SpecLoopConfig | None = None,
        host: HostRuntime | None = None,
        notifier: Notifier | None = None,
    ) -> "LoopController":
        workdir = workdir.resolve()
        config = config or load_config(workdir)
        backend = BeadsBackend(
            workdir,
            binary=config.backend.binary,
            stats_lines=config.backend.stats_lines,
            timeout=config.backend.timeout,
        )
        return cls(
            store=StateStore.for_workdir(workdir, config),
            backend=backend,
            host=host or ConsoleHost(),
            notifier=notifier,
            config=config,
        )

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    def handle_event(self, event: HostEvent) -> Decision | None:
        """EventBus subscriber. Only session.idle is acted on."""
        if event.event_type != SESSION_IDLE:
            return None
        return self.on_idle(event.session_id)

    def on_idle(self, session_id: str | None) -> Decision:
        state = self.store.load()
        if state is None or not state.active:
            return Decision(outcome=Outcome.INACTIVE, state=state)

        decision = preflight(state, self.backend.is_available(), self.config.backend.binary)
        if decision is not None:
            return self._stop(decision)

        snapshot = self._snapshot()
        decision = decide(state, snapshot)
        logger.debug(
            f"[LOOP] ready={len(snapshot.ready)} in_progress={len(snapshot.in_progress)} "
            f"open_epics={len(snapshot.incomplete_epics)} → {decision.outcome.value}"
        )

        if decision.outcome is Outcome.STOPPED_COMPLETE:
            return self._complete(decision)
        if decision.outcome.is_stop:
            return self._stop(decision)
        if decision.outcome is Outcome.WAITING:
            self._log(decision.level, decision.message)
            return decision
        return self._dispatch(decision, snapshot, session_id)

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    def _snapshot(self) -> BackendSnapshot:
        snapshot = BackendSnapshot(
            ready=self.backend.ready_tasks(),
            in_progress=self.backend.in_progress_tasks(),
            epics=self.backend.epics(),
        )
        if snapshot.needs_blocked:
            snapshot = replace(snapshot, blocked=self.backend.blocked_tasks())
        return snapshot

    def _stop(self, decision: Decision) -> Decision:
        self._log(decision.level, decision.message)
        self.store.save(decision.state)
        return decision

    def _complete(self, decision: Decision) -> Decision:
        summary = completion_summary(self.backend.stats_summary(), self.store.read_progress())
        decision = replace(decision, message=summary)
        self._stop(decision)
        notifications = self.config.notifications
        self.notifier.notify(notifications.title, notifications.message)
        return decision

    def _dispatch(self, decision: Decision, snapshot: BackendSnapshot, session_id: str | None) -> Decision:
        task = decision.task
        state = decision.state

        # Parent is a weak reference; a dangling id just means no change context.
        change_id = None
        parent_id = task.parent or None
        if parent_id:
            epic = self.backend.lookup(parent_id)
            if epic is not None:
                change_id = epic.title or None

        self.store.save(state)

        change_note = f" ({change_id})" if change_id else ""
        message = (
            f"🔄 Iteration {state.iteration} | Ready: {len(snapshot.ready)} | "
            f"In Progress: {len(snapshot.in_progress)} | Task: {task.id}{change_note}"
        )
        self._log("info", message)

        instruction = build_instruction(
            task,
            change_id,
            parent_id,
            state.verify_commands,
            spec_root=self.config.workspace.spec_root,
            backend_bin=self.config.backend.binary,
        )
        self.host.send_message(session_id, instruction)

        return replace(decision, message=message, change_id=change_id, instruction=instruction)

    def _log(self, level: LogLevel, message: str) -> None:
        self.host.log(self.config.loop.service, level, message)

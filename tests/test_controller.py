import pytest

from specloop.backend import EntityRef, Epic, MemoryBackend, Task
from specloop.config_loader import SpecLoopConfig
from specloop.controller import (
    ALL_BLOCKED_REASON,
    BACKEND_MISSING_REASON,
    BackendSnapshot,
    LoopController,
    Outcome,
    decide,
    preflight,
)
from specloop.event_bus import SESSION_IDLE, EventBus
from specloop.state import LoopState


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

def test_dispatches_first_ready_task_with_change_context(controller, store, host, active_state):
    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.DISPATCHING
    saved = store.load()
    assert saved.iteration == 3
    assert saved.current_task == "bd-7"
    assert saved.active is True

    assert len(host.messages) == 1
    sent = host.messages[0]
    assert sent.session_id == "ses-1"
    assert "Change: add-retries (Epic: bd-epic-1)" in sent.text
    assert "Task: bd-7" in sent.text
    assert decision.change_id == "add-retries"
    assert decision.instruction == sent.text


def test_max_iterations_reached_changes_only_active(controller, store, host, backend):
    state = LoopState(
        active=True,
        iteration=3,
        max_iterations=3,
        current_task="bd-2",
        verify_commands=["make test"],
    )
    store.save(state)

    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.STOPPED_MAX_ITERATIONS
    assert store.load() == state.model_copy(update={"active": False})
    assert host.messages == []
    assert host.logs[-1].level == "info"
    assert "Max iterations (3) reached" in host.logs[-1].message
    assert backend.calls == ["is_available"]


# ---------------------------------------------------------------------------
# Inactive / absent
# ---------------------------------------------------------------------------

def test_absent_state_does_nothing(controller, store, backend, host):
    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.INACTIVE
    assert backend.calls == []
    assert host.logs == [] and host.messages == []
    assert not store.state_file.exists()


def test_inactive_state_is_untouched(controller, store, backend, host):
    store.save(LoopState(active=False, iteration=2, stuck_reason=ALL_BLOCKED_REASON))
    before = store.state_file.read_bytes()

    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.INACTIVE
    assert backend.calls == []
    assert host.logs == [] and host.messages == []
    assert store.state_file.read_bytes() == before


def test_corrupt_state_is_treated_as_inactive(controller, store, backend):
    store.state_file.parent.mkdir(parents=True)
    store.state_file.write_text("{")

    assert controller.on_idle("ses-1").outcome is Outcome.INACTIVE
    assert backend.calls == []


# ---------------------------------------------------------------------------
# Stops
# ---------------------------------------------------------------------------

def test_backend_missing_deactivates_with_reason(controller, store, backend, host, active_state):
    backend.available = False

    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.STOPPED_BACKEND_MISSING
    saved = store.load()
    assert saved.active is False
    assert saved.blocked_reason == BACKEND_MISSING_REASON
    assert saved.iteration == 2
    assert host.logs[-1].level == "error"
    assert host.logs[-1].service == "openspec-loop"
    assert host.messages == []
    assert backend.calls == ["is_available"]


def test_backend_missing_checked_before_budget(controller, store, backend):
    store.save(LoopState(active=True, iteration=5, max_iterations=5))
    backend.available = False

    assert controller.on_idle("ses-1").outcome is Outcome.STOPPED_BACKEND_MISSING


def test_unbounded_budget_keeps_dispatching(controller, store, host):
    store.save(LoopState(active=True, iteration=500, max_iterations=0))

    assert controller.on_idle("ses-1").outcome is Outcome.DISPATCHING
    assert store.load().iteration == 501


def test_completion_stops_and_notifies_once(controller, store, backend, host, notifier, active_state):
    backend.ready = []
    backend.epic_list = [Epic(id="bd-epic-1", title="add-retries", status="closed")]

    first = controller.on_idle("ses-1")
    second = controller.on_idle("ses-1")

    assert first.outcome is Outcome.STOPPED_COMPLETE
    assert second.outcome is Outcome.INACTIVE
    assert store.load().active is False
    assert notifier.sent == [("OpenCode", "All Beads epics complete!")]
    assert host.messages == []
    assert "blocked" not in backend.calls


def test_completion_summary_includes_stats_and_progress(controller, store, backend, host, active_state):
    backend.ready = []
    backend.epic_list = []
    store.progress_file.write_text("Iteration 1: bd-1 done\n")

    controller.on_idle("ses-1")

    summary = host.logs[-1].message
    assert summary.startswith("OpenSpec Loop Complete (Beads)!\n\n")
    assert "Beads Summary:\nTotal Issues: 4\nOpen: 1\nClosed: 3\n\n" in summary
    assert summary.endswith("Progress:\nIteration 1: bd-1 done\n")


def test_completion_summary_without_progress_file(controller, backend, host, active_state):
    backend.ready = []
    backend.epic_list = []
    backend.failing = {"stats"}

    controller.on_idle("ses-1")

    assert host.logs[-1].message == "OpenSpec Loop Complete (Beads)!\n\nBeads Summary:\n(unable to get stats)\n\n"


def test_undecodable_progress_file_still_completes(controller, store, backend, host, notifier, active_state):
    backend.ready = []
    backend.epic_list = []
    store.progress_file.write_bytes(b"notes \xff\xfe\n")

    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.STOPPED_COMPLETE
    assert store.load().active is False
    assert host.logs[-1].message.endswith("Progress:\nnotes \ufffd\ufffd\n")
    assert len(notifier.sent) == 1


def test_all_blocked_stops(controller, store, backend, host, notifier, active_state):
    backend.ready = []
    backend.blocked = [Task(id="bd-8", title="Needs bd-7"), Task(id="bd-9", title="Needs bd-8")]

    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.STOPPED_BLOCKED
    saved = store.load()
    assert saved.active is False
    assert saved.stuck_reason == ALL_BLOCKED_REASON
    assert host.logs[-1].level == "warn"
    assert host.logs[-1].message == "2 tasks blocked, no ready tasks. Stopping."
    assert host.messages == []
    assert notifier.sent == []


# ---------------------------------------------------------------------------
# Waiting
# ---------------------------------------------------------------------------

def test_waits_while_work_in_progress(controller, store, backend, host, active_state):
    backend.ready = []
    backend.in_progress = [Task(id="bd-5", title="Being done", status="in_progress")]
    before = store.state_file.read_bytes()

    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.WAITING
    assert host.logs[-1].message == "No ready tasks, 1 in progress."
    assert host.messages == []
    assert store.state_file.read_bytes() == before
    assert "blocked" not in backend.calls


def test_open_epics_without_blocked_tasks_wait_for_next_signal(controller, store, backend, host, active_state):
    backend.ready = []
    before = store.state_file.read_bytes()

    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.WAITING
    assert host.logs[-1].message == "No work found."
    assert store.state_file.read_bytes() == before
    assert store.load().active is True


def test_backend_failures_never_raise(controller, store, backend, host, active_state):
    backend.failing = {"ready", "in_progress", "epics", "blocked"}

    decision = controller.on_idle("ses-1")

    # Empty everything reads as "all epics closed": the documented cost of
    # degrading failures to empty lists.
    assert decision.outcome is Outcome.STOPPED_COMPLETE


def test_ready_failure_with_open_epics_waits(controller, store, backend, host, active_state):
    backend.failing = {"ready"}

    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.WAITING
    assert store.load().active is True


# ---------------------------------------------------------------------------
# Dispatch details
# ---------------------------------------------------------------------------

def test_dispatch_ignores_in_progress_when_ready_exists(controller, store, backend, host, active_state):
    backend.in_progress = [Task(id="bd-5", title="Other")]

    assert controller.on_idle("ses-1").outcome is Outcome.DISPATCHING
    assert "In Progress: 1 | Task: bd-7 (add-retries)" in host.logs[-1].message


def test_dispatch_without_parent_has_no_change_context(controller, store, backend, host, active_state):
    backend.ready = [Task(id="bd-11", title="Loose task")]

    decision = controller.on_idle("ses-1")

    assert decision.change_id is None
    assert "Change:" not in host.messages[0].text
    assert "lookup" not in backend.calls
    assert host.logs[-1].message.endswith("Task: bd-11")


def test_dangling_parent_dispatches_without_change(controller, store, backend, host, active_state):
    backend.entities = {}

    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.DISPATCHING
    assert decision.change_id is None
    assert "openspec/changes/<change-id>/tasks.md" in host.messages[0].text
    assert store.load().current_task == "bd-7"


def test_state_is_saved_before_the_instruction_is_sent(store, backend, active_state):
    seen = []

    class SnoopingHost:
        def log(self, service, level, message):
            pass

        def send_message(self, session_id, text):
            seen.append(store.load())

    LoopController(store, backend, SnoopingHost(), notifier=None, config=SpecLoopConfig()).on_idle("ses-1")

    assert seen[0].iteration == 3
    assert seen[0].current_task == "bd-7"


def test_verify_commands_reach_the_instruction(controller, store, host):
    store.save(LoopState(active=True, verify_commands=["pytest", "ruff check ."]))

    controller.on_idle("ses-1")

    assert "pytest && ruff check ." in host.messages[0].text


def test_stuck_count_round_trips_untouched(controller, store):
    store.save(LoopState(active=True, stuck_count=4))

    controller.on_idle("ses-1")

    assert store.load().stuck_count == 4


def test_repeated_idles_walk_the_ready_queue(controller, store, backend, host):
    store.save(LoopState(active=True, max_iterations=2))
    backend.ready = [Task(id="bd-1", title="One"), Task(id="bd-2", title="Two")]

    controller.on_idle("ses-1")
    backend.ready = backend.ready[1:]
    controller.on_idle("ses-1")
    third = controller.on_idle("ses-1")

    assert [m.text.split("\n")[0] for m in host.messages] == [
        "OpenSpec Apply (Beads) | Task: bd-1",
        "OpenSpec Apply (Beads) | Task: bd-2",
    ]
    assert third.outcome is Outcome.STOPPED_MAX_ITERATIONS
    assert store.load().iteration == 2


def test_config_drives_service_and_spec_root(store, backend, host, notifier, active_state):
    config = SpecLoopConfig.model_validate({
        "loop": {"service": "my-loop"},
        "workspace": {"spec_root": "specs"},
    })
    LoopController(store, backend, host, notifier, config).on_idle("ses-1")

    assert host.logs[-1].service == "my-loop"
    assert "Spec files: specs/add-retries/" in host.messages[0].text


# ---------------------------------------------------------------------------
# Event delivery
# ---------------------------------------------------------------------------

def test_only_idle_events_are_handled(controller, backend, host, active_state):
    bus = EventBus()
    results = []
    bus.subscribe(lambda e: results.append(controller.handle_event(e)))

    bus.emit("session.updated", session_id="ses-1")
    bus.emit(SESSION_IDLE, session_id="ses-1")

    assert results[0] is None
    assert results[1].outcome is Outcome.DISPATCHING
    assert host.messages[0].session_id == "ses-1"


# ---------------------------------------------------------------------------
# Pure policy
# ---------------------------------------------------------------------------

def test_preflight_passes_when_available_and_under_budget():
    assert preflight(LoopState(active=True, iteration=1, max_iterations=2), True) is None


def test_preflight_names_the_binary():
    decision = preflight(LoopState(active=True), False, backend_bin="beads")

    assert "requires beads" in decision.message


def test_decide_requires_blocked_query_when_epics_open():
    snapshot = BackendSnapshot(epics=[Epic(id="e", title="c", status="open")])

    assert snapshot.needs_blocked
    with pytest.raises(ValueError):
        decide(LoopState(active=True), snapshot)


def test_decide_does_not_mutate_input_state():
    state = LoopState(active=True, iteration=1)
    snapshot = BackendSnapshot(ready=[Task(id="bd-1", title="One")])

    decision = decide(state, snapshot)

    assert state.iteration == 1 and state.current_task is None
    assert decision.state.iteration == 2
    assert decision.task.id == "bd-1"


def test_single_empty_ready_list_never_completes():
    snapshot = BackendSnapshot(in_progress=[Task(id="bd-1", title="One")])

    decision = decide(LoopState(active=True), snapshot)

    assert decision.outcome is Outcome.WAITING
    assert decision.state.active is True


def test_memory_fixture_is_isolated():
    # fixtures build fresh backends; a mutated list must not leak into answers
    backend = MemoryBackend(ready=[Task(id="bd-1", title="One")])
    backend.ready_tasks().clear()

    assert [t.id for t in backend.ready_tasks()] == ["bd-1"]


def test_lookup_failure_dispatches_without_change(controller, backend, host, active_state):
    backend.failing = {"lookup"}

    decision = controller.on_idle("ses-1")

    assert decision.outcome is Outcome.DISPATCHING
    assert decision.change_id is None


def test_epic_title_resolves_change(controller, backend, host, active_state):
    backend.entities = {"bd-epic-1": EntityRef(id="bd-epic-1", title="rework-auth")}

    controller.on_idle("ses-1")

    assert "Change: rework-auth (Epic: bd-epic-1)" in host.messages[0].text

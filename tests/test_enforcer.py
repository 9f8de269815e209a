from pathlib import Path

from gateflow.enforcer import WorkflowEnforcer
from gateflow.gates import PHASE_ORDER
from gateflow.state import SessionRegistry, StateStore


def _enforcer(tmp_path: Path) -> WorkflowEnforcer:
    store = StateStore(tmp_path / "data", tmp_path / "scratch")
    return WorkflowEnforcer(store, SessionRegistry(store))


def _touch(enforcer: WorkflowEnforcer, path: Path, stamp: str) -> None:
    state = enforcer.store.read_state(path)
    assert state is not None
    state.updated_at = stamp
    assert enforcer.store.write_state(path, state)


def test_no_workflow_allows_completion(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)

    result = enforcer.check_completion("ses-1")

    assert result.can_complete is True
    assert result.reason == "No active workflow"
    assert enforcer.workflow_context() is None
    assert enforcer.get_state("ses-1") == {"active": False}


def test_pending_gates_block_completion(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)
    entry = enforcer.store.create_workflow("feature", workflow_id="wf-1")
    assert entry is not None

    result = enforcer.check_completion("ses-1")

    assert result.can_complete is False
    assert [gate.name for gate in result.pending_gates] == list(PHASE_ORDER)
    assert "Next: implementation" in result.reason
    assert "(Block 1/5)" in result.reason


def test_safety_valve_after_five_blocks(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)
    entry = enforcer.store.create_workflow("feature", workflow_id="wf-1")
    assert entry is not None

    outcomes = []
    for index in range(5):
        _touch(enforcer, entry.path, f"2026-01-01T00:00:0{index}.000+00:00")
        outcomes.append(enforcer.check_completion("ses-1").can_complete)

    assert outcomes == [False, False, False, False, True]
    assert enforcer.check_completion("ses-1").can_complete is False


def test_stale_valve_after_unchanged_checks(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)
    assert enforcer.store.create_workflow("feature", workflow_id="wf-1") is not None

    outcomes = [enforcer.check_completion("ses-1") for _ in range(4)]

    assert [result.can_complete for result in outcomes] == [False, False, False, True]
    assert outcomes[-1].reason == "Staleness detected, allowing completion"


def test_all_gates_passed_allows_completion(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)
    entry = enforcer.store.create_workflow("feature", workflow_id="wf-1")
    assert entry is not None
    enforcer.bind_session("ses-1", entry.path)

    for gate in PHASE_ORDER:
        update = enforcer.update_gate("ses-1", gate, "passed", "bot")
        assert update.updated is True

    result = enforcer.check_completion("ses-1")
    assert result.can_complete is True
    assert result.reason == "All mandatory gates passed"
    assert enforcer.idle_advisory("ses-1") == []


def test_update_gate_refuses_illegal_moves(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)
    assert enforcer.store.create_workflow("feature", workflow_id="wf-1") is not None

    assert enforcer.update_gate("ses-1", "planning", "passed", "architect").updated is True
    refused = enforcer.update_gate("ses-1", "planning", "failed", "architect")
    unknown = enforcer.update_gate("ses-1", "planning", "maybe")

    assert refused.updated is False
    assert "cannot move from passed to failed" in refused.message
    assert unknown.updated is False


def test_pass_resets_block_counter(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)
    entry = enforcer.store.create_workflow("feature", workflow_id="wf-1")
    assert entry is not None

    for index in range(4):
        _touch(enforcer, entry.path, f"2026-01-01T00:00:0{index}.000+00:00")
        assert enforcer.check_completion("ses-1").can_complete is False
    enforcer.update_gate("ses-1", "planning", "passed", "architect")

    result = enforcer.check_completion("ses-1")
    assert result.can_complete is False
    assert "(Block 1/5)" in result.reason


def test_bind_session_writes_binding_and_marker(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)
    first = enforcer.store.create_workflow("feature", workflow_id="wf-a")
    second = enforcer.store.create_workflow("bugfix", workflow_id="wf-b")
    assert first is not None and second is not None

    assert enforcer.bind_session("ses-1", first.path) is True

    binding = enforcer.registry.read_binding("ses-1")
    assert binding is not None and binding.workflow_id == "wf-a"
    assert enforcer.registry.marker_path("ses-1").exists()
    assert enforcer.get_state("ses-1")["workflow_id"] == "wf-a"


def test_get_state_reports_exhausted_gates(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)
    assert enforcer.store.create_workflow("feature", mode="eco", workflow_id="wf-1") is not None
    enforcer.update_gate("ses-1", "security_review", "in_progress", "security")
    enforcer.update_gate("ses-1", "security_review", "failed", "security")
    enforcer.update_gate("ses-1", "security_review", "in_progress", "security")
    enforcer.update_gate("ses-1", "security_review", "failed", "security")

    summary = enforcer.get_state("ses-1")

    assert summary["active"] is True
    assert summary["mode"] == "eco"
    assert summary["gates"]["security_review"] == {"status": "failed", "iteration": 1}
    assert summary["exhausted"] == ["security_review"]
    assert "security_review" in summary["pending"]


def test_workflow_context_and_idle_advisory(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)
    assert enforcer.store.create_workflow("e2e", mode="turbo", workflow_id="wf-1") is not None

    context = enforcer.workflow_context("ses-1")

    assert context is not None
    assert "Workflow: wf-1 (e2e)" in context
    assert "Mode: turbo" in context
    assert "Phase: setup" in context
    assert "Next phase: e2e_exploration" in context
    assert "Preferred model tier: low" in context
    assert enforcer.idle_advisory("ses-1")[0] == "setup"


def test_observe_message_detects_verdicts(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)

    assert enforcer.observe_message("ses-1", "Review done. verdict: pass") is True
    assert enforcer.observe_message("ses-1", "still working") is False


def test_guard_counters_survive_a_new_enforcer(tmp_path: Path) -> None:
    assert _enforcer(tmp_path).store.create_workflow("feature", workflow_id="wf-1") is not None

    outcomes = [_enforcer(tmp_path).check_completion("ses-1").can_complete for _ in range(4)]

    assert outcomes == [False, False, False, True]
    assert not _enforcer(tmp_path).registry.guard_path("ses-1").exists()


def test_unreadable_guard_file_starts_over(tmp_path: Path) -> None:
    enforcer = _enforcer(tmp_path)
    assert enforcer.store.create_workflow("feature", workflow_id="wf-1") is not None
    guard = enforcer.registry.guard_path("ses-1")
    guard.parent.mkdir(parents=True, exist_ok=True)
    guard.write_text('{"blocks": "many"}', encoding="utf-8")

    result = enforcer.check_completion("ses-1")

    assert result.can_complete is False
    assert "(Block 1/5)" in result.reason

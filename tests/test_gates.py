from datetime import UTC, datetime

import pytest

from gateflow.config import GateflowConfig
from gateflow.gates import (
    E2E_PHASE_ORDER,
    PHASE_ORDER,
    GateTransitionError,
    all_mandatory_gates_passed,
    get_exhausted_gates,
    get_gate_for_agent,
    get_next_phase,
    get_pending_gates,
    get_preferred_tier,
    initial_state,
    is_tier_forbidden,
    max_iterations_for,
    phase_order_for,
    transition_gate,
)
from gateflow.models import GateState, WorkflowPhase, WorkflowState, WorkflowStateError


def _state_with(gates: dict[str, GateState]) -> WorkflowState:
    return WorkflowState(
        workflow_id="wf",
        workflow_type="custom",
        phase=WorkflowPhase(current="a", remaining=[]),
        gates=gates,
    )


def test_completion_is_a_function_of_gates() -> None:
    state = _state_with(
        {
            "a": GateState(status="passed"),
            "b": GateState(status="skipped"),
            "c": GateState(status="passed"),
        }
    )
    assert all_mandatory_gates_passed(state) is True

    state.gates["c"] = GateState(status="failed", iteration=2)

    assert all_mandatory_gates_passed(state) is False
    pending = get_pending_gates(state)
    assert [gate.to_dict() for gate in pending] == [
        {"name": "c", "status": "failed", "iteration": 2}
    ]


def test_completion_edge_cases() -> None:
    assert all_mandatory_gates_passed(None) is False
    assert all_mandatory_gates_passed(_state_with({})) is True
    assert get_pending_gates(None) == []
    assert get_next_phase(None) is None


def test_pending_gates_follow_canonical_order() -> None:
    state = initial_state("wf", "feature")
    state.gates = {
        "documentation": GateState(),
        "tests": GateState(status="in_progress"),
        "planning": GateState(status="passed"),
        "code_review": GateState(status="failed", iteration=1),
        "performance": GateState(),
    }

    names = [gate.name for gate in get_pending_gates(state)]

    assert names == ["code_review", "tests", "documentation", "performance"]


def test_phase_order_selection() -> None:
    assert phase_order_for("feature") == PHASE_ORDER
    assert phase_order_for("E2E") == E2E_PHASE_ORDER
    state = initial_state("wf", "bugfix")
    assert state.phase.current == "planning"
    assert get_next_phase(state) == "implementation"
    assert list(state.gates) == list(PHASE_ORDER)


def test_agent_gate_mapping() -> None:
    assert get_gate_for_agent("reviewer-deep") == "code_review"
    assert get_gate_for_agent("security-lite") == "security_review"
    assert get_gate_for_agent("e2e-reviewer") == "e2e_validation"
    assert get_gate_for_agent("perf-lite") == "performance"
    assert get_gate_for_agent("poet") is None


def test_tier_policy() -> None:
    assert is_tier_forbidden("eco", "high") is True
    assert is_tier_forbidden("turbo", "high") is True
    assert is_tier_forbidden("turbo", "mid") is False
    assert is_tier_forbidden("thorough", "high") is False
    assert is_tier_forbidden("mystery", "high") is False
    assert get_preferred_tier("eco") == "low"
    assert get_preferred_tier("swarm") == "mid"
    assert get_preferred_tier("mystery") == "mid"


def test_passing_gates_advances_phase_to_completed() -> None:
    state = initial_state("wf", "feature")
    for gate in PHASE_ORDER:
        state = transition_gate(state, gate, "passed", agent_type="bot")

    assert state.phase.current == "completed"
    assert state.phase.completed == list(PHASE_ORDER)
    assert state.phase.remaining == []
    assert all_mandatory_gates_passed(state) is True
    assert len(state.agent_log) == len(PHASE_ORDER)


def test_passing_a_later_gate_keeps_current_phase() -> None:
    state = initial_state("wf", "feature")

    state = transition_gate(state, "tests", "skipped")

    assert state.phase.current == "planning"
    assert "tests" in state.phase.completed
    assert "tests" not in state.phase.remaining


def test_transition_does_not_mutate_input() -> None:
    state = initial_state("wf", "feature")

    updated = transition_gate(state, "planning", "in_progress")

    assert state.gates["planning"].status == "pending"
    assert state.agent_log == []
    assert updated.gates["planning"].status == "in_progress"


def test_retry_counts_iterations_and_new_content_resets() -> None:
    moment = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)
    state = initial_state("wf", "feature")
    state = transition_gate(state, "code_review", "in_progress", now=moment)
    state = transition_gate(state, "code_review", "failed", agent_type="reviewer")
    state = transition_gate(state, "code_review", "in_progress")
    state = transition_gate(state, "code_review", "failed")
    state = transition_gate(state, "code_review", "in_progress")

    assert state.gates["code_review"].iteration == 2

    state = transition_gate(state, "code_review", "failed")
    state = transition_gate(state, "code_review", "in_progress", new_content=True)

    assert state.gates["code_review"].iteration == 0
    first = state.agent_log[0]
    assert first.timestamp == "2026-05-01T12:00:00.000+00:00"
    assert state.agent_log[1].agent_type == "reviewer"
    assert state.agent_log[1].verdict == "failed"


@pytest.mark.parametrize(
    ("start", "target"),
    [
        ("passed", "failed"),
        ("passed", "in_progress"),
        ("skipped", "pending"),
        ("failed", "passed"),
        ("in_progress", "pending"),
    ],
)
def test_illegal_transitions_raise(start: str, target: str) -> None:
    state = _state_with({"a": GateState(status=start)})  # type: ignore[arg-type]

    with pytest.raises(GateTransitionError):
        transition_gate(state, "a", target)  # type: ignore[arg-type]


def test_same_status_is_idempotent_but_logged() -> None:
    state = _state_with({"a": GateState(status="failed", iteration=1)})

    updated = transition_gate(state, "a", "failed", agent_type="reviewer")

    assert updated.gates["a"] == GateState(status="failed", iteration=1)
    assert len(updated.agent_log) == 1


def test_unknown_gate_is_created_on_transition() -> None:
    state = initial_state("wf", "feature")

    updated = transition_gate(state, "documentation", "in_progress", agent_type="doc-writer")

    assert updated.gates["documentation"].status == "in_progress"


def test_invalid_records_are_rejected_at_construction() -> None:
    with pytest.raises(WorkflowStateError):
        GateState(status="done")  # type: ignore[arg-type]
    with pytest.raises(WorkflowStateError):
        GateState(iteration=-1)
    with pytest.raises(WorkflowStateError):
        WorkflowPhase(current="a", completed=["a"])
    with pytest.raises(WorkflowStateError):
        WorkflowPhase(current="a", completed=["b"], remaining=["b", "c"])


def test_exhausted_gates_use_mode_limits() -> None:
    config = GateflowConfig.default()
    state = initial_state("wf", "feature", mode="eco")
    state.gates["security_review"] = GateState(status="failed", iteration=1)
    state.gates["code_review"] = GateState(status="failed", iteration=1)

    eco = config.mode_settings("eco")
    thorough = config.mode_settings("thorough")

    assert max_iterations_for("security_review", eco) == 1
    assert max_iterations_for("tests", thorough) == 5
    assert [gate.name for gate in get_exhausted_gates(state, eco)] == ["security_review"]
    assert get_exhausted_gates(state, thorough) == []

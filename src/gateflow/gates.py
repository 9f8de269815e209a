"""Gate ordering, completion checks, and mode policy.

Everything here is a pure function of a ``WorkflowState`` (or of a mode
name); persistence happens elsewhere through ``StateStore.update_state``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from gateflow.config import ModeSettings
from gateflow.models import (
    PHASE_COMPLETE,
    AgentLogEntry,
    GateState,
    GateStatus,
    ModelTier,
    WorkflowMode,
    WorkflowPhase,
    WorkflowState,
)

PHASE_ORDER: tuple[str, ...] = (
    "planning",
    "implementation",
    "code_review",
    "security_review",
    "tests",
    "quality_gate",
    "completion_guard",
)

E2E_PHASE_ORDER: tuple[str, ...] = (
    "setup",
    "e2e_exploration",
    "e2e_generation",
    "e2e_validation",
    "quality_gate",
    "completion_guard",
)

E2E_WORKFLOW_TYPES = frozenset({"e2e", "e2e-testing", "exploration"})

AGENT_GATE_MAP: dict[str, str] = {
    "architect": "planning",
    "architect-lite": "planning",
    "executor": "implementation",
    "executor-lite": "implementation",
    "reviewer": "code_review",
    "reviewer-lite": "code_review",
    "reviewer-deep": "code_review",
    "security": "security_review",
    "security-lite": "security_review",
    "security-deep": "security_review",
    "test-writer": "tests",
    "quality-gate": "quality_gate",
    "completion-guard": "completion_guard",
    "perf-reviewer": "performance",
    "perf-lite": "performance",
    "doc-writer": "documentation",
    "codebase-analyzer": "codebase_analysis",
    "explorer": "exploration",
    "e2e-explorer": "e2e_exploration",
    "e2e-generator": "e2e_generation",
    "e2e-reviewer": "e2e_validation",
}


@dataclass(frozen=True, slots=True)
class TierConstraints:
    forbidden: frozenset[str]
    preferred: ModelTier
    description: str = ""


TIER_CONSTRAINTS: dict[str, TierConstraints] = {
    "eco": TierConstraints(frozenset({"high"}), "low", "Budget-conscious, low tier only"),
    "turbo": TierConstraints(frozenset({"high"}), "low", "Speed-first, no high tier"),
    "standard": TierConstraints(frozenset(), "mid", "Balanced, mid tier default"),
    "thorough": TierConstraints(frozenset(), "mid", "Quality-first, high tier for reviews"),
    "swarm": TierConstraints(frozenset(), "mid", "Parallel execution, high tier for validation"),
}

DEFAULT_TIER: ModelTier = "mid"

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"in_progress", "passed", "failed", "skipped"}),
    "in_progress": frozenset({"passed", "failed", "skipped"}),
    "failed": frozenset({"in_progress", "skipped"}),
    "passed": frozenset(),
    "skipped": frozenset(),
}


class GateTransitionError(ValueError):
    """Raised when a gate is moved along an edge its lifecycle does not allow."""


@dataclass(frozen=True, slots=True)
class PendingGate:
    name: str
    status: GateStatus
    iteration: int

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "status": self.status, "iteration": self.iteration}


def phase_order_for(workflow_type: str) -> tuple[str, ...]:
    if workflow_type.lower() in E2E_WORKFLOW_TYPES:
        return E2E_PHASE_ORDER
    return PHASE_ORDER


def initial_state(
    workflow_id: str,
    workflow_type: str,
    *,
    mode: str = "standard",
    description: str = "",
) -> WorkflowState:
    order = phase_order_for(workflow_type)
    return WorkflowState(
        workflow_id=workflow_id,
        workflow_type=workflow_type,
        phase=WorkflowPhase(current=order[0], completed=[], remaining=list(order[1:])),
        gates={name: GateState() for name in order},
        mode=WorkflowMode(current=mode),
        description=description,
    )


def all_mandatory_gates_passed(state: WorkflowState | None) -> bool:
    if state is None:
        return False
    return all(gate.finished for gate in state.gates.values())


def get_pending_gates(state: WorkflowState | None) -> list[PendingGate]:
    if state is None:
        return []
    order = phase_order_for(state.workflow_type)
    rank = {name: index for index, name in enumerate(order)}
    names = sorted(
        state.gates,
        key=lambda name: (0, rank[name]) if name in rank else (1, 0),
    )
    return [
        PendingGate(name=name, status=state.gates[name].status, iteration=state.gates[name].iteration)
        for name in names
        if not state.gates[name].finished
    ]


def get_next_phase(state: WorkflowState | None) -> str | None:
    if state is None or not state.phase.remaining:
        return None
    return state.phase.remaining[0]


def get_gate_for_agent(agent_type: str) -> str | None:
    return AGENT_GATE_MAP.get(agent_type)


def is_tier_forbidden(mode: str, tier: str) -> bool:
    constraints = TIER_CONSTRAINTS.get(mode)
    if constraints is None:
        return False
    return tier in constraints.forbidden


def get_preferred_tier(mode: str) -> ModelTier:
    constraints = TIER_CONSTRAINTS.get(mode)
    return constraints.preferred if constraints else DEFAULT_TIER


def max_iterations_for(gate: str, settings: ModeSettings) -> int:
    mapping = {
        "code_review": settings.max_review_iterations,
        "security_review": settings.max_security_iterations,
        "quality_gate": settings.max_quality_gate_iterations,
        "completion_guard": settings.max_completion_guard_iterations,
    }
    return max(1, int(mapping.get(gate, settings.default_max_iterations)))


def get_exhausted_gates(state: WorkflowState | None, settings: ModeSettings) -> list[PendingGate]:
    """Failed gates that used up their retries and need escalation."""
    return [
        gate
        for gate in get_pending_gates(state)
        if gate.status == "failed" and gate.iteration >= max_iterations_for(gate.name, settings)
    ]


def _advance_phase(phase: WorkflowPhase, gate: str) -> None:
    if gate not in phase.completed:
        phase.completed.append(gate)
    if gate in phase.remaining:
        phase.remaining.remove(gate)
    if phase.current == gate:
        if phase.remaining:
            phase.current = phase.remaining.pop(0)
        else:
            phase.current = PHASE_COMPLETE


def transition_gate(
    state: WorkflowState,
    gate: str,
    status: GateStatus,
    *,
    agent_type: str = "unknown",
    agent_session_id: str | None = None,
    new_content: bool = False,
    now: datetime | None = None,
) -> WorkflowState:
    """Return a copy of ``state`` with ``gate`` moved to ``status``.

    ``failed -> in_progress`` counts as a retry and bumps the iteration,
    unless ``new_content`` says the gate is being re-run on fresh input, in
    which case the counter starts over at zero. Finishing a gate with
    ``passed`` or ``skipped`` retires it from the remaining phases.

    Raises:
        GateTransitionError: if the lifecycle does not allow the move.
    """
    updated = state.copy()
    current = updated.gates.get(gate)
    if current is None:
        current = GateState()
        updated.gates[gate] = current

    previous = current.status
    if previous != status:
        if status not in _ALLOWED_TRANSITIONS[previous]:
            raise GateTransitionError(
                f"Gate '{gate}' cannot move from {previous} to {status}."
            )
        if previous == "failed" and status == "in_progress":
            current.iteration = 0 if new_content else current.iteration + 1
        current.status = status
        current.validate()

    if status in {"passed", "skipped"}:
        _advance_phase(updated.phase, gate)
        updated.phase.validate()

    timestamp = (now or datetime.now(UTC)).isoformat(timespec="milliseconds")
    updated.agent_log.append(
        AgentLogEntry(
            timestamp=timestamp,
            agent_type=agent_type,
            gate=gate,
            verdict=status,
            iteration=current.iteration,
            agent_session_id=agent_session_id,
        )
    )
    return updated

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from gateflow.config import GateflowConfig
from gateflow.gates import (
    GateTransitionError,
    PendingGate,
    all_mandatory_gates_passed,
    get_exhausted_gates,
    get_next_phase,
    get_pending_gates,
    get_preferred_tier,
    transition_gate,
)
from gateflow.models import GATE_STATUSES, WorkflowState
from gateflow.state.sessions import SessionRegistry
from gateflow.state.store import StateStore

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_BLOCKS = 5
MAX_UNCHANGED_CHECKS = 3
VERDICT_MARKERS = ("VERDICT: PASS", "VERDICT: FAIL", "APPROVED", "REJECTED")


@dataclass(slots=True)
class CompletionCheck:
    can_complete: bool
    pending_gates: list[PendingGate] = field(default_factory=list)
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_complete": self.can_complete,
            "pending_gates": [gate.to_dict() for gate in self.pending_gates],
            "reason": self.reason,
        }


@dataclass(slots=True)
class GateUpdate:
    updated: bool
    message: str
    state: WorkflowState | None = None


class WorkflowEnforcer:
    """Keeps agents from finishing a workflow whose gates are still open.

    A completion check blocks while gates are pending, with two escape
    hatches so a session can never be trapped: after five consecutive blocks,
    and after three further checks during which the record did not change.
    The counters live in ``scratch_root`` so they carry over between the
    short-lived processes a hook runs in.
    """

    def __init__(
        self,
        store: StateStore,
        registry: SessionRegistry | None = None,
        *,
        config: GateflowConfig | None = None,
    ) -> None:
        self.store = store
        self.registry = registry or SessionRegistry(store)
        self.config = config or GateflowConfig.default()

    def check_completion(self, session_id: str) -> CompletionCheck:
        active = self.registry.get_workflow_for_session(session_id)
        if active is None:
            return CompletionCheck(can_complete=True, reason="No active workflow")
        state = active.state

        if all_mandatory_gates_passed(state):
            self.registry.clear_guard(session_id)
            logger.info("Completion check PASSED for %s", state.workflow_id)
            return CompletionCheck(can_complete=True, reason="All mandatory gates passed")

        guard = self.registry.read_guard(session_id)
        guard.blocks += 1
        blocks = guard.blocks
        if blocks >= MAX_CONSECUTIVE_BLOCKS:
            logger.warning("Safety valve: %d blocks, allowing completion", blocks)
            guard.blocks = 0
            self.registry.write_guard(session_id, guard)
            return CompletionCheck(
                can_complete=True,
                reason=f"Safety valve triggered after {MAX_CONSECUTIVE_BLOCKS} blocks",
            )

        if guard.seen_updated_at == state.updated_at:
            guard.unchanged += 1
        else:
            guard.seen_updated_at = state.updated_at
            guard.unchanged = 0
        if guard.unchanged >= MAX_UNCHANGED_CHECKS:
            logger.warning(
                "Stale workflow: %d unchanged checks, allowing completion", guard.unchanged
            )
            self.registry.clear_guard(session_id)
            return CompletionCheck(
                can_complete=True, reason="Staleness detected, allowing completion"
            )
        self.registry.write_guard(session_id, guard)

        pending = get_pending_gates(state)
        names = ", ".join(gate.name for gate in pending)
        next_phase = get_next_phase(state)
        logger.info("Completion blocked: %s (%d/%d)", names, blocks, MAX_CONSECUTIVE_BLOCKS)
        reason = f'Workflow "{state.workflow_id}" has incomplete gates: {names}.'
        if next_phase:
            reason += f" Next: {next_phase}"
        reason += f" (Block {blocks}/{MAX_CONSECUTIVE_BLOCKS})"
        return CompletionCheck(can_complete=False, pending_gates=pending, reason=reason)

    def update_gate(
        self,
        session_id: str,
        gate: str,
        status: str,
        agent_type: str | None = None,
        *,
        new_content: bool = False,
    ) -> GateUpdate:
        if status not in GATE_STATUSES:
            return GateUpdate(updated=False, message=f"Unknown gate status: {status}")
        active = self.registry.get_workflow_for_session(session_id)
        if active is None:
            return GateUpdate(updated=False, message="No active workflow found")

        refused: list[GateTransitionError] = []

        def _apply(state: WorkflowState) -> WorkflowState | None:
            try:
                return transition_gate(
                    state,
                    gate,
                    status,  # type: ignore[arg-type]
                    agent_type=agent_type or "unknown",
                    agent_session_id=session_id,
                    new_content=new_content,
                )
            except GateTransitionError as exc:
                refused.append(exc)
                return None

        updated = self.store.update_state(active.path, _apply)
        if refused:
            logger.info("Refused gate update: %s", refused[0])
            return GateUpdate(updated=False, message=str(refused[0]))
        if updated is None:
            return GateUpdate(updated=False, message="Failed to update gate")
        if status == "passed":
            guard = self.registry.read_guard(session_id)
            guard.blocks = 0
            self.registry.write_guard(session_id, guard)
            logger.info('Gate "%s" passed (agent: %s)', gate, agent_type)
        return GateUpdate(
            updated=True, message=f'Gate "{gate}" updated to {status}', state=updated
        )

    def bind_session(self, session_id: str, workflow_path: str | Path) -> bool:
        state = self.store.read_state(workflow_path)
        workflow_id = state.workflow_id if state else None
        bound = self.registry.bind_session(session_id, workflow_path, workflow_id)
        self.registry.write_session_marker(session_id)
        logger.info("Session %s bound to workflow %s", session_id, workflow_id)
        return bound

    def get_state(self, session_id: str | None) -> dict[str, Any]:
        active = self.registry.get_workflow_for_session(session_id)
        if active is None:
            return {"active": False}
        state = active.state
        settings = self.config.mode_settings(state.mode.current)
        return {
            "active": True,
            "path": str(active.path),
            "workflow_id": state.workflow_id,
            "workflow_type": state.workflow_type,
            "mode": state.mode.current,
            "phase": state.phase.to_dict(),
            "gates": {name: gate.to_dict() for name, gate in state.gates.items()},
            "pending": [gate.name for gate in get_pending_gates(state)],
            "exhausted": [gate.name for gate in get_exhausted_gates(state, settings)],
            "updated_at": state.updated_at,
        }

    def workflow_context(self, session_id: str | None = None) -> str | None:
        active = self.registry.get_workflow_for_session(session_id)
        if active is None:
            return None
        state = active.state
        pending = ", ".join(gate.name for gate in get_pending_gates(state)) or "none"
        next_phase = get_next_phase(state)
        lines = [
            "--- WORKFLOW CONTEXT ---",
            f"Workflow: {state.workflow_id} ({state.workflow_type})",
            f"Mode: {state.mode.current}",
            f"Phase: {state.phase.current}",
            f"Pending gates: {pending}",
            f"Next phase: {next_phase}" if next_phase else "All phases complete",
            f"Preferred model tier: {get_preferred_tier(state.mode.current)}",
            "--- END WORKFLOW CONTEXT ---",
        ]
        return "\n".join(lines)

    def idle_advisory(self, session_id: str) -> list[str]:
        active = self.registry.get_workflow_for_session(session_id)
        if active is None or all_mandatory_gates_passed(active.state):
            return []
        names = [gate.name for gate in get_pending_gates(active.state)]
        logger.info("Advisory: session %s idle with pending gates: %s", session_id, ", ".join(names))
        return names

    def observe_message(self, session_id: str, content: str) -> bool:
        """Log agent messages that carry a review verdict."""
        upper = content.upper()
        if any(marker in upper for marker in VERDICT_MARKERS):
            logger.info("Verdict detected in session %s", session_id)
            return True
        return False

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal, get_args

GateStatus = Literal["pending", "in_progress", "passed", "failed", "skipped"]
SessionStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
Staleness = Literal["active", "stale", "stuck"]
ModelTier = Literal["low", "mid", "high"]

GATE_STATUSES: frozenset[str] = frozenset(get_args(GateStatus))
SESSION_STATUSES: frozenset[str] = frozenset(get_args(SessionStatus))
MODEL_TIERS: frozenset[str] = frozenset(get_args(ModelTier))
TERMINAL_SESSION_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
FINISHED_GATE_STATUSES: frozenset[str] = frozenset({"passed", "skipped"})

PHASE_COMPLETE = "completed"
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class WorkflowStateError(ValueError):
    """Raised when a record does not match the workflow schema."""


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO timestamp, falling back to the epoch for missing or bad values."""
    if not isinstance(value, str) or not value:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _require(data: Any, key: str, kind: type | tuple[type, ...]) -> Any:
    if not isinstance(data, dict):
        raise WorkflowStateError(f"Expected an object while reading '{key}'.")
    if key not in data:
        raise WorkflowStateError(f"Missing required field '{key}'.")
    value = data[key]
    if not isinstance(value, kind) or isinstance(value, bool) and kind is int:
        raise WorkflowStateError(f"Field '{key}' has unexpected type {type(value).__name__}.")
    return value


def _string_list(values: Any, key: str) -> list[str]:
    if not isinstance(values, list) or not all(isinstance(item, str) for item in values):
        raise WorkflowStateError(f"Field '{key}' must be a list of strings.")
    return list(values)


@dataclass(slots=True)
class GateState:
    status: GateStatus = "pending"
    iteration: int = 0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.status not in GATE_STATUSES:
            raise WorkflowStateError(f"Unknown gate status: {self.status!r}")
        if isinstance(self.iteration, bool) or not isinstance(self.iteration, int):
            raise WorkflowStateError("Gate iteration must be an integer.")
        if self.iteration < 0:
            raise WorkflowStateError("Gate iteration must be non-negative.")

    @property
    def finished(self) -> bool:
        return self.status in FINISHED_GATE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "iteration": self.iteration}

    @classmethod
    def from_dict(cls, data: Any) -> GateState:
        status = _require(data, "status", str)
        iteration = data.get("iteration", 0)
        if isinstance(iteration, bool) or not isinstance(iteration, int):
            raise WorkflowStateError("Gate iteration must be an integer.")
        return cls(status=status, iteration=iteration)  # type: ignore[arg-type]


@dataclass(slots=True)
class WorkflowPhase:
    current: str
    completed: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.current in self.completed:
            raise WorkflowStateError(
                f"Phase '{self.current}' cannot be both current and completed."
            )
        overlap = {self.current, *self.completed} & set(self.remaining)
        if overlap:
            raise WorkflowStateError(
                "Remaining phases overlap current/completed: " + ", ".join(sorted(overlap))
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "completed": list(self.completed),
            "remaining": list(self.remaining),
        }

    @classmethod
    def from_dict(cls, data: Any) -> WorkflowPhase:
        return cls(
            current=_require(data, "current", str),
            completed=_string_list(data.get("completed", []), "completed"),
            remaining=_string_list(data.get("remaining", []), "remaining"),
        )


@dataclass(slots=True)
class AgentLogEntry:
    timestamp: str
    agent_type: str
    gate: str
    verdict: str
    iteration: int
    agent_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "agent_type": self.agent_type,
            "gate": self.gate,
            "verdict": self.verdict,
            "iteration": self.iteration,
            "agent_session_id": self.agent_session_id,
        }

    @classmethod
    def from_dict(cls, data: Any) -> AgentLogEntry:
        # Older records used `agent_id` for the session handle.
        session_id = data.get("agent_session_id", data.get("agent_id")) if isinstance(
            data, dict
        ) else None
        return cls(
            timestamp=_require(data, "timestamp", str),
            agent_type=_require(data, "agent_type", str),
            gate=_require(data, "gate", str),
            verdict=_require(data, "verdict", str),
            iteration=_require(data, "iteration", int),
            agent_session_id=session_id if isinstance(session_id, str) else None,
        )


@dataclass(slots=True)
class WorkflowMode:
    current: str = "standard"

    def to_dict(self) -> dict[str, Any]:
        return {"current": self.current}


@dataclass(slots=True)
class WorkflowState:
    workflow_id: str
    workflow_type: str
    phase: WorkflowPhase
    gates: dict[str, GateState] = field(default_factory=dict)
    agent_log: list[AgentLogEntry] = field(default_factory=list)
    mode: WorkflowMode = field(default_factory=WorkflowMode)
    updated_at: str = field(default_factory=utcnow_iso)
    description: str = ""
    companion_file: str | None = None

    def __post_init__(self) -> None:
        if not self.workflow_id:
            raise WorkflowStateError("workflow_id must not be empty.")

    def validate(self) -> None:
        """Re-check invariants after in-place mutation."""
        if not self.workflow_id:
            raise WorkflowStateError("workflow_id must not be empty.")
        self.phase.validate()
        for gate in self.gates.values():
            gate.validate()

    def copy(self) -> WorkflowState:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "workflow_type": self.workflow_type,
            "phase": self.phase.to_dict(),
            "gates": {name: gate.to_dict() for name, gate in self.gates.items()},
            "agent_log": [entry.to_dict() for entry in self.agent_log],
            "mode": self.mode.to_dict(),
            "updated_at": self.updated_at,
            "description": self.description,
            "companion_file": self.companion_file,
        }

    @classmethod
    def from_dict(cls, data: Any) -> WorkflowState:
        raw_gates = _require(data, "gates", dict)
        raw_log = data.get("agent_log", [])
        if not isinstance(raw_log, list):
            raise WorkflowStateError("Field 'agent_log' must be a list.")
        raw_mode = data.get("mode") or {}
        mode_name = raw_mode.get("current") if isinstance(raw_mode, dict) else None

        # Legacy layout nested the description under `workflow` and named the
        # companion file `org_file`.
        description = data.get("description")
        legacy = data.get("workflow")
        if description is None and isinstance(legacy, dict):
            description = legacy.get("description")
        companion = data.get("companion_file", data.get("org_file"))

        return cls(
            workflow_id=_require(data, "workflow_id", str),
            workflow_type=_require(data, "workflow_type", str),
            phase=WorkflowPhase.from_dict(_require(data, "phase", dict)),
            gates={str(name): GateState.from_dict(gate) for name, gate in raw_gates.items()},
            agent_log=[AgentLogEntry.from_dict(entry) for entry in raw_log],
            mode=WorkflowMode(current=mode_name if isinstance(mode_name, str) else "standard"),
            updated_at=str(data.get("updated_at") or ""),
            description=description if isinstance(description, str) else "",
            companion_file=companion if isinstance(companion, str) else None,
        )


@dataclass(slots=True)
class StateEntry:
    path: Path
    state: WorkflowState


@dataclass(slots=True)
class SessionBinding:
    session_id: str
    workflow_path: str
    workflow_id: str | None = None
    bound_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "workflow_path": self.workflow_path,
            "workflow_id": self.workflow_id,
            "bound_at": self.bound_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> SessionBinding:
        workflow_id = data.get("workflow_id") if isinstance(data, dict) else None
        return cls(
            session_id=_require(data, "session_id", str),
            workflow_path=_require(data, "workflow_path", str),
            workflow_id=workflow_id if isinstance(workflow_id, str) else None,
            bound_at=str(data.get("bound_at") or ""),
        )


@dataclass(slots=True)
class SessionMarker:
    session_id: str
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "timestamp": self.timestamp}


@dataclass(slots=True)
class GuardCounters:
    """Completion-check counters for one session, kept between hook runs."""

    blocks: int = 0
    seen_updated_at: str | None = None
    unchanged: int = 0

    def __post_init__(self) -> None:
        if self.blocks < 0 or self.unchanged < 0:
            raise WorkflowStateError("Guard counters must not be negative.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "blocks": self.blocks,
            "seen_updated_at": self.seen_updated_at,
            "unchanged": self.unchanged,
        }

    @classmethod
    def from_dict(cls, data: Any) -> GuardCounters:
        if not isinstance(data, dict):
            raise WorkflowStateError("Guard counters must be an object.")
        blocks = data.get("blocks", 0)
        unchanged = data.get("unchanged", 0)
        seen = data.get("seen_updated_at")
        if not isinstance(blocks, int) or not isinstance(unchanged, int):
            raise WorkflowStateError("Guard counters must be integers.")
        return cls(
            blocks=blocks,
            seen_updated_at=seen if isinstance(seen, str) else None,
            unchanged=unchanged,
        )


@dataclass(slots=True)
class SwarmTask:
    id: str
    agent: str
    prompt: str
    model: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise WorkflowStateError("Swarm task id must not be empty.")


@dataclass(slots=True)
class TrackedSession:
    session_id: str
    task_id: str
    agent: str
    provider: str
    status: SessionStatus
    started_at: float
    last_message_count: int = 0
    last_progress_at: float = 0.0
    cancel_requested: bool = False
    stall: Staleness | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if self.status not in SESSION_STATUSES:
            raise WorkflowStateError(f"Unknown session status: {self.status!r}")
        if not self.last_progress_at:
            self.last_progress_at = self.started_at

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def set_status(self, status: SessionStatus) -> None:
        if status not in SESSION_STATUSES:
            raise WorkflowStateError(f"Unknown session status: {status!r}")
        self.status = status

    def observe(self, message_count: int, now: float) -> bool:
        """Record a progress snapshot; returns True when it is newer than the last one."""
        if message_count > self.last_message_count:
            self.last_message_count = message_count
            self.last_progress_at = now
            return True
        return False


@dataclass(slots=True)
class SwarmBatch:
    batch_id: str
    gate: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    sessions: dict[str, TrackedSession] = field(default_factory=dict)
    tasks: dict[str, SwarmTask] = field(default_factory=dict)

    def is_resolved(self) -> bool:
        return all(session.is_terminal for session in self.sessions.values())

    def pending(self) -> list[TrackedSession]:
        return [session for session in self.sessions.values() if session.status == "pending"]

    def running(self) -> list[TrackedSession]:
        return [session for session in self.sessions.values() if session.status == "running"]

    def statuses(self) -> dict[str, str]:
        return {task_id: session.status for task_id, session in self.sessions.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "gate": self.gate,
            "created_at": self.created_at,
            "sessions": {
                task_id: {"session_id": session.session_id, "status": session.status}
                for task_id, session in self.sessions.items()
            },
        }

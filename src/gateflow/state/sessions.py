from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from pathlib import Path

from gateflow.models import (
    GuardCounters,
    SessionBinding,
    SessionMarker,
    StateEntry,
    SwarmBatch,
    TrackedSession,
    WorkflowState,
)
from gateflow.state.store import StateStore

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

BatchFold = Callable[[WorkflowState, SwarmBatch], WorkflowState | None]


def is_valid_session_id(session_id: object) -> bool:
    return isinstance(session_id, str) and bool(_SESSION_ID_RE.match(session_id))


class SessionRegistry:
    """Maps agent sessions to workflows and keeps in-process swarm batches."""

    def __init__(self, store: StateStore) -> None:
        self.store = store
        self._batches: dict[str, SwarmBatch] = {}

    def binding_path(self, session_id: str) -> Path:
        return self.store.scratch_root / f"workflow-binding-{session_id}.json"

    def marker_path(self, session_id: str) -> Path:
        return self.store.scratch_root / f"workflow-session-marker-{session_id}.json"

    def guard_path(self, session_id: str) -> Path:
        return self.store.scratch_root / f"workflow-guard-{session_id}.json"

    def _write_json(self, path: Path, payload: dict) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload) + "\n", encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to write %s: %s", path, exc)
            return False
        return True

    def bind_session(
        self,
        session_id: str,
        workflow_path: str | Path,
        workflow_id: str | None = None,
    ) -> bool:
        if not is_valid_session_id(session_id) or not workflow_path:
            return False
        binding = SessionBinding(
            session_id=session_id,
            workflow_path=str(workflow_path),
            workflow_id=workflow_id or None,
        )
        if not self._write_json(self.binding_path(session_id), binding.to_dict()):
            return False
        logger.info("Bound session %s to %s", session_id, workflow_path)
        return True

    def read_binding(self, session_id: str) -> SessionBinding | None:
        if not is_valid_session_id(session_id):
            return None
        path = self.binding_path(session_id)
        try:
            return SessionBinding.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            logger.warning("Ignoring unreadable binding %s: %s", path, exc)
            return None

    def get_workflow_for_session(self, session_id: str | None) -> StateEntry | None:
        if session_id:
            binding = self.read_binding(session_id)
            if binding is not None:
                state = self.store.read_state(binding.workflow_path)
                if state is not None:
                    return StateEntry(path=Path(binding.workflow_path), state=state)
                logger.debug(
                    "Binding for %s points at an unreadable record; using the active workflow.",
                    session_id,
                )
        return self.store.get_active_workflow()

    def clear_session_binding(self, session_id: str) -> bool:
        if not is_valid_session_id(session_id):
            return False
        try:
            self.binding_path(session_id).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to clear binding for %s: %s", session_id, exc)
            return False
        return True

    def write_session_marker(self, session_id: str) -> bool:
        if not is_valid_session_id(session_id):
            return False
        marker = SessionMarker(session_id=session_id)
        return self._write_json(self.marker_path(session_id), marker.to_dict())

    def read_guard(self, session_id: str) -> GuardCounters:
        """Counters saved by earlier completion checks; fresh ones when absent."""
        if not is_valid_session_id(session_id):
            return GuardCounters()
        path = self.guard_path(session_id)
        try:
            return GuardCounters.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return GuardCounters()
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            logger.warning("Resetting unreadable guard counters %s: %s", path, exc)
            return GuardCounters()

    def write_guard(self, session_id: str, counters: GuardCounters) -> bool:
        if not is_valid_session_id(session_id):
            return False
        return self._write_json(self.guard_path(session_id), counters.to_dict())

    def clear_guard(self, session_id: str) -> bool:
        if not is_valid_session_id(session_id):
            return False
        try:
            self.guard_path(session_id).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to clear guard counters for %s: %s", session_id, exc)
            return False
        return True

    # Swarm batches live only in this process.

    def create_batch(self, batch_id: str, gate: str | None = None) -> SwarmBatch:
        if batch_id in self._batches:
            raise ValueError(f"Batch '{batch_id}' already exists.")
        batch = SwarmBatch(batch_id=batch_id, gate=gate)
        self._batches[batch_id] = batch
        return batch

    def get_batch(self, batch_id: str) -> SwarmBatch | None:
        return self._batches.get(batch_id)

    def track(self, batch_id: str, session: TrackedSession) -> None:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise KeyError(f"Unknown batch '{batch_id}'.")
        batch.sessions[session.task_id] = session

    def discard_batch(self, batch_id: str) -> bool:
        return self._batches.pop(batch_id, None) is not None

    def fold_batch(
        self,
        batch_id: str,
        workflow_path: str | Path,
        transform: BatchFold,
    ) -> WorkflowState | None:
        """Persist a finished batch's outcome into its workflow record.

        Refuses while any session of the batch is still pending or running.
        The batch is dropped from the registry once the record is written.
        """
        batch = self._batches.get(batch_id)
        if batch is None:
            return None
        if not batch.is_resolved():
            logger.info("Batch %s is not resolved yet; nothing folded.", batch_id)
            return None
        updated = self.store.update_state(workflow_path, lambda state: transform(state, batch))
        if updated is not None:
            self.discard_batch(batch_id)
        return updated

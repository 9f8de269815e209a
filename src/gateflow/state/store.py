from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from gateflow.gates import all_mandatory_gates_passed, initial_state
from gateflow.models import StateEntry, WorkflowState, parse_timestamp, utcnow_iso

logger = logging.getLogger(__name__)

STATE_SUFFIX = ".state.json"
COMPANION_SUFFIXES = (".org", ".md")

_DANGEROUS_PATTERNS = (
    re.compile(r"\.\.[/\\]"),
    re.compile(r"[<>|\"'`$(){}]"),
    re.compile(r"\0"),
    re.compile(r"^[/\\]{2}"),
)

Transform = Callable[[WorkflowState], WorkflowState | None]


def compute_checksum(state: WorkflowState | None) -> str | None:
    if state is None:
        return None
    canonical = json.dumps(state.to_dict(), sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def new_workflow_id(now: datetime | None = None) -> str:
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


class StateStore:
    """Durable workflow records under ``data_root``.

    Every path handed in from outside goes through :meth:`validate_path`
    first, and none of the public methods raise on I/O problems: failures come
    back as ``None`` or ``False`` and are logged.
    """

    def __init__(self, data_root: Path, scratch_root: Path) -> None:
        self.data_root = Path(data_root).resolve()
        self.scratch_root = Path(scratch_root).resolve()
        self.active_dir = self.data_root / "active"
        self.completed_dir = self.data_root / "completed"

    def state_path(self, workflow_id: str) -> Path:
        return self.active_dir / f"{workflow_id}{STATE_SUFFIX}"

    def validate_path(self, path: Any) -> Path | None:
        if isinstance(path, os.PathLike):
            path = os.fspath(path)
        if not isinstance(path, str) or not path:
            return None
        for pattern in _DANGEROUS_PATTERNS:
            if pattern.search(path):
                logger.debug("Rejected path with unsafe characters: %r", path)
                return None
        try:
            resolved = Path(path).resolve()
        except (OSError, RuntimeError, ValueError):
            return None
        for root in (self.data_root, self.scratch_root):
            if resolved == root or root in resolved.parents:
                return resolved
        logger.debug("Rejected path outside allowed roots: %s", resolved)
        return None

    def read_state(self, path: Any) -> WorkflowState | None:
        validated = self.validate_path(path)
        if validated is None:
            return None
        try:
            payload = json.loads(validated.read_text(encoding="utf-8"))
            return WorkflowState.from_dict(payload)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, ValueError, TypeError) as exc:
            logger.warning("Unreadable workflow record %s: %s", validated, exc)
            return None

    def write_state(self, path: Any, state: WorkflowState) -> bool:
        validated = self.validate_path(path)
        if validated is None:
            return False
        tmp_path = validated.with_name(validated.name + ".tmp")
        try:
            content = json.dumps(state.to_dict(), indent=2, ensure_ascii=False) + "\n"
            validated.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(content, encoding="utf-8")
            os.replace(tmp_path, validated)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to write workflow record %s: %s", validated, exc)
            try:
                tmp_path.unlink()
            except OSError:
                pass
            return False
        return True

    def update_state(
        self,
        path: Any,
        transform: Transform,
        *,
        expected_checksum: str | None = None,
    ) -> WorkflowState | None:
        """Read-modify-write a record.

        ``transform`` receives a private copy of the current state and returns
        the new one, or ``None`` to abort. When ``expected_checksum`` is set the
        update only goes through if the record on disk still hashes to it.
        A transform that raises, or returns something that is not a valid
        ``WorkflowState``, leaves the record untouched and yields ``None``.
        """
        current = self.read_state(path)
        if current is None:
            return None
        if expected_checksum is not None and compute_checksum(current) != expected_checksum:
            logger.info("Skipped update of %s: record changed since it was read.", path)
            return None

        try:
            updated = transform(current.copy())
            if updated is None:
                return None
            if not isinstance(updated, WorkflowState):
                raise TypeError(f"transform returned {type(updated).__name__}")
            updated.validate()
        except Exception as exc:
            logger.warning("Refused workflow update for %s: %s", path, exc)
            return None
        updated.updated_at = utcnow_iso()
        if not self.write_state(path, updated):
            return None
        return updated

    def find_active_states(self) -> list[StateEntry]:
        if not self.active_dir.is_dir():
            return []
        entries: list[StateEntry] = []
        for path in sorted(self.active_dir.glob(f"*{STATE_SUFFIX}")):
            state = self.read_state(path)
            if state is not None:
                entries.append(StateEntry(path=path, state=state))
        entries.sort(key=lambda entry: parse_timestamp(entry.state.updated_at), reverse=True)
        return entries

    def get_active_workflow(self) -> StateEntry | None:
        entries = self.find_active_states()
        return entries[0] if entries else None

    def compute_checksum(self, state: WorkflowState | None) -> str | None:
        return compute_checksum(state)

    def create_workflow(
        self,
        workflow_type: str,
        *,
        mode: str = "standard",
        workflow_id: str | None = None,
        description: str = "",
    ) -> StateEntry | None:
        workflow_id = workflow_id or new_workflow_id()
        path = self.state_path(workflow_id)
        if self.validate_path(path) is None:
            return None
        if path.exists():
            logger.warning("Workflow %s already exists at %s", workflow_id, path)
            return None

        state = initial_state(workflow_id, workflow_type, mode=mode, description=description)
        companion = path.with_name(f"{workflow_id}.md")
        try:
            self.active_dir.mkdir(parents=True, exist_ok=True)
            companion.write_text(
                f"# {workflow_type}: {workflow_id}\n\n{description}\n", encoding="utf-8"
            )
            state.companion_file = companion.name
        except OSError as exc:
            logger.warning("Could not create notes file for %s: %s", workflow_id, exc)

        if not self.write_state(path, state):
            return None
        logger.info("Created %s workflow %s (mode=%s)", workflow_type, workflow_id, mode)
        return StateEntry(path=path, state=state)

    def _companion_path(self, record: Path, state: WorkflowState) -> Path | None:
        if not state.companion_file:
            return None
        candidate = Path(state.companion_file)
        if not candidate.is_absolute():
            candidate = record.parent / candidate
        return self.validate_path(candidate)

    def archive_workflow(self, path: Any) -> Path | None:
        validated = self.validate_path(path)
        if validated is None:
            return None
        state = self.read_state(validated)
        if state is None or not all_mandatory_gates_passed(state):
            return None

        target = self.completed_dir / validated.name
        companion = self._companion_path(validated, state)
        try:
            self.completed_dir.mkdir(parents=True, exist_ok=True)
            os.replace(validated, target)
            if companion is not None and companion.exists():
                os.replace(companion, self.completed_dir / companion.name)
        except OSError as exc:
            logger.warning("Failed to archive %s: %s", validated, exc)
            return None
        logger.info("Archived workflow %s to %s", state.workflow_id, target)
        return target

    def find_orphaned_companions(self) -> list[Path]:
        try:
            names = {entry.name for entry in self.active_dir.iterdir() if entry.is_file()}
        except OSError as exc:
            logger.debug("Cannot scan %s for companion notes: %s", self.active_dir, exc)
            return []
        records = {
            name.removesuffix(STATE_SUFFIX) for name in names if name.endswith(STATE_SUFFIX)
        }
        orphans: list[Path] = []
        for name in sorted(names):
            for suffix in COMPANION_SUFFIXES:
                if name.endswith(suffix) and name.removesuffix(suffix) not in records:
                    orphans.append(self.active_dir / name)
        return orphans

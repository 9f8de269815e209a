from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from gateflow.models import (
    TERMINAL_SESSION_STATUSES,
    SessionStatus,
    SwarmTask,
    WorkflowStateError,
)


class BackendExecutionError(RuntimeError):
    """Raised when the execution backend fails a request."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        session_id: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.session_id = session_id
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a backend request exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when a remote session cannot be created or driven."""


@dataclass(frozen=True, slots=True)
class SessionProgress:
    message_count: int
    terminal_status: SessionStatus | None = None

    def __post_init__(self) -> None:
        if self.message_count < 0:
            raise WorkflowStateError("message_count must not be negative.")
        if self.terminal_status is not None and self.terminal_status not in TERMINAL_SESSION_STATUSES:
            raise WorkflowStateError(f"Not a terminal session status: {self.terminal_status!r}")

    @property
    def finished(self) -> bool:
        return self.terminal_status is not None


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


class ExecutionBackend(ABC):
    """Remote capability that runs one agent task per session."""

    name: str = "backend"

    @abstractmethod
    async def start_session(self, task: SwarmTask, title: str) -> str:
        """Create a session, submit the task prompt without waiting, return the session id."""

    @abstractmethod
    async def poll(self, session_id: str) -> SessionProgress:
        """Report the current message count and, once finished, the terminal status."""

    @abstractmethod
    async def cancel(self, session_id: str) -> None:
        """Ask the remote side to abort the session."""

    @abstractmethod
    async def fetch_output(self, session_id: str) -> str | None:
        """Return the last assistant message of the session, if any."""

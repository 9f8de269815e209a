from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from gateflow.config import SwarmConfig
from gateflow.gates import transition_gate
from gateflow.models import (
    SwarmBatch,
    SwarmTask,
    TrackedSession,
    WorkflowState,
    WorkflowStateError,
)
from gateflow.routing import extract_provider
from gateflow.state.sessions import SessionRegistry
from gateflow.swarm.backend import BackendExecutionError, ExecutionBackend, RetryPolicy
from gateflow.swarm.concurrency import ConcurrencyManager
from gateflow.swarm.staleness import StalenessDetector

logger = logging.getLogger(__name__)

SwarmEventHook = Callable[[dict[str, Any]], None]
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

MIN_POLL_INTERVAL_SECONDS = 1.0
MAX_OUTPUT_CHARS = 2048

VALIDATION_FOCUS: tuple[tuple[str, str, str, str], ...] = (
    (
        "functional-review",
        "reviewer-deep",
        "Functional Completeness",
        "Review the implementation against requirements.\n"
        "Check: All features implemented, edge cases handled.",
    ),
    (
        "security-review",
        "security-deep",
        "Security",
        "Review for security vulnerabilities.\nCheck: OWASP top 10, injection, auth issues.",
    ),
    (
        "quality-review",
        "reviewer-deep",
        "Code Quality",
        "Review for code quality and patterns.\nCheck: SOLID, DRY, naming, complexity.",
    ),
)


class UnknownBatchError(KeyError):
    """Raised when a batch id is not tracked by the registry."""


@dataclass(slots=True)
class SpawnReport:
    batch_id: str
    spawned: list[str] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "spawned": list(self.spawned),
            "queued": list(self.queued),
            "failed": list(self.failed),
        }


@dataclass(slots=True)
class AwaitReport:
    batch_id: str
    completed: bool
    timed_out: bool
    results: dict[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "completed": self.completed,
            "timed_out": self.timed_out,
            "results": dict(self.results),
        }


@dataclass(slots=True)
class CancelResult:
    task_id: str
    cancelled: bool
    reason: str = ""


def validation_tasks(summary: str, changed_files: str, model: str | None = None) -> list[SwarmTask]:
    return [
        SwarmTask(
            id=task_id,
            agent=agent,
            prompt=(
                f"## VALIDATION FOCUS: {focus}\n\n{instructions}\n\n"
                f"## Summary\n{summary}\n\n## Changed Files\n{changed_files}"
            ),
            model=model,
        )
        for task_id, agent, focus, instructions in VALIDATION_FOCUS
    ]


class SwarmScheduler:
    """Fans agent tasks out to an execution backend and tracks them to the end.

    The loop is cooperative: nothing blocks on a remote session. Each poll
    pass refreshes cached progress, resolves finished, stalled or cancelled
    sessions, and admits queued tasks as provider slots free up.
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        registry: SessionRegistry,
        config: SwarmConfig | None = None,
        *,
        concurrency: ConcurrencyManager | None = None,
        staleness: StalenessDetector | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
        event_hook: SwarmEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.config = config or SwarmConfig()
        self.concurrency = concurrency or ConcurrencyManager(self.config)
        self.staleness = staleness or StalenessDetector(self.config)
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self.sleep = sleep
        self.event_hook = event_hook

        floor = 0.0 if self.config.allow_sub_minimum else MIN_POLL_INTERVAL_SECONDS
        self.poll_interval = max(floor, float(self.config.poll_interval_seconds))
        self.max_poll_interval = max(self.poll_interval, float(self.config.max_poll_interval_seconds))
        logger.info(
            "Swarm scheduler ready: default_concurrency=%d poll=%.1fs stale=%.0fs",
            self.config.default_concurrency,
            self.poll_interval,
            self.staleness.stale_timeout,
        )

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _batch(self, batch_id: str) -> SwarmBatch:
        batch = self.registry.get_batch(batch_id)
        if batch is None:
            raise UnknownBatchError(batch_id)
        return batch

    async def _start_with_retry(self, task: SwarmTask, title: str) -> str:
        errors: list[str] = []
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.delay_for(attempt)
                self._emit(
                    {
                        "event": "backend_retry",
                        "task_id": task.id,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await self.sleep(delay)
            try:
                return await asyncio.wait_for(
                    self.backend.start_session(task, title),
                    timeout=self.retry_policy.timeout_seconds,
                )
            except TimeoutError:
                errors.append(
                    f"[{attempt}] timed out after {self.retry_policy.timeout_seconds:.1f}s"
                )
            except BackendExecutionError as exc:
                errors.append(f"[{attempt}] {exc}")
                if not exc.retriable:
                    break
        summary = "; ".join(errors[-3:])
        raise BackendExecutionError(
            f"Could not start session for {task.id}. {summary}",
            backend=self.backend.name,
            retriable=False,
        )

    async def _launch(self, batch: SwarmBatch, task: SwarmTask, provider: str) -> TrackedSession:
        self.concurrency.acquire(provider)
        title = f"[{batch.batch_id}] {task.agent}: {task.id}"
        try:
            session_id = await self._start_with_retry(task, title)
        except BackendExecutionError as exc:
            self.concurrency.release(provider)
            tracked = TrackedSession(
                session_id="",
                task_id=task.id,
                agent=task.agent,
                provider=provider,
                status="failed",
                started_at=self.clock(),
                error=str(exc),
            )
            self.registry.track(batch.batch_id, tracked)
            logger.warning("Spawn failed for %s: %s", task.id, exc)
            self._emit(
                {
                    "event": "swarm_spawn_failed",
                    "batch_id": batch.batch_id,
                    "task_id": task.id,
                    "error": str(exc),
                }
            )
            return tracked

        now = self.clock()
        tracked = TrackedSession(
            session_id=session_id,
            task_id=task.id,
            agent=task.agent,
            provider=provider,
            status="running",
            started_at=now,
            last_progress_at=now,
        )
        self.registry.track(batch.batch_id, tracked)
        logger.info(
            "Spawned %s (%s) in session %s [provider: %s]", task.id, task.agent, session_id, provider
        )
        self._emit(
            {
                "event": "swarm_task_spawned",
                "batch_id": batch.batch_id,
                "task_id": task.id,
                "session_id": session_id,
                "provider": provider,
            }
        )
        return tracked

    async def spawn_batch(
        self,
        batch_id: str,
        tasks: list[SwarmTask],
        *,
        gate: str | None = None,
    ) -> SpawnReport:
        if not tasks:
            raise ValueError(f"Batch {batch_id} has no tasks.")
        batch = self.registry.create_batch(batch_id, gate=gate)
        report = SpawnReport(batch_id=batch_id)
        launched = 0
        for task in tasks:
            batch.tasks[task.id] = task
            provider = extract_provider(task.model)
            if not self.concurrency.can_acquire(provider):
                self.registry.track(
                    batch_id,
                    TrackedSession(
                        session_id="",
                        task_id=task.id,
                        agent=task.agent,
                        provider=provider,
                        status="pending",
                        started_at=self.clock(),
                    ),
                )
                report.queued.append(task.id)
                logger.info(
                    "Task %s queued: provider '%s' at limit (%d/%d)",
                    task.id,
                    provider,
                    self.concurrency.get_active(provider),
                    self.concurrency.get_limit(provider),
                )
                self._emit(
                    {"event": "swarm_task_queued", "batch_id": batch_id, "task_id": task.id}
                )
                continue

            if launched:
                await self.sleep(self.config.spawn_delay_seconds)
            launched += 1
            tracked = await self._launch(batch, task, provider)
            if tracked.status == "failed":
                report.failed.append(task.id)
            else:
                report.spawned.append(task.id)
        return report

    async def spawn_validation(
        self,
        summary: str,
        changed_files: str,
        *,
        model: str | None = None,
        batch_id: str | None = None,
    ) -> SpawnReport:
        """Spawn the three validation reviewers.

        All three always start, even when their provider is already at its
        limit.
        """
        batch_id = batch_id or f"validation-{int(self.clock() * 1000)}"
        batch = self.registry.create_batch(batch_id)
        report = SpawnReport(batch_id=batch_id)
        for index, task in enumerate(validation_tasks(summary, changed_files, model)):
            batch.tasks[task.id] = task
            provider = extract_provider(task.model)
            if index:
                await self.sleep(self.config.spawn_delay_seconds)
            if not self.concurrency.can_acquire(provider):
                logger.info(
                    "Validation: provider '%s' at concurrency limit, spawning anyway", provider
                )
            tracked = await self._launch(batch, task, provider)
            if tracked.status == "failed":
                report.failed.append(task.id)
            else:
                report.spawned.append(task.id)
        return report

    async def _cancel_remote(self, session: TrackedSession) -> None:
        try:
            await self.backend.cancel(session.session_id)
        except BackendExecutionError as exc:
            logger.warning("Failed to cancel session %s: %s", session.session_id, exc)

    def _finish(self, batch: SwarmBatch, session: TrackedSession, status: str, event: str) -> None:
        session.set_status(status)  # type: ignore[arg-type]
        self.concurrency.release(session.provider)
        self._emit(
            {
                "event": event,
                "batch_id": batch.batch_id,
                "task_id": session.task_id,
                "session_id": session.session_id,
                "status": status,
                "stall": session.stall,
            }
        )

    async def _admit_queued(self, batch: SwarmBatch) -> int:
        admitted = 0
        for queued in batch.pending():
            task = batch.tasks.get(queued.task_id)
            if task is None or not self.concurrency.can_acquire(queued.provider):
                continue
            if admitted:
                await self.sleep(self.config.spawn_delay_seconds)
            admitted += 1
            logger.info("Admitting queued task %s", task.id)
            await self._launch(batch, task, queued.provider)
        return admitted

    async def poll_batch(self, batch_id: str) -> bool:
        """Run one poll pass; returns True when anything changed."""
        batch = self._batch(batch_id)
        changed = False
        for session in list(batch.sessions.values()):
            if session.is_terminal or session.status == "pending":
                continue
            now = self.clock()

            if session.cancel_requested:
                await self._cancel_remote(session)
                self._finish(batch, session, "cancelled", "swarm_task_cancelled")
                logger.info(
                    "Task %s cancelled, slot released for provider '%s'",
                    session.task_id,
                    session.provider,
                )
                changed = True
                continue

            try:
                progress = await self.backend.poll(session.session_id)
            except (BackendExecutionError, WorkflowStateError) as exc:
                # Staleness still runs on the cached snapshot.
                logger.warning("Status poll failed for %s: %s", session.session_id, exc)
                progress = None

            if progress is not None:
                if session.observe(progress.message_count, now):
                    changed = True
                if progress.terminal_status is not None:
                    self._finish(batch, session, progress.terminal_status, "swarm_task_finished")
                    logger.info(
                        "Task %s %s (session %s)",
                        session.task_id,
                        progress.terminal_status,
                        session.session_id,
                    )
                    changed = True
                    continue

            verdict = self.staleness.check(session, now)
            if verdict == "active":
                continue
            session.stall = verdict
            session.error = f"session {verdict}"
            if self.config.stall_action == "cancel":
                await self._cancel_remote(session)
            self._finish(batch, session, "failed", "swarm_task_stalled")
            logger.warning(
                "Task %s marked failed (%s), slot released for provider '%s'",
                session.task_id,
                verdict,
                session.provider,
            )
            changed = True

        if await self._admit_queued(batch):
            changed = True
        return changed

    async def await_batch(self, batch_id: str, timeout: float | None = None) -> AwaitReport:
        batch = self._batch(batch_id)
        limit = self.config.await_timeout_seconds if timeout is None else timeout
        started = self.clock()
        delay = self.poll_interval
        while True:
            changed = await self.poll_batch(batch_id)
            if batch.is_resolved():
                logger.info("Batch %s completed", batch_id)
                self._emit(
                    {"event": "swarm_batch_resolved", "batch_id": batch_id, **batch.statuses()}
                )
                return AwaitReport(
                    batch_id=batch_id, completed=True, timed_out=False, results=batch.statuses()
                )
            if self.clock() - started >= limit:
                logger.warning("Batch %s timed out after %.0fs", batch_id, limit)
                self._emit({"event": "swarm_batch_timed_out", "batch_id": batch_id})
                return AwaitReport(
                    batch_id=batch_id, completed=False, timed_out=True, results=batch.statuses()
                )
            if changed:
                delay = self.poll_interval
            await self.sleep(delay)
            if not changed:
                delay = min(self.max_poll_interval, delay * self.config.poll_backoff_factor)

    async def collect_results(self, batch_id: str) -> dict[str, str]:
        batch = self._batch(batch_id)
        results: dict[str, str] = {}
        for task_id, session in batch.sessions.items():
            if not session.session_id:
                results[task_id] = "Not started" if session.status == "pending" else "Failed to spawn"
                continue
            try:
                output = await self.backend.fetch_output(session.session_id)
            except BackendExecutionError as exc:
                results[task_id] = f"Error retrieving: {exc}"
                continue
            content = output or "No output"
            if len(content) > MAX_OUTPUT_CHARS:
                content = content[:MAX_OUTPUT_CHARS] + "... [truncated]"
            results[task_id] = content
        return results

    def cancel_task(self, batch_id: str, task_id: str) -> CancelResult:
        batch = self._batch(batch_id)
        session = batch.sessions.get(task_id)
        if session is None:
            raise UnknownBatchError(f"{batch_id}/{task_id}")
        if session.is_terminal:
            return CancelResult(
                task_id=task_id,
                cancelled=False,
                reason=f"Task is already in terminal state: {session.status}",
            )
        if not session.session_id:
            # Queued tasks hold no slot.
            session.set_status("cancelled")
            self._emit(
                {"event": "swarm_task_cancelled", "batch_id": batch_id, "task_id": task_id}
            )
            return CancelResult(task_id=task_id, cancelled=True, reason="Queued task dropped")
        session.cancel_requested = True
        return CancelResult(task_id=task_id, cancelled=True, reason="Cancellation requested")

    def fold_into_workflow(
        self,
        batch_id: str,
        workflow_path: str | Path,
        *,
        agent_type: str = "swarm",
    ) -> WorkflowState | None:
        """Record a resolved batch as the verdict of its gate."""
        batch = self._batch(batch_id)
        if batch.gate is None:
            return None
        if not batch.sessions:
            logger.warning("Batch %s has no sessions; gate %s left unchanged", batch_id, batch.gate)
            return None
        gate = batch.gate

        def _apply(state: WorkflowState, resolved: SwarmBatch) -> WorkflowState | None:
            verdict = (
                "passed"
                if all(session.status == "completed" for session in resolved.sessions.values())
                else "failed"
            )
            current = state.gates.get(gate)
            if current is not None and current.finished:
                logger.info("Gate %s already %s; batch %s not folded", gate, current.status, batch_id)
                return None
            if current is not None and current.status == "failed":
                state = transition_gate(state, gate, "in_progress", agent_type=agent_type)
            return transition_gate(
                state, gate, verdict, agent_type=agent_type, agent_session_id=batch_id
            )

        return self.registry.fold_batch(batch_id, workflow_path, _apply)

    def status(self, batch_id: str) -> dict[str, Any]:
        batch = self._batch(batch_id)
        return {**batch.to_dict(), "concurrency": self.concurrency.snapshot()}

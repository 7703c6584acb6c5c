"""Run one phase of an implementation plan.

A phase runs its tasks in stored order through a single generation session,
stopping at the first task that gets no content back. Progress is committed
through the version control collaborator when the phase completes, fails or
is cancelled. Failures are returned as data on `PhaseExecutionResult`.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

from loguru import logger

from .agents import AgentConfiguration, default_agent_configuration
from .constants import CANCELLED_ERROR, DEFAULT_MAX_MEMORIES_PER_PROMPT, DEFAULT_MODEL, NO_RESPONSE_ERROR
from .fsm import (
    block_phase,
    complete_phase,
    complete_task,
    fail_phase,
    fail_task,
    mark_task_retrying,
    reset_phase,
    start_phase,
    start_task,
)
from .git_locks import RepositoryLocks, shared_repository_locks
from .interfaces import CommitOptions, GenerationClient, GenerationResponse, SessionConfig, VersionControl
from .logging_utils import summarize_event
from .memory.models import Memory
from .memory.store import MemoryStore
from .models import (
    AgentRole,
    CommitCheckpoint,
    ImplementationPlan,
    Phase,
    PhaseExecutionResult,
    PhaseStatus,
    Task,
    TaskExecutionResult,
    TaskStatus,
)
from .prompts import PromptFormatter, format_system_message
from .retry import TaskRetryPolicy

EventCallback = Callable[[str, dict[str, Any]], None]


class PhaseExecutor:
    """Execute a complete phase (all tasks) against a generation session.

    Args:
        client: Generation-session collaborator.
        git: Version control collaborator used for commit checkpoints.
        memory_store: Optional store searched for task-relevant memories.
        model: Model requested for each session.
        max_memories: Upper bound of memories included in one task prompt.
        retry_policy: Optional explicit retry budget; no retries without it.
        on_event: Observer called with `(event_type, payload)`.
        commit_enabled: Disable to run phases without committing.
        commit_options: Author/signing options passed to every commit.
        repository_locks: Registry serializing commits per repository;
            defaults to the registry shared by the process.
    """

    def __init__(
        self,
        client: GenerationClient,
        git: VersionControl,
        memory_store: Optional[MemoryStore] = None,
        *,
        model: str = DEFAULT_MODEL,
        max_memories: int = DEFAULT_MAX_MEMORIES_PER_PROMPT,
        retry_policy: Optional[TaskRetryPolicy] = None,
        on_event: Optional[EventCallback] = None,
        commit_enabled: bool = True,
        commit_options: Optional[CommitOptions] = None,
        repository_locks: Optional[RepositoryLocks] = None,
    ) -> None:
        self.client = client
        self.git = git
        self.memory_store = memory_store
        self.prompt_formatter = PromptFormatter(memory_store, max_memories)
        self.model = model
        self.retry_policy = retry_policy
        self.on_event = on_event
        self.commit_enabled = commit_enabled
        self.commit_options = commit_options
        self.repository_locks = repository_locks or shared_repository_locks()

    # -- events -------------------------------------------------------------

    def _emit(self, event_type: str, plan: ImplementationPlan, phase: Phase, **data: Any) -> None:
        payload: dict[str, Any] = {"plan_id": plan.id, "phase_number": phase.number, "phase_name": phase.name}
        payload.update(data)
        logger.debug("Event {}", summarize_event(event_type, payload))
        if self.on_event is None:
            return
        try:
            self.on_event(event_type, payload)
        except Exception as exc:
            logger.warning("Event observer failed for {}: {}", event_type, exc)

    # -- public API ---------------------------------------------------------

    def execute_phase(
        self,
        plan: ImplementationPlan,
        phase_number: int,
        agent_config: Optional[AgentConfiguration] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> PhaseExecutionResult:
        """Execute all unfinished tasks of one phase.

        A phase that previously failed, was blocked or completed is reset first;
        tasks that already completed are not sent again.

        Returns:
            PhaseExecutionResult describing success, the failing task, the
            commit checkpoint and per-task results.
        """
        start_time = time.time()
        phase = plan.get_phase(phase_number)
        if phase is None:
            logger.warning("[Phase {}] Not found in plan {}", phase_number, plan.id)
            return PhaseExecutionResult(phase_number=phase_number, error=f"Phase {phase_number} not found")
        if phase.status == PhaseStatus.SKIPPED:
            return PhaseExecutionResult(
                phase_number=phase_number,
                phase_name=phase.name,
                error=f"Phase {phase_number} was skipped",
            )

        agent_config = agent_config or default_agent_configuration()
        result = PhaseExecutionResult(phase_number=phase.number, phase_name=phase.name)
        session_id: Optional[str] = None
        try:
            if reset_phase(phase):
                logger.info("[Phase {}] Reset for another run", phase.number)
            start_phase(phase)
            plan.touch()
            logger.info("[Phase {}] Starting {} ({} task(s))", phase.number, phase.name, len(phase.tasks))
            self._emit("phase.started", plan, phase, task_count=len(phase.tasks))

            session_id = self.client.create_session(
                SessionConfig(
                    repository_path=plan.repository_path,
                    model=self.model,
                    streaming=False,
                    system_message=format_system_message(AgentRole.CODER, agent_config),
                )
            )

            for task in phase.tasks:
                if task.is_finished:
                    continue
                if cancel_event is not None and cancel_event.is_set():
                    return self._cancel(plan, phase, result)

                task_result = self._run_task(plan, phase, task, session_id, agent_config, cancel_event)
                result.task_results.append(task_result)
                if task_result.success:
                    continue
                if task.status == TaskStatus.RETRYING and cancel_event is not None and cancel_event.is_set():
                    return self._cancel(plan, phase, result)
                return self._fail(plan, phase, result, task, task_result.error or NO_RESPONSE_ERROR)

            checkpoint = self._commit(plan, phase)
            result.commit = checkpoint
            if checkpoint.error:
                fail_phase(phase)
                result.error = f"Commit failed: {checkpoint.error}"
                logger.error("[Phase {}] {}", phase.number, result.error)
                self._emit("phase.failed", plan, phase, error=result.error)
                return result

            complete_phase(phase)
            result.success = True
            logger.info("[Phase {}] Completed", phase.number)
            self._emit("phase.completed", plan, phase, commit_sha=checkpoint.sha)
            return result

        except Exception as exc:
            logger.exception("[Phase {}] Unexpected error: {}", phase.number, exc)
            if phase.status == PhaseStatus.IN_PROGRESS:
                fail_phase(phase)
            result.success = False
            result.error = f"Unexpected error: {exc}"
            self._emit("phase.failed", plan, phase, error=result.error)
            return result

        finally:
            if session_id is not None:
                try:
                    self.client.close(session_id)
                except Exception as exc:
                    logger.warning("[Phase {}] Failed to close session {}: {}", phase.number, session_id, exc)
            result.duration_seconds = time.time() - start_time
            plan.touch()

    # -- tasks --------------------------------------------------------------

    def _send(self, session_id: str, prompt: str) -> tuple[Optional[GenerationResponse], Optional[str]]:
        try:
            return self.client.send(session_id, prompt), None
        except Exception as exc:
            return None, f"{NO_RESPONSE_ERROR}: {exc}"

    def _mark_used(self, memories: list[Memory]) -> None:
        if not memories or self.memory_store is None:
            return
        try:
            self.memory_store.mark_used([memory.id for memory in memories])
        except Exception as exc:
            logger.warning("Unable to record memory use: {}", exc)

    def _run_task(
        self,
        plan: ImplementationPlan,
        phase: Phase,
        task: Task,
        session_id: str,
        agent_config: AgentConfiguration,
        cancel_event: Optional[threading.Event],
    ) -> TaskExecutionResult:
        tokens_used = 0
        while True:
            start_task(task)
            logger.info("[Phase {}] Task {} attempt {}", phase.number, task.id, task.attempts)
            self._emit("task.started", plan, phase, task_id=task.id, attempts=task.attempts)

            prompt, memories = self.prompt_formatter.format_task_prompt(task, plan.repository_path, agent_config)
            self._mark_used(memories)
            response, send_error = self._send(session_id, prompt)
            content = response.content if response is not None else None
            finish_reason = response.finish_reason if response is not None else None
            if response is not None and response.usage is not None:
                tokens_used += response.usage.total_tokens

            if content:
                complete_task(task, content)
                self._emit("task.completed", plan, phase, task_id=task.id, attempts=task.attempts)
                return TaskExecutionResult(
                    task_id=task.id,
                    description=task.description,
                    success=True,
                    output=content,
                    attempts=task.attempts,
                    finish_reason=finish_reason,
                    tokens_used=tokens_used,
                )

            error = send_error or NO_RESPONSE_ERROR
            fail_task(task, error)
            logger.warning("[Phase {}] Task {} failed: {}", phase.number, task.id, error)

            policy = self.retry_policy
            cancelled = cancel_event is not None and cancel_event.is_set()
            if policy is not None and not cancelled and policy.should_retry(task):
                mark_task_retrying(task, policy.feedback(task, error))
                self._emit("task.retrying", plan, phase, task_id=task.id, attempts=task.attempts, error=error)
                policy.wait(task.attempts, cancel_event)
                if cancel_event is None or not cancel_event.is_set():
                    continue

            if task.status == TaskStatus.FAILED:
                self._emit("task.failed", plan, phase, task_id=task.id, attempts=task.attempts, error=error)
            return TaskExecutionResult(
                task_id=task.id,
                description=task.description,
                success=False,
                error=error,
                attempts=task.attempts,
                finish_reason=finish_reason,
                tokens_used=tokens_used,
            )

    # -- phase outcomes -----------------------------------------------------

    def _fail(
        self,
        plan: ImplementationPlan,
        phase: Phase,
        result: PhaseExecutionResult,
        task: Task,
        error: str,
    ) -> PhaseExecutionResult:
        result.commit = self._commit(plan, phase)
        if result.commit.error:
            logger.warning("[Phase {}] Progress commit failed: {}", phase.number, result.commit.error)
        fail_phase(phase)
        result.failed_task_id = task.id
        result.error = f"Task {task.id} failed: {error}"
        logger.error("[Phase {}] {}", phase.number, result.error)
        self._emit("phase.failed", plan, phase, task_id=task.id, error=result.error)
        return result

    def _cancel(self, plan: ImplementationPlan, phase: Phase, result: PhaseExecutionResult) -> PhaseExecutionResult:
        result.commit = self._commit(plan, phase)
        block_phase(phase)
        result.cancelled = True
        result.error = CANCELLED_ERROR
        logger.info("[Phase {}] Cancelled", phase.number)
        self._emit("phase.cancelled", plan, phase)
        return result

    def _commit(self, plan: ImplementationPlan, phase: Phase) -> CommitCheckpoint:
        """Stage and commit pending changes; nothing staged is a skip, not an error."""
        if not self.commit_enabled:
            return CommitCheckpoint(skipped=True)
        path = plan.repository_path
        message = f"Phase {phase.number}: {phase.name}"

        def commit_op() -> CommitCheckpoint:
            if not self.git.stage_all(path):
                return CommitCheckpoint(error="Unable to stage changes")
            status = self.git.status(path)
            if status.staged_count <= 0:
                return CommitCheckpoint(skipped=True)
            outcome = self.git.commit(path, message, self.commit_options)
            if not outcome.success:
                return CommitCheckpoint(error=outcome.error or "Commit failed")
            return CommitCheckpoint(committed=True, sha=outcome.sha)

        try:
            checkpoint = self.repository_locks.run(path, commit_op, label=f"commit of phase {phase.number}")
        except Exception as exc:
            checkpoint = CommitCheckpoint(error=str(exc))
        if checkpoint.committed:
            logger.info("[Phase {}] Committed {}", phase.number, checkpoint.sha or "")
            self._emit("phase.committed", plan, phase, commit_sha=checkpoint.sha)
        elif checkpoint.skipped:
            logger.debug("[Phase {}] Nothing staged; commit skipped", phase.number)
        return checkpoint

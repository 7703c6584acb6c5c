"""Coarse workflow state machine wrapping plan execution.

A workflow walks the stages Planning -> Design -> Implementation -> Testing ->
Validation -> Review and ends Complete, Failed or Aborted. Each stage is a
handler; the defaults ensure a plan exists, execute it, and re-validate the
repository's memories. Controls (abort, retry, skip) act at stage
granularity, and inside Implementation at task granularity.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional, Union

from loguru import logger

from .agents import AgentConfiguration, load_agent_configuration
from .config import RunnerConfig
from .constants import CANCELLED_ERROR
from .errors import WorkflowControlError, WorkflowNotFoundError
from .events import EventBus, WorkflowEvent
from .fsm import set_plan_status, skip_phase
from .git_utils import _ensure_gitignore
from .interfaces import CommitOptions, GenerationClient, VersionControl
from .memory.store import MemoryStore
from .models import ImplementationPlan, PhaseStatus, PlanExecutionResult, PlanStatus
from .phase_executor import PhaseExecutor
from .plan_executor import PlanExecutor
from .plan_generator import PlanGenerator
from .plan_store import PlanStore
from .retry import TaskRetryPolicy
from .utils import _now, _short_id
from .validation import validate_plan


class WorkflowPhase(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    DESIGN = "design"
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    VALIDATION = "validation"
    REVIEW = "review"
    COMPLETE = "complete"
    FAILED = "failed"
    ABORTED = "aborted"


STAGE_ORDER = (
    WorkflowPhase.PLANNING,
    WorkflowPhase.DESIGN,
    WorkflowPhase.IMPLEMENTATION,
    WorkflowPhase.TESTING,
    WorkflowPhase.VALIDATION,
    WorkflowPhase.REVIEW,
)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class WorkflowStep:
    stage: WorkflowPhase
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


def _default_steps() -> dict[WorkflowPhase, WorkflowStep]:
    return {stage: WorkflowStep(stage=stage) for stage in STAGE_ORDER}


@dataclass
class Workflow:
    repository_path: str
    id: str = field(default_factory=lambda: _short_id("wf"))
    requirements: Optional[str] = None
    app_id: Optional[str] = None
    feature_id: Optional[str] = None
    repository_owner: Optional[str] = None
    repository_name: Optional[str] = None
    plan: Optional[ImplementationPlan] = None
    agent_config: Optional[AgentConfiguration] = None
    phase: WorkflowPhase = WorkflowPhase.PENDING
    current_stage: Optional[WorkflowPhase] = None
    failed_stage: Optional[WorkflowPhase] = None
    steps: dict[WorkflowPhase, WorkflowStep] = field(default_factory=_default_steps)
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    plan_result: Optional[PlanExecutionResult] = None
    stage_runs: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def is_active(self) -> bool:
        return self.phase not in (WorkflowPhase.COMPLETE, WorkflowPhase.FAILED, WorkflowPhase.ABORTED)

    def touch(self) -> None:
        self.updated_at = _now()


# A stage handler returns an error message, or None when the stage succeeded.
StageHandler = Callable[[Workflow], Optional[str]]
StartResult = Union[Workflow, "Future[Workflow]"]


def _describe(event_type: str, payload: dict[str, Any]) -> str:
    phase = payload.get("phase_number")
    task = payload.get("task_id")
    if event_type.startswith("task.") and task:
        return f"Task {task} {event_type.split('.', 1)[1]}"
    if event_type.startswith("phase.") and phase is not None:
        return f"Phase {phase} {event_type.split('.', 1)[1]}"
    return event_type.replace(".", " ")


class WorkflowOrchestrator:
    """Create, run and control workflows.

    Independent workflows may run concurrently in background threads; one
    workflow never runs two stages at once.
    """

    def __init__(
        self,
        client: GenerationClient,
        git: VersionControl,
        memory_store: Optional[MemoryStore] = None,
        *,
        config: Optional[RunnerConfig] = None,
        event_bus: Optional[EventBus] = None,
        plan_generator: Optional[PlanGenerator] = None,
        retry_policy: Optional[TaskRetryPolicy] = None,
        stage_handlers: Optional[Mapping[WorkflowPhase, StageHandler]] = None,
        persist_plans: bool = True,
        max_workers: int = 4,
    ) -> None:
        self.client = client
        self.git = git
        self.memory_store = memory_store
        self.config = config or RunnerConfig()
        self.event_bus = event_bus or EventBus(history_limit=self.config.workflow.event_history)
        self.plan_generator = plan_generator or PlanGenerator(client, model=self.config.generation.model)
        self.retry_policy = retry_policy
        self.persist_plans = persist_plans
        self.max_workers = max_workers
        self._handlers: dict[WorkflowPhase, StageHandler] = {
            WorkflowPhase.PLANNING: self._planning_stage,
            WorkflowPhase.DESIGN: self._passthrough_stage,
            WorkflowPhase.IMPLEMENTATION: self._implementation_stage,
            WorkflowPhase.TESTING: self._passthrough_stage,
            WorkflowPhase.VALIDATION: self._validation_stage,
            WorkflowPhase.REVIEW: self._passthrough_stage,
        }
        if stage_handlers:
            self._handlers.update(stage_handlers)
        self._workflows: dict[str, Workflow] = {}
        self._running: set[str] = set()
        self._lock = threading.RLock()
        self._pool: Optional[ThreadPoolExecutor] = None

    # -- lookup -------------------------------------------------------------

    def get(self, workflow_id: str) -> Workflow:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def list_active(self) -> list[Workflow]:
        with self._lock:
            return [workflow for workflow in self._workflows.values() if workflow.is_active]

    def steps(self, workflow_id: str) -> list[WorkflowStep]:
        workflow = self.get(workflow_id)
        return [workflow.steps[stage] for stage in STAGE_ORDER]

    def is_running(self, workflow_id: str) -> bool:
        with self._lock:
            return workflow_id in self._running

    def stream(self, workflow_id: str) -> Iterator[WorkflowEvent]:
        """Yield the workflow's events, history first, until a terminal event."""
        workflow = self.get(workflow_id)
        if not workflow.is_active and not self.is_running(workflow_id):
            yield from self.event_bus.history(workflow_id)
            return
        with self.event_bus.subscribe(workflow_id, replay=True) as subscription:
            yield from subscription

    # -- lifecycle ----------------------------------------------------------

    def create(
        self,
        repository_path: str,
        *,
        requirements: Optional[str] = None,
        plan: Optional[ImplementationPlan] = None,
        app_id: Optional[str] = None,
        feature_id: Optional[str] = None,
        repository_owner: Optional[str] = None,
        repository_name: Optional[str] = None,
        agent_config: Optional[AgentConfiguration] = None,
    ) -> Workflow:
        workflow = Workflow(
            repository_path=repository_path,
            requirements=requirements,
            plan=plan,
            app_id=app_id,
            feature_id=feature_id,
            repository_owner=repository_owner,
            repository_name=repository_name,
            agent_config=agent_config or load_agent_configuration(repository_path, self.config.project_type),
        )
        with self._lock:
            self._workflows[workflow.id] = workflow
        if self.persist_plans:
            _ensure_gitignore(Path(repository_path))
        logger.info("Created workflow {} for {}", workflow.id, repository_path)
        self._emit(workflow, "workflow.created", f"Workflow created for {repository_path}")
        return workflow

    def start(self, workflow_id: str, *, background: bool = False) -> StartResult:
        """Run the workflow from its current stage.

        Returns:
            The workflow, or a `Future` resolving to it when `background` is set.

        Raises:
            WorkflowControlError: If the workflow is running or already finished.
        """
        workflow = self.get(workflow_id)
        if workflow.phase == WorkflowPhase.FAILED:
            raise WorkflowControlError(f"Workflow {workflow_id} failed; retry or skip the failed step")
        return self._launch(workflow, background)

    def abort(self, workflow_id: str) -> Workflow:
        """Request cancellation and mark the workflow Aborted.

        A running Implementation stage stops before its next task; the plan is
        cancelled once execution has stopped.
        """
        workflow = self.get(workflow_id)
        with self._lock:
            if workflow.phase in (WorkflowPhase.COMPLETE, WorkflowPhase.ABORTED):
                raise WorkflowControlError(f"Workflow {workflow_id} is already {workflow.phase.value}")
            workflow.cancel_event.set()
            stage = workflow.current_stage
            if stage is not None and workflow.steps[stage].status == StepStatus.RUNNING:
                step = workflow.steps[stage]
                step.status = StepStatus.FAILED
                step.error = CANCELLED_ERROR
            workflow.phase = WorkflowPhase.ABORTED
            workflow.completed_at = _now()
            workflow.touch()
            running = workflow.id in self._running
        if not running:
            self._cancel_plan(workflow)
        logger.info("Aborted workflow {}", workflow_id)
        self._emit(workflow, "workflow.aborted", "Workflow aborted")
        return workflow

    def retry_current_step(self, workflow_id: str, *, background: bool = False) -> StartResult:
        """Re-run the stage that failed, keeping earlier successful stages.

        In Implementation the failed plan phase is reset and the plan resumes at
        the task that failed.
        """
        workflow = self.get(workflow_id)
        with self._lock:
            if workflow.phase != WorkflowPhase.FAILED or workflow.failed_stage is None:
                raise WorkflowControlError(f"Workflow {workflow_id} has no failed step to retry")
            stage = workflow.failed_stage
            self._reactivate_plan(workflow)
            step = workflow.steps[stage]
            step.status = StepStatus.PENDING
            step.error = None
            workflow.phase = stage
            workflow.current_stage = stage
            workflow.failed_stage = None
            workflow.error = None
            workflow.touch()
        self._emit(workflow, "stage.retrying", f"Retrying {stage.value}", {"stage": stage.value})
        return self._launch(workflow, background)

    def skip_current_step(self, workflow_id: str, *, background: bool = False) -> StartResult:
        """Skip the current step and continue.

        In Implementation the current plan phase is skipped and the plan resumes
        with the next phase; other stages are marked Skipped.
        """
        workflow = self.get(workflow_id)
        with self._lock:
            if workflow.id in self._running:
                raise WorkflowControlError(f"Workflow {workflow_id} is running; abort it first")
            if workflow.phase == WorkflowPhase.FAILED and workflow.failed_stage is not None:
                stage = workflow.failed_stage
            elif workflow.phase == WorkflowPhase.PENDING:
                stage = self._next_stage(workflow) or STAGE_ORDER[0]
            else:
                raise WorkflowControlError(f"Workflow {workflow_id} cannot skip from {workflow.phase.value}")

            step = workflow.steps[stage]
            step.error = None
            phase = None
            if stage == WorkflowPhase.IMPLEMENTATION and workflow.plan is not None:
                self._reactivate_plan(workflow)
                phase = workflow.plan.get_phase(workflow.plan.current_phase)
                if phase is not None and phase.status in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED):
                    phase = None
            if phase is not None:
                # The stage re-runs and the plan resumes with the next phase.
                plan = workflow.plan
                skip_phase(phase)
                plan.current_phase = phase.number + 1
                plan.touch()
                self._save_plan(plan)
                step.status = StepStatus.PENDING
                detail = f"Skipped plan phase {phase.number}"
            else:
                step.status = StepStatus.SKIPPED
                detail = f"Skipped {stage.value}"
            workflow.phase = stage
            workflow.current_stage = stage
            workflow.failed_stage = None
            workflow.error = None
            workflow.touch()
        logger.info("Workflow {}: {}", workflow_id, detail)
        self._emit(workflow, "stage.skipped", detail, {"stage": stage.value})
        return self._launch(workflow, background)

    def forget(self, workflow_id: str) -> Workflow:
        """Drop a finished workflow and its event history.

        Raises:
            WorkflowControlError: If the workflow is running or has not finished.
        """
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(workflow_id)
            if workflow_id in self._running:
                raise WorkflowControlError(f"Workflow {workflow_id} is running")
            if workflow.is_active:
                raise WorkflowControlError(f"Workflow {workflow_id} is {workflow.phase.value}; it has not finished")
            del self._workflows[workflow_id]
        dropped = self.event_bus.clear(workflow_id)
        logger.debug("Forgot workflow {} ({} event(s))", workflow_id, dropped)
        return workflow

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    # -- execution ----------------------------------------------------------

    def _launch(self, workflow: Workflow, background: bool) -> StartResult:
        with self._lock:
            if workflow.id in self._running:
                raise WorkflowControlError(f"Workflow {workflow.id} is already running")
            if workflow.phase in (WorkflowPhase.COMPLETE, WorkflowPhase.ABORTED):
                raise WorkflowControlError(f"Workflow {workflow.id} is already {workflow.phase.value}")
            self._running.add(workflow.id)
            if background and self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="workflow")
            pool = self._pool
        if background and pool is not None:
            return pool.submit(self._run, workflow)
        return self._run(workflow)

    def _next_stage(self, workflow: Workflow) -> Optional[WorkflowPhase]:
        for stage in STAGE_ORDER:
            if workflow.steps[stage].status not in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                return stage
        return None

    def _run(self, workflow: Workflow) -> Workflow:
        try:
            if workflow.stage_runs == 0:
                self._emit(workflow, "workflow.started", "Workflow started")
            while True:
                if workflow.cancel_event.is_set():
                    self._cancel_plan(workflow)
                    return workflow
                stage = self._next_stage(workflow)
                if stage is None:
                    break
                if workflow.stage_runs >= self.config.workflow.max_iterations:
                    self._fail(workflow, stage, f"Exceeded {self.config.workflow.max_iterations} stage runs")
                    return workflow
                error = self._run_stage(workflow, stage)
                if workflow.cancel_event.is_set():
                    self._cancel_plan(workflow)
                    return workflow
                if error:
                    self._fail(workflow, stage, error)
                    return workflow
                step = workflow.steps[stage]
                step.status = StepStatus.COMPLETED
                step.completed_at = _now()
                self._emit(workflow, "stage.completed", f"{stage.value} completed", {"stage": stage.value})

            with self._lock:
                if workflow.cancel_event.is_set():
                    return workflow
                workflow.phase = WorkflowPhase.COMPLETE
                workflow.current_stage = None
                workflow.completed_at = _now()
                workflow.touch()
            logger.info("Workflow {} completed", workflow.id)
            self._emit(workflow, "workflow.completed", "Workflow completed")
            return workflow
        finally:
            with self._lock:
                self._running.discard(workflow.id)

    def _run_stage(self, workflow: Workflow, stage: WorkflowPhase) -> Optional[str]:
        step = workflow.steps[stage]
        with self._lock:
            if workflow.cancel_event.is_set():
                return None
            workflow.phase = stage
            workflow.current_stage = stage
            workflow.stage_runs += 1
            step.status = StepStatus.RUNNING
            step.attempts += 1
            step.started_at = _now()
            step.completed_at = None
            workflow.touch()
        self._emit(workflow, "stage.started", f"{stage.value} started", {"stage": stage.value})
        handler = self._handlers[stage]
        try:
            return handler(workflow)
        except Exception as exc:
            logger.exception("Workflow {} stage {} raised: {}", workflow.id, stage.value, exc)
            return f"Unexpected error in {stage.value}: {exc}"

    def _fail(self, workflow: Workflow, stage: WorkflowPhase, error: str) -> None:
        with self._lock:
            aborted = workflow.phase == WorkflowPhase.ABORTED or workflow.cancel_event.is_set()
            if not aborted:
                step = workflow.steps[stage]
                step.status = StepStatus.FAILED
                step.error = error
                workflow.phase = WorkflowPhase.FAILED
                workflow.failed_stage = stage
                workflow.error = error
                workflow.touch()
        if aborted:
            logger.info("Workflow {} was aborted; ignoring {} failure: {}", workflow.id, stage.value, error)
            self._cancel_plan(workflow)
            return
        logger.error("Workflow {} failed in {}: {}", workflow.id, stage.value, error)
        self._emit(workflow, "workflow.failed", error, {"stage": stage.value})

    # -- plan helpers -------------------------------------------------------

    def _plan_store(self, workflow: Workflow) -> Optional[PlanStore]:
        return PlanStore(workflow.repository_path) if self.persist_plans else None

    def _save_plan(self, plan: ImplementationPlan) -> None:
        if not self.persist_plans:
            return
        try:
            PlanStore(plan.repository_path).save(plan)
        except OSError as exc:
            logger.error("Unable to persist plan {}: {}", plan.id, exc)

    def _reactivate_plan(self, workflow: Workflow) -> None:
        plan = workflow.plan
        if plan is not None and plan.status in (PlanStatus.FAILED, PlanStatus.CANCELLED, PlanStatus.PAUSED):
            set_plan_status(plan, PlanStatus.ACTIVE)
            self._save_plan(plan)

    def _cancel_plan(self, workflow: Workflow) -> None:
        plan = workflow.plan
        if plan is not None and plan.status in (PlanStatus.ACTIVE, PlanStatus.PAUSED):
            set_plan_status(plan, PlanStatus.CANCELLED, CANCELLED_ERROR)
            self._save_plan(plan)

    # -- default stage handlers ---------------------------------------------

    def _passthrough_stage(self, workflow: Workflow) -> Optional[str]:
        return None

    def _planning_stage(self, workflow: Workflow) -> Optional[str]:
        if workflow.plan is None:
            store = self._plan_store(workflow)
            stored = store.load() if store is not None else None
            if stored is not None and not stored.status.is_terminal:
                workflow.plan = stored
                logger.info("Workflow {} resumed stored plan {}", workflow.id, stored.id)
            elif workflow.requirements:
                workflow.plan = self.plan_generator.generate(
                    workflow.repository_path,
                    workflow.requirements,
                    app_id=workflow.app_id,
                    feature_id=workflow.feature_id,
                    store=store,
                )
            else:
                return "No plan available: provide requirements or a plan"
        elif self.persist_plans:
            self._save_plan(workflow.plan)

        errors, warnings = validate_plan(workflow.plan)
        workflow.warnings.extend(warnings)
        if errors:
            return "Plan is invalid: " + "; ".join(errors)
        self._emit(
            workflow,
            "plan.ready",
            f"Plan {workflow.plan.id} has {workflow.plan.total_phases} phase(s)",
            {"plan_id": workflow.plan.id, "total_phases": workflow.plan.total_phases},
        )
        return None

    def _implementation_stage(self, workflow: Workflow) -> Optional[str]:
        if workflow.plan is None:
            return "No plan available for implementation"
        git_config = self.config.git
        commit_options = CommitOptions(
            author_name=git_config.author_name,
            author_email=git_config.author_email,
            sign=git_config.sign,
        )

        def forward(event_type: str, payload: dict[str, Any]) -> None:
            self._emit(workflow, event_type, _describe(event_type, payload), payload)

        phase_executor = PhaseExecutor(
            self.client,
            self.git,
            self.memory_store if self.config.memory.enabled else None,
            model=self.config.generation.model,
            max_memories=self.config.memory.max_memories_per_prompt,
            retry_policy=self.retry_policy,
            on_event=forward,
            commit_enabled=git_config.commit_enabled,
            commit_options=commit_options,
        )
        executor = PlanExecutor(phase_executor, self._plan_store(workflow), on_event=forward)
        result = executor.execute_plan(workflow.plan, workflow.agent_config, cancel_event=workflow.cancel_event)
        workflow.plan_result = result
        if result.success or result.cancelled:
            return None
        return result.error or "Plan execution failed"

    def _validation_stage(self, workflow: Workflow) -> Optional[str]:
        if self.memory_store is None or not (workflow.repository_owner and workflow.repository_name):
            return None
        try:
            report = self.memory_store.validate_all(workflow.repository_owner, workflow.repository_name)
        except Exception as exc:
            logger.warning("Memory validation failed for workflow {}: {}", workflow.id, exc)
            workflow.warnings.append(f"Memory validation failed: {exc}")
            return None
        if report.stale_count or report.invalid_count:
            workflow.warnings.append(
                f"{report.stale_count} stale and {report.invalid_count} invalid memories need attention"
            )
        self._emit(
            workflow,
            "memory.validated",
            f"Validated {report.total} memories",
            {"valid": report.valid_count, "stale": report.stale_count, "invalid": report.invalid_count},
        )
        return None

    # -- events -------------------------------------------------------------

    def _emit(
        self,
        workflow: Workflow,
        event_type: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        self.event_bus.emit(workflow.id, event_type, message, data)

"""Pydantic models for JSON-facing views of plans, workflows and memories."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from .memory.models import Citation, Memory, MemoryStatistics, MemoryValidationResult
from .models import ImplementationPlan, Phase, PhaseExecutionResult, PhaseStatus, PlanExecutionResult, Task
from .utils import _iso

if TYPE_CHECKING:
    from .workflow import Workflow


class CitationResponse(BaseModel):
    """Citation information."""

    file_path: str
    line_number: Optional[int] = None
    snippet: Optional[str] = None
    is_valid: bool = True
    last_verified: Optional[str] = None

    @classmethod
    def from_citation(cls, citation: Citation) -> "CitationResponse":
        return cls(
            file_path=citation.file_path,
            line_number=citation.line_number,
            snippet=citation.snippet,
            is_valid=citation.is_valid,
            last_verified=_iso(citation.last_verified),
        )


class MemoryResponse(BaseModel):
    """Memory information."""

    id: str
    subject: str
    fact: str
    reason: str = ""
    status: str
    repository_owner: str = ""
    repository_name: str = ""
    citations: list[CitationResponse] = Field(default_factory=list)
    use_count: int = 0
    created_at: str
    last_used_at: Optional[str] = None
    last_validated_at: Optional[str] = None
    expires_at: str

    @classmethod
    def from_memory(cls, memory: Memory) -> "MemoryResponse":
        return cls(
            id=memory.id,
            subject=memory.subject,
            fact=memory.fact,
            reason=memory.reason,
            status=memory.status.value,
            repository_owner=memory.repository_owner,
            repository_name=memory.repository_name,
            citations=[CitationResponse.from_citation(citation) for citation in memory.citations],
            use_count=memory.use_count,
            created_at=_iso(memory.created_at) or "",
            last_used_at=_iso(memory.last_used_at),
            last_validated_at=_iso(memory.last_validated_at),
            expires_at=_iso(memory.expires_at) or "",
        )


class MemoryValidationResponse(BaseModel):
    """Outcome of re-checking a memory's citations."""

    memory_id: str
    found: bool = True
    is_valid: bool = False
    confidence: float = 0.0  # 0.0 to 1.0
    recommended_action: str
    validation_errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: MemoryValidationResult) -> "MemoryValidationResponse":
        return cls(
            memory_id=result.memory_id,
            found=result.found,
            is_valid=result.is_valid,
            confidence=result.confidence,
            recommended_action=result.recommended_action.value,
            validation_errors=result.validation_errors if result.found else [result.error or "Memory not found"],
        )


class StatisticsResponse(BaseModel):
    """Memory usage statistics for one repository."""

    total_memories: int = 0
    active_memories: int = 0
    expired_memories: int = 0
    total_use_count: int = 0
    average_use_count: float = 0.0
    total_citations: int = 0
    most_used_subject: Optional[str] = None
    most_cited_file: Optional[str] = None

    @classmethod
    def from_statistics(cls, stats: MemoryStatistics) -> "StatisticsResponse":
        return cls(**vars(stats))


class TaskInfo(BaseModel):
    """Task information."""

    id: str
    description: str
    status: str
    role: str
    complexity: str
    attempts: int = 0
    files: list[str] = Field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskInfo":
        return cls(
            id=task.id,
            description=task.description,
            status=task.status.value,
            role=task.role.value,
            complexity=task.complexity,
            attempts=task.attempts,
            files=list(task.files),
            error=task.error,
        )


class PhaseInfo(BaseModel):
    """Phase information."""

    number: int
    name: str
    description: str = ""
    status: str
    dependencies: list[int] = Field(default_factory=list)
    progress: float = 0.0  # 0.0 to 1.0
    tasks: list[TaskInfo] = Field(default_factory=list)

    @classmethod
    def from_phase(cls, phase: Phase) -> "PhaseInfo":
        finished = sum(1 for task in phase.tasks if task.is_finished)
        return cls(
            number=phase.number,
            name=phase.name,
            description=phase.description,
            status=phase.status.value,
            dependencies=list(phase.dependencies),
            progress=finished / len(phase.tasks) if phase.tasks else 0.0,
            tasks=[TaskInfo.from_task(task) for task in phase.tasks],
        )


class PlanInfo(BaseModel):
    """Implementation plan overview."""

    id: str
    repository_path: str
    app_id: Optional[str] = None
    feature_id: Optional[str] = None
    status: str
    current_phase: int
    total_phases: int
    phases_completed: int = 0
    estimated_duration: str = ""
    failure_reason: Optional[str] = None
    updated_at: str
    phases: list[PhaseInfo] = Field(default_factory=list)

    @classmethod
    def from_plan(cls, plan: ImplementationPlan) -> "PlanInfo":
        return cls(
            id=plan.id,
            repository_path=plan.repository_path,
            app_id=plan.app_id,
            feature_id=plan.feature_id,
            status=plan.status.value,
            current_phase=plan.current_phase,
            total_phases=plan.total_phases,
            phases_completed=sum(1 for phase in plan.phases if phase.status == PhaseStatus.COMPLETED),
            estimated_duration=plan.estimated_duration,
            failure_reason=plan.failure_reason,
            updated_at=_iso(plan.updated_at) or "",
            phases=[PhaseInfo.from_phase(phase) for phase in plan.ordered_phases()],
        )


class PhaseResultInfo(BaseModel):
    """Outcome of one phase run."""

    phase_number: int
    phase_name: str = ""
    success: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    failed_task_id: Optional[str] = None
    commit_sha: Optional[str] = None
    tokens_used: int = 0
    duration_seconds: float = 0.0

    @classmethod
    def from_result(cls, result: PhaseExecutionResult) -> "PhaseResultInfo":
        return cls(
            phase_number=result.phase_number,
            phase_name=result.phase_name,
            success=result.success,
            cancelled=result.cancelled,
            error=result.error,
            failed_task_id=result.failed_task_id,
            commit_sha=result.commit_sha,
            tokens_used=sum(task.tokens_used for task in result.task_results),
            duration_seconds=result.duration_seconds,
        )


class PlanResultInfo(BaseModel):
    """Outcome of one plan run."""

    plan_id: str
    success: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    failed_phase: Optional[int] = None
    phases: list[PhaseResultInfo] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: PlanExecutionResult) -> "PlanResultInfo":
        return cls(
            plan_id=result.plan_id,
            success=result.success,
            cancelled=result.cancelled,
            error=result.error,
            failed_phase=result.failed_phase,
            phases=[PhaseResultInfo.from_result(item) for item in result.phase_results],
        )


class WorkflowStepInfo(BaseModel):
    stage: str
    status: str
    attempts: int = 0
    error: Optional[str] = None


class WorkflowInfo(BaseModel):
    """Workflow status overview."""

    id: str
    repository_path: str
    phase: str
    current_stage: Optional[str] = None
    error: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
    steps: list[WorkflowStepInfo] = Field(default_factory=list)
    plan: Optional[PlanInfo] = None
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None

    @classmethod
    def from_workflow(cls, workflow: "Workflow") -> "WorkflowInfo":
        return cls(
            id=workflow.id,
            repository_path=workflow.repository_path,
            phase=workflow.phase.value,
            current_stage=workflow.current_stage.value if workflow.current_stage else None,
            error=workflow.error,
            warnings=list(workflow.warnings),
            steps=[
                WorkflowStepInfo(stage=step.stage.value, status=step.status.value, attempts=step.attempts, error=step.error)
                for step in workflow.steps.values()
            ],
            plan=PlanInfo.from_plan(workflow.plan) if workflow.plan is not None else None,
            created_at=_iso(workflow.created_at) or "",
            updated_at=_iso(workflow.updated_at) or "",
            completed_at=_iso(workflow.completed_at),
        )

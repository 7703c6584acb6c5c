"""Define implementation plan records and the results produced while executing them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .constants import DEFAULT_COMPLEXITY
from .utils import _iso, _now, _parse_iso, _short_id


class PlanStatus(str, Enum):
    """Represent the lifecycle of an implementation plan."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELLED)


class PhaseStatus(str, Enum):
    """Represent the lifecycle of a single phase."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TaskStatus(str, Enum):
    """Represent the lifecycle of a task within a phase."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


class AgentRole(str, Enum):
    """Enumerate the agent roles a task can be assigned to."""

    ORCHESTRATOR = "orchestrator"
    CODER = "coder"
    TESTER = "tester"
    REVIEWER = "reviewer"


def _coerce_enum(enum_cls: type[Enum], value: Any, default: Enum) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


@dataclass
class Task:
    """Store one unit of generation-session work."""

    id: str
    description: str = ""
    files: list[str] = field(default_factory=list)
    integration_points: list[str] = field(default_factory=list)
    role: AgentRole = AgentRole.CODER
    complexity: str = DEFAULT_COMPLEXITY
    status: TaskStatus = TaskStatus.NOT_STARTED
    attempts: int = 0
    context: Optional[str] = None
    error: Optional[str] = None
    output: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(
            id=str(data.get("id") or ""),
            description=str(data.get("description") or ""),
            files=[str(item) for item in data.get("files") or []],
            integration_points=[str(item) for item in data.get("integration_points") or []],
            role=_coerce_enum(AgentRole, data.get("role"), AgentRole.CODER),
            complexity=str(data.get("complexity") or DEFAULT_COMPLEXITY),
            status=_coerce_enum(TaskStatus, data.get("status"), TaskStatus.NOT_STARTED),
            attempts=int(data.get("attempts") or 0),
            context=data.get("context"),
            error=data.get("error"),
            output=data.get("output"),
            started_at=_parse_iso(data.get("started_at")),
            completed_at=_parse_iso(data.get("completed_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "files": list(self.files),
            "integration_points": list(self.integration_points),
            "role": self.role.value,
            "complexity": self.complexity,
            "status": self.status.value,
            "attempts": int(self.attempts),
            "context": self.context,
            "error": self.error,
            "output": self.output,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass
class Phase:
    """Store a checkpointed group of tasks within a plan."""

    number: int
    name: str = ""
    description: str = ""
    tasks: list[Task] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    dependencies: list[int] = field(default_factory=list)
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Phase":
        dependencies: list[int] = []
        for item in data.get("dependencies") or []:
            try:
                dependencies.append(int(item))
            except (TypeError, ValueError):
                continue
        return cls(
            number=int(data.get("number") or 0),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            tasks=[Task.from_dict(item) for item in data.get("tasks") or [] if isinstance(item, dict)],
            acceptance_criteria=[str(item) for item in data.get("acceptance_criteria") or []],
            dependencies=dependencies,
            status=_coerce_enum(PhaseStatus, data.get("status"), PhaseStatus.NOT_STARTED),
            started_at=_parse_iso(data.get("started_at")),
            completed_at=_parse_iso(data.get("completed_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": int(self.number),
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "tasks": [task.to_dict() for task in self.tasks],
            "acceptance_criteria": list(self.acceptance_criteria),
            "dependencies": list(self.dependencies),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


def _plan_id() -> str:
    return _short_id("plan")


@dataclass
class ImplementationPlan:
    """Store the ordered phases that implement an app or feature request."""

    repository_path: str
    phases: list[Phase] = field(default_factory=list)
    id: str = field(default_factory=_plan_id)
    app_id: Optional[str] = None
    feature_id: Optional[str] = None
    current_phase: int = 1
    status: PlanStatus = PlanStatus.ACTIVE
    estimated_duration: str = ""
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def total_phases(self) -> int:
        return len(self.phases)

    def get_phase(self, number: int) -> Optional[Phase]:
        for phase in self.phases:
            if phase.number == number:
                return phase
        return None

    def ordered_phases(self) -> list[Phase]:
        return sorted(self.phases, key=lambda phase: phase.number)

    def touch(self) -> None:
        self.updated_at = _now()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImplementationPlan":
        """Create a plan from a persisted dictionary.

        Args:
            data: Raw plan payload as written by `to_dict`.

        Returns:
            An `ImplementationPlan`; missing timestamps default to now.
        """
        return cls(
            id=str(data.get("id") or _plan_id()),
            app_id=data.get("app_id"),
            feature_id=data.get("feature_id"),
            repository_path=str(data.get("repository_path") or ""),
            phases=[Phase.from_dict(item) for item in data.get("phases") or [] if isinstance(item, dict)],
            current_phase=int(data.get("current_phase") or 1),
            status=_coerce_enum(PlanStatus, data.get("status"), PlanStatus.ACTIVE),
            estimated_duration=str(data.get("estimated_duration") or ""),
            failure_reason=data.get("failure_reason"),
            created_at=_parse_iso(data.get("created_at")) or _now(),
            updated_at=_parse_iso(data.get("updated_at")) or _now(),
            completed_at=_parse_iso(data.get("completed_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "feature_id": self.feature_id,
            "repository_path": self.repository_path,
            "total_phases": self.total_phases,
            "current_phase": int(self.current_phase),
            "status": self.status.value,
            "estimated_duration": self.estimated_duration,
            "failure_reason": self.failure_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
            "phases": [phase.to_dict() for phase in self.phases],
        }


@dataclass
class TaskExecutionResult:
    """Capture the outcome of sending one task to the generation session."""

    task_id: str
    description: str = ""
    success: bool = False
    error: Optional[str] = None
    output: Optional[str] = None
    attempts: int = 0
    finish_reason: Optional[str] = None
    tokens_used: int = 0


@dataclass
class CommitCheckpoint:
    """Capture what happened when a phase checkpoint was committed."""

    committed: bool = False
    skipped: bool = False
    sha: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PhaseExecutionResult:
    """Capture the outcome of a phase run."""

    phase_number: int
    phase_name: str = ""
    success: bool = False
    error: Optional[str] = None
    failed_task_id: Optional[str] = None
    cancelled: bool = False
    commit: Optional[CommitCheckpoint] = None
    task_results: list[TaskExecutionResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def commit_sha(self) -> Optional[str]:
        return self.commit.sha if self.commit else None


@dataclass
class PlanExecutionResult:
    """Capture the outcome of running a plan phase by phase."""

    plan_id: str
    success: bool = False
    error: Optional[str] = None
    failed_phase: Optional[int] = None
    cancelled: bool = False
    phase_results: list[PhaseExecutionResult] = field(default_factory=list)

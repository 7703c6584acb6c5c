"""Guarded status transitions for plans, phases and tasks.

The executors only ever move a phase NOT_STARTED -> IN_PROGRESS -> COMPLETED/FAILED
and a task NOT_STARTED/RETRYING -> IN_PROGRESS -> COMPLETED/FAILED. Everything
else (blocking, skipping, resetting for a retry, reactivating a plan) is manual
control exercised by the workflow orchestrator.
"""

from __future__ import annotations

from typing import Optional

from .errors import InvalidTransitionError
from .models import ImplementationPlan, Phase, PhaseStatus, PlanStatus, Task, TaskStatus
from .utils import _now

PHASE_TRANSITIONS: dict[PhaseStatus, frozenset[PhaseStatus]] = {
    PhaseStatus.NOT_STARTED: frozenset({PhaseStatus.IN_PROGRESS, PhaseStatus.BLOCKED, PhaseStatus.SKIPPED}),
    PhaseStatus.IN_PROGRESS: frozenset({PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.BLOCKED}),
    PhaseStatus.BLOCKED: frozenset({PhaseStatus.NOT_STARTED, PhaseStatus.SKIPPED}),
    PhaseStatus.FAILED: frozenset({PhaseStatus.NOT_STARTED, PhaseStatus.SKIPPED}),
    PhaseStatus.COMPLETED: frozenset({PhaseStatus.NOT_STARTED}),
    PhaseStatus.SKIPPED: frozenset(),
}

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.NOT_STARTED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.IN_REVIEW, TaskStatus.RETRYING}
    ),
    TaskStatus.IN_REVIEW: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.IN_PROGRESS}),
    TaskStatus.FAILED: frozenset({TaskStatus.RETRYING, TaskStatus.SKIPPED}),
    TaskStatus.RETRYING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
}

PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.ACTIVE: frozenset(
        {PlanStatus.PAUSED, PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELLED}
    ),
    PlanStatus.PAUSED: frozenset({PlanStatus.ACTIVE, PlanStatus.CANCELLED}),
    PlanStatus.FAILED: frozenset({PlanStatus.ACTIVE}),
    PlanStatus.CANCELLED: frozenset({PlanStatus.ACTIVE}),
    PlanStatus.COMPLETED: frozenset(),
}


def _set_phase_status(phase: Phase, target: PhaseStatus) -> None:
    if target not in PHASE_TRANSITIONS[phase.status]:
        raise InvalidTransitionError(f"Phase {phase.number}", phase.status.value, target.value)
    phase.status = target


def _set_task_status(task: Task, target: TaskStatus) -> None:
    if target not in TASK_TRANSITIONS[task.status]:
        raise InvalidTransitionError(f"Task {task.id}", task.status.value, target.value)
    task.status = target


# -- phases -----------------------------------------------------------------


def start_phase(phase: Phase) -> None:
    _set_phase_status(phase, PhaseStatus.IN_PROGRESS)
    phase.started_at = _now()
    phase.completed_at = None


def complete_phase(phase: Phase) -> None:
    _set_phase_status(phase, PhaseStatus.COMPLETED)
    phase.completed_at = _now()


def fail_phase(phase: Phase) -> None:
    _set_phase_status(phase, PhaseStatus.FAILED)


def block_phase(phase: Phase) -> None:
    _set_phase_status(phase, PhaseStatus.BLOCKED)


def skip_phase(phase: Phase) -> None:
    """Mark a phase and its unfinished tasks as skipped."""
    _set_phase_status(phase, PhaseStatus.SKIPPED)
    for task in phase.tasks:
        if not task.is_finished:
            skip_task(task)


def reset_phase(phase: Phase) -> bool:
    """Prepare a failed, blocked or completed phase for another run.

    Unfinished tasks move to RETRYING; completed tasks are left alone so a rerun
    resumes at the task that stopped the phase. Attempt counters are untouched.

    Returns:
        True when the phase was reset, False when it was already NOT_STARTED.
    """
    if phase.status == PhaseStatus.NOT_STARTED:
        return False
    _set_phase_status(phase, PhaseStatus.NOT_STARTED)
    phase.completed_at = None
    for task in phase.tasks:
        if task.status in (TaskStatus.FAILED, TaskStatus.IN_PROGRESS, TaskStatus.IN_REVIEW):
            mark_task_retrying(task)
    return True


# -- tasks ------------------------------------------------------------------


def start_task(task: Task) -> None:
    _set_task_status(task, TaskStatus.IN_PROGRESS)
    task.started_at = _now()
    task.completed_at = None
    task.attempts += 1


def complete_task(task: Task, output: Optional[str]) -> None:
    _set_task_status(task, TaskStatus.COMPLETED)
    task.completed_at = _now()
    task.output = output
    task.error = None


def fail_task(task: Task, error: str) -> None:
    _set_task_status(task, TaskStatus.FAILED)
    task.error = error


def mark_task_retrying(task: Task, feedback: Optional[str] = None) -> None:
    if task.status == TaskStatus.IN_PROGRESS:
        # An interrupted run never reached a verdict; record it as a failure first.
        task.status = TaskStatus.FAILED
    _set_task_status(task, TaskStatus.RETRYING)
    if feedback:
        task.context = f"{task.context}\n\n{feedback}" if task.context else feedback


def skip_task(task: Task) -> None:
    _set_task_status(task, TaskStatus.SKIPPED)


# -- plans ------------------------------------------------------------------


def set_plan_status(plan: ImplementationPlan, status: PlanStatus, reason: Optional[str] = None) -> None:
    """Move a plan to `status`, stamping timestamps and the failure reason."""
    if status == plan.status:
        return
    if status not in PLAN_TRANSITIONS[plan.status]:
        raise InvalidTransitionError(f"Plan {plan.id}", plan.status.value, status.value)
    plan.status = status
    plan.touch()
    if status == PlanStatus.COMPLETED:
        plan.completed_at = plan.updated_at
        plan.failure_reason = None
    elif status in (PlanStatus.FAILED, PlanStatus.CANCELLED):
        plan.failure_reason = reason
    elif status == PlanStatus.ACTIVE:
        plan.failure_reason = None

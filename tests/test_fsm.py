"""Test guarded status transitions for phases, tasks and plans."""

from __future__ import annotations

import pytest

from feature_plan_runner.errors import InvalidTransitionError
from feature_plan_runner.fsm import (
    block_phase,
    complete_phase,
    complete_task,
    fail_phase,
    fail_task,
    mark_task_retrying,
    reset_phase,
    set_plan_status,
    skip_phase,
    start_phase,
    start_task,
)
from feature_plan_runner.models import ImplementationPlan, Phase, PhaseStatus, PlanStatus, Task, TaskStatus


def _phase(*statuses: TaskStatus) -> Phase:
    return Phase(
        number=1,
        name="Setup",
        tasks=[Task(id=f"1.{index}", description="work", status=status) for index, status in enumerate(statuses, 1)],
    )


def test_phase_happy_path_stamps_timestamps() -> None:
    """Ensure a phase moves NotStarted -> InProgress -> Completed with timestamps."""
    phase = _phase()
    start_phase(phase)
    assert phase.status == PhaseStatus.IN_PROGRESS
    assert phase.started_at is not None
    complete_phase(phase)
    assert phase.status == PhaseStatus.COMPLETED
    assert phase.completed_at is not None


def test_phase_cannot_complete_without_starting() -> None:
    """Ensure illegal phase transitions raise."""
    phase = _phase()
    with pytest.raises(InvalidTransitionError):
        complete_phase(phase)
    with pytest.raises(InvalidTransitionError):
        fail_phase(phase)


def test_start_task_increments_attempts_every_time() -> None:
    """Ensure attempts grow by one on every start and never reset."""
    task = Task(id="1.1", description="x")
    start_task(task)
    fail_task(task, "boom")
    mark_task_retrying(task, "try again")
    start_task(task)
    assert task.attempts == 2
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.context == "try again"


def test_complete_task_clears_error_and_records_output() -> None:
    """Ensure a completed task keeps the output and drops the last error."""
    task = Task(id="1.1", description="x", error="old")
    start_task(task)
    complete_task(task, "patch applied")
    assert task.status == TaskStatus.COMPLETED
    assert task.output == "patch applied"
    assert task.error is None


def test_completed_task_is_final() -> None:
    """Ensure a completed task cannot be restarted."""
    task = Task(id="1.1", description="x")
    start_task(task)
    complete_task(task, "ok")
    with pytest.raises(InvalidTransitionError):
        start_task(task)


def test_reset_phase_moves_unfinished_tasks_to_retrying() -> None:
    """Ensure a failed phase resets while completed tasks stay completed."""
    phase = _phase(TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.NOT_STARTED)
    start_phase(phase)
    fail_phase(phase)

    assert reset_phase(phase) is True

    assert phase.status == PhaseStatus.NOT_STARTED
    assert [task.status for task in phase.tasks] == [
        TaskStatus.COMPLETED,
        TaskStatus.RETRYING,
        TaskStatus.NOT_STARTED,
    ]


def test_reset_phase_is_noop_for_fresh_phase() -> None:
    """Ensure resetting a phase that never ran reports no change."""
    assert reset_phase(_phase(TaskStatus.NOT_STARTED)) is False


def test_skip_phase_skips_unfinished_tasks() -> None:
    """Ensure skipping a blocked phase skips every unfinished task."""
    phase = _phase(TaskStatus.COMPLETED, TaskStatus.NOT_STARTED)
    start_phase(phase)
    block_phase(phase)
    skip_phase(phase)
    assert phase.status == PhaseStatus.SKIPPED
    assert [task.status for task in phase.tasks] == [TaskStatus.COMPLETED, TaskStatus.SKIPPED]


def test_set_plan_status_records_reason_and_completion() -> None:
    """Ensure plan status changes stamp reasons and completion time."""
    plan = ImplementationPlan(repository_path="/repo")
    set_plan_status(plan, PlanStatus.FAILED, "Phase 2 failed")
    assert plan.failure_reason == "Phase 2 failed"

    set_plan_status(plan, PlanStatus.ACTIVE)
    assert plan.failure_reason is None

    set_plan_status(plan, PlanStatus.COMPLETED)
    assert plan.completed_at is not None
    with pytest.raises(InvalidTransitionError):
        set_plan_status(plan, PlanStatus.ACTIVE)


def test_plan_status_terminal_flags() -> None:
    """Ensure only completed, failed and cancelled plans are terminal."""
    assert PlanStatus.COMPLETED.is_terminal
    assert PlanStatus.CANCELLED.is_terminal
    assert not PlanStatus.PAUSED.is_terminal

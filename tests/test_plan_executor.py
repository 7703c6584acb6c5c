"""Test running implementation plans phase by phase."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

from conftest import FakeGenerationClient, FakeGit, make_plan

from feature_plan_runner.constants import CANCELLED_ERROR
from feature_plan_runner.models import PhaseStatus, PlanStatus, TaskStatus
from feature_plan_runner.phase_executor import PhaseExecutor
from feature_plan_runner.plan_executor import PlanExecutor
from feature_plan_runner.plan_store import PlanStore

REPO = "/work/api"


def _executor(client: FakeGenerationClient, git: FakeGit, **kwargs: Any) -> PlanExecutor:
    return PlanExecutor(PhaseExecutor(client, git), **kwargs)


def test_plan_completes_all_phases_in_order(fake_client: FakeGenerationClient, fake_git: FakeGit) -> None:
    """Ensure every phase runs in numeric order and the plan completes."""
    plan = make_plan(REPO, 1, 2)
    plan.phases.reverse()
    events: list[str] = []

    result = _executor(fake_client, fake_git, on_event=lambda event_type, payload: events.append(event_type)).execute_plan(
        plan
    )

    assert result.success
    assert plan.status == PlanStatus.COMPLETED
    assert plan.completed_at is not None
    assert plan.current_phase == 3
    assert fake_git.commits == ["Phase 1: Phase 1", "Phase 2: Phase 2"]
    assert [item.phase_number for item in result.phase_results] == [1, 2]
    assert events == ["plan.started", "plan.completed"]


def test_failed_phase_halts_plan(fake_git: FakeGit) -> None:
    """Ensure phase 1 succeeding and phase 2 failing leaves the plan failed at phase 2."""
    client = FakeGenerationClient(["ok", None])
    plan = make_plan(REPO, 1, 1, 1)

    result = _executor(client, fake_git).execute_plan(plan)

    assert not result.success
    assert result.failed_phase == 2
    assert plan.status == PlanStatus.FAILED
    assert plan.current_phase == 2
    assert plan.failure_reason == f"Phase 2 failed: {result.phase_results[-1].error}"
    assert plan.get_phase(1).status == PhaseStatus.COMPLETED
    assert plan.get_phase(2).status == PhaseStatus.FAILED
    assert plan.get_phase(3).status == PhaseStatus.NOT_STARTED
    assert plan.get_phase(3).tasks[0].status == TaskStatus.NOT_STARTED
    assert len(result.phase_results) == 2


def test_terminal_plan_is_not_run(fake_client: FakeGenerationClient, fake_git: FakeGit) -> None:
    plan = make_plan(REPO, 1)
    plan.status = PlanStatus.COMPLETED
    result = _executor(fake_client, fake_git).execute_plan(plan)
    assert not result.success
    assert result.error == f"Plan {plan.id} is completed"
    assert fake_client.prompts == []


def test_paused_plan_resumes_from_first_unfinished_phase(fake_client: FakeGenerationClient, fake_git: FakeGit) -> None:
    """Ensure completed and skipped phases are passed over on resume."""
    plan = make_plan(REPO, 1, 1, 1)
    plan.status = PlanStatus.PAUSED
    plan.get_phase(1).status = PhaseStatus.COMPLETED
    plan.get_phase(2).status = PhaseStatus.SKIPPED

    result = _executor(fake_client, fake_git).execute_plan(plan)

    assert result.success
    assert [item.phase_number for item in result.phase_results] == [3]
    assert plan.current_phase == 4


def test_cancel_before_first_phase(fake_client: FakeGenerationClient, fake_git: FakeGit) -> None:
    """Ensure a pre-set cancel request cancels the plan without running anything."""
    cancel = threading.Event()
    cancel.set()
    plan = make_plan(REPO, 1, 1)

    result = _executor(fake_client, fake_git).execute_plan(plan, cancel_event=cancel)

    assert result.cancelled
    assert plan.status == PlanStatus.CANCELLED
    assert plan.failure_reason == CANCELLED_ERROR
    assert fake_client.prompts == []


def test_cancel_during_phase_cancels_plan(fake_git: FakeGit) -> None:
    cancel = threading.Event()
    client = FakeGenerationClient()
    client.on_send = lambda prompt: cancel.set()
    plan = make_plan(REPO, 2, 1)

    result = _executor(client, fake_git).execute_plan(plan, cancel_event=cancel)

    assert result.cancelled
    assert plan.status == PlanStatus.CANCELLED
    assert plan.current_phase == 1
    assert plan.get_phase(1).status == PhaseStatus.BLOCKED
    assert plan.get_phase(2).status == PhaseStatus.NOT_STARTED


def test_unmet_dependencies_do_not_block(fake_client: FakeGenerationClient, fake_git: FakeGit) -> None:
    """Ensure declared dependencies are advisory and numeric order wins."""
    plan = make_plan(REPO, 1, 1)
    plan.get_phase(1).dependencies = [2]
    assert _executor(fake_client, fake_git).execute_plan(plan).success


def test_plan_is_saved_after_each_phase(tmp_path: Path, fake_git: FakeGit) -> None:
    """Ensure progress is persisted so a failed plan can be inspected later."""
    client = FakeGenerationClient(["ok", None])
    plan = make_plan(str(tmp_path), 1, 1)
    store = PlanStore(tmp_path)

    _executor(client, fake_git, plan_store=store).execute_plan(plan)

    saved = store.require()
    assert saved.id == plan.id
    assert saved.status == PlanStatus.FAILED
    assert saved.current_phase == 2
    assert saved.get_phase(1).status == PhaseStatus.COMPLETED
    assert saved.get_phase(2).tasks[0].attempts == 1


def test_plan_with_phase_number_gap_is_refused(fake_client: FakeGenerationClient, fake_git: FakeGit) -> None:
    """Ensure a plan numbered 1 and 3 is rejected before anything runs or changes."""
    plan = make_plan(REPO, 1, 1)
    plan.get_phase(2).number = 3
    before = plan.to_dict()

    result = _executor(fake_client, fake_git).execute_plan(plan)

    assert not result.success
    assert result.error == "Plan is invalid: Phase numbers must run from 1 to 2 without gaps"
    assert result.phase_results == []
    assert plan.to_dict() == before
    assert plan.current_phase <= len(plan.phases) + 1
    assert fake_client.prompts == []
    assert fake_git.commits == []


def test_second_phase_failure_after_two_successful_tasks(fake_git: FakeGit) -> None:
    """Ensure a plan halts at phase 2 when its only task gets no content on the first attempt."""
    client = FakeGenerationClient(["ok", "ok", None])
    plan = make_plan(REPO, 2, 1)

    result = _executor(client, fake_git).execute_plan(plan)

    assert not result.success
    assert result.failed_phase == 2
    assert plan.status == PlanStatus.FAILED
    assert plan.current_phase == 2
    first, second = plan.get_phase(1), plan.get_phase(2)
    assert first.status == PhaseStatus.COMPLETED
    assert [task.status for task in first.tasks] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]
    assert second.status == PhaseStatus.FAILED
    assert second.tasks[0].status == TaskStatus.FAILED
    assert second.tasks[0].attempts == 1
    assert result.phase_results[-1].failed_task_id == "2.1"

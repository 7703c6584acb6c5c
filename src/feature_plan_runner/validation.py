"""Check implementation plans for structural problems."""

from __future__ import annotations

from collections import Counter

from .models import ImplementationPlan, Phase, PhaseStatus


def unmet_dependencies(plan: ImplementationPlan, phase: Phase) -> list[int]:
    """Return declared dependencies of `phase` that are neither completed nor skipped."""
    unmet: list[int] = []
    for number in phase.dependencies:
        dependency = plan.get_phase(number)
        if dependency is None or dependency.status not in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED):
            unmet.append(number)
    return unmet


def validate_plan(plan: ImplementationPlan) -> tuple[list[str], list[str]]:
    """Validate a plan.

    Errors describe plans the executor cannot run faithfully (duplicate phase
    numbers or task ids, gaps in the phase numbering, an out-of-range
    ``current_phase``). Warnings describe
    plans that run but probably not as intended.

    Returns:
        A tuple of `(errors, warnings)`.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not plan.phases:
        warnings.append("Plan has no phases")

    numbers = [phase.number for phase in plan.phases]
    for number, count in Counter(numbers).items():
        if count > 1:
            errors.append(f"Phase number {number} is used by {count} phases")
    for number in numbers:
        if number < 1:
            errors.append(f"Phase number {number} must be 1 or greater")
    if numbers and sorted(set(numbers)) != list(range(1, len(set(numbers)) + 1)):
        errors.append(f"Phase numbers must run from 1 to {len(set(numbers))} without gaps")

    if not 1 <= plan.current_phase <= len(plan.phases) + 1:
        errors.append(f"current_phase {plan.current_phase} is outside 1..{len(plan.phases) + 1}")

    task_ids: Counter[str] = Counter()
    known = set(numbers)
    for phase in plan.ordered_phases():
        label = f"Phase {phase.number}"
        if not phase.name.strip():
            warnings.append(f"{label} has no name")
        if not phase.tasks:
            warnings.append(f"{label} has no tasks")
        for dependency in phase.dependencies:
            if dependency not in known:
                warnings.append(f"{label} depends on unknown phase {dependency}")
            elif dependency >= phase.number:
                warnings.append(
                    f"{label} depends on phase {dependency}, which runs later; phases run in numeric order"
                )
        for task in phase.tasks:
            if not task.id.strip():
                errors.append(f"{label} has a task without an id")
                continue
            task_ids[task.id] += 1
            if not task.description.strip():
                warnings.append(f"Task {task.id} has no description")

    for task_id, count in task_ids.items():
        if count > 1:
            errors.append(f"Task id {task_id} is used {count} times")

    return errors, warnings

"""Run an implementation plan phase by phase."""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from loguru import logger

from .agents import AgentConfiguration
from .constants import CANCELLED_ERROR
from .fsm import set_plan_status
from .models import ImplementationPlan, PhaseStatus, PlanExecutionResult, PlanStatus
from .phase_executor import PhaseExecutor
from .plan_store import PlanStore
from .validation import unmet_dependencies, validate_plan

EventCallback = Callable[[str, dict[str, Any]], None]


class PlanExecutor:
    """Drive a `PhaseExecutor` over the phases of a plan in ascending number order.

    Declared phase dependencies are reported but not enforced; numeric order
    is the only ordering guarantee.
    """

    def __init__(
        self,
        phase_executor: PhaseExecutor,
        plan_store: Optional[PlanStore] = None,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        self.phase_executor = phase_executor
        self.plan_store = plan_store
        self.on_event = on_event

    def _emit(self, event_type: str, plan: ImplementationPlan, **data: Any) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event_type, {"plan_id": plan.id, **data})
        except Exception as exc:
            logger.warning("Event observer failed for {}: {}", event_type, exc)

    def _save(self, plan: ImplementationPlan) -> None:
        if self.plan_store is None:
            return
        try:
            self.plan_store.save(plan)
        except OSError as exc:
            logger.error("Unable to persist plan {}: {}", plan.id, exc)

    def _finish_cancelled(self, plan: ImplementationPlan, result: PlanExecutionResult) -> PlanExecutionResult:
        set_plan_status(plan, PlanStatus.CANCELLED, CANCELLED_ERROR)
        result.cancelled = True
        result.error = CANCELLED_ERROR
        self._save(plan)
        logger.info("Plan {} cancelled at phase {}", plan.id, plan.current_phase)
        self._emit("plan.cancelled", plan, current_phase=plan.current_phase)
        return result

    def execute_plan(
        self,
        plan: ImplementationPlan,
        agent_config: Optional[AgentConfiguration] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> PlanExecutionResult:
        """Execute every phase that has not completed or been skipped.

        A plan with structural errors is refused unchanged. Otherwise execution
        halts at the first failed phase: the plan becomes Failed with the reason
        recorded and later phases are left untouched. Cancellation is honored
        before each phase and, inside a phase, before each task.
        """
        result = PlanExecutionResult(plan_id=plan.id)
        if plan.status.is_terminal:
            result.error = f"Plan {plan.id} is {plan.status.value}"
            logger.warning("{}", result.error)
            return result
        errors, _ = validate_plan(plan)
        if errors:
            result.error = "Plan is invalid: " + "; ".join(errors)
            logger.error("Refusing to execute plan {}: {}", plan.id, result.error)
            return result
        if plan.status == PlanStatus.PAUSED:
            set_plan_status(plan, PlanStatus.ACTIVE)

        logger.info("Executing plan {} ({} phase(s))", plan.id, plan.total_phases)
        self._emit("plan.started", plan, total_phases=plan.total_phases)

        for phase in plan.ordered_phases():
            if phase.status in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED):
                plan.current_phase = max(plan.current_phase, phase.number + 1)
                continue
            plan.current_phase = phase.number
            if cancel_event is not None and cancel_event.is_set():
                return self._finish_cancelled(plan, result)

            unmet = unmet_dependencies(plan, phase)
            if unmet:
                logger.warning(
                    "[Phase {}] Declared dependencies {} are not complete; running in numeric order",
                    phase.number,
                    unmet,
                )

            phase_result = self.phase_executor.execute_phase(
                plan,
                phase.number,
                agent_config,
                cancel_event=cancel_event,
            )
            result.phase_results.append(phase_result)

            if phase_result.cancelled:
                return self._finish_cancelled(plan, result)

            if not phase_result.success:
                reason = f"Phase {phase.number} failed: {phase_result.error}"
                set_plan_status(plan, PlanStatus.FAILED, reason)
                result.failed_phase = phase.number
                result.error = reason
                self._save(plan)
                logger.error("Plan {} halted: {}", plan.id, reason)
                self._emit("plan.failed", plan, phase_number=phase.number, error=reason)
                return result

            plan.current_phase = phase.number + 1
            plan.touch()
            self._save(plan)

        set_plan_status(plan, PlanStatus.COMPLETED)
        result.success = True
        self._save(plan)
        logger.info("Plan {} completed", plan.id)
        self._emit("plan.completed", plan)
        return result

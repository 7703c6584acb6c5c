"""Provide the public `feature_plan_runner` package exports."""

from __future__ import annotations

from .phase_executor import PhaseExecutor
from .plan_executor import PlanExecutor
from .workflow import WorkflowOrchestrator

__all__ = ["PhaseExecutor", "PlanExecutor", "WorkflowOrchestrator"]

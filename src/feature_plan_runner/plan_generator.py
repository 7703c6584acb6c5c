"""Generate implementation plans from free-text requirements."""

from __future__ import annotations

import json
from typing import Any, Optional

from loguru import logger

from .constants import DEFAULT_COMPLEXITY, DEFAULT_MODEL
from .interfaces import GenerationClient, SessionConfig
from .models import AgentRole, ImplementationPlan, Phase, Task
from .plan_store import PlanStore
from .prompts import _build_plan_generation_prompt
from .utils import _validate_string_list


def _extract_json_object(text: str) -> Optional[dict[str, Any]]:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def default_phases() -> list[Phase]:
    return [
        Phase(
            number=1,
            name="Implementation",
            description="Implement the requirements",
            tasks=[Task(id="1.1", description="Implement requirements")],
        )
    ]


def _parse_task(raw: dict[str, Any], phase_number: int, index: int) -> Task:
    role = str(raw.get("role") or AgentRole.CODER.value).strip().lower()
    try:
        parsed_role = AgentRole(role)
    except ValueError:
        parsed_role = AgentRole.CODER
    return Task(
        id=str(raw.get("id") or f"{phase_number}.{index}"),
        description=str(raw.get("description") or ""),
        files=_validate_string_list(raw.get("files")),
        integration_points=_validate_string_list(raw.get("integration_points")),
        role=parsed_role,
        complexity=str(raw.get("complexity") or DEFAULT_COMPLEXITY),
    )


def parse_plan_response(content: str) -> tuple[list[Phase], str]:
    """Parse phases from a generation response.

    Phases are renumbered 1..n in response order. An unparsable response, or
    one without any phases, yields the single-phase default plan.

    Returns:
        A tuple of `(phases, estimated_duration)`.
    """
    data = _extract_json_object(content or "")
    raw_phases = data.get("phases") if data else None
    if not isinstance(raw_phases, list) or not raw_phases:
        logger.warning("Plan response had no parsable phases; using the default plan")
        return default_phases(), "Unknown"

    phases: list[Phase] = []
    for number, raw in enumerate((item for item in raw_phases if isinstance(item, dict)), start=1):
        tasks_raw = raw.get("tasks") if isinstance(raw.get("tasks"), list) else []
        dependencies = [int(item) for item in raw.get("dependencies") or [] if isinstance(item, int)]
        phases.append(
            Phase(
                number=number,
                name=str(raw.get("name") or f"Phase {number}"),
                description=str(raw.get("description") or ""),
                tasks=[
                    _parse_task(item, number, index)
                    for index, item in enumerate((t for t in tasks_raw if isinstance(t, dict)), start=1)
                ],
                acceptance_criteria=_validate_string_list(raw.get("acceptance_criteria")),
                dependencies=dependencies,
            )
        )
    if not phases:
        return default_phases(), "Unknown"
    estimated = data.get("estimated_duration") or data.get("estimatedDuration") or "Unknown"
    return phases, str(estimated)


class PlanGenerator:
    """Ask a generation session for a phased plan and persist it."""

    def __init__(self, client: GenerationClient, model: str = DEFAULT_MODEL) -> None:
        self.client = client
        self.model = model

    def generate(
        self,
        repository_path: str,
        requirements: str,
        *,
        app_id: Optional[str] = None,
        feature_id: Optional[str] = None,
        store: Optional[PlanStore] = None,
    ) -> ImplementationPlan:
        session_id = self.client.create_session(
            SessionConfig(repository_path=repository_path, model=self.model, streaming=False)
        )
        try:
            response = self.client.send(session_id, _build_plan_generation_prompt(requirements, repository_path))
        finally:
            try:
                self.client.close(session_id)
            except Exception as exc:
                logger.warning("Failed to close plan generation session {}: {}", session_id, exc)

        phases, estimated = parse_plan_response(response.content or "")
        plan = ImplementationPlan(
            repository_path=repository_path,
            phases=phases,
            app_id=app_id,
            feature_id=feature_id,
            estimated_duration=estimated,
        )
        logger.info("Generated plan {} with {} phase(s)", plan.id, plan.total_phases)
        if store is not None:
            store.save(plan)
        return plan

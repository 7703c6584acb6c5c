"""Build the text prompts sent to the code-generation session."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from loguru import logger

from .agents import AgentConfiguration, CoderAgent, OrchestratorAgent, ReviewerAgent, TesterAgent
from .constants import DEFAULT_MAX_MEMORIES_PER_PROMPT
from .memory.models import Memory
from .memory.store import MemoryStore
from .models import AgentRole, Task

RELEVANT_KNOWLEDGE_HEADER = "## Relevant Knowledge from Memory"

_ROLE_INTROS = {
    AgentRole.ORCHESTRATOR: "Your role is to coordinate the implementation workflow.",
    AgentRole.CODER: "Your role is to implement code changes.",
    AgentRole.TESTER: "Your role is to create and validate tests.",
    AgentRole.REVIEWER: "Your role is to review code quality.",
}


class PromptStyle(str, Enum):
    STRUCTURED = "structured"
    CONVERSATIONAL = "conversational"
    MINIMAL = "minimal"


@dataclass
class FeatureRequest:
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    technical_notes: list[str] = field(default_factory=list)


def _bullets(items: Sequence[str], prefix: str = "- ") -> list[str]:
    return [f"{prefix}{item}" for item in items]


def _role_guidance(task: Task, agent_config: Optional[AgentConfiguration]) -> list[str]:
    if agent_config is None:
        return []
    agent = agent_config.for_role(task.role)
    lines: list[str] = []
    if isinstance(agent, CoderAgent):
        lines.extend(_bullets(agent.constraints))
        if agent.output_requirements.must_include:
            lines.append("- Include: " + ", ".join(agent.output_requirements.must_include))
    elif isinstance(agent, TesterAgent):
        rules = agent.testing_rules
        lines.append(f"- Test framework: {rules.frameworks.test_framework}")
        lines.append(f"- Naming convention: {rules.naming_convention}")
        lines.append(f"- Cover: {', '.join(rules.required_test_paths)}")
        lines.extend(_bullets(agent.validation_checks))
    elif isinstance(agent, ReviewerAgent):
        lines.extend(_bullets(agent.checkpoints))
    elif isinstance(agent, OrchestratorAgent):
        lines.extend(_bullets(agent.responsibilities))
    if not lines:
        return []
    return ["## Guidelines", *lines, ""]


def format_task_prompt(
    task: Task,
    memories: Sequence[Memory] = (),
    agent_config: Optional[AgentConfiguration] = None,
) -> str:
    """Render the prompt for one task.

    The relevant-knowledge section is only present when `memories` is non-empty.
    """
    lines = ["# Task", f"**ID:** {task.id}", f"**Description:** {task.description}", ""]
    if task.files:
        lines.extend(["## Files to create/modify", *_bullets(task.files), ""])
    if task.integration_points:
        lines.extend(["## Integration Points", *_bullets(task.integration_points), ""])
    if task.context:
        lines.extend(["## Additional Context", task.context, ""])
    lines.extend(_role_guidance(task, agent_config))
    if memories:
        lines.append(RELEVANT_KNOWLEDGE_HEADER)
        for memory in memories:
            lines.extend([f"### {memory.subject}", memory.fact])
            if memory.citations:
                lines.append("**Citations:**")
                lines.extend(_bullets([str(citation) for citation in memory.citations]))
            lines.append("")
    lines.extend(
        [
            "## Instructions",
            "Implement the task as described. Follow the repository's existing conventions.",
            f"Complexity level: {task.complexity}",
        ]
    )
    return "\n".join(lines) + "\n"


def format_system_message(role: AgentRole, agent_config: AgentConfiguration) -> str:
    agent = agent_config.for_role(role)
    lines = ["You are an AI coding assistant.", "", _ROLE_INTROS[AgentRole(role)]]
    lines.extend(_bullets(agent.responsibilities))
    return "\n".join(lines) + "\n"


def format_feature_prompt(
    feature: FeatureRequest,
    memories: Sequence[Memory] = (),
    style: PromptStyle = PromptStyle.STRUCTURED,
) -> str:
    lines: list[str] = []
    if style == PromptStyle.STRUCTURED:
        lines.extend([f"# Feature: {feature.title}", "", "## Description", feature.description, ""])
        if feature.acceptance_criteria:
            lines.extend(["## Acceptance Criteria", *_bullets(feature.acceptance_criteria, "- [ ] "), ""])
        if feature.technical_notes:
            lines.extend(["## Technical Notes", *_bullets(feature.technical_notes)])
    elif style == PromptStyle.CONVERSATIONAL:
        lines.extend([f'Implement the "{feature.title}" feature.', feature.description])
        if feature.acceptance_criteria:
            lines.extend(["Acceptance criteria:", *_bullets(feature.acceptance_criteria)])
    else:
        lines.extend([f"Implement: {feature.title}", feature.description])

    if memories:
        lines.extend(["", "## Relevant Context"])
        lines.extend(f"- **{memory.subject}:** {memory.fact}" for memory in memories)
    return "\n".join(lines) + "\n"


def _build_plan_generation_prompt(requirements: str, repository_path: str) -> str:
    return f"""Create a phased implementation plan for the following requirements.

Repository: {repository_path}

Requirements:
{requirements}

Respond with a single JSON object and nothing else, using this schema:
{{
  "estimated_duration": "e.g. 2-3 days",
  "phases": [
    {{
      "number": 1,
      "name": "Short phase name",
      "description": "What this phase delivers",
      "acceptance_criteria": ["observable checks"],
      "dependencies": [],
      "tasks": [
        {{
          "id": "1.1",
          "description": "What to implement",
          "files": ["relative/path.py"],
          "integration_points": ["existing code this touches"],
          "role": "coder",
          "complexity": "low | moderate | high"
        }}
      ]
    }}
  ]
}}

Rules:
- Number phases from 1 in execution order; each phase must leave the repository working.
- Task ids are "<phase>.<n>".
- Keep tasks small enough for a single focused change.
"""


class PromptFormatter:
    """Pull relevant memories and render prompts with them.

    Memory lookups never fail a prompt: search errors are logged and treated as
    no memories.
    """

    def __init__(
        self,
        memory_store: Optional[MemoryStore] = None,
        max_memories: int = DEFAULT_MAX_MEMORIES_PER_PROMPT,
    ) -> None:
        self.memory_store = memory_store
        self.max_memories = max_memories

    def relevant_memories(self, repository_path: str, query: str) -> list[Memory]:
        if self.memory_store is None or self.max_memories <= 0:
            return []
        try:
            return self.memory_store.search(repository_path, query)[: self.max_memories]
        except Exception as exc:
            logger.warning("Memory search failed; continuing without memories: {}", exc)
            return []

    def format_task_prompt(
        self,
        task: Task,
        repository_path: str,
        agent_config: Optional[AgentConfiguration] = None,
    ) -> tuple[str, list[Memory]]:
        """Return the task prompt and the memories that were included in it."""
        memories = self.relevant_memories(repository_path, task.description)
        return format_task_prompt(task, memories, agent_config), memories

    def format_feature_prompt(
        self,
        feature: FeatureRequest,
        repository_path: str,
        style: PromptStyle = PromptStyle.STRUCTURED,
    ) -> str:
        memories = self.relevant_memories(repository_path, f"{feature.title} {feature.description}")
        return format_feature_prompt(feature, memories, style)

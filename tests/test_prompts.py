"""Test prompt rendering for tasks, features and plan generation."""

from __future__ import annotations

from feature_plan_runner.agents import default_agent_configuration
from feature_plan_runner.memory.models import Citation, Memory
from feature_plan_runner.models import AgentRole, Task
from feature_plan_runner.prompts import (
    RELEVANT_KNOWLEDGE_HEADER,
    FeatureRequest,
    PromptFormatter,
    PromptStyle,
    _build_plan_generation_prompt,
    format_feature_prompt,
    format_system_message,
    format_task_prompt,
)


def _task(**kwargs) -> Task:
    defaults = dict(
        id="2.1",
        description="Add pagination to the users endpoint",
        files=["api/users.py"],
        integration_points=["UserRepository.list"],
        complexity="high",
    )
    defaults.update(kwargs)
    return Task(**defaults)


def test_task_prompt_sections_in_order() -> None:
    """Ensure the task prompt renders its sections in a stable order."""
    prompt = format_task_prompt(_task(context="Earlier attempt timed out"), agent_config=default_agent_configuration())

    headings = [
        "# Task",
        "**ID:** 2.1",
        "**Description:** Add pagination to the users endpoint",
        "## Files to create/modify",
        "- api/users.py",
        "## Integration Points",
        "## Additional Context",
        "## Guidelines",
        "## Instructions",
        "Complexity level: high",
    ]
    positions = [prompt.index(heading) for heading in headings]
    assert positions == sorted(positions)
    assert RELEVANT_KNOWLEDGE_HEADER not in prompt


def test_task_prompt_omits_empty_sections() -> None:
    prompt = format_task_prompt(Task(id="1.1", description="Bootstrap"))
    assert "## Files to create/modify" not in prompt
    assert "## Integration Points" not in prompt
    assert "## Additional Context" not in prompt
    assert "## Guidelines" not in prompt


def test_task_prompt_renders_memories_with_citations() -> None:
    memory = Memory(
        subject="pagination",
        fact="List endpoints return cursor tokens",
        citations=[Citation(file_path="api/orders.py", line_number=42)],
    )
    prompt = format_task_prompt(_task(), [memory])
    assert RELEVANT_KNOWLEDGE_HEADER in prompt
    assert "### pagination" in prompt
    assert "- api/orders.py:42" in prompt
    assert prompt.index(RELEVANT_KNOWLEDGE_HEADER) < prompt.index("## Instructions")


def test_tester_guidelines_use_testing_rules() -> None:
    prompt = format_task_prompt(_task(role=AgentRole.TESTER), agent_config=default_agent_configuration("dotnet"))
    assert "- Test framework: xunit" in prompt
    assert "- Naming convention: MethodName_StateUnderTest_ExpectedBehavior" in prompt


def test_system_message_names_role() -> None:
    message = format_system_message(AgentRole.REVIEWER, default_agent_configuration())
    assert "Your role is to review code quality." in message
    assert "- Check for code quality issues" in message


def test_feature_prompt_styles() -> None:
    feature = FeatureRequest(
        title="Dark mode",
        description="Let users switch themes",
        acceptance_criteria=["Toggle persists"],
        technical_notes=["Use CSS variables"],
    )
    memory = Memory(subject="theming", fact="Colors live in tokens.css")

    structured = format_feature_prompt(feature, [memory])
    conversational = format_feature_prompt(feature, style=PromptStyle.CONVERSATIONAL)
    minimal = format_feature_prompt(feature, style=PromptStyle.MINIMAL)

    assert structured.startswith("# Feature: Dark mode")
    assert "- [ ] Toggle persists" in structured
    assert "- **theming:** Colors live in tokens.css" in structured
    assert conversational.startswith('Implement the "Dark mode" feature.')
    assert minimal.startswith("Implement: Dark mode")
    assert "## Relevant Context" not in minimal


def test_plan_generation_prompt_mentions_schema() -> None:
    prompt = _build_plan_generation_prompt("Users can reset passwords", "/work/api")
    assert "Users can reset passwords" in prompt
    assert '"phases": [' in prompt
    assert "Repository: /work/api" in prompt


def test_formatter_treats_search_errors_as_no_memories() -> None:
    """Ensure a failing memory search never fails prompt rendering."""

    class BrokenStore:
        def search(self, repository_path: str, query: str) -> list:
            raise RuntimeError("index locked")

    formatter = PromptFormatter(BrokenStore())  # type: ignore[arg-type]
    prompt, memories = formatter.format_task_prompt(_task(), "/work/api")
    assert memories == []
    assert RELEVANT_KNOWLEDGE_HEADER not in prompt


def test_formatter_caps_memories_per_prompt() -> None:
    class ManyMemories:
        def search(self, repository_path: str, query: str) -> list:
            return [Memory(subject=f"s{index}", fact="f") for index in range(8)]

    formatter = PromptFormatter(ManyMemories(), max_memories=3)  # type: ignore[arg-type]
    assert [memory.subject for memory in formatter.relevant_memories("/work/api", "q")] == ["s0", "s1", "s2"]
    assert PromptFormatter(ManyMemories(), max_memories=0).relevant_memories("/work/api", "q") == []  # type: ignore[arg-type]

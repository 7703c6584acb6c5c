"""Test agent configuration defaults, validation and persistence."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from feature_plan_runner import agents
from feature_plan_runner.agents import (
    AgentConfiguration,
    CoderAgent,
    ReviewerAgent,
    agent_from_dict,
    default_agent_configuration,
    generate_instructions,
    load_agent_configuration,
    save_agent_configuration,
    validate_agent_configuration,
)
from feature_plan_runner.models import AgentRole


def test_base_configuration_covers_every_role() -> None:
    config = default_agent_configuration()
    assert config.for_role(AgentRole.CODER) is config.coder
    assert config.for_role("reviewer") is config.reviewer
    assert config.tester.testing_rules.minimum_coverage == 80
    assert config.tester.testing_rules.frameworks.test_framework == "pytest"


@pytest.mark.parametrize(
    ("project_type", "framework", "constraint"),
    [
        ("dotnet", "xunit", "Use async/await patterns"),
        ("Python", "pytest", "Use type hints"),
        ("node", "vitest", "Use TypeScript strict mode"),
    ],
)
def test_project_profiles_extend_base(project_type: str, framework: str, constraint: str) -> None:
    """Ensure project types swap test frameworks and add coder constraints."""
    config = default_agent_configuration(project_type)
    assert config.tester.testing_rules.frameworks.test_framework == framework
    assert constraint in config.coder.constraints
    assert "Follow existing code patterns" in config.coder.constraints


def test_unknown_project_type_uses_base() -> None:
    assert default_agent_configuration("cobol") == default_agent_configuration()


def test_defaults_are_not_mutated_by_derivation() -> None:
    """Ensure deriving a profile never changes the shared base configuration."""
    before = default_agent_configuration()
    default_agent_configuration("dotnet")
    assert default_agent_configuration() == before


def test_validation_rejects_out_of_range_coverage() -> None:
    config = default_agent_configuration()
    rules = replace(config.tester.testing_rules, minimum_coverage=120)
    broken = replace(config, tester=replace(config.tester, testing_rules=rules))

    result = validate_agent_configuration(broken)

    assert not result.is_valid
    assert result.errors == ["Minimum coverage must be between 0 and 100"]


def test_validation_warns_on_empty_sections() -> None:
    result = validate_agent_configuration(AgentConfiguration())
    assert result.is_valid
    assert result.warnings == [
        "Orchestrator description is empty",
        "Coder has no constraints defined",
        "Reviewer has no checkpoints defined",
    ]


def test_agent_from_dict_dispatches_on_role() -> None:
    coder = agent_from_dict({"role": "coder", "description": "writes code", "constraints": ["small diffs"]})
    reviewer = agent_from_dict({"role": "reviewer", "checkpoints": ["security"]})
    assert isinstance(coder, CoderAgent)
    assert coder.constraints == ("small diffs",)
    assert isinstance(reviewer, ReviewerAgent)
    with pytest.raises(ValueError):
        agent_from_dict({"role": "designer"})


def test_configuration_survives_save_and_load(tmp_path: Path) -> None:
    """Ensure a saved configuration loads back unchanged."""
    config = default_agent_configuration("dotnet")
    path = save_agent_configuration(config, tmp_path)

    assert path == tmp_path / ".plan_runner" / "agents.yaml"
    assert load_agent_configuration(tmp_path) == config


def test_partial_file_keeps_default_sections(tmp_path: Path) -> None:
    path = agents.agents_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text("reviewer:\n  description: strict\n  checkpoints: [naming]\n")

    config = load_agent_configuration(tmp_path)

    assert config.reviewer.description == "strict"
    assert config.reviewer.checkpoints == ("naming",)
    assert config.coder == default_agent_configuration().coder


def test_unreadable_file_falls_back_to_defaults(tmp_path: Path) -> None:
    path = agents.agents_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text("coder: [unclosed\n")
    assert load_agent_configuration(tmp_path, "python") == default_agent_configuration("python")


def test_generate_instructions_lists_guidelines() -> None:
    text = generate_instructions(default_agent_configuration("python"))
    assert text.startswith("# Code Generation Instructions")
    assert "- Use type hints" in text
    assert "- Test framework: pytest" in text
    assert "- Minimum coverage: 80%" in text
    assert "## Code Review Checkpoints" in text

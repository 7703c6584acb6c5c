"""Agent role configurations.

Each role is an immutable blueprint carrying a description, its
responsibilities and the role-specific settings prompts are built from. The
four roles form a tagged union keyed by ``role``; per-project-type defaults
come from the pure factory :func:`default_agent_configuration`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from .constants import AGENTS_FILE, STATE_DIR_NAME
from .io_utils import load_state, save_state
from .models import AgentRole

# ---------------------------------------------------------------------------
# Role settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PhaseCriteria:
    require_all_tasks_complete: bool = True
    require_tests_passing: bool = True
    require_review_approval: bool = True


@dataclass(frozen=True)
class OutputRequirements:
    must_include: tuple[str, ...] = ("implementation", "imports")
    must_validate: tuple[str, ...] = ("syntax", "types")


@dataclass(frozen=True)
class TestingFrameworks:
    test_framework: str = "pytest"
    assertions: str = "pytest"
    mocking: str = "pytest-mock"


@dataclass(frozen=True)
class TestingRules:
    unit_tests_required: bool = True
    integration_tests_required: bool = True
    minimum_coverage: int = 80
    naming_convention: str = "test_<behavior>_<condition>"
    required_test_paths: tuple[str, ...] = ("success_path", "error_path", "edge_cases")
    frameworks: TestingFrameworks = field(default_factory=TestingFrameworks)


@dataclass(frozen=True)
class TestStructureTemplate:
    arrange: str = "Set up test data and mocks"
    act: str = "Call the code under test"
    assert_: str = "Verify expected outcomes"


# ---------------------------------------------------------------------------
# Agent variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrchestratorAgent:
    description: str = ""
    responsibilities: tuple[str, ...] = ()
    phase_criteria: PhaseCriteria = field(default_factory=PhaseCriteria)
    role: AgentRole = field(default=AgentRole.ORCHESTRATOR, init=False)


@dataclass(frozen=True)
class CoderAgent:
    description: str = ""
    responsibilities: tuple[str, ...] = ()
    constraints: tuple[str, ...] = ()
    output_requirements: OutputRequirements = field(default_factory=OutputRequirements)
    role: AgentRole = field(default=AgentRole.CODER, init=False)


@dataclass(frozen=True)
class TesterAgent:
    description: str = ""
    responsibilities: tuple[str, ...] = ()
    testing_rules: TestingRules = field(default_factory=TestingRules)
    validation_checks: tuple[str, ...] = ()
    test_structure: TestStructureTemplate = field(default_factory=TestStructureTemplate)
    role: AgentRole = field(default=AgentRole.TESTER, init=False)


@dataclass(frozen=True)
class ReviewerAgent:
    description: str = ""
    responsibilities: tuple[str, ...] = ()
    checkpoints: tuple[str, ...] = ()
    approval_required: bool = True
    role: AgentRole = field(default=AgentRole.REVIEWER, init=False)


AgentSpec = Union[OrchestratorAgent, CoderAgent, TesterAgent, ReviewerAgent]


@dataclass(frozen=True)
class AgentConfiguration:
    orchestrator: OrchestratorAgent = field(default_factory=OrchestratorAgent)
    coder: CoderAgent = field(default_factory=CoderAgent)
    tester: TesterAgent = field(default_factory=TesterAgent)
    reviewer: ReviewerAgent = field(default_factory=ReviewerAgent)

    def for_role(self, role: AgentRole) -> AgentSpec:
        return {
            AgentRole.ORCHESTRATOR: self.orchestrator,
            AgentRole.CODER: self.coder,
            AgentRole.TESTER: self.tester,
            AgentRole.REVIEWER: self.reviewer,
        }[AgentRole(role)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "orchestrator": _agent_to_dict(self.orchestrator),
            "coder": _agent_to_dict(self.coder),
            "tester": _agent_to_dict(self.tester),
            "reviewer": _agent_to_dict(self.reviewer),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentConfiguration":
        """Build a configuration; sections that are missing keep the defaults."""
        base = default_agent_configuration()
        parts: dict[str, Any] = {}
        for key in ("orchestrator", "coder", "tester", "reviewer"):
            raw = data.get(key)
            if isinstance(raw, dict):
                parts[key] = agent_from_dict({**raw, "role": key})
        return replace(base, **parts)


@dataclass
class AgentConfigValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(item) for item in value if str(item).strip())


def _agent_to_dict(agent: AgentSpec) -> dict[str, Any]:
    data: dict[str, Any] = {
        "role": agent.role.value,
        "description": agent.description,
        "responsibilities": list(agent.responsibilities),
    }
    if isinstance(agent, OrchestratorAgent):
        criteria = agent.phase_criteria
        data["phase_criteria"] = {
            "require_all_tasks_complete": criteria.require_all_tasks_complete,
            "require_tests_passing": criteria.require_tests_passing,
            "require_review_approval": criteria.require_review_approval,
        }
    elif isinstance(agent, CoderAgent):
        data["constraints"] = list(agent.constraints)
        data["output_requirements"] = {
            "must_include": list(agent.output_requirements.must_include),
            "must_validate": list(agent.output_requirements.must_validate),
        }
    elif isinstance(agent, TesterAgent):
        rules = agent.testing_rules
        data["testing_rules"] = {
            "unit_tests_required": rules.unit_tests_required,
            "integration_tests_required": rules.integration_tests_required,
            "minimum_coverage": rules.minimum_coverage,
            "naming_convention": rules.naming_convention,
            "required_test_paths": list(rules.required_test_paths),
            "frameworks": {
                "test_framework": rules.frameworks.test_framework,
                "assertions": rules.frameworks.assertions,
                "mocking": rules.frameworks.mocking,
            },
        }
        data["validation_checks"] = list(agent.validation_checks)
        data["test_structure"] = {
            "arrange": agent.test_structure.arrange,
            "act": agent.test_structure.act,
            "assert": agent.test_structure.assert_,
        }
    else:
        data["checkpoints"] = list(agent.checkpoints)
        data["approval_required"] = agent.approval_required
    return data


def agent_from_dict(data: dict[str, Any]) -> AgentSpec:
    """Rebuild one agent variant, dispatching on its ``role`` tag.

    Raises:
        ValueError: If the role tag is missing or unknown.
    """
    role = AgentRole(str(data.get("role") or "").strip().lower())
    description = str(data.get("description") or "")
    responsibilities = _tuple(data.get("responsibilities"))

    if role == AgentRole.ORCHESTRATOR:
        raw = data.get("phase_criteria") or {}
        return OrchestratorAgent(
            description=description,
            responsibilities=responsibilities,
            phase_criteria=PhaseCriteria(
                require_all_tasks_complete=bool(raw.get("require_all_tasks_complete", True)),
                require_tests_passing=bool(raw.get("require_tests_passing", True)),
                require_review_approval=bool(raw.get("require_review_approval", True)),
            ),
        )
    if role == AgentRole.CODER:
        raw = data.get("output_requirements") or {}
        defaults = OutputRequirements()
        return CoderAgent(
            description=description,
            responsibilities=responsibilities,
            constraints=_tuple(data.get("constraints")),
            output_requirements=OutputRequirements(
                must_include=_tuple(raw.get("must_include")) or defaults.must_include,
                must_validate=_tuple(raw.get("must_validate")) or defaults.must_validate,
            ),
        )
    if role == AgentRole.TESTER:
        rules = data.get("testing_rules") or {}
        frameworks = rules.get("frameworks") or {}
        structure = data.get("test_structure") or {}
        rule_defaults = TestingRules()
        framework_defaults = TestingFrameworks()
        template_defaults = TestStructureTemplate()
        coverage = rules.get("minimum_coverage", rule_defaults.minimum_coverage)
        return TesterAgent(
            description=description,
            responsibilities=responsibilities,
            testing_rules=TestingRules(
                unit_tests_required=bool(rules.get("unit_tests_required", True)),
                integration_tests_required=bool(rules.get("integration_tests_required", True)),
                minimum_coverage=int(coverage) if isinstance(coverage, (int, float)) else rule_defaults.minimum_coverage,
                naming_convention=str(rules.get("naming_convention") or rule_defaults.naming_convention),
                required_test_paths=_tuple(rules.get("required_test_paths")) or rule_defaults.required_test_paths,
                frameworks=TestingFrameworks(
                    test_framework=str(frameworks.get("test_framework") or framework_defaults.test_framework),
                    assertions=str(frameworks.get("assertions") or framework_defaults.assertions),
                    mocking=str(frameworks.get("mocking") or framework_defaults.mocking),
                ),
            ),
            validation_checks=_tuple(data.get("validation_checks")),
            test_structure=TestStructureTemplate(
                arrange=str(structure.get("arrange") or template_defaults.arrange),
                act=str(structure.get("act") or template_defaults.act),
                assert_=str(structure.get("assert") or template_defaults.assert_),
            ),
        )
    return ReviewerAgent(
        description=description,
        responsibilities=responsibilities,
        checkpoints=_tuple(data.get("checkpoints")),
        approval_required=bool(data.get("approval_required", True)),
    )


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

_BASE_CONFIGURATION = AgentConfiguration(
    orchestrator=OrchestratorAgent(
        description="Coordinates workflow execution and agent interactions",
        responsibilities=(
            "Break down tasks into manageable steps",
            "Delegate to appropriate agents",
            "Track progress and handle failures",
        ),
    ),
    coder=CoderAgent(
        description="Implements code changes and features",
        responsibilities=(
            "Write clean, well-structured code",
            "Follow project conventions",
            "Add appropriate comments",
        ),
        constraints=("Keep each file change focused and reviewable", "Follow existing code patterns"),
        output_requirements=OutputRequirements(
            must_include=("implementation", "imports", "tests"),
            must_validate=("syntax", "types", "documentation"),
        ),
    ),
    tester=TesterAgent(
        description="Creates and runs tests",
        responsibilities=(
            "Write comprehensive unit tests",
            "Ensure edge cases are covered",
            "Validate test coverage",
        ),
        validation_checks=("All tests pass", "No regressions introduced"),
    ),
    reviewer=ReviewerAgent(
        description="Reviews code for quality and best practices",
        responsibilities=(
            "Check for code quality issues",
            "Verify security best practices",
            "Ensure performance considerations",
        ),
        checkpoints=("Code style compliance", "Security vulnerabilities", "Performance implications"),
    ),
)

# project type -> (frameworks, naming convention, extra coder constraints)
_PROJECT_PROFILES: dict[str, tuple[TestingFrameworks, str, tuple[str, ...]]] = {
    "dotnet": (
        TestingFrameworks("xunit", "FluentAssertions", "Moq"),
        "MethodName_StateUnderTest_ExpectedBehavior",
        ("Use async/await patterns", "Follow .NET naming conventions"),
    ),
    "python": (
        TestingFrameworks("pytest", "pytest", "pytest-mock"),
        "test_<behavior>_<condition>",
        ("Follow PEP 8 style guide", "Use type hints"),
    ),
    "typescript": (
        TestingFrameworks("vitest", "vitest", "vitest"),
        "describe/it blocks named after behavior",
        ("Use TypeScript strict mode", "Prefer const over let"),
    ),
}
_PROJECT_ALIASES = {
    "csharp": "dotnet",
    "node": "typescript",
    "nodejs": "typescript",
    "javascript": "typescript",
    "py": "python",
}


def default_agent_configuration(project_type: Optional[str] = None) -> AgentConfiguration:
    """Return the default agent configuration for a project type.

    Unknown or missing project types get the base configuration. The result is
    immutable; callers derive variants with ``dataclasses.replace``.
    """
    if not project_type:
        return _BASE_CONFIGURATION
    key = project_type.strip().lower()
    profile = _PROJECT_PROFILES.get(_PROJECT_ALIASES.get(key, key))
    if profile is None:
        return _BASE_CONFIGURATION
    frameworks, naming, constraints = profile
    base = _BASE_CONFIGURATION
    return replace(
        base,
        coder=replace(base.coder, constraints=base.coder.constraints + constraints),
        tester=replace(
            base.tester,
            testing_rules=replace(base.tester.testing_rules, frameworks=frameworks, naming_convention=naming),
        ),
    )


# ---------------------------------------------------------------------------
# Validation / rendering / persistence
# ---------------------------------------------------------------------------


def validate_agent_configuration(config: AgentConfiguration) -> AgentConfigValidation:
    result = AgentConfigValidation()
    if not config.orchestrator.description.strip():
        result.warnings.append("Orchestrator description is empty")
    if not config.coder.constraints:
        result.warnings.append("Coder has no constraints defined")
    coverage = config.tester.testing_rules.minimum_coverage
    if coverage < 0 or coverage > 100:
        result.errors.append("Minimum coverage must be between 0 and 100")
    if not config.reviewer.checkpoints:
        result.warnings.append("Reviewer has no checkpoints defined")
    return result


def generate_instructions(config: AgentConfiguration) -> str:
    """Render repository instructions for the code-generation service as markdown."""
    lines = [
        "# Code Generation Instructions",
        "",
        "Context and guidelines for automated code generation in this repository.",
        "",
        "## Code Style Guidelines",
        "",
    ]
    if config.coder.constraints:
        lines.extend(f"- {constraint}" for constraint in config.coder.constraints)
        lines.append("")

    rules = config.tester.testing_rules
    lines.extend(
        [
            "## Testing Guidelines",
            "",
            f"- Test framework: {rules.frameworks.test_framework}",
            f"- Test naming convention: {rules.naming_convention}",
            f"- Minimum coverage: {rules.minimum_coverage}%",
        ]
    )
    if rules.unit_tests_required:
        lines.append("- Unit tests are required")
    if rules.integration_tests_required:
        lines.append("- Integration tests are required")
    lines.append("")

    lines.extend(["## Code Review Checkpoints", ""])
    if config.reviewer.checkpoints:
        lines.extend(f"- {checkpoint}" for checkpoint in config.reviewer.checkpoints)
        lines.append("")

    lines.extend(["---", "*Generated by feature-plan-runner.*"])
    return "\n".join(lines) + "\n"


def agents_path(repository_path: str | Path) -> Path:
    return Path(repository_path) / STATE_DIR_NAME / AGENTS_FILE


def load_agent_configuration(
    repository_path: str | Path,
    project_type: Optional[str] = None,
) -> AgentConfiguration:
    """Load `.plan_runner/agents.yaml`, falling back to the defaults."""
    path = agents_path(repository_path)
    data, err = load_state(path)
    if err:
        logger.warning("Ignoring unreadable agent configuration: {}", err)
        return default_agent_configuration(project_type)
    if not data:
        return default_agent_configuration(project_type)
    try:
        return AgentConfiguration.from_dict(data)
    except ValueError as exc:
        logger.warning("Ignoring invalid agent configuration {}: {}", path, exc)
        return default_agent_configuration(project_type)


def save_agent_configuration(config: AgentConfiguration, repository_path: str | Path) -> Path:
    path = agents_path(repository_path)
    save_state(path, config.to_dict())
    return path

"""Test loading and resolving the optional runner configuration."""

from __future__ import annotations

from pathlib import Path

from feature_plan_runner.config import load_runner_config, resolve_config
from feature_plan_runner.constants import DEFAULT_MAX_ITERATIONS, DEFAULT_TTL_DAYS, SNIPPET_MATCH_THRESHOLD


def _write_config(project_dir: Path, text: str) -> None:
    path = project_dir / ".plan_runner" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


def test_missing_config_is_empty(tmp_path: Path) -> None:
    assert load_runner_config(tmp_path) == ({}, None)


def test_corrupt_config_reports_error(tmp_path: Path) -> None:
    """Ensure parse failures are reported rather than silently ignored."""
    _write_config(tmp_path, "memory: [broken\n")
    data, err = load_runner_config(tmp_path)
    assert data == {}
    assert err is not None and err.startswith("config.yaml: invalid YAML")


def test_config_loads_mapping(tmp_path: Path) -> None:
    _write_config(tmp_path, "project_type: Python\nworkflow:\n  max_iterations: 7\n")
    data, err = load_runner_config(tmp_path)
    assert err is None
    config = resolve_config(data)
    assert config.project_type == "python"
    assert config.workflow.max_iterations == 7
    assert config.warnings == []


def test_defaults_when_empty() -> None:
    config = resolve_config({})
    assert config.memory.enabled
    assert config.memory.ttl_days == DEFAULT_TTL_DAYS
    assert config.git.commit_enabled
    assert config.workflow.max_iterations == DEFAULT_MAX_ITERATIONS
    assert config.logging.level == "INFO"
    assert config.project_type is None
    assert config.warnings == []


def test_invalid_values_fall_back_with_warnings() -> None:
    """Ensure each invalid value reverts to its default and is described."""
    config = resolve_config(
        {
            "memory": {"ttl_days": 0, "enabled": "yes", "snippet_match_threshold": 1.5},
            "git": "off",
            "logging": {"level": "chatty"},
            "project_type": 3,
        }
    )

    assert config.memory.ttl_days == DEFAULT_TTL_DAYS
    assert config.memory.enabled is True
    assert config.memory.snippet_match_threshold == SNIPPET_MATCH_THRESHOLD
    assert config.git.commit_enabled is True
    assert config.logging.level == "INFO"
    assert config.project_type is None
    assert config.warnings == [
        "memory.snippet_match_threshold: expected a number in (0, 1], got 1.5",
        "memory.enabled: expected true/false, got 'yes'",
        "memory.ttl_days: expected a positive integer, got 0",
        "git: expected a mapping, got str",
        "logging.level: unknown level 'CHATTY'",
        "project_type: expected a string, got 3",
    ]


def test_git_author_and_logging_file() -> None:
    config = resolve_config(
        {
            "git": {"author_name": " Build Bot ", "author_email": "bot@example.com", "sign": True},
            "logging": {"level": "debug", "file": "runner.log"},
            "generation": {"model": "custom-model", "streaming": True},
        }
    )
    assert config.git.author_name == "Build Bot"
    assert config.git.sign is True
    assert config.logging.level == "DEBUG"
    assert config.logging.file == "runner.log"
    assert config.generation.model == "custom-model"
    assert config.generation.streaming is True

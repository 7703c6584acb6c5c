"""Load optional runner configuration from `.plan_runner/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_EVENT_HISTORY,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_MEMORIES_PER_PROMPT,
    DEFAULT_MODEL,
    DEFAULT_TTL_DAYS,
    SNIPPET_MATCH_THRESHOLD,
    STATE_DIR_NAME,
)
from .io_utils import load_state

VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class MemoryConfig:
    enabled: bool = True
    ttl_days: int = DEFAULT_TTL_DAYS
    max_memories_per_prompt: int = DEFAULT_MAX_MEMORIES_PER_PROMPT
    snippet_match_threshold: float = SNIPPET_MATCH_THRESHOLD
    capture_snippets: bool = True


@dataclass
class GenerationConfig:
    model: str = DEFAULT_MODEL
    streaming: bool = False


@dataclass
class GitConfig:
    commit_enabled: bool = True
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    sign: bool = False


@dataclass
class WorkflowConfig:
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    event_history: int = DEFAULT_EVENT_HISTORY


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class RunnerConfig:
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    git: GitConfig = field(default_factory=GitConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    project_type: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = load_state(path)
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _section(config: dict[str, Any], name: str, warnings: list[str]) -> dict[str, Any]:
    raw = _get_nested(config, name)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        warnings.append(f"{name}: expected a mapping, got {type(raw).__name__}")
        return {}
    return raw


def _bool(section: dict[str, Any], key: str, default: bool, prefix: str, warnings: list[str]) -> bool:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    warnings.append(f"{prefix}.{key}: expected true/false, got {value!r}")
    return default


def _positive_int(section: dict[str, Any], key: str, default: int, prefix: str, warnings: list[str]) -> int:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        warnings.append(f"{prefix}.{key}: expected a positive integer, got {value!r}")
        return default
    return value


def _optional_str(section: dict[str, Any], key: str) -> Optional[str]:
    value = section.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def resolve_config(config: dict[str, Any]) -> RunnerConfig:
    """Build a typed `RunnerConfig` from the raw config mapping.

    Invalid values fall back to their defaults; each fallback is described in
    `RunnerConfig.warnings` so callers can surface it.
    """
    warnings: list[str] = []

    memory_raw = _section(config, "memory", warnings)
    threshold = memory_raw.get("snippet_match_threshold", SNIPPET_MATCH_THRESHOLD)
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or not 0 < threshold <= 1:
        warnings.append(f"memory.snippet_match_threshold: expected a number in (0, 1], got {threshold!r}")
        threshold = SNIPPET_MATCH_THRESHOLD
    memory = MemoryConfig(
        enabled=_bool(memory_raw, "enabled", True, "memory", warnings),
        ttl_days=_positive_int(memory_raw, "ttl_days", DEFAULT_TTL_DAYS, "memory", warnings),
        max_memories_per_prompt=_positive_int(
            memory_raw, "max_memories_per_prompt", DEFAULT_MAX_MEMORIES_PER_PROMPT, "memory", warnings
        ),
        snippet_match_threshold=float(threshold),
        capture_snippets=_bool(memory_raw, "capture_snippets", True, "memory", warnings),
    )

    generation_raw = _section(config, "generation", warnings)
    generation = GenerationConfig(
        model=_optional_str(generation_raw, "model") or DEFAULT_MODEL,
        streaming=_bool(generation_raw, "streaming", False, "generation", warnings),
    )

    git_raw = _section(config, "git", warnings)
    git = GitConfig(
        commit_enabled=_bool(git_raw, "commit_enabled", True, "git", warnings),
        author_name=_optional_str(git_raw, "author_name"),
        author_email=_optional_str(git_raw, "author_email"),
        sign=_bool(git_raw, "sign", False, "git", warnings),
    )

    workflow_raw = _section(config, "workflow", warnings)
    workflow = WorkflowConfig(
        max_iterations=_positive_int(workflow_raw, "max_iterations", DEFAULT_MAX_ITERATIONS, "workflow", warnings),
        event_history=_positive_int(workflow_raw, "event_history", DEFAULT_EVENT_HISTORY, "workflow", warnings),
    )

    logging_raw = _section(config, "logging", warnings)
    level = (_optional_str(logging_raw, "level") or "INFO").upper()
    if level not in VALID_LOG_LEVELS:
        warnings.append(f"logging.level: unknown level {level!r}")
        level = "INFO"
    logging_config = LoggingConfig(level=level, file=_optional_str(logging_raw, "file"))

    project_type = config.get("project_type")
    if project_type is not None and not isinstance(project_type, str):
        warnings.append(f"project_type: expected a string, got {project_type!r}")
        project_type = None

    return RunnerConfig(
        memory=memory,
        generation=generation,
        git=git,
        workflow=workflow,
        logging=logging_config,
        project_type=project_type.strip().lower() if project_type else None,
        warnings=warnings,
    )

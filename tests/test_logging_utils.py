"""Tests for logging_utils module."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest
from loguru import logger

from feature_plan_runner.logging_utils import configure_logging, pretty, summarize_event


@pytest.fixture
def restore_logger() -> Iterator[None]:
    yield
    logger.remove()
    logger.add(sys.stderr)


class TestSummarizeEvent:
    """Test summarize_event function."""

    def test_keeps_known_keys(self):
        """Test that identifying keys are copied and others dropped."""
        result = summarize_event(
            "task.completed",
            {"plan_id": "plan_1", "phase_number": 2, "task_id": "2.1", "output": "long text", "attempts": None},
        )

        assert result == {"event": "task.completed", "plan_id": "plan_1", "phase_number": 2, "task_id": "2.1"}

    def test_truncates_long_errors(self):
        """Test that long error strings are capped."""
        result = summarize_event("phase.failed", {"error": "x" * 500})

        assert len(result["error"]) == 241
        assert result["error"].endswith("…")

    def test_empty_error_is_omitted(self):
        result = summarize_event("phase.started", {"error": ""})

        assert "error" not in result


class TestPretty:
    """Test pretty function."""

    def test_serializes_json(self):
        assert pretty({"a": 1}) == '{\n  "a": 1\n}'

    def test_uses_str_for_unknown_types(self):
        """Test that non-JSON values are rendered via str."""
        assert pretty({"path": Path("/tmp/x")}, indent=0) == '{\n"path": "/tmp/x"\n}'

    def test_falls_back_to_str(self):
        """Test that circular structures fall back to str()."""
        data: dict = {}
        data["self"] = data

        assert pretty(data) == str(data)


class TestConfigureLogging:
    """Test configure_logging function."""

    def test_file_sink_receives_messages(self, tmp_path: Path, restore_logger: None):
        log_file = tmp_path / "runner.log"

        configure_logging("debug", str(log_file))
        logger.debug("[Phase {}] checkpoint", 3)
        logger.remove()

        text = log_file.read_text()
        assert "DEBUG" in text
        assert "[Phase 3] checkpoint" in text

    def test_level_filters_messages(self, tmp_path: Path, restore_logger: None):
        """Test that messages below the configured level are dropped."""
        log_file = tmp_path / "runner.log"

        configure_logging("WARNING", str(log_file))
        logger.info("quiet")
        logger.warning("loud")
        logger.remove()

        text = log_file.read_text()
        assert "quiet" not in text
        assert "loud" in text

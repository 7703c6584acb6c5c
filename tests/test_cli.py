"""Test the command line interface for plans, memories and agents."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Iterator

import pytest
from conftest import make_plan
from loguru import logger

from feature_plan_runner import cli
from feature_plan_runner.memory import MemoryStore, Provenance
from feature_plan_runner.models import PlanStatus
from feature_plan_runner.plan_store import PlanStore


@pytest.fixture(autouse=True)
def restore_logger() -> Iterator[None]:
    yield
    logger.remove()
    logger.add(sys.stderr)


def _run(project_dir: Path, *args: str) -> int:
    return cli.main(["--project-dir", str(project_dir), "--log-level", "WARNING", *args])


def _json_output(capsys: pytest.CaptureFixture[str]) -> Any:
    return json.loads(capsys.readouterr().out)


def _seed_memory(project_dir: Path) -> str:
    source = project_dir / "src" / "app.py"
    source.parent.mkdir(parents=True, exist_ok=True)
    source.write_text("def main():\n    return 0\n")
    store = MemoryStore(path=project_dir / ".plan_runner" / "memories.yaml")
    memory = store.store(
        "The entry point returns an exit code",
        ["src/app.py:1"],
        subject="app entry point",
        provenance=Provenance("acme", "api", str(project_dir)),
    )
    return memory.id


def test_plan_show_without_plan_fails(tmp_path: Path) -> None:
    assert _run(tmp_path, "plan", "show") == 1


def test_plan_show_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Ensure `plan show --json` prints the plan overview."""
    plan = make_plan(str(tmp_path), 1, 2)
    PlanStore(tmp_path).save(plan)

    assert _run(tmp_path, "--json", "plan", "show") == 0

    data = _json_output(capsys)
    assert data["id"] == plan.id
    assert data["total_phases"] == 2
    assert [phase["name"] for phase in data["phases"]] == ["Phase 1", "Phase 2"]


def test_plan_show_table(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    PlanStore(tmp_path).save(make_plan(str(tmp_path), 1))
    assert _run(tmp_path, "plan", "show") == 0
    out = capsys.readouterr().out
    assert "Phase 1 of 1" in out
    assert "not_started" in out


def test_plan_validate_reports_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    plan = make_plan(str(tmp_path), 1, 1)
    plan.phases[1].tasks[0].id = "1.1"
    PlanStore(tmp_path).save(plan)

    assert _run(tmp_path, "--json", "plan", "validate") == 1
    assert _json_output(capsys)["errors"] == ["Task id 1.1 is used 2 times"]


def test_plan_cancel(tmp_path: Path) -> None:
    """Ensure a plan can be cancelled once, with the reason recorded."""
    store = PlanStore(tmp_path)
    store.save(make_plan(str(tmp_path), 1))

    assert _run(tmp_path, "plan", "cancel", "--reason", "superseded") == 0
    saved = store.require()
    assert saved.status == PlanStatus.CANCELLED
    assert saved.failure_reason == "superseded"
    assert _run(tmp_path, "plan", "cancel") == 1


def test_memory_list_and_stats(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    memory_id = _seed_memory(tmp_path)

    assert _run(tmp_path, "--json", "memory", "--owner", "acme", "--name", "api", "list") == 0
    listed = _json_output(capsys)
    assert [item["id"] for item in listed] == [memory_id]
    assert listed[0]["citations"][0]["snippet"] == "def main():"

    assert _run(tmp_path, "--json", "memory", "--owner", "acme", "--name", "api", "stats") == 0
    stats = _json_output(capsys)
    assert stats["total_memories"] == 1
    assert stats["most_cited_file"] == "src/app.py"


def test_memory_list_other_repository_is_empty(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _seed_memory(tmp_path)
    assert _run(tmp_path, "--json", "memory", "--owner", "acme", "--name", "web", "list") == 0
    assert _json_output(capsys) == []


def test_memory_validate_detects_changed_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Ensure a rewritten cited line makes the memory invalid."""
    memory_id = _seed_memory(tmp_path)
    (tmp_path / "src" / "app.py").write_text("import sys\n\nsys.exit(run())\n")

    assert _run(tmp_path, "--json", "memory", "validate", memory_id) == 0

    (result,) = _json_output(capsys)
    assert result["is_valid"] is False
    assert result["confidence"] == 0.0
    assert result["recommended_action"] == "delete"


def test_memory_validate_and_refresh_unknown_id(tmp_path: Path) -> None:
    assert _run(tmp_path, "memory", "validate", "missing") == 1
    assert _run(tmp_path, "memory", "refresh", "missing") == 1


def test_memory_prune(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _seed_memory(tmp_path)
    assert _run(tmp_path, "--json", "memory", "--owner", "acme", "--name", "api", "prune") == 0
    assert _json_output(capsys) == {"removed": 0}


def test_memory_add_and_delete(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Ensure memories can be created and removed from the command line."""
    source = tmp_path / "src" / "app.py"
    source.parent.mkdir(parents=True)
    source.write_text("def main():\n    return 0\n")
    repo = ("memory", "--owner", "acme", "--name", "api")

    assert (
        _run(
            tmp_path,
            "--json",
            *repo,
            "add",
            "--subject",
            "entry point",
            "--fact",
            "main returns an exit code",
            "--cite",
            "src/app.py:1",
            "--cite",
            "README.md",
        )
        == 0
    )
    added = _json_output(capsys)
    assert added["repository_owner"] == "acme"
    assert [citation["snippet"] for citation in added["citations"]] == ["def main():", None]

    assert _run(tmp_path, "--json", *repo, "list") == 0
    assert [item["id"] for item in _json_output(capsys)] == [added["id"]]

    assert _run(tmp_path, "memory", "delete", added["id"]) == 0
    assert _run(tmp_path, "memory", "delete", added["id"]) == 1
    assert _run(tmp_path, "--json", *repo, "list") == 0
    assert _json_output(capsys) == []


def test_memory_add_rejects_bad_citation(tmp_path: Path) -> None:
    assert _run(tmp_path, "memory", "add", "--subject", "s", "--fact", "f", "--cite", "app.py:0") == 1


def test_memory_supersede(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    old_id = _seed_memory(tmp_path)
    new_id = _seed_memory(tmp_path)

    assert _run(tmp_path, "--json", "memory", "supersede", old_id, "--by", new_id) == 0
    assert _json_output(capsys)["status"] == "superseded"
    assert _run(tmp_path, "memory", "supersede", old_id, "--by", "missing") == 1

    reloaded = MemoryStore(path=tmp_path / ".plan_runner" / "memories.yaml")
    assert reloaded.get(old_id).superseded_by == new_id


def test_agents_init_and_show(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Ensure `agents init` writes a profile once and `agents show` reads it back."""
    assert _run(tmp_path, "agents", "init", "--project-type", "dotnet") == 0
    assert (tmp_path / ".plan_runner" / "agents.yaml").exists()
    assert _run(tmp_path, "agents", "init") == 1
    capsys.readouterr()

    assert _run(tmp_path, "--json", "agents", "show") == 0
    data = _json_output(capsys)
    assert data["configuration"]["tester"]["testing_rules"]["frameworks"]["test_framework"] == "xunit"
    assert data["errors"] == []


def test_agents_show_instructions(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(tmp_path, "agents", "show", "--instructions") == 0
    assert capsys.readouterr().out.startswith("# Code Generation Instructions")


def test_missing_command_exits_with_usage_error(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        _run(tmp_path)
    assert excinfo.value.code == 2

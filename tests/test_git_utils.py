"""Test git helper parsing and ignore-file maintenance."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from feature_plan_runner.git_utils import GitCli, _ensure_gitignore, _ignore_file_has_entry, _parse_porcelain
from feature_plan_runner.interfaces import CommitOptions


def test_parse_porcelain_counts_entries() -> None:
    output = "\n".join(
        [
            "M  staged.py",
            " M modified.py",
            "MM both.py",
            "A  added.py",
            "?? new.txt",
            "!! ignored.log",
            "",
        ]
    )
    assert _parse_porcelain(output) == (3, 2, 1)


def test_parse_porcelain_empty() -> None:
    assert _parse_porcelain("") == (0, 0, 0)


def test_ensure_gitignore_creates_file(tmp_path: Path) -> None:
    _ensure_gitignore(tmp_path)
    assert (tmp_path / ".gitignore").read_text() == ".plan_runner/\n"


def test_ensure_gitignore_is_idempotent(tmp_path: Path) -> None:
    """Ensure existing entries are kept and the state dir is added only once."""
    gitignore = tmp_path / ".gitignore"
    gitignore.write_text("node_modules/\n# comment\n*.pyc")

    _ensure_gitignore(tmp_path)
    _ensure_gitignore(tmp_path)

    assert gitignore.read_text() == "node_modules/\n# comment\n*.pyc\n.plan_runner/\n"


def test_ignore_entry_matches_without_trailing_slash(tmp_path: Path) -> None:
    gitignore = tmp_path / ".gitignore"
    gitignore.write_text(".plan_runner\n")
    assert _ignore_file_has_entry(gitignore, ".plan_runner/")
    assert not _ignore_file_has_entry(tmp_path / "missing", ".plan_runner/")


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _init_repo(path: Path) -> None:
    for args in (
        ["init", "-q"],
        ["config", "user.name", "Plan Runner"],
        ["config", "user.email", "runner@example.com"],
        ["config", "commit.gpgsign", "false"],
    ):
        subprocess.run(["git", *args], cwd=path, check=True)


@requires_git
def test_git_cli_stages_and_commits(tmp_path: Path) -> None:
    """Ensure the subprocess git collaborator reports status and commits."""
    _init_repo(tmp_path)
    (tmp_path / "app.py").write_text("print('hi')\n")
    git = GitCli()

    before = git.status(str(tmp_path))
    assert before.untracked_count == 1
    assert before.is_dirty

    assert git.stage_all(str(tmp_path))
    assert git.status(str(tmp_path)).staged_count == 1

    outcome = git.commit(
        str(tmp_path),
        "Phase 1: Scaffold",
        CommitOptions(author_name="Build Bot", author_email="bot@example.com"),
    )
    assert outcome.success, outcome.error
    assert outcome.sha and len(outcome.sha) == 40
    assert not git.status(str(tmp_path)).is_dirty


@requires_git
def test_git_cli_commit_with_nothing_staged_fails(tmp_path: Path) -> None:
    _init_repo(tmp_path)
    outcome = GitCli().commit(str(tmp_path), "empty")
    assert not outcome.success
    assert outcome.error

"""Provide small git helpers and the default subprocess-backed version control."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import STATE_DIR_NAME
from .interfaces import CommitOptions, CommitOutcome, GitStatus


def _run_git(project_dir: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _git_head_sha(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "HEAD")
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _parse_porcelain(output: str) -> tuple[int, int, int]:
    """Count staged, modified and untracked entries in `git status --porcelain` output."""
    staged = modified = untracked = 0
    for line in output.splitlines():
        if len(line) < 2:
            continue
        index_code, worktree_code = line[0], line[1]
        if index_code == "?" and worktree_code == "?":
            untracked += 1
            continue
        if index_code not in (" ", "?", "!"):
            staged += 1
        if worktree_code not in (" ", "?", "!"):
            modified += 1
    return staged, modified, untracked


class GitCli:
    """Version control collaborator that shells out to the `git` binary."""

    def stage_all(self, path: str) -> bool:
        result = _run_git(Path(path), "add", "-A")
        if result.returncode != 0:
            logger.warning("git add failed in {}: {}", path, result.stderr.strip())
            return False
        return True

    def status(self, path: str) -> GitStatus:
        project_dir = Path(path)
        result = _run_git(project_dir, "status", "--porcelain")
        if result.returncode != 0:
            raise RuntimeError(f"git status failed: {result.stderr.strip() or result.stdout.strip()}")
        staged, modified, untracked = _parse_porcelain(result.stdout)
        return GitStatus(
            staged_count=staged,
            modified_count=modified,
            untracked_count=untracked,
            current_branch=_git_current_branch(project_dir),
        )

    def commit(self, path: str, message: str, options: Optional[CommitOptions] = None) -> CommitOutcome:
        project_dir = Path(path)
        args = ["commit", "-m", message]
        if options:
            if options.amend:
                args.append("--amend")
            if options.sign:
                args.append("-S")
            if options.author_name and options.author_email:
                args.append(f"--author={options.author_name} <{options.author_email}>")
        result = _run_git(project_dir, *args)
        if result.returncode != 0:
            error = (result.stderr or result.stdout or "").strip() or f"git commit exited {result.returncode}"
            return CommitOutcome(success=False, error=error)
        return CommitOutcome(success=True, sha=_git_head_sha(project_dir))


def _ignore_file_has_entry(path: Path, ignore_entry: str) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().rstrip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return ignore_entry.strip().rstrip("/") in lines


def _ensure_gitignore(project_dir: Path) -> None:
    """Keep the runner state directory out of phase commits."""
    gitignore_path = project_dir / ".gitignore"
    ignore_entry = f"{STATE_DIR_NAME}/"
    if _ignore_file_has_entry(gitignore_path, ignore_entry):
        return
    try:
        contents = gitignore_path.read_text() if gitignore_path.exists() else ""
        if contents and not contents.endswith("\n"):
            contents += "\n"
        gitignore_path.parent.mkdir(parents=True, exist_ok=True)
        gitignore_path.write_text(contents + ignore_entry + "\n")
    except OSError as exc:
        logger.warning("Unable to update .gitignore: {}", exc)

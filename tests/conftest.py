"""Shared fakes for the executor, workflow and memory tests."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Union

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from feature_plan_runner.interfaces import (  # noqa: E402
    CommitOptions,
    CommitOutcome,
    GenerationResponse,
    GitStatus,
    SessionConfig,
    TokenUsage,
)
from feature_plan_runner.models import ImplementationPlan, Phase, Task  # noqa: E402

# A scripted reply is content, None for an empty response, or an exception to raise.
Reply = Union[str, None, Exception]


class FakeGenerationClient:
    def __init__(self, replies: Optional[list[Reply]] = None, default: Reply = "done") -> None:
        self.replies: list[Reply] = list(replies or [])
        self.default = default
        self.sessions: list[SessionConfig] = []
        self.prompts: list[str] = []
        self.closed: list[str] = []
        self.on_send: Optional[Callable[[str], None]] = None

    def create_session(self, config: SessionConfig) -> str:
        self.sessions.append(config)
        return f"session-{len(self.sessions)}"

    def send(self, session_id: str, prompt: str) -> GenerationResponse:
        self.prompts.append(prompt)
        if self.on_send is not None:
            self.on_send(prompt)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return GenerationResponse(content=reply, finish_reason="stop", usage=TokenUsage(10, 5))

    def close(self, session_id: str) -> None:
        self.closed.append(session_id)


class FakeGit:
    def __init__(self, staged: int = 1, commit_error: Optional[str] = None) -> None:
        self.staged = staged
        self.commit_error = commit_error
        self.commits: list[str] = []
        self.options: list[Optional[CommitOptions]] = []

    def stage_all(self, path: str) -> bool:
        return True

    def status(self, path: str) -> GitStatus:
        return GitStatus(staged_count=self.staged, current_branch="main")

    def commit(self, path: str, message: str, options: Optional[CommitOptions] = None) -> CommitOutcome:
        if self.commit_error:
            return CommitOutcome(success=False, error=self.commit_error)
        self.commits.append(message)
        self.options.append(options)
        return CommitOutcome(success=True, sha=f"sha{len(self.commits)}")


class FakeFileSystem:
    def __init__(self, files: Optional[dict[str, str]] = None) -> None:
        self.files = dict(files or {})

    def exists(self, path: str) -> bool:
        return path in self.files

    def read_lines(self, path: str) -> list[str]:
        return self.files[path].splitlines()


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_plan(repository_path: str, *task_counts: int) -> ImplementationPlan:
    """Build a plan with one phase per entry of `task_counts`."""
    phases = [
        Phase(
            number=number,
            name=f"Phase {number}",
            description=f"Deliver part {number}",
            tasks=[Task(id=f"{number}.{index}", description=f"Task {number}.{index}") for index in range(1, count + 1)],
        )
        for number, count in enumerate(task_counts, start=1)
    ]
    return ImplementationPlan(repository_path=repository_path, phases=phases)


@pytest.fixture
def fake_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, tzinfo=timezone.utc))

"""Collaborator protocols consumed by the executors and the memory store."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from .constants import DEFAULT_MODEL


@dataclass
class GitStatus:
    staged_count: int = 0
    modified_count: int = 0
    untracked_count: int = 0
    current_branch: Optional[str] = None

    @property
    def is_dirty(self) -> bool:
        return bool(self.staged_count or self.modified_count or self.untracked_count)


@dataclass
class CommitOptions:
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    amend: bool = False
    sign: bool = False


@dataclass
class CommitOutcome:
    success: bool
    sha: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SessionConfig:
    repository_path: str
    model: str = DEFAULT_MODEL
    streaming: bool = False
    system_message: Optional[str] = None


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class GenerationResponse:
    content: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)


class VersionControl(Protocol):
    def stage_all(self, path: str) -> bool:
        ...

    def status(self, path: str) -> GitStatus:
        ...

    def commit(self, path: str, message: str, options: Optional[CommitOptions] = None) -> CommitOutcome:
        ...


class GenerationClient(Protocol):
    """Drives an external code-generation service.

    An empty `content` in the response is the only failure signal the phase
    executor looks at; `send` may also raise, which is treated the same way.
    """

    def create_session(self, config: SessionConfig) -> str:
        ...

    def send(self, session_id: str, prompt: str) -> GenerationResponse:
        ...

    def close(self, session_id: str) -> None:
        ...


class FileSystem(Protocol):
    def exists(self, path: str) -> bool:
        ...

    def read_lines(self, path: str) -> list[str]:
        ...

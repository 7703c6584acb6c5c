"""Define memory records, citations and the results of validating them."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from ..constants import DEFAULT_LIST_LIMIT, DEFAULT_TTL_DAYS
from ..utils import _iso, _now, _parse_iso

_CITATION_RE = re.compile(r"^(?P<path>.+?):(?P<line>\d+)$")


class MemoryStatus(str, Enum):
    ACTIVE = "active"
    STALE = "stale"
    INVALID = "invalid"
    SUPERSEDED = "superseded"
    ARCHIVED = "archived"


class MemoryAction(str, Enum):
    """Recommended follow-up after validating a memory."""

    KEEP = "keep"
    UPDATE_CITATIONS = "update_citations"
    REVIEW_MANUALLY = "review_manually"
    DELETE = "delete"


class MemorySortBy(str, Enum):
    LAST_USED = "last_used"
    LAST_VALIDATED = "last_validated"
    CREATED = "created"
    USE_COUNT = "use_count"


# Statuses whose facts are not offered to prompts.
UNTRUSTED_STATUSES = frozenset({MemoryStatus.INVALID, MemoryStatus.SUPERSEDED, MemoryStatus.ARCHIVED})


def _memory_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Citation:
    """Point from a memory to the file/line evidence that supports it."""

    file_path: str
    line_number: Optional[int] = None
    snippet: Optional[str] = None
    last_verified: Optional[datetime] = None
    is_valid: bool = True

    def __str__(self) -> str:
        if self.line_number is not None:
            return f"{self.file_path}:{self.line_number}"
        return self.file_path

    @classmethod
    def parse(cls, value: str) -> "Citation":
        """Parse `path` or `path:line` into a citation.

        Raises:
            ValueError: If `value` is blank or the line number is not positive.
        """
        text = (value or "").strip()
        if not text:
            raise ValueError("Citation must not be empty")
        match = _CITATION_RE.match(text)
        if not match:
            return cls(file_path=text)
        line = int(match.group("line"))
        if line < 1:
            raise ValueError(f"Citation line number must be positive: {value}")
        return cls(file_path=match.group("path"), line_number=line)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Citation":
        line = data.get("line_number")
        return cls(
            file_path=str(data.get("file_path") or ""),
            line_number=int(line) if line is not None else None,
            snippet=data.get("snippet"),
            last_verified=_parse_iso(data.get("last_verified")),
            is_valid=bool(data.get("is_valid", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "line_number": self.line_number,
            "snippet": self.snippet,
            "last_verified": _iso(self.last_verified),
            "is_valid": self.is_valid,
        }


@dataclass
class Provenance:
    """Who asked for a memory to be stored, and for which repository."""

    repository_owner: str = ""
    repository_name: str = ""
    repository_path: str = ""
    workflow_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class Memory:
    """Store a durable, citation-backed fact about a repository."""

    subject: str
    fact: str
    reason: str = ""
    citations: list[Citation] = field(default_factory=list)
    repository_owner: str = ""
    repository_name: str = ""
    repository_path: str = ""
    id: str = field(default_factory=_memory_id)
    status: MemoryStatus = MemoryStatus.ACTIVE
    created_at: datetime = field(default_factory=_now)
    last_validated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    use_count: int = 0
    ttl_days: int = DEFAULT_TTL_DAYS
    created_by_workflow_id: Optional[str] = None
    created_by_user_id: Optional[str] = None
    superseded_by: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return (self.last_validated_at or self.created_at) + timedelta(days=self.ttl_days)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _now()) > self.expires_at

    def belongs_to(self, owner: Optional[str], name: Optional[str]) -> bool:
        if owner is not None and self.repository_owner.lower() != owner.lower():
            return False
        if name is not None and self.repository_name.lower() != name.lower():
            return False
        return True

    def cites(self, file_path: str) -> bool:
        needle = file_path.strip().lower()
        return any(citation.file_path.lower() == needle for citation in self.citations)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Memory":
        status = data.get("status")
        try:
            parsed_status = MemoryStatus(str(status)) if status else MemoryStatus.ACTIVE
        except ValueError:
            parsed_status = MemoryStatus.ACTIVE
        return cls(
            id=str(data.get("id") or _memory_id()),
            subject=str(data.get("subject") or ""),
            fact=str(data.get("fact") or ""),
            reason=str(data.get("reason") or ""),
            citations=[Citation.from_dict(item) for item in data.get("citations") or [] if isinstance(item, dict)],
            repository_owner=str(data.get("repository_owner") or ""),
            repository_name=str(data.get("repository_name") or ""),
            repository_path=str(data.get("repository_path") or ""),
            status=parsed_status,
            created_at=_parse_iso(data.get("created_at")) or _now(),
            last_validated_at=_parse_iso(data.get("last_validated_at")),
            last_used_at=_parse_iso(data.get("last_used_at")),
            use_count=int(data.get("use_count") or 0),
            ttl_days=int(data.get("ttl_days") or DEFAULT_TTL_DAYS),
            created_by_workflow_id=data.get("created_by_workflow_id"),
            created_by_user_id=data.get("created_by_user_id"),
            superseded_by=data.get("superseded_by"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "repository_owner": self.repository_owner,
            "repository_name": self.repository_name,
            "repository_path": self.repository_path,
            "subject": self.subject,
            "fact": self.fact,
            "reason": self.reason,
            "citations": [citation.to_dict() for citation in self.citations],
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "last_validated_at": _iso(self.last_validated_at),
            "last_used_at": _iso(self.last_used_at),
            "use_count": self.use_count,
            "ttl_days": self.ttl_days,
            "created_by_workflow_id": self.created_by_workflow_id,
            "created_by_user_id": self.created_by_user_id,
            "superseded_by": self.superseded_by,
        }


@dataclass
class MemoryFilter:
    subject_contains: Optional[str] = None
    fact_contains: Optional[str] = None
    affects_file: Optional[str] = None
    include_expired: bool = False
    include_invalid: bool = False
    created_after: Optional[datetime] = None
    max_results: int = DEFAULT_LIST_LIMIT
    sort_by: MemorySortBy = MemorySortBy.LAST_USED


@dataclass
class CitationCheck:
    """Outcome of checking one citation against the current file contents."""

    citation: Citation
    is_valid: bool
    issue: Optional[str] = None
    current_content: Optional[str] = None


@dataclass
class MemoryValidationResult:
    memory_id: str
    found: bool = True
    is_valid: bool = False
    confidence: float = 0.0
    recommended_action: MemoryAction = MemoryAction.REVIEW_MANUALLY
    citation_checks: list[CitationCheck] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def validation_errors(self) -> list[str]:
        return [
            f"{check.citation.file_path}: {check.issue}"
            for check in self.citation_checks
            if not check.is_valid and check.issue
        ]


@dataclass
class MemoryValidationReport:
    repository_owner: str
    repository_name: str
    valid_count: int = 0
    stale_count: int = 0
    invalid_count: int = 0
    results: list[MemoryValidationResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)


@dataclass
class MemoryStatistics:
    total_memories: int = 0
    active_memories: int = 0
    expired_memories: int = 0
    total_use_count: int = 0
    average_use_count: float = 0.0
    total_citations: int = 0
    most_used_subject: Optional[str] = None
    most_cited_file: Optional[str] = None

"""Thread-safe store for citation-backed memories.

Memories live in an in-process index. When a `path` is given the index is
loaded from, and written back to, a YAML file (write-temp-then-rename) under
an exclusive file lock after every mutation.

Locking: a store-wide ``RLock`` guards the index, and a per-memory lock
serializes validate/refresh/update/mark_used on the same identifier. A
validation reads files while holding only its per-memory lock.
"""

from __future__ import annotations

import copy
import re
import threading
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from loguru import logger

from ..constants import (
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_TTL_DAYS,
    KEEP_CONFIDENCE,
    REVIEW_CONFIDENCE,
    SEARCH_STOP_WORDS,
    SNIPPET_MATCH_THRESHOLD,
)
from ..errors import MemoryNotFoundError
from ..filesystem import LocalFileSystem
from ..interfaces import FileSystem
from ..io_utils import FileLock, load_state, save_state
from ..utils import _now
from .citations import capture_snippet, check_citation
from .models import (
    UNTRUSTED_STATUSES,
    Citation,
    Memory,
    MemoryAction,
    MemoryFilter,
    MemorySortBy,
    MemoryStatistics,
    MemoryStatus,
    MemoryValidationReport,
    MemoryValidationResult,
    Provenance,
)

_TOKEN_RE = re.compile(r"\w+")


def recommend_action(confidence: float, any_valid: bool) -> MemoryAction:
    """Map a validation confidence to the follow-up a caller should take."""
    if confidence >= KEEP_CONFIDENCE:
        return MemoryAction.KEEP
    if confidence >= REVIEW_CONFIDENCE:
        return MemoryAction.UPDATE_CITATIONS if any_valid else MemoryAction.REVIEW_MANUALLY
    return MemoryAction.DELETE


def _query_tokens(query: str) -> list[str]:
    tokens: list[str] = []
    for token in _TOKEN_RE.findall(query.lower()):
        if len(token) < 3 or token in SEARCH_STOP_WORDS or token in tokens:
            continue
        tokens.append(token)
    return tokens


def _same_repository(left: str, right: str) -> bool:
    return left.rstrip("/\\").lower() == right.rstrip("/\\").lower()


def _sort_timestamp(value: Optional[datetime]) -> float:
    return value.timestamp() if value else float("-inf")


class MemoryStore:
    """Store, search, validate and prune memories.

    Args:
        file_system: Collaborator used to check citations. Defaults to the local disk.
        ttl_days: Time-to-live applied to new memories.
        path: Optional YAML file for persistence.
        clock: Callable returning the current UTC time; injectable for tests.
        snippet_threshold: Minimum fuzzy ratio for a snippet to still match.
        capture_snippets: Record the cited line when a citation has none.
    """

    def __init__(
        self,
        file_system: Optional[FileSystem] = None,
        *,
        ttl_days: int = DEFAULT_TTL_DAYS,
        path: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
        snippet_threshold: float = SNIPPET_MATCH_THRESHOLD,
        capture_snippets: bool = True,
    ) -> None:
        self._fs: FileSystem = file_system or LocalFileSystem()
        self.ttl_days = ttl_days
        self._path = Path(path) if path else None
        self._clock = clock or _now
        self.snippet_threshold = snippet_threshold
        self.capture_snippets = capture_snippets
        self._memories: dict[str, Memory] = {}
        self._lock = threading.RLock()
        self._memory_locks: dict[str, threading.RLock] = {}
        if self._path:
            self._load()

    # -- persistence --------------------------------------------------------

    def _load(self) -> None:
        assert self._path is not None
        data, err = load_state(self._path)
        if err:
            # Leave the file alone so a corrupt store is not overwritten with nothing.
            logger.error("Unable to load memories from {}: {}", self._path, err)
            raise ValueError(f"Unable to load memories: {err}")
        for item in data.get("memories") or []:
            if isinstance(item, dict):
                memory = Memory.from_dict(item)
                self._memories[memory.id] = memory
        logger.debug("Loaded {} memories from {}", len(self._memories), self._path)

    def _persist(self) -> None:
        if not self._path:
            return
        with self._lock:
            payload = {"version": 1, "memories": [memory.to_dict() for memory in self._memories.values()]}
            with FileLock(self._path.with_suffix(".lock")):
                save_state(self._path, payload)

    def _lock_for(self, memory_id: str) -> threading.RLock:
        with self._lock:
            lock = self._memory_locks.get(memory_id)
            if lock is None:
                lock = threading.RLock()
                self._memory_locks[memory_id] = lock
            return lock

    def _require(self, memory_id: str) -> Memory:
        memory = self._memories.get(memory_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id)
        return memory

    # -- create / read ------------------------------------------------------

    def store(
        self,
        fact: str,
        citations: Iterable[Citation | str],
        subject: str,
        reason: str = "",
        provenance: Optional[Provenance] = None,
    ) -> Memory:
        """Store a new memory. Duplicate subjects are allowed."""
        provenance = provenance or Provenance()
        parsed: list[Citation] = [
            Citation.parse(item) if isinstance(item, str) else copy.copy(item) for item in citations
        ]
        now = self._clock()
        if self.capture_snippets:
            for citation in parsed:
                if citation.snippet or citation.line_number is None:
                    continue
                try:
                    citation.snippet = capture_snippet(self._fs, provenance.repository_path, citation)
                except Exception as exc:
                    logger.warning("Unable to capture snippet for {}: {}", citation, exc)
        for citation in parsed:
            citation.last_verified = citation.last_verified or now

        memory = Memory(
            subject=subject,
            fact=fact,
            reason=reason,
            citations=parsed,
            repository_owner=provenance.repository_owner,
            repository_name=provenance.repository_name,
            repository_path=provenance.repository_path,
            created_at=now,
            ttl_days=self.ttl_days,
            created_by_workflow_id=provenance.workflow_id,
            created_by_user_id=provenance.user_id,
        )
        with self._lock:
            self._memories[memory.id] = memory
            self._persist()
        logger.info("Stored memory {} ({}) with {} citation(s)", memory.id, subject, len(parsed))
        return copy.deepcopy(memory)

    def get(self, memory_id: str) -> Optional[Memory]:
        with self._lock:
            memory = self._memories.get(memory_id)
            return copy.deepcopy(memory) if memory else None

    def list(self, owner: str, name: str, memory_filter: Optional[MemoryFilter] = None) -> list[Memory]:
        """List memories for a repository, newest activity first by default."""
        memory_filter = memory_filter or MemoryFilter()
        now = self._clock()
        with self._lock:
            candidates = [memory for memory in self._memories.values() if memory.belongs_to(owner, name)]
            out: list[Memory] = []
            for memory in candidates:
                if memory_filter.subject_contains and (
                    memory_filter.subject_contains.lower() not in memory.subject.lower()
                ):
                    continue
                if memory_filter.fact_contains and memory_filter.fact_contains.lower() not in memory.fact.lower():
                    continue
                if memory_filter.affects_file and not memory.cites(memory_filter.affects_file):
                    continue
                if not memory_filter.include_expired and memory.is_expired(now):
                    continue
                if not memory_filter.include_invalid and memory.status == MemoryStatus.INVALID:
                    continue
                if memory_filter.created_after and memory.created_at <= memory_filter.created_after:
                    continue
                out.append(memory)

            sort_by = memory_filter.sort_by
            if sort_by == MemorySortBy.USE_COUNT:
                out.sort(key=lambda memory: memory.use_count, reverse=True)
            elif sort_by == MemorySortBy.CREATED:
                out.sort(key=lambda memory: memory.created_at, reverse=True)
            elif sort_by == MemorySortBy.LAST_VALIDATED:
                out.sort(key=lambda memory: _sort_timestamp(memory.last_validated_at), reverse=True)
            else:
                out.sort(key=lambda memory: _sort_timestamp(memory.last_used_at or memory.created_at), reverse=True)
            return [copy.deepcopy(memory) for memory in out[: max(0, memory_filter.max_results)]]

    def get_by_citation(self, file_path: str) -> list[Memory]:
        with self._lock:
            return [copy.deepcopy(memory) for memory in self._memories.values() if memory.cites(file_path)]

    def search(self, repository_path: str, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[Memory]:
        """Return memories of a repository ranked by keyword relevance.

        A full-phrase hit in the subject or fact scores 3, each query token found
        in the subject scores 2 and each token found in the fact scores 1.
        Expired, invalid, superseded and archived memories are never returned.
        Ties are broken by most recent use (or creation).
        """
        phrase = " ".join((query or "").lower().split())
        tokens = _query_tokens(phrase)
        if not phrase:
            return []
        now = self._clock()
        scored: list[tuple[int, float, Memory]] = []
        with self._lock:
            for memory in self._memories.values():
                if not _same_repository(memory.repository_path, repository_path):
                    continue
                if memory.status in UNTRUSTED_STATUSES or memory.is_expired(now):
                    continue
                subject = memory.subject.lower()
                fact = memory.fact.lower()
                score = 0
                if phrase in subject or phrase in fact:
                    score += 3
                for token in tokens:
                    if token in subject:
                        score += 2
                    if token in fact:
                        score += 1
                if score <= 0:
                    continue
                scored.append((score, _sort_timestamp(memory.last_used_at or memory.created_at), memory))
            scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
            return [copy.deepcopy(memory) for _, _, memory in scored[: max(0, limit)]]

    # -- mutation -----------------------------------------------------------

    def mark_used(self, memory_ids: Iterable[str]) -> int:
        """Increment use counts; unknown identifiers are ignored."""
        now = self._clock()
        touched = 0
        for memory_id in memory_ids:
            with self._lock_for(memory_id), self._lock:
                memory = self._memories.get(memory_id)
                if memory is None:
                    continue
                memory.use_count += 1
                memory.last_used_at = now
                touched += 1
        if touched:
            self._persist()
        return touched

    def update(
        self,
        memory_id: str,
        *,
        subject: Optional[str] = None,
        fact: Optional[str] = None,
        reason: Optional[str] = None,
        status: Optional[MemoryStatus] = None,
    ) -> Memory:
        with self._lock_for(memory_id), self._lock:
            memory = self._require(memory_id)
            if subject is not None:
                memory.subject = subject
            if fact is not None:
                memory.fact = fact
            if reason is not None:
                memory.reason = reason
            if status is not None:
                memory.status = MemoryStatus(status)
            self._persist()
            return copy.deepcopy(memory)

    def supersede(self, memory_id: str, by_id: str) -> Memory:
        with self._lock_for(memory_id), self._lock:
            memory = self._require(memory_id)
            self._require(by_id)
            memory.status = MemoryStatus.SUPERSEDED
            memory.superseded_by = by_id
            self._persist()
            return copy.deepcopy(memory)

    def delete(self, memory_id: str) -> bool:
        with self._lock_for(memory_id), self._lock:
            removed = self._memories.pop(memory_id, None)
            self._memory_locks.pop(memory_id, None)
            if removed is None:
                return False
            self._persist()
        logger.info("Deleted memory {}", memory_id)
        return True

    def refresh(self, memory_id: str) -> bool:
        """Extend a memory's expiry window without re-checking its citations."""
        with self._lock_for(memory_id), self._lock:
            memory = self._memories.get(memory_id)
            if memory is None:
                return False
            memory.last_validated_at = self._clock()
            self._persist()
        return True

    def prune_expired(self, owner: Optional[str] = None, name: Optional[str] = None) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                memory_id
                for memory_id, memory in self._memories.items()
                if memory.belongs_to(owner, name) and memory.is_expired(now)
            ]
            for memory_id in expired:
                del self._memories[memory_id]
                self._memory_locks.pop(memory_id, None)
            if expired:
                self._persist()
        if expired:
            logger.info("Pruned {} expired memories", len(expired))
        return len(expired)

    # -- validation ---------------------------------------------------------

    def validate(self, memory_id: str) -> MemoryValidationResult:
        """Re-check every citation of a memory and update its status.

        A missing memory yields a result with ``found=False`` instead of raising.
        """
        with self._lock_for(memory_id):
            with self._lock:
                memory = self._memories.get(memory_id)
                if memory is None:
                    return MemoryValidationResult(
                        memory_id=memory_id,
                        found=False,
                        is_valid=False,
                        confidence=0.0,
                        recommended_action=MemoryAction.REVIEW_MANUALLY,
                        error=f"Memory {memory_id} not found",
                    )
                citations = list(memory.citations)
                repository_path = memory.repository_path

            checks = [
                check_citation(self._fs, repository_path, citation, threshold=self.snippet_threshold)
                for citation in citations
            ]
            valid = sum(1 for check in checks if check.is_valid)
            total = len(checks)
            confidence = valid / total if total else 1.0
            now = self._clock()

            with self._lock:
                memory = self._memories.get(memory_id)
                if memory is None:
                    return MemoryValidationResult(
                        memory_id=memory_id,
                        found=False,
                        recommended_action=MemoryAction.REVIEW_MANUALLY,
                        error=f"Memory {memory_id} was deleted during validation",
                    )
                for citation, check in zip(citations, checks):
                    citation.is_valid = check.is_valid
                    citation.last_verified = now
                memory.last_validated_at = now
                if memory.status not in (MemoryStatus.SUPERSEDED, MemoryStatus.ARCHIVED):
                    if total and valid == 0:
                        memory.status = MemoryStatus.INVALID
                    elif valid < total:
                        memory.status = MemoryStatus.STALE
                    else:
                        memory.status = MemoryStatus.ACTIVE
                self._persist()

        result = MemoryValidationResult(
            memory_id=memory_id,
            is_valid=valid == total,
            confidence=confidence,
            recommended_action=recommend_action(confidence, valid > 0),
            citation_checks=checks,
        )
        if not result.is_valid:
            logger.info(
                "Memory {} failed {} of {} citation check(s): {}",
                memory_id,
                total - valid,
                total,
                "; ".join(result.validation_errors),
            )
        return result

    def validate_all(self, owner: str, name: str) -> MemoryValidationReport:
        with self._lock:
            memory_ids = [memory.id for memory in self._memories.values() if memory.belongs_to(owner, name)]
        report = MemoryValidationReport(repository_owner=owner, repository_name=name)
        for memory_id in memory_ids:
            result = self.validate(memory_id)
            if not result.found:
                continue
            report.results.append(result)
            if result.is_valid:
                report.valid_count += 1
            elif result.confidence > 0:
                report.stale_count += 1
            else:
                report.invalid_count += 1
        return report

    # -- aggregation --------------------------------------------------------

    def statistics(self, owner: str, name: str) -> MemoryStatistics:
        now = self._clock()
        with self._lock:
            memories = [memory for memory in self._memories.values() if memory.belongs_to(owner, name)]
            stats = MemoryStatistics(total_memories=len(memories))
            if not memories:
                return stats
            expired = sum(1 for memory in memories if memory.is_expired(now))
            stats.expired_memories = expired
            stats.active_memories = len(memories) - expired
            stats.total_use_count = sum(memory.use_count for memory in memories)
            stats.average_use_count = stats.total_use_count / len(memories)
            stats.total_citations = sum(len(memory.citations) for memory in memories)
            most_used = max(memories, key=lambda memory: memory.use_count)
            if most_used.use_count > 0:
                stats.most_used_subject = most_used.subject
            files = Counter(citation.file_path for memory in memories for citation in memory.citations)
            if files:
                stats.most_cited_file = files.most_common(1)[0][0]
            return stats

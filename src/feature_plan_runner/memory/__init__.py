"""Citation-backed memory facts reused across prompts."""

from .models import (
    Citation,
    CitationCheck,
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
from .store import MemoryStore, recommend_action

__all__ = [
    "Citation",
    "CitationCheck",
    "Memory",
    "MemoryAction",
    "MemoryFilter",
    "MemorySortBy",
    "MemoryStatistics",
    "MemoryStatus",
    "MemoryStore",
    "MemoryValidationReport",
    "MemoryValidationResult",
    "Provenance",
    "recommend_action",
]

"""Decide whether a citation still points at the evidence it was recorded with.

The check is deterministic:

1. the cited file must exist and be readable;
2. a cited line must be within the file;
3. a recorded snippet must still appear near the cited line (or anywhere in the
   file when no line was cited), either verbatim after whitespace
   normalization or with a `difflib` similarity ratio of at least the
   configured threshold.
"""

from __future__ import annotations

import difflib
import os
from typing import Optional

from ..constants import SNIPPET_MATCH_THRESHOLD, SNIPPET_WINDOW_LINES
from ..interfaces import FileSystem
from .models import Citation, CitationCheck


def _normalize(text: str) -> str:
    return " ".join(text.split())


def resolve_path(repository_path: str, file_path: str) -> str:
    if not repository_path or os.path.isabs(file_path):
        return file_path
    return os.path.join(repository_path, file_path)


def _window(lines: list[str], line_number: Optional[int], radius: int) -> list[str]:
    if line_number is None:
        return lines
    start = max(0, line_number - 1 - radius)
    return lines[start : line_number + radius]


def snippet_matches(snippet: str, lines: list[str], threshold: float = SNIPPET_MATCH_THRESHOLD) -> bool:
    """Return True when `snippet` plausibly still appears in `lines`."""
    wanted = _normalize(snippet)
    if not wanted:
        return True
    if wanted in _normalize(" ".join(lines)):
        return True
    height = max(1, len(snippet.strip().splitlines()))
    best = 0.0
    for start in range(max(1, len(lines) - height + 1)):
        candidate = _normalize(" ".join(lines[start : start + height]))
        if not candidate:
            continue
        best = max(best, difflib.SequenceMatcher(None, wanted, candidate).ratio())
        if best >= threshold:
            return True
    return False


def check_citation(
    file_system: FileSystem,
    repository_path: str,
    citation: Citation,
    *,
    threshold: float = SNIPPET_MATCH_THRESHOLD,
    window_lines: int = SNIPPET_WINDOW_LINES,
) -> CitationCheck:
    """Check one citation against the current repository contents.

    Collaborator failures are reported as an invalid citation, never raised.
    """
    path = resolve_path(repository_path, citation.file_path)
    try:
        exists = file_system.exists(path)
    except Exception as exc:
        return CitationCheck(citation, False, f"Unable to read {citation.file_path}: {exc}")
    if not exists:
        return CitationCheck(citation, False, f"File not found: {citation.file_path}")

    try:
        lines = file_system.read_lines(path)
    except Exception as exc:
        return CitationCheck(citation, False, f"Unable to read {citation.file_path}: {exc}")

    current: Optional[str] = None
    if citation.line_number is not None:
        if citation.line_number < 1 or citation.line_number > len(lines):
            return CitationCheck(
                citation,
                False,
                f"Line {citation.line_number} is out of range (file has {len(lines)} lines)",
            )
        current = lines[citation.line_number - 1]

    if citation.snippet and citation.snippet.strip():
        window = _window(lines, citation.line_number, window_lines)
        if not snippet_matches(citation.snippet, window, threshold):
            return CitationCheck(
                citation,
                False,
                f"Snippet no longer matches at {citation}",
                current_content=current,
            )

    return CitationCheck(citation, True, current_content=current)


def capture_snippet(file_system: FileSystem, repository_path: str, citation: Citation) -> Optional[str]:
    """Read the cited line so later validations can compare against it."""
    if citation.line_number is None or citation.line_number < 1:
        return None
    path = resolve_path(repository_path, citation.file_path)
    if not file_system.exists(path):
        return None
    lines = file_system.read_lines(path)
    if citation.line_number > len(lines):
        return None
    return lines[citation.line_number - 1].strip() or None

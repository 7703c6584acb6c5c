"""Configure loguru sinks and format run events for logs."""

from __future__ import annotations

import json
import sys
from typing import Any, Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure loguru logger with the specified level.

    Args:
        level: Minimum level for the stderr sink.
        log_file: Optional path for an additional rotating file sink.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level=level.upper(), format=LOG_FORMAT, rotation="10 MB", retention=5)


def summarize_event(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of an executor event."""
    summary: dict[str, Any] = {"event": event_type}
    for key in ("plan_id", "phase_number", "task_id", "attempts", "commit_sha", "workflow_id", "stage"):
        if payload.get(key) is not None:
            summary[key] = payload[key]
    error = str(payload.get("error") or "")
    if error:
        summary["error"] = (error[:240] + "…") if len(error) > 240 else error
    return summary


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)

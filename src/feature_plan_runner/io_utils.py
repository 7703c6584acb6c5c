"""Locked, atomic persistence of runner state under ``.plan_runner/``.

Plan, memory, agent and config files are YAML mappings. The event log is
JSON lines, one event per line.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import IO, Any, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES
from .utils import _now_iso


def _acquire(handle: IO[str]) -> None:
    if os.name == "nt":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, WINDOWS_LOCK_BYTES)
    else:
        import fcntl

        fcntl.flock(handle, fcntl.LOCK_EX)


def _release(handle: IO[str]) -> None:
    if os.name == "nt":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, WINDOWS_LOCK_BYTES)
    else:
        import fcntl

        fcntl.flock(handle, fcntl.LOCK_UN)


class FileLock:
    """Exclusive advisory lock on a sidecar ``.lock`` file, shared across processes."""

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self._handle: Optional[IO[str]] = None

    def __enter__(self) -> "FileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+")
        try:
            _acquire(handle)
        except OSError:
            handle.close()
            raise
        self._handle = handle
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            _release(handle)
        finally:
            handle.close()


def load_state(path: Path) -> tuple[dict[str, Any], Optional[str]]:
    """Read a YAML state file.

    A missing or empty file is an empty mapping. Read and parse failures come
    back as a message instead of an exception, so callers can refuse to
    overwrite a state file they could not read.

    Returns:
        A tuple of `(data, error_message)`.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}, None
    except OSError as exc:
        return {}, f"{path.name}: unreadable: {exc}"
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        return {}, f"{path.name}: invalid YAML: {exc}"
    if data is None:
        return {}, None
    if not isinstance(data, dict):
        return {}, f"{path.name}: expected a mapping, got {type(data).__name__}"
    return data, None


def save_state(path: Path, data: dict[str, Any]) -> None:
    """Write `data` as YAML through a temporary file and an atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, default_flow_style=False, allow_unicode=True)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    """Append one record to a JSON-lines log, stamping it if it has no timestamp."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = dict(record)
    payload.setdefault("timestamp", _now_iso())
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, default=str) + "\n")
        handle.flush()
        os.fsync(handle.fileno())

"""Local disk implementation of the file-system collaborator."""

from __future__ import annotations

from pathlib import Path


class LocalFileSystem:
    """Read files relative to the process working directory or absolute paths."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding

    def exists(self, path: str) -> bool:
        return Path(path).is_file()

    def read_lines(self, path: str) -> list[str]:
        text = Path(path).read_text(encoding=self.encoding, errors="replace")
        return text.splitlines()

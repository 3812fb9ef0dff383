"""Immutable source snapshots."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path

from lunacov.core.errors import AnalysisError


def split_lines(text: str) -> list[str]:
    """Split on LF, drop a trailing CR per line and the empty tail after a final newline."""
    lines = [line[:-1] if line.endswith("\r") else line for line in text.split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def fingerprint(text: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SourceFile:
    """Snapshot of a file's text at load time."""

    path: str
    text: str
    lines: tuple[str, ...]
    fingerprint: str

    @classmethod
    def from_text(cls, path: str, text: str) -> SourceFile:
        return cls(
            path=path,
            text=text,
            lines=tuple(split_lines(text)),
            fingerprint=fingerprint(text),
        )

    @classmethod
    def from_path(cls, path: Path | str) -> SourceFile:
        """Read a file from disk.

        Raises:
            AnalysisError: If the file cannot be read or decoded.
        """
        p = Path(path)
        try:
            raw = p.read_bytes()
        except OSError as e:
            raise AnalysisError.unreadable(str(p), str(e)) from e
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AnalysisError.unreadable(str(p), f"not valid UTF-8: {e}") from e
        return cls.from_text(str(p), text)

    @property
    def line_count(self) -> int:
        return len(self.lines)

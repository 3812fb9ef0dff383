"""Line classifier for Lua source.

A single forward scan over the lines of a file with a small state machine:

- NORMAL: ordinary code. Quoted strings are consumed first, so marker-like
  text inside them ("--[[", "[[") is inert.
- BLOCK_COMMENT: inside ``--[=*[ ... ]=*]``.
- LONG_STRING: inside ``[=*[ ... ]=*]``.
- QUOTED: a quoted string continued onto the next line by a trailing
  backslash or a ``\\z`` escape.

Long brackets close only on the same ``=`` level and do not nest; the first
matching closer ends the construct.

The classifier never raises. An opener without a closer marks every line
after it NON_EXECUTABLE and flags the result incomplete.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum, auto

from lunacov.analysis.models import Classification, LineClass
from lunacov.config.models import ClassifierConfig

_LONG_OPEN = re.compile(r"\[(=*)\[")
_STRUCTURAL = re.compile(
    r"^(?:\s*(?:(?:end|else|do|then|repeat)\b|[)}\],;]|::[A-Za-z_]\w*::))*\s*$"
)
_STRING_TOKEN = '"s"'


class _State(Enum):
    NORMAL = auto()
    BLOCK_COMMENT = auto()
    LONG_STRING = auto()
    QUOTED = auto()


class _CodeKind(Enum):
    EMPTY = auto()
    STRUCTURAL = auto()
    CODE = auto()


@dataclass
class _Scanner:
    """Mutable scan state carried across lines."""

    state: _State = _State.NORMAL
    level: int = 0  # '=' count of the open long bracket
    quote: str = ""  # delimiter of the open quoted string
    skip_ws: bool = False  # pending \z escape
    opener_line: int | None = None
    opener: str = ""

    def _open(self, state: _State, line_no: int, marker: str) -> None:
        self.state = state
        self.opener_line = line_no
        self.opener = marker

    def _close(self) -> None:
        self.state = _State.NORMAL
        self.opener_line = None
        self.opener = ""

    def _find_long_close(self, text: str, pos: int) -> int:
        """Index just past the matching closer, or -1."""
        closer = "]" + "=" * self.level + "]"
        idx = text.find(closer, pos)
        return -1 if idx < 0 else idx + len(closer)

    def _consume_quoted(self, text: str, pos: int) -> int:
        """Consume quoted-string body starting at pos.

        Returns the index after the closing quote, or len(text) if the
        string continues onto the next line (state stays QUOTED) or is
        unfinished (state returns to NORMAL, as Lua reports it as an error).
        """
        n = len(text)
        i = pos
        if self.skip_ws:
            while i < n and text[i] in " \t\f\v":
                i += 1
            if i >= n:
                return n
            self.skip_ws = False
        while i < n:
            ch = text[i]
            if ch == "\\":
                if i + 1 >= n:
                    # backslash-newline: string continues
                    return n
                nxt = text[i + 1]
                if nxt == "z":
                    i += 2
                    while i < n and text[i] in " \t\f\v":
                        i += 1
                    if i >= n:
                        self.skip_ws = True
                        return n
                    continue
                i += 2
                continue
            if ch == self.quote:
                self._close()
                return i + 1
            i += 1
        # unfinished string: Lua rejects it, so stop treating the rest as string
        self._close()
        return n

    def scan_line(self, text: str, line_no: int) -> tuple[str, bool]:
        """Scan one line.

        Returns the code text seen in NORMAL state (strings replaced by a
        placeholder token, comments removed) and whether the line started
        inside a multi-line construct.
        """
        started_inside = self.state is not _State.NORMAL
        code: list[str] = []
        n = len(text)
        i = 0
        while i < n:
            if self.state is _State.BLOCK_COMMENT or self.state is _State.LONG_STRING:
                end = self._find_long_close(text, i)
                if end < 0:
                    return "".join(code), started_inside
                self._close()
                i = end
                continue
            if self.state is _State.QUOTED:
                i = self._consume_quoted(text, i)
                continue

            ch = text[i]
            if ch == "-" and text.startswith("--", i):
                m = _LONG_OPEN.match(text, i + 2)
                if m is None:
                    break  # line comment
                self.level = len(m.group(1))
                self._open(_State.BLOCK_COMMENT, line_no, "--" + m.group(0))
                i = m.end()
                continue
            if ch == "[":
                m = _LONG_OPEN.match(text, i)
                if m is not None:
                    self.level = len(m.group(1))
                    self._open(_State.LONG_STRING, line_no, m.group(0))
                    code.append(_STRING_TOKEN)
                    i = m.end()
                    continue
            if ch in "\"'":
                self.quote = ch
                self.skip_ws = False
                self._open(_State.QUOTED, line_no, ch)
                code.append(_STRING_TOKEN)
                i = self._consume_quoted(text, i + 1)
                continue
            code.append(ch)
            i += 1
        return "".join(code), started_inside


def _code_kind(code: str) -> _CodeKind:
    if not code.strip():
        return _CodeKind.EMPTY
    if _STRUCTURAL.match(code):
        return _CodeKind.STRUCTURAL
    return _CodeKind.CODE


def is_structural(code: str) -> bool:
    """True if the text holds only block keywords and closing punctuation."""
    return _code_kind(code) is _CodeKind.STRUCTURAL


def strip_comments(text: str) -> str:
    """Drop '--' comments from a single-line fragment."""
    text = re.sub(r"--\[(=*)\[.*?\]\1\]", " ", text)
    idx = text.find("--")
    return text if idx < 0 else text[:idx]


def classify(lines: list[str] | tuple[str, ...], config: ClassifierConfig | None = None) -> Classification:
    """Classify every line of a file.

    Deterministic and independent of runtime behavior: the same lines and
    policy always produce the same Classification.
    """
    config = config if config is not None else ClassifierConfig()
    structural_class = (
        LineClass.EXECUTABLE if config.structural_lines_executable else LineClass.NON_EXECUTABLE
    )

    scanner = _Scanner()
    result: list[LineClass] = []

    for line_no, text in enumerate(lines, start=1):
        if line_no == 1 and text.startswith("#"):
            # Lua skips a first line starting with '#'
            result.append(LineClass.NON_EXECUTABLE)
            continue

        entry_state = scanner.state
        code, started_inside = scanner.scan_line(text, line_no)
        kind = _code_kind(code)

        if kind is _CodeKind.CODE:
            result.append(LineClass.EXECUTABLE)
        elif kind is _CodeKind.STRUCTURAL and not started_inside:
            result.append(structural_class)
        elif not started_inside:
            result.append(LineClass.NON_EXECUTABLE)
        elif kind is _CodeKind.STRUCTURAL and config.structural_lines_executable:
            result.append(LineClass.EXECUTABLE)
        elif entry_state is _State.BLOCK_COMMENT:
            result.append(LineClass.NON_EXECUTABLE)
        else:
            result.append(LineClass.IN_MULTILINE_CONSTRUCT)

    if scanner.state is not _State.NORMAL and scanner.opener_line is not None:
        opener_line = scanner.opener_line
        for idx in range(opener_line, len(result)):
            result[idx] = LineClass.NON_EXECUTABLE
        return Classification(lines=tuple(result), incomplete=True, incomplete_line=opener_line)

    return Classification(lines=tuple(result))


def unterminated_marker(lines: list[str] | tuple[str, ...]) -> str | None:
    """Opening marker left unterminated at end of file, if any."""
    scanner = _Scanner()
    for line_no, text in enumerate(lines, start=1):
        if line_no == 1 and text.startswith("#"):
            continue
        scanner.scan_line(text, line_no)
    if scanner.state is _State.NORMAL:
        return None
    return scanner.opener

"""Static analysis data model.

Everything here is immutable once computed and keyed by content
fingerprint, so a single StaticAnalysis can be shared by every session
that loads the same file text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, NamedTuple


class LineClass(Enum):
    """Per-line classification produced by the source classifier."""

    NON_EXECUTABLE = "non_executable"  # blank, comment, structural keyword
    EXECUTABLE = "executable"
    IN_MULTILINE_CONSTRUCT = "in_multiline_construct"  # long-string content


class BlockKind(Enum):
    """Logical block kinds."""

    CONDITIONAL_BRANCH = "conditional-branch"
    LOOP_BODY = "loop-body"
    FUNCTION_BODY = "function-body"
    TOP_LEVEL = "top-level"


ROOT_BLOCK_ID = 0


@dataclass(frozen=True)
class Classification:
    """Result of classifying one file."""

    lines: tuple[LineClass, ...]
    incomplete: bool = False
    incomplete_line: int | None = None  # line of the unmatched opener

    @property
    def executable_lines(self) -> list[int]:
        return [i for i, c in enumerate(self.lines, start=1) if c is LineClass.EXECUTABLE]

    def classify(self, line: int) -> LineClass:
        """Class of a 1-based line; lines past the end are NON_EXECUTABLE."""
        if 1 <= line <= len(self.lines):
            return self.lines[line - 1]
        return LineClass.NON_EXECUTABLE

    def is_executable(self, line: int) -> bool:
        return self.classify(line) is LineClass.EXECUTABLE


@dataclass(frozen=True)
class BlockSpan:
    """A static block: arena entry with a parent link."""

    id: int
    kind: BlockKind
    start_line: int
    end_line: int
    parent_id: int | None
    entry_line: int | None = None  # first executable line inside the range
    column: int = 0  # 0-based column where the block's first statement starts
    # lines of the range that also hold code running outside this block
    shared_lines: tuple[int, ...] = ()

    def contains(self, line: int) -> bool:
        return self.start_line <= line <= self.end_line

    @property
    def entry_shared(self) -> bool:
        """True when the entry line alone cannot tell whether the block ran."""
        return self.entry_line is not None and self.entry_line in self.shared_lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "parent_id": self.parent_id,
            "entry_line": self.entry_line,
            "column": self.column,
            "shared_lines": list(self.shared_lines),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlockSpan:
        return cls(
            id=int(data["id"]),
            kind=BlockKind(data["kind"]),
            start_line=int(data["start_line"]),
            end_line=int(data["end_line"]),
            parent_id=data.get("parent_id"),
            entry_line=data.get("entry_line"),
            column=int(data.get("column", 0)),
            shared_lines=tuple(int(v) for v in data.get("shared_lines", ())),
        )


@dataclass(frozen=True)
class FunctionSpan:
    """A static function declaration paired with its function-body block."""

    name: str
    line: int  # declaration line, matches Lua's linedefined
    end_line: int
    block_id: int | None = None
    is_anonymous: bool = False
    is_vararg: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "line": self.line,
            "end_line": self.end_line,
            "block_id": self.block_id,
            "is_anonymous": self.is_anonymous,
            "is_vararg": self.is_vararg,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FunctionSpan:
        return cls(
            name=str(data["name"]),
            line=int(data["line"]),
            end_line=int(data["end_line"]),
            block_id=data.get("block_id"),
            is_anonymous=bool(data.get("is_anonymous", False)),
            is_vararg=bool(data.get("is_vararg", False)),
        )


class LoopEntry(NamedTuple):
    """A ``while`` loop whose constant-true condition compiles to nothing.

    The header line has no instruction of its own, so the trace hook
    credits it when the body is entered from outside the loop.
    """

    header: int
    end: int
    body_start: int
    body_end: int


class LoopExit(NamedTuple):
    """A jump statement Lua folds into the condition in front of it.

    ``if c then`` followed by ``break`` compiles the break into the
    condition's jump, leaving the break line without an instruction. The
    trace hook credits it when the event after the condition lands outside
    ``[lo, hi]``, i.e. outside the loop.
    """

    cond_start: int
    cond_end: int
    line: int
    lo: int
    hi: int


@dataclass(frozen=True)
class Structure:
    """Extractor output: block arena plus function list."""

    blocks: tuple[BlockSpan, ...] = ()
    functions: tuple[FunctionSpan, ...] = ()
    parse_error: str | None = None
    closure_lines: tuple[tuple[int, int], ...] = ()
    loop_entries: tuple[LoopEntry, ...] = ()
    loop_exits: tuple[LoopExit, ...] = ()


@dataclass(frozen=True)
class StaticAnalysis:
    """Classification and structure of one SourceFile.

    closure_lines pairs a function's closing line with the first line of the
    statement that creates the closure. Lua attributes closure creation to
    the closing line, so the trace hook credits those events to the
    statement instead. loop_entries and loop_exits describe the lines Lua
    compiles to no instruction at all although they run.
    """

    path: str
    fingerprint: str
    classification: Classification
    blocks: tuple[BlockSpan, ...] = ()
    functions: tuple[FunctionSpan, ...] = ()
    parse_error: str | None = None
    closure_lines: tuple[tuple[int, int], ...] = ()
    loop_entries: tuple[LoopEntry, ...] = ()
    loop_exits: tuple[LoopExit, ...] = ()

    @property
    def line_count(self) -> int:
        return len(self.classification.lines)

    @property
    def classification_incomplete(self) -> bool:
        return self.classification.incomplete

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "fingerprint": self.fingerprint,
            "lines": [c.value for c in self.classification.lines],
            "incomplete": self.classification.incomplete,
            "incomplete_line": self.classification.incomplete_line,
            "blocks": [b.to_dict() for b in self.blocks],
            "functions": [f.to_dict() for f in self.functions],
            "parse_error": self.parse_error,
            "closure_lines": [list(pair) for pair in self.closure_lines],
            "loop_entries": [list(entry) for entry in self.loop_entries],
            "loop_exits": [list(exit_) for exit_ in self.loop_exits],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StaticAnalysis:
        return cls(
            path=str(data["path"]),
            fingerprint=str(data["fingerprint"]),
            classification=Classification(
                lines=tuple(LineClass(v) for v in data["lines"]),
                incomplete=bool(data.get("incomplete", False)),
                incomplete_line=data.get("incomplete_line"),
            ),
            blocks=tuple(BlockSpan.from_dict(b) for b in data.get("blocks", [])),
            functions=tuple(FunctionSpan.from_dict(f) for f in data.get("functions", [])),
            parse_error=data.get("parse_error"),
            closure_lines=tuple(
                (int(pair[0]), int(pair[1])) for pair in data.get("closure_lines", [])
            ),
            loop_entries=tuple(
                LoopEntry(*(int(v) for v in entry)) for entry in data.get("loop_entries", [])
            ),
            loop_exits=tuple(
                LoopExit(*(int(v) for v in exit_)) for exit_ in data.get("loop_exits", [])
            ),
        )

    def closure_remap(self) -> dict[int, int]:
        """closure_lines restricted to non-executable closing lines."""
        return {
            end: start
            for end, start in self.closure_lines
            if not self.classification.is_executable(end)
        }

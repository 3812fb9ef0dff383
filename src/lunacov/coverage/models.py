"""Per-file coverage records.

A FileCoverageRecord is the mutable counterpart of a StaticAnalysis: it
copies the static structure once and carries the counters the runtime
tracker and the assertion layer update. Invariant on every line:

    covered => execution_count > 0 => classification == EXECUTABLE
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lunacov.analysis.models import (
    ROOT_BLOCK_ID,
    BlockKind,
    FunctionSpan,
    LineClass,
    StaticAnalysis,
)


class LineStatus(Enum):
    """Four-state display status of a line."""

    NOT_EXECUTABLE = "not_executable"
    NOT_COVERED = "not_covered"  # executable, never ran
    EXECUTED = "executed"  # ran, no assertion validated it
    COVERED = "covered"  # ran and validated


def percent_of(part: int, whole: int) -> float:
    return (part / whole * 100.0) if whole > 0 else 0.0


@dataclass
class LineRecord:
    line: int
    classification: LineClass
    execution_count: int = 0
    covered: bool = False

    @property
    def executable(self) -> bool:
        return self.classification is LineClass.EXECUTABLE

    @property
    def status(self) -> LineStatus:
        if not self.executable:
            return LineStatus.NOT_EXECUTABLE
        if self.covered:
            return LineStatus.COVERED
        if self.execution_count > 0:
            return LineStatus.EXECUTED
        return LineStatus.NOT_COVERED

    def to_dict(self) -> dict[str, Any]:
        return {
            "line": self.line,
            "classification": self.classification.value,
            "execution_count": self.execution_count,
            "covered": self.covered,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LineRecord:
        return cls(
            line=int(data["line"]),
            classification=LineClass(data["classification"]),
            execution_count=int(data.get("execution_count", 0)),
            covered=bool(data.get("covered", False)),
        )


@dataclass
class BlockRecord:
    id: int
    kind: BlockKind
    start_line: int
    end_line: int
    parent_id: int | None
    entry_line: int | None = None
    column: int = 0
    shared_lines: tuple[int, ...] = ()
    executed: bool = False
    execution_count: int = 0

    def structure(self) -> tuple[Any, ...]:
        return (
            self.id,
            self.kind,
            self.start_line,
            self.end_line,
            self.parent_id,
            self.entry_line,
            self.column,
            self.shared_lines,
        )

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
            "executed": self.executed,
            "execution_count": self.execution_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlockRecord:
        return cls(
            id=int(data["id"]),
            kind=BlockKind(data["kind"]),
            start_line=int(data["start_line"]),
            end_line=int(data["end_line"]),
            parent_id=data.get("parent_id"),
            entry_line=data.get("entry_line"),
            column=int(data.get("column", 0)),
            shared_lines=tuple(int(v) for v in data.get("shared_lines", ())),
            executed=bool(data.get("executed", False)),
            execution_count=int(data.get("execution_count", 0)),
        )


@dataclass
class FunctionRecord:
    name: str
    line: int
    end_line: int
    block_id: int | None = None
    is_anonymous: bool = False
    is_vararg: bool = False
    executed: bool = False
    call_count: int = 0

    def structure(self) -> tuple[Any, ...]:
        return (self.name, self.line, self.end_line, self.block_id, self.is_anonymous, self.is_vararg)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "line": self.line,
            "end_line": self.end_line,
            "block_id": self.block_id,
            "is_anonymous": self.is_anonymous,
            "is_vararg": self.is_vararg,
            "executed": self.executed,
            "call_count": self.call_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FunctionRecord:
        return cls(
            name=str(data["name"]),
            line=int(data["line"]),
            end_line=int(data["end_line"]),
            block_id=data.get("block_id"),
            is_anonymous=bool(data.get("is_anonymous", False)),
            is_vararg=bool(data.get("is_vararg", False)),
            executed=bool(data.get("executed", False)),
            call_count=int(data.get("call_count", 0)),
        )

    @classmethod
    def from_span(cls, span: FunctionSpan) -> FunctionRecord:
        return cls(
            name=span.name,
            line=span.line,
            end_line=span.end_line,
            block_id=span.block_id,
            is_anonymous=span.is_anonymous,
            is_vararg=span.is_vararg,
        )


@dataclass
class FileCoverageRecord:
    """Coverage of one file: lines, blocks, functions and status flags."""

    path: str
    fingerprint: str | None
    lines: list[LineRecord] = field(default_factory=list)
    blocks: list[BlockRecord] = field(default_factory=list)
    functions: list[FunctionRecord] = field(default_factory=list)
    classification_incomplete: bool = False
    parse_error: str | None = None
    unreadable: bool = False
    instrumentation_fallback: bool = False
    loaded: bool = False

    # line -> ids of non-function blocks whose range contains it, shared lines excluded
    _range_index: dict[int, list[int]] = field(default_factory=dict, init=False, repr=False, compare=False)
    # line -> ids of blocks whose execution_count follows that line
    _entry_index: dict[int, list[int]] = field(default_factory=dict, init=False, repr=False, compare=False)
    # function-body block id -> index of the function it mirrors
    _block_owner: dict[int, int] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._build_indexes()

    def _build_indexes(self) -> None:
        self._range_index.clear()
        self._entry_index.clear()
        self._block_owner.clear()
        for block in self.blocks:
            if block.kind is BlockKind.FUNCTION_BODY:
                continue
            shared = set(block.shared_lines)
            for line in range(block.start_line, block.end_line + 1):
                if line not in shared:
                    self._range_index.setdefault(line, []).append(block.id)
            if block.entry_line is not None and block.entry_line not in shared:
                self._entry_index.setdefault(block.entry_line, []).append(block.id)
        for i, fn in enumerate(self.functions):
            if fn.block_id is None or fn.block_id in self._block_owner:
                continue
            if 0 <= fn.block_id < len(self.blocks) and (
                self.blocks[fn.block_id].kind is BlockKind.FUNCTION_BODY
            ):
                self._block_owner[fn.block_id] = i

    @classmethod
    def from_analysis(cls, analysis: StaticAnalysis, *, track_blocks: bool = True) -> FileCoverageRecord:
        lines = [
            LineRecord(line=i, classification=c)
            for i, c in enumerate(analysis.classification.lines, start=1)
        ]
        blocks: list[BlockRecord] = []
        functions: list[FunctionRecord] = []
        if track_blocks:
            blocks = [
                BlockRecord(
                    id=b.id,
                    kind=b.kind,
                    start_line=b.start_line,
                    end_line=b.end_line,
                    parent_id=b.parent_id,
                    entry_line=b.entry_line,
                    column=b.column,
                    shared_lines=b.shared_lines,
                )
                for b in analysis.blocks
            ]
            functions = [FunctionRecord.from_span(f) for f in analysis.functions]
        return cls(
            path=analysis.path,
            fingerprint=analysis.fingerprint,
            lines=lines,
            blocks=blocks,
            functions=functions,
            classification_incomplete=analysis.classification_incomplete,
            parse_error=analysis.parse_error,
        )

    @classmethod
    def unreadable_file(cls, path: str) -> FileCoverageRecord:
        return cls(path=path, fingerprint=None, unreadable=True)

    # -- mutation ---------------------------------------------------------

    def line(self, line: int) -> LineRecord | None:
        if 1 <= line <= len(self.lines):
            return self.lines[line - 1]
        return None

    def record_execution(self, line: int, count: int = 1) -> bool:
        """Add executions of a line. Counts for non-executable lines are discarded."""
        rec = self.line(line)
        if rec is None or not rec.executable or count <= 0:
            return False
        first = rec.execution_count == 0
        rec.execution_count += count
        if first:
            for block_id in self._range_index.get(line, ()):
                self.blocks[block_id].executed = True
        for block_id in self._entry_index.get(line, ()):
            self.blocks[block_id].execution_count += count
        return True

    def record_call(self, line: int, count: int = 1) -> bool:
        """Add calls of the first function declared on a line.

        A call event only carries the declaration line, so with several
        functions on one line (``local a, b = function() end, function() end``)
        every call lands on the first. Probes that know the exact function
        report through record_block instead.
        """
        if count <= 0:
            return False
        for i, fn in enumerate(self.functions):
            if fn.line == line:
                self._credit_function(i, count)
                return True
        return False

    def record_block(self, block_id: int, count: int = 1) -> bool:
        """Add entries of a block observed directly rather than through its lines.

        A function-body block stands for its function and counts as a call.
        """
        if count <= 0 or not 0 <= block_id < len(self.blocks):
            return False
        owner = self._block_owner.get(block_id)
        if owner is not None:
            self._credit_function(owner, count)
            return True
        block = self.blocks[block_id]
        block.executed = True
        block.execution_count += count
        return True

    def _credit_function(self, index: int, count: int) -> None:
        fn = self.functions[index]
        fn.call_count += count
        fn.executed = True
        if fn.block_id is not None and self._block_owner.get(fn.block_id) == index:
            block = self.blocks[fn.block_id]
            block.executed = True
            block.execution_count = fn.call_count

    def mark_covered(self, line: int) -> bool:
        """Mark an executed line as validated. No-op for any other line."""
        rec = self.line(line)
        if rec is None or not rec.executable or rec.execution_count == 0:
            return False
        rec.covered = True
        return True

    # -- totals -----------------------------------------------------------

    @property
    def total_lines(self) -> int:
        return len(self.lines)

    @property
    def executable_lines(self) -> int:
        return sum(1 for rec in self.lines if rec.executable)

    @property
    def executed_lines(self) -> int:
        return sum(1 for rec in self.lines if rec.executable and rec.execution_count > 0)

    @property
    def covered_lines(self) -> int:
        return sum(1 for rec in self.lines if rec.covered)

    @property
    def total_blocks(self) -> int:
        return sum(1 for b in self.blocks if b.id != ROOT_BLOCK_ID)

    @property
    def covered_blocks(self) -> int:
        return sum(1 for b in self.blocks if b.id != ROOT_BLOCK_ID and b.executed)

    @property
    def total_functions(self) -> int:
        return len(self.functions)

    @property
    def covered_functions(self) -> int:
        return sum(1 for f in self.functions if f.executed)

    @property
    def line_coverage_percent(self) -> float:
        return percent_of(self.covered_lines, self.executable_lines)

    @property
    def execution_coverage_percent(self) -> float:
        return percent_of(self.executed_lines, self.executable_lines)

    @property
    def block_coverage_percent(self) -> float:
        return percent_of(self.covered_blocks, self.total_blocks)

    @property
    def function_coverage_percent(self) -> float:
        return percent_of(self.covered_functions, self.total_functions)

    # -- structure / transport ----------------------------------------------

    def structure(self) -> tuple[Any, ...]:
        """Static part of the record; equal for every worker that saw the same file."""
        return (
            self.fingerprint,
            tuple(rec.classification for rec in self.lines),
            tuple(b.structure() for b in self.blocks),
            tuple(f.structure() for f in self.functions),
            self.classification_incomplete,
            self.parse_error,
            self.unreadable,
        )

    def copy(self) -> FileCoverageRecord:
        return FileCoverageRecord.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "fingerprint": self.fingerprint,
            "lines": [rec.to_dict() for rec in self.lines],
            "blocks": [b.to_dict() for b in self.blocks],
            "functions": [f.to_dict() for f in self.functions],
            "classification_incomplete": self.classification_incomplete,
            "parse_error": self.parse_error,
            "unreadable": self.unreadable,
            "instrumentation_fallback": self.instrumentation_fallback,
            "loaded": self.loaded,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileCoverageRecord:
        return cls(
            path=str(data["path"]),
            fingerprint=data.get("fingerprint"),
            lines=[LineRecord.from_dict(d) for d in data.get("lines", [])],
            blocks=[BlockRecord.from_dict(d) for d in data.get("blocks", [])],
            functions=[FunctionRecord.from_dict(d) for d in data.get("functions", [])],
            classification_incomplete=bool(data.get("classification_incomplete", False)),
            parse_error=data.get("parse_error"),
            unreadable=bool(data.get("unreadable", False)),
            instrumentation_fallback=bool(data.get("instrumentation_fallback", False)),
            loaded=bool(data.get("loaded", False)),
        )

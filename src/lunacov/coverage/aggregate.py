"""Coverage aggregation and cross-worker merging.

merge() is pure and associative: counts sum, flags OR, and the static
structure of both records must be identical.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from lunacov.core.errors import StructuralMismatchError
from lunacov.coverage.models import FileCoverageRecord, percent_of

if TYPE_CHECKING:
    from lunacov.coverage.session import CoverageSession

log = structlog.get_logger(__name__)


def aggregate(session: CoverageSession) -> list[FileCoverageRecord]:
    """Current records of a session, with pending tracker counts applied first."""
    if session.is_active and session.tracker is not None:
        session.tracker.flush()
    return session.records


def _check_structure(a: FileCoverageRecord, b: FileCoverageRecord) -> None:
    if a.path != b.path:
        raise StructuralMismatchError.mismatch(a.path, "path", f"{a.path!r} vs {b.path!r}")
    if a.fingerprint != b.fingerprint:
        raise StructuralMismatchError.mismatch(
            a.path, "fingerprint", f"{a.fingerprint} vs {b.fingerprint}"
        )
    if a.unreadable != b.unreadable:
        raise StructuralMismatchError.mismatch(a.path, "unreadable", "readable in one worker only")
    if [r.classification for r in a.lines] != [r.classification for r in b.lines]:
        raise StructuralMismatchError.mismatch(a.path, "classification", "line classes differ")
    if [x.structure() for x in a.blocks] != [x.structure() for x in b.blocks]:
        raise StructuralMismatchError.mismatch(a.path, "blocks", "block forests differ")
    if [x.structure() for x in a.functions] != [x.structure() for x in b.functions]:
        raise StructuralMismatchError.mismatch(a.path, "functions", "function lists differ")
    if a.structure() != b.structure():
        raise StructuralMismatchError.mismatch(a.path, "flags", "analysis flags differ")


def merge(a: FileCoverageRecord, b: FileCoverageRecord) -> FileCoverageRecord:
    """Combine two records of the same file into a new one.

    Raises:
        StructuralMismatchError: If the records disagree on anything static.
    """
    _check_structure(a, b)
    merged = a.copy()
    for line, other in zip(merged.lines, b.lines, strict=True):
        line.execution_count += other.execution_count
        line.covered = line.covered or other.covered
    for block, other_block in zip(merged.blocks, b.blocks, strict=True):
        block.execution_count += other_block.execution_count
        block.executed = block.executed or other_block.executed
    for fn, other_fn in zip(merged.functions, b.functions, strict=True):
        fn.call_count += other_fn.call_count
        fn.executed = fn.executed or other_fn.executed
    merged.loaded = a.loaded or b.loaded
    merged.instrumentation_fallback = a.instrumentation_fallback or b.instrumentation_fallback
    return merged


def merge_record_sets(*worker_sets: Iterable[FileCoverageRecord]) -> list[FileCoverageRecord]:
    """Merge the stop() results of several workers, file by file.

    Raises:
        StructuralMismatchError: If two workers disagree on a file's structure.
    """
    by_path: dict[str, FileCoverageRecord] = {}
    for records in worker_sets:
        for record in records:
            existing = by_path.get(record.path)
            by_path[record.path] = record.copy() if existing is None else merge(existing, record)
    log.debug("aggregate.merged", workers=len(worker_sets), files=len(by_path))
    return [by_path[path] for path in sorted(by_path)]


@dataclass
class CoverageTotals:
    """Session-wide totals over a set of records."""

    total_files: int = 0
    covered_files: int = 0  # at least one covered line
    executed_files: int = 0  # at least one executed line
    total_lines: int = 0
    executable_lines: int = 0
    executed_lines: int = 0
    covered_lines: int = 0
    total_blocks: int = 0
    covered_blocks: int = 0
    total_functions: int = 0
    covered_functions: int = 0

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

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_files": self.total_files,
            "covered_files": self.covered_files,
            "executed_files": self.executed_files,
            "total_lines": self.total_lines,
            "executable_lines": self.executable_lines,
            "executed_lines": self.executed_lines,
            "covered_lines": self.covered_lines,
            "total_blocks": self.total_blocks,
            "covered_blocks": self.covered_blocks,
            "total_functions": self.total_functions,
            "covered_functions": self.covered_functions,
            "line_coverage_percent": self.line_coverage_percent,
            "execution_coverage_percent": self.execution_coverage_percent,
            "block_coverage_percent": self.block_coverage_percent,
            "function_coverage_percent": self.function_coverage_percent,
        }


def summarize(records: Iterable[FileCoverageRecord]) -> CoverageTotals:
    totals = CoverageTotals()
    for record in records:
        totals.total_files += 1
        if record.covered_lines > 0:
            totals.covered_files += 1
        if record.executed_lines > 0:
            totals.executed_files += 1
        totals.total_lines += record.total_lines
        totals.executable_lines += record.executable_lines
        totals.executed_lines += record.executed_lines
        totals.covered_lines += record.covered_lines
        totals.total_blocks += record.total_blocks
        totals.covered_blocks += record.covered_blocks
        totals.total_functions += record.total_functions
        totals.covered_functions += record.covered_functions
    return totals

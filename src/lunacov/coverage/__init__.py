"""Coverage records, sessions and aggregation."""

from lunacov.coverage.aggregate import (
    CoverageTotals,
    aggregate,
    merge,
    merge_record_sets,
    summarize,
)
from lunacov.coverage.discovery import PathFilter, glob_to_regex, matches_glob, normalize_path
from lunacov.coverage.models import (
    BlockRecord,
    FileCoverageRecord,
    FunctionRecord,
    LineRecord,
    LineStatus,
)
from lunacov.coverage.session import CoverageSession, SessionState

__all__ = [
    "BlockRecord",
    "CoverageSession",
    "CoverageTotals",
    "FileCoverageRecord",
    "FunctionRecord",
    "LineRecord",
    "LineStatus",
    "PathFilter",
    "SessionState",
    "aggregate",
    "glob_to_regex",
    "matches_glob",
    "merge",
    "merge_record_sets",
    "normalize_path",
    "summarize",
]

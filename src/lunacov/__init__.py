"""lunacov: line, block and function coverage for Lua 5.4 code."""

from lunacov.config import CoverageConfig, LunacovConfig, ReportConfig, load_config
from lunacov.coverage import (
    CoverageSession,
    FileCoverageRecord,
    LineStatus,
    aggregate,
    merge,
    merge_record_sets,
)
from lunacov.report import ReportData, build, meets_threshold

__version__ = "0.1.0"

__all__ = [
    "CoverageConfig",
    "CoverageSession",
    "FileCoverageRecord",
    "LineStatus",
    "LunacovConfig",
    "ReportConfig",
    "ReportData",
    "__version__",
    "aggregate",
    "build",
    "load_config",
    "meets_threshold",
    "merge",
    "merge_record_sets",
]

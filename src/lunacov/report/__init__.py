"""Report data: the versioned projection handed to formatters."""

from lunacov.report.builder import build, meets_threshold, overall_percent
from lunacov.report.models import (
    SCHEMA_VERSION,
    BlockReport,
    FileReport,
    FunctionReport,
    LineReport,
    ReportData,
    Summary,
    Weights,
)

__all__ = [
    "BlockReport",
    "FileReport",
    "FunctionReport",
    "LineReport",
    "ReportData",
    "SCHEMA_VERSION",
    "Summary",
    "Weights",
    "build",
    "meets_threshold",
    "overall_percent",
]

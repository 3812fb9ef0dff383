"""Report data schema.

The stable, versioned projection consumed by external formatters. Within
a major schema version fields are only ever added.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from lunacov.coverage.models import LineStatus

SCHEMA_VERSION = "1.0"


class _ReportModel(BaseModel):
    """Base class for report models: immutable, unknown fields rejected."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class LineReport(_ReportModel):
    line: int
    status: LineStatus
    execution_count: int = 0
    covered: bool = False


class BlockReport(_ReportModel):
    id: int
    kind: str
    start_line: int
    end_line: int
    parent_id: int | None = None
    executed: bool = False
    execution_count: int = 0


class FunctionReport(_ReportModel):
    name: str
    line: int
    end_line: int
    is_anonymous: bool = False
    executed: bool = False
    call_count: int = 0


class Weights(_ReportModel):
    line: float = 1.0
    function: float = 1.0
    block: float = 0.0


class FileReport(_ReportModel):
    """Coverage of one file. Degraded files are included with their flags set."""

    path: str
    fingerprint: str | None = None
    total_lines: int = 0
    executable_lines: int = 0
    executed_lines: int = 0
    covered_lines: int = 0
    total_blocks: int = 0
    covered_blocks: int = 0
    total_functions: int = 0
    covered_functions: int = 0
    line_coverage_percent: float = 0.0
    execution_coverage_percent: float = 0.0
    block_coverage_percent: float = 0.0
    function_coverage_percent: float = 0.0
    loaded: bool = False
    classification_incomplete: bool = False
    parse_error: str | None = None
    unreadable: bool = False
    instrumentation_fallback: bool = False
    lines: list[LineReport] = Field(default_factory=list)
    blocks: list[BlockReport] = Field(default_factory=list)
    functions: list[FunctionReport] = Field(default_factory=list)


class Summary(_ReportModel):
    total_files: int = 0
    covered_files: int = Field(default=0, description="Files with at least one covered line.")
    executed_files: int = Field(default=0, description="Files with at least one executed line.")
    total_lines: int = 0
    executable_lines: int = 0
    executed_lines: int = 0
    covered_lines: int = 0
    total_functions: int = 0
    covered_functions: int = 0
    total_blocks: int = 0
    covered_blocks: int = 0
    line_coverage_percent: float = 0.0
    function_coverage_percent: float = 0.0
    block_coverage_percent: float = 0.0
    execution_coverage_percent: float = 0.0
    overall_percent: float = Field(
        default=0.0,
        description="Weighted mean of the line, function and block percentages.",
    )
    weights: Weights = Field(default_factory=Weights)


class ReportData(_ReportModel):
    schema_version: str = SCHEMA_VERSION
    summary: Summary = Field(default_factory=Summary)
    files: dict[str, FileReport] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible form (enums as their values)."""
        return self.model_dump(mode="json")

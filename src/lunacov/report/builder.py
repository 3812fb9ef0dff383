"""Report data builder: read-only projection of coverage records."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from lunacov.analysis.models import ROOT_BLOCK_ID
from lunacov.config.models import ReportConfig
from lunacov.coverage.aggregate import CoverageTotals, summarize
from lunacov.coverage.models import FileCoverageRecord
from lunacov.report.models import (
    BlockReport,
    FileReport,
    FunctionReport,
    LineReport,
    ReportData,
    Summary,
    Weights,
)

log = structlog.get_logger(__name__)


def overall_percent(totals: CoverageTotals, config: ReportConfig) -> float:
    """Weighted mean of line, function and block percentages (zero weights skipped)."""
    parts = [
        (config.line_weight, totals.line_coverage_percent),
        (config.function_weight, totals.function_coverage_percent),
        (config.block_weight, totals.block_coverage_percent),
    ]
    weight_sum = sum(w for w, _ in parts if w > 0)
    if weight_sum <= 0:
        return 0.0
    return sum(w * p for w, p in parts if w > 0) / weight_sum


def _file_report(record: FileCoverageRecord) -> FileReport:
    return FileReport(
        path=record.path,
        fingerprint=record.fingerprint,
        total_lines=record.total_lines,
        executable_lines=record.executable_lines,
        executed_lines=record.executed_lines,
        covered_lines=record.covered_lines,
        total_blocks=record.total_blocks,
        covered_blocks=record.covered_blocks,
        total_functions=record.total_functions,
        covered_functions=record.covered_functions,
        line_coverage_percent=record.line_coverage_percent,
        execution_coverage_percent=record.execution_coverage_percent,
        block_coverage_percent=record.block_coverage_percent,
        function_coverage_percent=record.function_coverage_percent,
        loaded=record.loaded,
        classification_incomplete=record.classification_incomplete,
        parse_error=record.parse_error,
        unreadable=record.unreadable,
        instrumentation_fallback=record.instrumentation_fallback,
        lines=[
            LineReport(
                line=rec.line,
                status=rec.status,
                execution_count=rec.execution_count,
                covered=rec.covered,
            )
            for rec in record.lines
        ],
        blocks=[
            BlockReport(
                id=b.id,
                kind=b.kind.value,
                start_line=b.start_line,
                end_line=b.end_line,
                parent_id=b.parent_id,
                executed=b.executed,
                execution_count=b.execution_count,
            )
            for b in record.blocks
            if b.id != ROOT_BLOCK_ID
        ],
        functions=[
            FunctionReport(
                name=f.name,
                line=f.line,
                end_line=f.end_line,
                is_anonymous=f.is_anonymous,
                executed=f.executed,
                call_count=f.call_count,
            )
            for f in record.functions
        ],
    )


def build(records: Iterable[FileCoverageRecord], config: ReportConfig | None = None) -> ReportData:
    """Project records into ReportData. The records are never modified."""
    config = config if config is not None else ReportConfig()
    records = list(records)
    totals = summarize(records)
    summary = Summary(
        total_files=totals.total_files,
        covered_files=totals.covered_files,
        executed_files=totals.executed_files,
        total_lines=totals.total_lines,
        executable_lines=totals.executable_lines,
        executed_lines=totals.executed_lines,
        covered_lines=totals.covered_lines,
        total_functions=totals.total_functions,
        covered_functions=totals.covered_functions,
        total_blocks=totals.total_blocks,
        covered_blocks=totals.covered_blocks,
        line_coverage_percent=totals.line_coverage_percent,
        function_coverage_percent=totals.function_coverage_percent,
        block_coverage_percent=totals.block_coverage_percent,
        execution_coverage_percent=totals.execution_coverage_percent,
        overall_percent=overall_percent(totals, config),
        weights=Weights(
            line=config.line_weight,
            function=config.function_weight,
            block=config.block_weight,
        ),
    )
    files = {record.path: _file_report(record) for record in sorted(records, key=lambda r: r.path)}
    log.debug("report.built", files=len(files), overall=round(summary.overall_percent, 1))
    return ReportData(summary=summary, files=files)


def meets_threshold(report: ReportData, threshold: float | None = None) -> bool:
    """Whether overall_percent reaches the threshold (default ReportConfig.threshold)."""
    if threshold is None:
        threshold = ReportConfig().threshold
    return report.summary.overall_percent >= threshold

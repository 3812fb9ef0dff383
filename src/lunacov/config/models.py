"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (LUNACOV__SECTION__KEY)
3. Repo YAML (.lunacov/config.yaml)
4. Global YAML (~/.config/lunacov/config.yaml)
5. Built-in defaults (this file)

Environment Variable Format:
    LUNACOV__<SECTION>__<KEY>=<VALUE>

Examples:
    LUNACOV__LOGGING__LEVEL=DEBUG
    LUNACOV__COVERAGE__BACKEND=instrumentation
    LUNACOV__REPORT__THRESHOLD=80
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

TrackerBackend = Literal["trace_hook", "instrumentation"]
"""Runtime tracking strategy, fixed for the lifetime of a session."""

TraceGranularity = Literal["line", "call"]
"""Trace-hook firing granularity. 'line' also records calls."""


class LogOutputConfig(BaseModel):
    """Single logging output configuration."""

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        LUNACOV__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG logs every file the tracker registers.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class CoverageConfig(BaseModel):
    """Session configuration handed to CoverageSession.start().

    Env vars:
        LUNACOV__COVERAGE__BACKEND: trace_hook or instrumentation
        LUNACOV__COVERAGE__TRACK_BLOCKS: Enable block/function tracking
        LUNACOV__COVERAGE__TRACE_GRANULARITY: line or call
    """

    include_patterns: list[str] = Field(
        default_factory=lambda: ["**/*.lua"],
        description="Glob patterns of files to track. '**' crosses directories, '*' does not.",
    )
    exclude_patterns: list[str] = Field(
        default_factory=list,
        description="Glob patterns removed from the include set (e.g. '**/spec/**').",
    )
    source_dirs: list[str] = Field(
        default_factory=lambda: ["."],
        description="Roots scanned for files that match include patterns but never loaded.",
    )
    include_unloaded: bool = Field(
        default=True,
        description="Report matching files that were never loaded, with zero counts.",
    )
    track_blocks: bool = Field(
        default=True,
        description="Extract blocks and functions. Disable for line-only coverage.",
    )
    backend: TrackerBackend = Field(
        default="trace_hook",
        description="trace_hook observes execution passively; instrumentation rewrites "
        "source with probe calls. TRADEOFF: instrumentation is faster on hot loops.",
    )
    trace_granularity: TraceGranularity = Field(
        default="line",
        description="Events the trace hook subscribes to. 'call' skips line counting.",
    )
    flush_threshold: int = Field(
        default=4096,
        description="Buffered execution events before the tracker flushes deltas "
        "into the session.",
    )

    @field_validator("flush_threshold")
    @classmethod
    def validate_flush_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"flush_threshold must be positive, got {v}")
        return v


class ClassifierConfig(BaseModel):
    """Static line classifier policy.

    Env vars:
        LUNACOV__CLASSIFIER__STRUCTURAL_LINES_EXECUTABLE: true/false
    """

    structural_lines_executable: bool = Field(
        default=False,
        description="Treat keyword-only lines ('end', 'else', 'do', 'repeat', '}') as "
        "executable. RISK: enabling breaks backend equivalence for 'end' lines.",
    )


class ReportConfig(BaseModel):
    """Report projection settings.

    overall_percent = sum(weight_i * percent_i) / sum(weight_i) over the
    metrics with a non-zero weight.

    Env vars:
        LUNACOV__REPORT__THRESHOLD: Minimum overall percent for meets_threshold()
    """

    line_weight: float = Field(default=1.0, description="Weight of line_coverage_percent.")
    function_weight: float = Field(
        default=1.0, description="Weight of function_coverage_percent."
    )
    block_weight: float = Field(default=0.0, description="Weight of block_coverage_percent.")
    threshold: float = Field(
        default=80.0,
        description="Minimum overall_percent considered passing.",
    )

    @field_validator("line_weight", "function_weight", "block_weight")
    @classmethod
    def validate_weight(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"Weights must be non-negative, got {v}")
        return v

    @field_validator("threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not (0.0 <= v <= 100.0):
            raise ValueError(f"Threshold must be 0-100, got {v}")
        return v

    @model_validator(mode="after")
    def validate_weight_sum(self) -> "ReportConfig":
        if self.line_weight + self.function_weight + self.block_weight <= 0:
            raise ValueError("At least one report weight must be positive")
        return self


class CacheConfig(BaseModel):
    """Static analysis cache.

    Env vars:
        LUNACOV__CACHE__ENABLED: Persist analysis results across runs
        LUNACOV__CACHE__PATH: SQLite file (default: .lunacov/analysis.db)
    """

    enabled: bool = Field(
        default=False,
        description="Persist classifier/extractor results in SQLite. The in-memory "
        "cache is always on.",
    )
    path: str | None = Field(
        default=None,
        description="Override cache database location.",
    )


class LunacovConfig(BaseModel):
    """Root configuration for lunacov."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    coverage: CoverageConfig = Field(default_factory=CoverageConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

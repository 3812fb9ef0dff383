"""Tests for config/models.py module.

Covers:
- LogOutputConfig model
- CoverageConfig model
- ClassifierConfig model
- ReportConfig model
- LunacovConfig root model
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from lunacov.config.models import (
    ClassifierConfig,
    CoverageConfig,
    LogOutputConfig,
    LunacovConfig,
    ReportConfig,
)


class TestLogOutputConfig:
    """Tests for LogOutputConfig model."""

    def test_defaults(self) -> None:
        """Default values."""
        config = LogOutputConfig()
        assert config.format == "console"
        assert config.destination == "stderr"
        assert config.level is None

    def test_relative_file_destination_rejected(self) -> None:
        """File destinations must be absolute."""
        with pytest.raises(ValidationError):
            LogOutputConfig(destination="relative/out.log")


class TestCoverageConfig:
    """Tests for CoverageConfig model."""

    def test_defaults(self) -> None:
        """Default session settings."""
        config = CoverageConfig()
        assert config.include_patterns == ["**/*.lua"]
        assert config.exclude_patterns == []
        assert config.source_dirs == ["."]
        assert config.include_unloaded is True
        assert config.track_blocks is True
        assert config.backend == "trace_hook"
        assert config.trace_granularity == "line"
        assert config.flush_threshold == 4096

    @pytest.mark.parametrize("backend", ["trace_hook", "instrumentation"])
    def test_valid_backends(self, backend: str) -> None:
        """Both tracker backends are accepted."""
        assert CoverageConfig(backend=backend).backend == backend  # type: ignore[arg-type]

    def test_unknown_backend_rejected(self) -> None:
        """Unknown backend names fail validation."""
        with pytest.raises(ValidationError):
            CoverageConfig(backend="sampling")  # type: ignore[arg-type]

    @pytest.mark.parametrize("threshold", [0, -5])
    def test_non_positive_flush_threshold_rejected(self, threshold: int) -> None:
        """flush_threshold must be at least 1."""
        with pytest.raises(ValidationError):
            CoverageConfig(flush_threshold=threshold)


class TestClassifierConfig:
    """Tests for ClassifierConfig model."""

    def test_structural_lines_default_non_executable(self) -> None:
        assert ClassifierConfig().structural_lines_executable is False


class TestReportConfig:
    """Tests for ReportConfig model."""

    def test_defaults(self) -> None:
        """Default weighting is the mean of line and function percentages."""
        config = ReportConfig()
        assert (config.line_weight, config.function_weight, config.block_weight) == (1.0, 1.0, 0.0)
        assert config.threshold == 80.0

    def test_negative_weight_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ReportConfig(line_weight=-1)

    def test_all_zero_weights_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ReportConfig(line_weight=0, function_weight=0, block_weight=0)

    @pytest.mark.parametrize("threshold", [-0.1, 100.1])
    def test_threshold_out_of_range_rejected(self, threshold: float) -> None:
        with pytest.raises(ValidationError):
            ReportConfig(threshold=threshold)


class TestLunacovConfig:
    """Tests for the root model."""

    def test_sections_present(self) -> None:
        config = LunacovConfig()
        assert config.coverage.backend == "trace_hook"
        assert config.cache.enabled is False
        assert config.cache.path is None
        assert config.logging.level == "INFO"

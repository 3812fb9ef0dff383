"""Tests for error types and codes."""

import pytest

from lunacov.core.errors import (
    AnalysisError,
    ConfigError,
    ErrorCode,
    InstrumentationError,
    LunacovError,
    RuntimeHostError,
    SessionError,
    StructuralMismatchError,
)


class TestErrorCode:
    """Error code value tests."""

    @pytest.mark.parametrize(
        ("code", "expected_range"),
        [
            (ErrorCode.CONFIG_PARSE_ERROR, 2000),
            (ErrorCode.CONFIG_INVALID_VALUE, 2000),
            (ErrorCode.ANALYSIS_PARSE_ERROR, 3000),
            (ErrorCode.ANALYSIS_FILE_UNREADABLE, 3000),
            (ErrorCode.RUNTIME_LOAD_FAILED, 4000),
            (ErrorCode.SESSION_NOT_ACTIVE, 4000),
            (ErrorCode.STRUCTURAL_MISMATCH, 5000),
            (ErrorCode.ANALYSIS_CLASSIFICATION_INCOMPLETE, 3000),
        ],
    )
    def test_given_error_code_when_checked_then_in_correct_range(
        self, code: ErrorCode, expected_range: int
    ) -> None:
        """Error codes fall within their designated numeric range."""
        # Given
        error_code = code

        # When
        value = error_code.value

        # Then
        assert expected_range <= value < expected_range + 1000


class TestLunacovError:
    """Base error behavior tests."""

    def test_given_error_when_to_dict_then_serializes_all_fields(self) -> None:
        """Error serializes to dict with all required fields."""
        # Given
        error = LunacovError(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message="Test message",
            retryable=True,
            details={"key": "value"},
        )

        # When
        result = error.to_dict()

        # Then
        assert result == {
            "code": 2001,
            "error": "CONFIG_PARSE_ERROR",
            "message": "Test message",
            "retryable": True,
            "details": {"key": "value"},
        }

    def test_given_error_when_str_then_human_readable(self) -> None:
        """Error string representation is human readable."""
        # Given
        error = LunacovError(code=ErrorCode.SESSION_FROZEN, message="Something broke")

        # When
        result = str(error)

        # Then
        assert result == "[4103] SESSION_FROZEN: Something broke"

    def test_given_subclass_when_raised_then_caught_as_base(self) -> None:
        """Every lunacov error is catchable as LunacovError."""
        with pytest.raises(LunacovError) as exc_info:
            raise SessionError.already_active()

        assert exc_info.value.code == ErrorCode.SESSION_ALREADY_ACTIVE


class TestFactories:
    """Factory method tests across error families."""

    @pytest.mark.parametrize(
        ("error", "expected_code"),
        [
            (ConfigError.parse_error("/c.yaml", "bad yaml"), ErrorCode.CONFIG_PARSE_ERROR),
            (ConfigError.invalid_value("report.threshold", 120, "too big"), ErrorCode.CONFIG_INVALID_VALUE),
            (AnalysisError.parse_error("a.lua", 3, "unexpected"), ErrorCode.ANALYSIS_PARSE_ERROR),
            (
                AnalysisError.classification_incomplete("a.lua", 2, "--[["),
                ErrorCode.ANALYSIS_CLASSIFICATION_INCOMPLETE,
            ),
            (AnalysisError.unreadable("a.lua", "denied"), ErrorCode.ANALYSIS_FILE_UNREADABLE),
            (RuntimeHostError.load_failed("a.lua", "syntax"), ErrorCode.RUNTIME_LOAD_FAILED),
            (RuntimeHostError.execution_failed("a.lua", "boom"), ErrorCode.RUNTIME_EXECUTION_FAILED),
            (InstrumentationError.failed("a.lua", "bad"), ErrorCode.RUNTIME_INSTRUMENTATION_FAILED),
            (SessionError.not_active("stop"), ErrorCode.SESSION_NOT_ACTIVE),
            (SessionError.already_active(), ErrorCode.SESSION_ALREADY_ACTIVE),
            (SessionError.frozen("start"), ErrorCode.SESSION_FROZEN),
            (StructuralMismatchError.mismatch("a.lua", "blocks", "differ"), ErrorCode.STRUCTURAL_MISMATCH),
        ],
    )
    def test_given_factory_when_called_then_correct_code(
        self, error: LunacovError, expected_code: ErrorCode
    ) -> None:
        """Factory methods produce errors with correct error codes."""
        assert error.code == expected_code
        assert error.message

    def test_given_parse_error_when_created_then_path_in_details(self) -> None:
        """Parse error includes file path in details."""
        # Given
        path = "/config.yaml"
        reason = "invalid syntax"

        # When
        error = ConfigError.parse_error(path, reason)

        # Then
        assert error.details["path"] == path
        assert reason in error.message

    def test_given_mismatch_when_created_then_field_named(self) -> None:
        """Structural mismatch names the differing field."""
        error = StructuralMismatchError.mismatch("/src/a.lua", "fingerprint", "abc vs def")

        assert error.details["field"] == "fingerprint"
        assert "/src/a.lua" in error.message

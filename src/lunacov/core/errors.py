"""lunacov error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 3xxx: Static analysis
- 4xxx: Runtime (Lua host, trackers, sessions)
- 5xxx: Aggregation
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002

    # Static analysis (3xxx)
    ANALYSIS_PARSE_ERROR = 3001
    ANALYSIS_CLASSIFICATION_INCOMPLETE = 3002
    ANALYSIS_FILE_UNREADABLE = 3003

    # Runtime (4xxx)
    RUNTIME_LOAD_FAILED = 4001
    RUNTIME_EXECUTION_FAILED = 4002
    RUNTIME_INSTRUMENTATION_FAILED = 4003
    SESSION_NOT_ACTIVE = 4101
    SESSION_ALREADY_ACTIVE = 4102
    SESSION_FROZEN = 4103

    # Aggregation (5xxx)
    STRUCTURAL_MISMATCH = 5001


@dataclass(frozen=True, slots=True)
class LunacovError(Exception):
    """Base error with structured context."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'STRUCTURAL_MISMATCH')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(LunacovError):
    """Configuration-related errors."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )


class AnalysisError(LunacovError):
    """Static analysis failures. Recovered locally and recorded as file flags."""

    @classmethod
    def parse_error(cls, path: str, line: int | None, reason: str) -> "AnalysisError":
        where = f"{path}:{line}" if line is not None else path
        return cls(
            code=ErrorCode.ANALYSIS_PARSE_ERROR,
            message=f"Cannot build syntax tree for {where}: {reason}",
            details={"path": path, "line": line, "reason": reason},
        )

    @classmethod
    def classification_incomplete(cls, path: str, line: int, marker: str) -> "AnalysisError":
        return cls(
            code=ErrorCode.ANALYSIS_CLASSIFICATION_INCOMPLETE,
            message=f"Unterminated '{marker}' opened at {path}:{line}",
            details={"path": path, "line": line, "marker": marker},
        )

    @classmethod
    def unreadable(cls, path: str, reason: str) -> "AnalysisError":
        return cls(
            code=ErrorCode.ANALYSIS_FILE_UNREADABLE,
            message=f"Cannot read {path}: {reason}",
            details={"path": path, "reason": reason},
        )


class RuntimeHostError(LunacovError):
    """Errors raised while loading or running Lua code."""

    @classmethod
    def load_failed(cls, path: str, reason: str) -> "RuntimeHostError":
        return cls(
            code=ErrorCode.RUNTIME_LOAD_FAILED,
            message=f"Failed to load {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def execution_failed(cls, path: str, reason: str) -> "RuntimeHostError":
        return cls(
            code=ErrorCode.RUNTIME_EXECUTION_FAILED,
            message=f"Error while running {path}: {reason}",
            details={"path": path, "reason": reason},
        )


class InstrumentationError(LunacovError):
    """Source rewriting failed; the tracker falls back to the trace hook."""

    @classmethod
    def failed(cls, path: str, reason: str) -> "InstrumentationError":
        return cls(
            code=ErrorCode.RUNTIME_INSTRUMENTATION_FAILED,
            message=f"Cannot instrument {path}: {reason}",
            details={"path": path, "reason": reason},
        )


class SessionError(LunacovError):
    """Coverage session lifecycle errors."""

    @classmethod
    def not_active(cls, operation: str) -> "SessionError":
        return cls(
            code=ErrorCode.SESSION_NOT_ACTIVE,
            message=f"Cannot {operation}: session is not active",
            details={"operation": operation},
        )

    @classmethod
    def already_active(cls) -> "SessionError":
        return cls(
            code=ErrorCode.SESSION_ALREADY_ACTIVE,
            message="Session already started; stop or reset it first",
        )

    @classmethod
    def frozen(cls, operation: str) -> "SessionError":
        return cls(
            code=ErrorCode.SESSION_FROZEN,
            message=f"Cannot {operation}: session is stopped; reset it first",
            details={"operation": operation},
        )


class StructuralMismatchError(LunacovError):
    """Two coverage records for the same file disagree on static structure."""

    @classmethod
    def mismatch(cls, path: str, field: str, reason: str) -> "StructuralMismatchError":
        return cls(
            code=ErrorCode.STRUCTURAL_MISMATCH,
            message=f"Cannot merge records for {path}: {field} differs ({reason})",
            details={"path": path, "field": field, "reason": reason},
        )

"""Core module exports."""

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
from lunacov.core.logging import (
    clear_session_id,
    configure_logging,
    get_session_id,
    set_session_id,
)

__all__ = [
    # Errors
    "AnalysisError",
    "ConfigError",
    "ErrorCode",
    "InstrumentationError",
    "LunacovError",
    "RuntimeHostError",
    "SessionError",
    "StructuralMismatchError",
    # Logging
    "clear_session_id",
    "configure_logging",
    "get_session_id",
    "set_session_id",
]

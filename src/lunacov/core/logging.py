"""Logging setup for lunacov.

Modules log through ``structlog.get_logger(__name__)`` with dotted event
names (``session.started``, ``tracker.fallback``). Output is routed through
stdlib logging so each configured output gets its own handler, level and
renderer. A coverage session built from a LunacovConfig applies that
config's logging section.

Events logged while a session is active carry its ``session_id``.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from lunacov.config.models import LoggingConfig, LogOutputConfig

_session_id: ContextVar[str | None] = ContextVar("lunacov_session_id", default=None)

# Third-party loggers capped regardless of the configured level
_QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
}


def get_session_id() -> str | None:
    return _session_id.get()


def set_session_id(session_id: str) -> None:
    _session_id.set(session_id)


def clear_session_id() -> None:
    _session_id.set(None)


def _add_session_id(
    _logger: structlog.types.WrappedLogger,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    if sid := get_session_id():
        event_dict.setdefault("session_id", sid)
    return event_dict


def _level(name: str) -> int:
    return logging.getLevelNamesMapping()[name.upper()]


def _renderer(output: LogOutputConfig) -> structlog.types.Processor:
    if output.format == "json":
        return structlog.processors.JSONRenderer()
    stream = sys.stdout if output.destination == "stdout" else sys.stderr
    tty = output.destination in ("stderr", "stdout") and stream.isatty()
    return structlog.dev.ConsoleRenderer(colors=tty, pad_event_to=0, pad_level=False)


def _handler(output: LogOutputConfig) -> logging.Handler:
    if output.destination == "stderr":
        return logging.StreamHandler(sys.stderr)
    if output.destination == "stdout":
        return logging.StreamHandler(sys.stdout)
    path = Path(output.destination)
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.FileHandler(path, mode="a")


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Install structlog and one stdlib handler per configured output.

    Replaces any handlers on the root logger, so calling it again
    reconfigures rather than duplicates output.
    """
    from lunacov.config.models import LoggingConfig

    config = config if config is not None else LoggingConfig()
    root_level = _level(config.level)

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", key="timestamp"),
        _add_session_id,  # type: ignore[list-item]
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # level changes must reach loggers created before reconfiguration
        cache_logger_on_first_use=False,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(root_level)
    for name, cap in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(cap, root_level))

    for output in config.outputs:
        handler = _handler(output)
        handler.setLevel(_level(output.level or config.level))
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=_renderer(output),
                foreign_pre_chain=pre_chain,
            )
        )
        root.addHandler(handler)

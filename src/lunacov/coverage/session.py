"""Coverage session: the owner of every mutable coverage record.

Lifecycle::

    idle --start()--> active --stop()--> stopped --reset()--> idle

While active, the tracker feeds execution and call counts in and the
assertion layer marks lines covered. stop() freezes the records; reset()
discards them.
"""

from __future__ import annotations

import re
import uuid
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from lunacov.analysis.analyzer import StaticAnalyzer
from lunacov.analysis.cache import AnalysisCache
from lunacov.config.loader import get_cache_path
from lunacov.config.models import CoverageConfig, LunacovConfig
from lunacov.core.errors import AnalysisError, SessionError
from lunacov.core.logging import clear_session_id, configure_logging, set_session_id
from lunacov.coverage.discovery import PathFilter, normalize_path
from lunacov.coverage.models import FileCoverageRecord
from lunacov.runtime.lua import LuaHost
from lunacov.runtime.tracker import TrackedFile, Tracker, create_tracker

log = structlog.get_logger(__name__)

# one stack frame of debug.traceback(): "\tpath:line: in ..."
_FRAME = re.compile(r"^\s*@?(?P<path>[^\s\[:][^:\n]*):(?P<line>\d+): in ", re.MULTILINE)


class SessionState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    STOPPED = "stopped"


class CoverageSession:
    """Worker-wide coverage state with its own Lua interpreter.

    Sessions share nothing; several may coexist in one process.

    Usage::

        session = CoverageSession()
        session.start(CoverageConfig(source_dirs=["src"]))
        session.run_file("src/app.lua")
        session.mark_covered("src/app.lua", 3)
        records = session.stop()
    """

    def __init__(
        self,
        *,
        host: LuaHost | None = None,
        analyzer: StaticAnalyzer | None = None,
        config: CoverageConfig | None = None,
        session_id: str | None = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex[:12]
        self.host = host if host is not None else LuaHost()
        self.analyzer = analyzer if analyzer is not None else StaticAnalyzer()
        self.default_config = config if config is not None else CoverageConfig()
        self.state = SessionState.IDLE
        self.config: CoverageConfig | None = None
        self.tracker: Tracker | None = None
        self._filter: PathFilter | None = None
        self._records: dict[str, FileCoverageRecord] = {}
        self._tracked: dict[str, TrackedFile] = {}

    @classmethod
    def from_config(cls, config: LunacovConfig, repo_root: Path | None = None) -> CoverageSession:
        """Build a session from the root config.

        Applies the logging section and opens the persistent analysis cache
        when it is enabled.
        """
        configure_logging(config.logging)
        cache = AnalysisCache()
        if config.cache.enabled:
            cache = AnalysisCache(get_cache_path(repo_root or Path.cwd(), config))
        analyzer = StaticAnalyzer(config=config.classifier, cache=cache)
        return cls(analyzer=analyzer, config=config.coverage)

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    # -- lifecycle -------------------------------------------------------------

    def start(self, config: CoverageConfig | None = None) -> None:
        """Activate tracking.

        Raises:
            SessionError: If the session is already active or stopped.
            ConfigError: If the configured backend is unknown.
        """
        if self.state is SessionState.ACTIVE:
            raise SessionError.already_active()
        if self.state is SessionState.STOPPED:
            raise SessionError.frozen("start")

        self.config = config or self.default_config
        self._filter = PathFilter(
            source_dirs=list(self.config.source_dirs),
            include_patterns=list(self.config.include_patterns),
            exclude_patterns=list(self.config.exclude_patterns),
        )
        set_session_id(self.id)
        self.tracker = create_tracker(self.host, self, self.config)
        self.tracker.attach()
        self.state = SessionState.ACTIVE
        log.info(
            "session.started",
            backend=self.config.backend,
            granularity=self.config.trace_granularity,
            source_dirs=self.config.source_dirs,
        )

    def stop(self) -> list[FileCoverageRecord]:
        """Flush pending counts, freeze the session and return its records.

        Calling stop() again returns the same frozen records.

        Raises:
            SessionError: If the session was never started.
        """
        if self.state is SessionState.STOPPED:
            return self.records
        if self.state is SessionState.IDLE:
            raise SessionError.not_active("stop")

        assert self.tracker is not None
        self.tracker.detach()
        if self.config is not None and self.config.include_unloaded:
            self._add_unloaded()
        self.state = SessionState.STOPPED
        log.info(
            "session.stopped",
            files=len(self._records),
            loaded=sum(1 for r in self._records.values() if r.loaded),
        )
        return self.records

    def reset(self) -> None:
        """Discard all records and return to idle."""
        if self.tracker is not None:
            self.tracker.detach()
        self.tracker = None
        self.config = None
        self._filter = None
        self._records.clear()
        self._tracked.clear()
        self.state = SessionState.IDLE
        clear_session_id()
        log.debug("session.reset", session=self.id)

    def close(self) -> None:
        self.reset()
        self.host.close()

    # -- records ---------------------------------------------------------------

    @property
    def records(self) -> list[FileCoverageRecord]:
        """Snapshot of every record, sorted by path."""
        return [self._records[path].copy() for path in sorted(self._records)]

    def record_for(self, path: str | Path) -> FileCoverageRecord | None:
        record = self._records.get(normalize_path(path))
        return record.copy() if record is not None else None

    def mark_covered(self, path: str | Path, line: int) -> None:
        """Mark a line validated by an assertion.

        Idempotent. A no-op for untracked files, lines that are not
        executable and lines that have not executed yet.

        Raises:
            SessionError: If the session is not active.
        """
        if self.state is not SessionState.ACTIVE:
            raise SessionError.not_active("mark_covered")
        assert self.tracker is not None
        self.tracker.flush()
        record = self._records.get(normalize_path(path))
        if record is not None:
            record.mark_covered(line)

    def mark_covered_from_traceback(self, traceback: str) -> int:
        """Mark every tracked frame of a Lua traceback as validated.

        Meant for assertion libraries: pass ``debug.traceback()`` taken
        where an assertion passed, and the lines of the frames on the stack
        (the assertion call site and the code it exercised) become covered.
        Frames of untracked files, C functions and string chunks are
        skipped. Returns the number of lines marked.

        Raises:
            SessionError: If the session is not active.
        """
        if self.state is not SessionState.ACTIVE:
            raise SessionError.not_active("mark_covered_from_traceback")
        assert self.tracker is not None
        self.tracker.flush()
        marked = 0
        for match in _FRAME.finditer(traceback):
            path = self._frame_path(match.group("path"))
            record = self._records.get(path) if path is not None else None
            if record is None:
                continue
            line = self.host.original_line(path, int(match.group("line")))
            if record.mark_covered(line):
                marked += 1
        log.debug("session.traceback_marked", marked=marked)
        return marked

    def _frame_path(self, frame: str) -> str | None:
        # Lua shortens long chunk names to '...<tail>'
        if frame.startswith("..."):
            tail = frame[3:]
            matches = [path for path in self._records if path.endswith(tail)]
            return matches[0] if len(matches) == 1 else None
        return normalize_path(frame)

    # -- running Lua -------------------------------------------------------------

    def run_file(self, path: str | Path, *args: Any) -> Any:
        return self.host.run_file(path, *args)

    def require(self, name: str) -> Any:
        return self.host.require(name)

    def execute(self, code: str) -> Any:
        return self.host.execute(code)

    # -- tracker sink --------------------------------------------------------------

    def track(self, path: str) -> TrackedFile | None:
        """Analyze a file about to load and open its record, if it is tracked."""
        if self.state is not SessionState.ACTIVE or self._filter is None:
            return None
        normalized = normalize_path(path)
        if not self._filter.is_tracked(normalized):
            return None
        try:
            source, analysis = self.analyzer.analyze_path(normalized)
        except AnalysisError as e:
            log.warning("session.file_unreadable", path=normalized, error=e.message)
            self._records[normalized] = FileCoverageRecord.unreadable_file(normalized)
            return None

        tracked = self._tracked.get(normalized)
        if tracked is not None and tracked.source.fingerprint == source.fingerprint:
            return tracked
        if tracked is not None:
            log.warning("session.source_changed", path=normalized)
            # counts still buffered belong to the old version
            if self.tracker is not None:
                self.tracker.flush()

        tracked = TrackedFile(source=source, analysis=analysis)
        self._tracked[normalized] = tracked
        record = FileCoverageRecord.from_analysis(analysis, track_blocks=self._track_blocks)
        record.loaded = True
        self._records[normalized] = record
        log.debug("session.file_tracked", path=normalized, executable=record.executable_lines)
        return tracked

    def apply_execution(self, path: str, line: int, count: int) -> None:
        record = self._records.get(path)
        if record is not None:
            record.record_execution(line, count)

    def apply_call(self, path: str, line: int, count: int) -> None:
        record = self._records.get(path)
        if record is not None:
            record.record_call(line, count)

    def apply_block(self, path: str, block_id: int, count: int) -> None:
        record = self._records.get(path)
        if record is not None:
            record.record_block(block_id, count)

    def mark_fallback(self, path: str) -> None:
        record = self._records.get(path)
        if record is not None:
            record.instrumentation_fallback = True

    # -- internals -------------------------------------------------------------------

    @property
    def _track_blocks(self) -> bool:
        return self.config.track_blocks if self.config is not None else True

    def _add_unloaded(self) -> None:
        assert self._filter is not None
        added = 0
        for path in self._filter.discover():
            if path in self._records:
                continue
            try:
                _, analysis = self.analyzer.analyze_path(path)
            except AnalysisError as e:
                log.warning("session.file_unreadable", path=path, error=e.message)
                self._records[path] = FileCoverageRecord.unreadable_file(path)
                continue
            self._records[path] = FileCoverageRecord.from_analysis(
                analysis, track_blocks=self._track_blocks
            )
            added += 1
        if added:
            log.debug("session.unloaded_added", files=added)

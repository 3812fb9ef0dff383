"""Runtime execution trackers.

A tracker sits between a LuaHost and a coverage session. It compiles
tracked files (plainly or instrumented), receives execution and call events,
buffers them and applies them to the session in batches. Both backends
feed the same Lua-side counters, so draining and applying is shared.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol

import structlog

from lunacov.analysis.models import StaticAnalysis
from lunacov.analysis.parser import neutralize_shebang
from lunacov.analysis.source import SourceFile
from lunacov.config.models import CoverageConfig, TrackerBackend
from lunacov.core.errors import ConfigError, InstrumentationError, RuntimeHostError
from lunacov.runtime.instrument import Instrumenter
from lunacov.runtime.lua import EVENT_BLOCK, EVENT_CALL, EVENT_LINE, LuaHost

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TrackedFile:
    """A file the session agreed to track, with its static analysis."""

    source: SourceFile
    analysis: StaticAnalysis

    @property
    def path(self) -> str:
        return self.source.path

    @property
    def chunkname(self) -> str:
        return "@" + self.source.path


class CoverageSink(Protocol):
    """What a tracker needs from the session that owns it."""

    def track(self, path: str) -> TrackedFile | None: ...

    def apply_execution(self, path: str, line: int, count: int) -> None: ...

    def apply_call(self, path: str, line: int, count: int) -> None: ...

    def apply_block(self, path: str, block_id: int, count: int) -> None: ...

    def mark_fallback(self, path: str) -> None: ...


class Tracker(ABC):
    """Abstract base for runtime tracking backends.

    Lifecycle: attach() -> (load_chunk / record_* events) -> flush() -> detach().
    Events for files the session does not track are never produced: only
    chunks compiled by load_chunk() are observed.
    """

    backend: ClassVar[TrackerBackend]

    def __init__(self, host: LuaHost, sink: CoverageSink, config: CoverageConfig) -> None:
        self.host = host
        self.sink = sink
        self.config = config
        self._pending: Counter[tuple[str, int, int]] = Counter()
        self._attached = False

    @property
    def attached(self) -> bool:
        return self._attached

    @property
    def hook_mask(self) -> str:
        return "cl" if self.config.trace_granularity == "line" else "c"

    def attach(self) -> None:
        if self._attached:
            return
        self.host.configure_counters(self.config.flush_threshold, self.flush)
        self.host.set_loader(self.load_chunk)
        self._install()
        self._attached = True
        log.debug("tracker.attached", backend=self.backend)

    def detach(self) -> None:
        if not self._attached:
            return
        self.flush()
        self._uninstall()
        self.host.set_loader(None)
        self.host.reset_counters()
        self._attached = False
        log.debug("tracker.detached", backend=self.backend)

    def load_chunk(self, path: str) -> Any | None:
        """Compile a file for execution, or None when the session does not track it."""
        tracked = self.sink.track(path)
        if tracked is None:
            return None
        return self._compile(tracked)

    # -- events ------------------------------------------------------------------

    def record_execution(self, path: str, line: int, count: int = 1) -> None:
        self._pending[(path, EVENT_LINE, line)] += count
        if len(self._pending) >= self.config.flush_threshold:
            self.flush()

    def record_call(self, path: str, line: int, count: int = 1) -> None:
        self._pending[(path, EVENT_CALL, line)] += count
        if len(self._pending) >= self.config.flush_threshold:
            self.flush()

    def flush(self) -> int:
        """Apply every buffered event to the session. Returns the number of batches applied."""
        for path, event, line, count in self.host.drain():
            self._pending[(path, event, line)] += count
        if not self._pending:
            return 0
        pending, self._pending = self._pending, Counter()
        for (path, event, key), count in pending.items():
            if event == EVENT_LINE:
                self.sink.apply_execution(path, key, count)
            elif event == EVENT_BLOCK:
                self.sink.apply_block(path, key, count)
            else:
                self.sink.apply_call(path, key, count)
        log.debug("tracker.flushed", backend=self.backend, entries=len(pending))
        return len(pending)

    # -- backend hooks -------------------------------------------------------------

    @abstractmethod
    def _install(self) -> None: ...

    @abstractmethod
    def _uninstall(self) -> None: ...

    @abstractmethod
    def _compile(self, tracked: TrackedFile) -> Any: ...

    def _compile_traced(self, tracked: TrackedFile) -> Any:
        """Compile the original text and register it with the trace hook."""
        fn = self.host.compile(neutralize_shebang(tracked.source.text), tracked.chunkname)
        self.host.register_chunk(
            tracked.chunkname,
            tracked.path,
            tracked.analysis.classification.executable_lines,
            tracked.analysis.closure_remap(),
            tracked.analysis.loop_entries,
            tracked.analysis.loop_exits,
        )
        return fn


# =============================================================================
# Trace hook - debug.sethook, no source modification
# =============================================================================


class TraceHookTracker(Tracker):
    """Observes execution through a Lua debug hook.

    Granularity 'line' requests line and call events; 'call' requests call
    events only, so line counts stay at zero.
    """

    backend: ClassVar[TrackerBackend] = "trace_hook"

    def _install(self) -> None:
        self.host.install_hook(self.hook_mask)

    def _uninstall(self) -> None:
        self.host.remove_hook()

    def _compile(self, tracked: TrackedFile) -> Any:
        return self._compile_traced(tracked)


# =============================================================================
# Instrumentation - probes rewritten into the source
# =============================================================================


class InstrumentationTracker(Tracker):
    """Counts execution through probes inserted into each tracked file.

    A file that cannot be instrumented falls back to the trace hook; the
    hook is installed on first fallback and only observes fallback files.
    """

    backend: ClassVar[TrackerBackend] = "instrumentation"

    def __init__(
        self,
        host: LuaHost,
        sink: CoverageSink,
        config: CoverageConfig,
        instrumenter: Instrumenter | None = None,
    ) -> None:
        super().__init__(host, sink, config)
        self.instrumenter = instrumenter if instrumenter is not None else Instrumenter()

    def _install(self) -> None:
        pass

    def _uninstall(self) -> None:
        self.host.remove_hook()

    def _compile(self, tracked: TrackedFile) -> Any:
        try:
            instrumented = self.instrumenter.instrument(tracked.source, tracked.analysis)
            fn = self.host.compile(instrumented.code, tracked.chunkname)
        except (InstrumentationError, RuntimeHostError) as e:
            return self._fall_back(tracked, e)
        self.host.register_source_map(instrumented.source_map)
        return fn

    def _fall_back(self, tracked: TrackedFile, error: Exception) -> Any:
        log.warning(
            "tracker.instrumentation_fallback",
            path=tracked.path,
            error=getattr(error, "message", str(error)),
        )
        self.sink.mark_fallback(tracked.path)
        self.host.install_hook(self.hook_mask)
        return self._compile_traced(tracked)


# =============================================================================
# Tracker Registry
# =============================================================================

TRACKER_REGISTRY: dict[str, type[Tracker]] = {
    "trace_hook": TraceHookTracker,
    "instrumentation": InstrumentationTracker,
}


def create_tracker(host: LuaHost, sink: CoverageSink, config: CoverageConfig) -> Tracker:
    """Instantiate the tracker selected by config.backend.

    Raises:
        ConfigError: If the backend name is unknown.
    """
    tracker_class = TRACKER_REGISTRY.get(config.backend)
    if tracker_class is None:
        raise ConfigError.invalid_value("coverage.backend", config.backend, "unknown tracker backend")
    return tracker_class(host, sink, config)

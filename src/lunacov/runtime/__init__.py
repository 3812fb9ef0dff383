"""Runtime tracking: the embedded Lua host, trackers and instrumentation."""

from lunacov.runtime.instrument import InstrumentedSource, Instrumenter, SourceMap
from lunacov.runtime.lua import LuaHost
from lunacov.runtime.tracker import (
    TRACKER_REGISTRY,
    CoverageSink,
    InstrumentationTracker,
    TraceHookTracker,
    TrackedFile,
    Tracker,
    create_tracker,
)

__all__ = [
    "CoverageSink",
    "InstrumentationTracker",
    "InstrumentedSource",
    "Instrumenter",
    "LuaHost",
    "SourceMap",
    "TRACKER_REGISTRY",
    "TraceHookTracker",
    "TrackedFile",
    "Tracker",
    "create_tracker",
]

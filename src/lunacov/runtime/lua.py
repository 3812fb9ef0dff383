"""Embedded Lua interpreter host.

LuaHost wraps a lupa LuaRuntime and installs a small Lua support module
that keeps execution counters on the Lua side. The trace hook and the
instrumentation probes both count into the same per-file tables; trackers
drain them into the coverage session in batches.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import lupa
import structlog

from lunacov.analysis.models import LoopEntry, LoopExit
from lunacov.analysis.parser import neutralize_shebang
from lunacov.core.errors import RuntimeHostError
from lunacov.runtime.instrument import PROBE_FACTORY, SourceMap

log = structlog.get_logger(__name__)

EVENT_LINE = 0
EVENT_CALL = 1
EVENT_BLOCK = 2

# Hook and probes keep counts in Lua tables keyed by file path. Line events
# follow these rules so trace-hook counts match probe counts:
#   - closure creation fires the function's closing line; when that line is
#     not executable it is credited to the creating statement's first line
#   - returning to the last counted line after only non-executable events
#     (the store that follows a closure) is not a new execution
#   - a 'while true' header has no instruction; it is credited when the loop
#     body is entered from outside the loop
#   - a break folded into its 'if' condition has no instruction; it is
#     credited when the event after the condition lands outside the loop
# The last two track the previous line per function, keyed by linedefined,
# and forget it on every call into the function.
_SUPPORT_LUA = """
local sethook, getinfo = debug.sethook, debug.getinfo
local co_create, co_wrap, co_resume = coroutine.create, coroutine.wrap, coroutine.resume
local pack, unpack, insert, remove = table.pack, table.unpack, table.insert, table.remove

local M = {}

local chunks = {}
local hits, calls, blocks = {}, {}, {}
local executable, remap = {}, {}
local entries, exits = {}, {}
local prev, armed = {}, {}
local pending, threshold, on_threshold = 0, 4096, nil
local last_path, last_line, gap = nil, nil, false
local hook_mask = nil
local searcher = nil

local function counters(path)
  local h = hits[path]
  if h == nil then
    h = {}
    hits[path] = h
    calls[path] = {}
    blocks[path] = {}
  end
  return h, calls[path], blocks[path]
end

local function bump()
  pending = pending + 1
  if pending >= threshold and on_threshold ~= nil then
    pending = 0
    on_threshold()
  end
end

local function credit(path, line)
  local h = hits[path]
  h[line] = (h[line] or 0) + 1
  bump()
end

local function follow(path, defined, line)
  local p, a = prev[path], armed[path]
  local before = p[defined]
  p[defined] = line
  local exit = a[defined]
  if exit ~= nil and line ~= exit[1] and (line < exit[2] or line > exit[3]) then
    credit(path, exit[1])
  end
  a[defined] = exits[path][line]
  local rules = entries[path][line]
  if rules == nil then return end
  for i = 1, #rules, 2 do
    if before == nil or before < rules[i] or before > rules[i + 1] then
      credit(path, rules[i])
    end
  end
end

local function hook(event, line)
  local info = getinfo(2, "S")
  local path = chunks[info.source]
  if path == nil then return end
  local defined = info.linedefined
  if event == "line" then
    follow(path, defined, line)
    if not executable[path][line] then
      local target = remap[path][line]
      gap = true
      if target == nil or line == info.lastlinedefined then return end
      if target == last_line and path == last_path then return end
      line = target
    elseif gap and line == last_line and path == last_path then
      gap = false
      return
    else
      gap = false
    end
    last_path, last_line = path, line
    local h = hits[path]
    h[line] = (h[line] or 0) + 1
  else
    prev[path][defined] = nil
    armed[path][defined] = nil
    if defined <= 0 then return end
    local c = calls[path]
    c[defined] = (c[defined] or 0) + 1
  end
  bump()
end

local function hooked_create(f)
  local co = co_create(f)
  if hook_mask ~= nil then sethook(co, hook, hook_mask) end
  return co
end

local function hooked_wrap(f)
  local co = hooked_create(f)
  return function(...)
    local res = pack(co_resume(co, ...))
    if not res[1] then error(res[2], 0) end
    return unpack(res, 2, res.n)
  end
end

function M.configure(limit, callback)
  threshold = limit
  on_threshold = callback
end

function M.compile(code, chunkname)
  local fn, err = load(code, chunkname, "t")
  return fn, err
end

function M.register(chunkname, path, lines, aliases, entry_rules, exit_rules)
  chunks[chunkname] = path
  counters(path)
  local ex, rm, en, out = {}, {}, {}, {}
  for _, l in ipairs(lines) do ex[l] = true end
  for i = 1, #aliases, 2 do rm[aliases[i]] = aliases[i + 1] end
  for i = 1, #entry_rules, 3 do
    local list = en[entry_rules[i]]
    if list == nil then
      list = {}
      en[entry_rules[i]] = list
    end
    list[#list + 1] = entry_rules[i + 1]
    list[#list + 1] = entry_rules[i + 2]
  end
  for i = 1, #exit_rules, 4 do
    if out[exit_rules[i]] == nil then
      out[exit_rules[i]] = {exit_rules[i + 1], exit_rules[i + 2], exit_rules[i + 3]}
    end
  end
  executable[path] = ex
  remap[path] = rm
  entries[path], exits[path] = en, out
  prev[path], armed[path] = {}, {}
end

function M.probe(path)
  local h, c, b = counters(path)
  local function hit(line)
    h[line] = (h[line] or 0) + 1
    bump()
    return true
  end
  local function call(line)
    c[line] = (c[line] or 0) + 1
    bump()
  end
  local function block(id)
    b[id] = (b[id] or 0) + 1
    bump()
  end
  return hit, call, block
end

local function take(out, n, path, event, counts)
  for key, count in pairs(counts) do
    out[n + 1], out[n + 2], out[n + 3], out[n + 4] = path, event, key, count
    n = n + 4
    counts[key] = nil
  end
  return n
end

function M.drain()
  local out, n = {}, 0
  for path, h in pairs(hits) do
    n = take(out, n, path, 0, h)
    n = take(out, n, path, 1, calls[path])
    n = take(out, n, path, 2, blocks[path])
  end
  pending = 0
  return out, n
end

function M.reset()
  for chunkname in pairs(chunks) do chunks[chunkname] = nil end
  for _, t in ipairs({hits, calls, blocks, prev, armed}) do
    for _, per_path in pairs(t) do
      for k in pairs(per_path) do per_path[k] = nil end
    end
  end
  pending, last_path, last_line, gap = 0, nil, nil, false
end

function M.install_hook(mask)
  hook_mask = mask
  sethook(hook, mask)
  coroutine.create = hooked_create
  coroutine.wrap = hooked_wrap
end

function M.remove_hook()
  if hook_mask == nil then return end
  hook_mask = nil
  sethook()
  coroutine.create = co_create
  coroutine.wrap = co_wrap
end

function M.hook_installed()
  return hook_mask ~= nil
end

function M.install_searcher(resolve)
  if searcher ~= nil then return end
  local searchpath = package.searchpath
  searcher = function(name)
    local path = searchpath(name, package.path)
    if path == nil then return nil end
    local loader = resolve(path)
    if loader == nil then return nil end
    return loader, path
  end
  insert(package.searchers, 2, searcher)
end

function M.remove_searcher()
  if searcher == nil then return end
  for i, s in ipairs(package.searchers) do
    if s == searcher then
      remove(package.searchers, i)
      break
    end
  end
  searcher = nil
end

return M
"""

ChunkLoader = Callable[[str], Any]
"""Resolves a file path to a compiled Lua function, or None to load it untracked."""


class LuaHost:
    """A Lua 5.4 interpreter with coverage support installed.

    Each CoverageSession owns its own host; hosts share nothing.

    Usage::

        host = LuaHost()
        host.add_package_path("src")
        host.run_file("src/app.lua")
        host.require("app.util")
    """

    def __init__(self, runtime: Any = None) -> None:
        self.lua = runtime if runtime is not None else lupa.LuaRuntime(unpack_returned_tuples=True)
        self.support = self.lua.execute(_SUPPORT_LUA)
        self.lua.globals()[PROBE_FACTORY] = self.support.probe
        self._loader: ChunkLoader | None = None
        self._source_maps: dict[str, SourceMap] = {}

    # -- loading -----------------------------------------------------------------

    def set_loader(self, loader: ChunkLoader | None) -> None:
        """Route file loads and require() through a tracker, or back to plain loading."""
        self._loader = loader
        if loader is None:
            self.support.remove_searcher()
        else:
            self.support.install_searcher(self._resolve)

    def _resolve(self, path: str) -> Any:
        if self._loader is None:
            return None
        return self._loader(path)

    def compile(self, code: str, chunkname: str) -> Any:
        """Compile a chunk without running it.

        Raises:
            RuntimeHostError: On a Lua syntax error.
        """
        fn, err = self.support.compile(code, chunkname)
        if fn is None:
            raise RuntimeHostError.load_failed(chunkname.lstrip("@="), self.translate_error(str(err)))
        return fn

    def load_file(self, path: str | Path) -> Any:
        """Compile a file, through the active tracker when one is attached."""
        path_str = str(path)
        if self._loader is not None:
            fn = self._loader(path_str)
            if fn is not None:
                return fn
        try:
            text = Path(path_str).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise RuntimeHostError.load_failed(path_str, str(e)) from e
        return self.compile(neutralize_shebang(text), "@" + path_str)

    # -- running -----------------------------------------------------------------

    def call(self, fn: Any, *args: Any, origin: str = "<lua>") -> Any:
        """Call a Lua function, translating Lua errors.

        Raises:
            RuntimeHostError: If the Lua code raises.
        """
        try:
            return fn(*args)
        except lupa.LuaError as e:
            message = self.translate_error(str(e))
            log.debug("lua.execution_failed", origin=origin, error=message)
            raise RuntimeHostError.execution_failed(origin, message) from e

    def run_file(self, path: str | Path, *args: Any) -> Any:
        return self.call(self.load_file(path), *args, origin=str(path))

    def execute(self, code: str, chunkname: str = "=(lunacov)") -> Any:
        """Run a snippet of Lua. Snippets are never tracked."""
        return self.call(self.compile(code, chunkname), origin=chunkname)

    def require(self, name: str) -> Any:
        """require() a module; only the module value is returned, not the loader data."""
        result = self.call(self.lua.globals().require, name, origin=name)
        return result[0] if isinstance(result, tuple) else result

    def add_package_path(self, directory: str | Path) -> None:
        root = Path(directory).as_posix().rstrip("/")
        package = self.lua.globals().package
        package.path = f"{root}/?.lua;{root}/?/init.lua;" + str(package.path)

    # -- coverage support ----------------------------------------------------------

    def configure_counters(self, flush_threshold: int, on_threshold: Callable[[], None]) -> None:
        self.support.configure(flush_threshold, on_threshold)

    def register_chunk(
        self,
        chunkname: str,
        path: str,
        executable: list[int],
        closure_remap: dict[int, int],
        loop_entries: Sequence[LoopEntry] = (),
        loop_exits: Sequence[LoopExit] = (),
    ) -> None:
        """Make a compiled chunk visible to the trace hook."""
        aliases: list[int] = []
        for closing, target in sorted(closure_remap.items()):
            aliases.extend((closing, target))
        entry_rules: list[int] = []
        for entry in loop_entries:
            for line in range(entry.body_start, entry.body_end + 1):
                entry_rules.extend((line, entry.header, entry.end))
        exit_rules: list[int] = []
        for exit_ in loop_exits:
            for line in range(exit_.cond_start, exit_.cond_end + 1):
                exit_rules.extend((line, exit_.line, exit_.lo, exit_.hi))
        self.support.register(
            chunkname,
            path,
            self.lua.table_from(executable),
            self.lua.table_from(aliases),
            self.lua.table_from(entry_rules),
            self.lua.table_from(exit_rules),
        )

    def install_hook(self, mask: str) -> None:
        if not self.support.hook_installed():
            self.support.install_hook(mask)

    def remove_hook(self) -> None:
        self.support.remove_hook()

    @property
    def hook_installed(self) -> bool:
        return bool(self.support.hook_installed())

    def drain(self) -> list[tuple[str, int, int, int]]:
        """Take all pending (path, event, key, count) tuples from the Lua counters.

        The key is a line for line and call events and a block id for block events.
        """
        out, n = self.support.drain()
        return [(str(out[i]), int(out[i + 1]), int(out[i + 2]), int(out[i + 3])) for i in range(1, n + 1, 4)]

    def reset_counters(self) -> None:
        self.support.reset()

    def register_source_map(self, source_map: SourceMap) -> None:
        self._source_maps[source_map.path] = source_map

    def original_line(self, path: str, line: int) -> int:
        """Line in the original file for a line reported by a loaded chunk."""
        source_map = self._source_maps.get(path)
        return source_map.original_line(line) if source_map is not None else line

    def translate_error(self, message: str) -> str:
        for path, source_map in self._source_maps.items():
            if path in message:
                message = source_map.translate_error(message)
        return message

    def close(self) -> None:
        self.set_loader(None)
        self.remove_hook()
        self.reset_counters()

"""Source instrumentation for the instrumentation tracker backend.

Probes are inserted so that per-line counts follow Lua 5.4's line-hook
firing rules, which is what the trace-hook backend observes:

- Each executable line gets ``__cov_hit(L);`` in front of its line leader:
  the leftmost statement on the line that only block keywords or closing
  punctuation precede. ``repeat``/``do`` and labels never lead a line; the
  first statement inside them does.
- ``while`` and ``elseif`` conditions and ``until`` conditions on their own
  line are wrapped as ``__cov_hit(L) and (cond)`` since the hook fires them
  once per evaluation. A constant ``while true`` condition compiles to
  nothing and keeps a plain leader hit, counting each entry into the loop.
- A ``for`` body is wrapped as ``do <body> end __cov_hit(L);`` because the
  loop instruction sits on the ``for`` line and fires once per iteration.
  Wrapping keeps a trailing ``::continue::`` label at the end of its block.
- Function bodies start with ``__cov_call(D);`` where D is the line Lua
  reports as linedefined, and with an extra hit when the first instruction's
  line has no leader hit of its own. When several functions are declared
  on line D the call probe is replaced by ``__cov_block(B);`` on the
  function's own body block.
- A block whose entry line also holds code outside the block gets
  ``__cov_block(B);`` in front of its first statement, since line counts
  cannot tell whether it ran.

No newline is ever inserted, so line numbers of the instrumented chunk equal
the original ones and only columns move.
"""

from __future__ import annotations

import re
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Any

import structlog

from lunacov.analysis.extractor import function_decl_line, leads_line
from lunacov.analysis.models import BlockKind, StaticAnalysis
from lunacov.analysis.parser import (
    LuaParser,
    always_true,
    body_of,
    end_line,
    start_line,
    statements,
)
from lunacov.analysis.source import SourceFile
from lunacov.core.errors import AnalysisError, InstrumentationError

log = structlog.get_logger(__name__)

HIT_PROBE = "__cov_hit"
CALL_PROBE = "__cov_call"
BLOCK_PROBE = "__cov_block"
PROBE_FACTORY = "__lunacov_probe"

_NON_LEADERS = frozenset({"repeat_statement", "do_statement", "label_statement"})
_FUNCTION_TYPES = frozenset({"function_declaration", "function_definition"})


def lua_quote(text: str) -> str:
    """Quote a Python string as a Lua string literal."""
    escaped = (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\0", "\\0")
    )
    return f'"{escaped}"'


@dataclass(frozen=True, order=True)
class _Insertion:
    offset: int
    group: int  # 0 closes a construct, 1 opens one; closers go first
    depth: int  # innermost closer first, outermost opener first
    seq: int
    text: str = field(compare=False)


@dataclass
class SourceMap:
    """Maps instrumented positions back to the original source.

    Lines are identical by construction; columns shift by the width of the
    probes inserted earlier on the same line.
    """

    path: str
    # line -> sorted (original column, inserted width) pairs
    _shifts: dict[int, list[tuple[int, int]]] = field(default_factory=dict, repr=False)

    def add(self, line: int, column: int, width: int) -> None:
        self._shifts.setdefault(line, []).append((column, width))

    def finalize(self) -> None:
        for shifts in self._shifts.values():
            shifts.sort()

    def original_line(self, line: int) -> int:
        return line

    def original_column(self, line: int, column: int) -> int:
        """Column in the original text for a 0-based instrumented column."""
        shifted = 0
        for orig_col, width in self._shifts.get(line, ()):
            if orig_col + shifted + width <= column:
                shifted += width
            elif orig_col + shifted <= column:
                # inside a probe: report the position it was inserted at
                return orig_col
            else:
                break
        return column - shifted

    def translate_error(self, message: str) -> str:
        """Rewrite 'path:line:' references to original positions and hide probe names."""
        pattern = re.compile(re.escape(self.path) + r":(\d+):")

        def _sub(m: re.Match[str]) -> str:
            return f"{self.path}:{self.original_line(int(m.group(1)))}:"

        message = pattern.sub(_sub, message)
        for probe in (HIT_PROBE, CALL_PROBE, BLOCK_PROBE):
            message = message.replace(f"local '{probe}'", "coverage probe")
        return message


@dataclass(frozen=True)
class InstrumentedSource:
    path: str
    fingerprint: str
    code: str
    source_map: SourceMap
    probe_count: int


class _Planner:
    """Collects insertions for one parse tree."""

    def __init__(self, analysis: StaticAnalysis, text: bytes) -> None:
        self.analysis = analysis
        self.text = text
        self.line_starts = [0]
        for i, b in enumerate(text):
            if b == 0x0A:
                self.line_starts.append(i + 1)
        self.insertions: list[_Insertion] = []
        self._seq = 0
        # line -> (start_byte, end_byte) of its leader statement
        self.leaders: dict[int, tuple[int, int]] = {}
        self._line_statements: dict[int, list[tuple[int, Any]]] = {}
        # (line, column) of a first statement -> block counted by its own probe
        self._block_probes = {
            (b.start_line, b.column): b.id
            for b in analysis.blocks
            if b.kind is not BlockKind.FUNCTION_BODY and b.entry_shared
        }
        self._functions_seen = 0

    def insert(self, offset: int, text: str, *, closing: bool = False, depth: int = 0) -> None:
        self._seq += 1
        group = 0 if closing else 1
        key_depth = -depth if closing else depth
        self.insertions.append(_Insertion(offset, group, key_depth, self._seq, text))

    def hit(self, line: int) -> str:
        return f"{HIT_PROBE}({line});"

    def executable(self, line: int) -> bool:
        return self.analysis.classification.is_executable(line)

    def _column(self, offset: int) -> int:
        return offset - self.line_starts[bisect_right(self.line_starts, offset) - 1]

    # -- pass 1: statements per line ------------------------------------------

    def collect(self, node: Any) -> None:
        if node.type in ("chunk", "block"):
            for stmt in statements(node):
                if stmt.type not in _NON_LEADERS:
                    line = start_line(stmt)
                    self._line_statements.setdefault(line, []).append((stmt.start_byte, stmt))
        for child in node.named_children:
            self.collect(child)

    def choose_leaders(self) -> dict[int, Any]:
        nodes: dict[int, Any] = {}
        for line, entries in self._line_statements.items():
            if not self.executable(line):
                continue
            _, stmt = min(entries, key=lambda e: e[0])
            if not leads_line(stmt, self.text):
                continue
            self.leaders[line] = (stmt.start_byte, stmt.end_byte)
            nodes[line] = stmt
        return nodes

    def is_leader(self, node: Any) -> bool:
        return self.leaders.get(start_line(node)) == (node.start_byte, node.end_byte)

    # -- pass 2: probes --------------------------------------------------------

    def plan(self, root: Any) -> None:
        self.collect(root)
        leaders = self.choose_leaders()
        for line, stmt in leaders.items():
            if stmt.type == "while_statement" and not _constant_loop(stmt):
                continue  # counted by its condition wrap
            self.insert(stmt.start_byte, self.hit(line), depth=_depth(stmt))
        self._walk(root, 0)

    def _walk(self, node: Any, depth: int) -> None:
        t = node.type
        if t == "block":
            self._plan_block(node, depth)
        elif t == "while_statement" and self.is_leader(node) and not _constant_loop(node):
            self._wrap_condition(node, start_line(node), depth)
        elif t == "elseif_statement":
            cond = node.child_by_field_name("condition")
            if cond is not None and self.executable(start_line(cond)):
                self._wrap_condition(node, start_line(cond), depth)
        elif t == "repeat_statement":
            self._plan_until(node, depth)
        elif t == "for_statement" and self.is_leader(node):
            self._plan_for(node, depth)
        elif t in _FUNCTION_TYPES:
            self._plan_function(node, depth)
        for child in node.named_children:
            self._walk(child, depth + 1)

    def _plan_block(self, node: Any, depth: int) -> None:
        stmts = statements(node)
        if not stmts:
            return
        first = stmts[0]
        block_id = self._block_probes.get((start_line(first), int(first.start_point[1])))
        if block_id is not None:
            self.insert(first.start_byte, f"{BLOCK_PROBE}({block_id});", depth=depth + 1)

    def _wrap_condition(self, node: Any, line: int, depth: int) -> None:
        cond = node.child_by_field_name("condition")
        if cond is None:
            return
        self.insert(cond.start_byte, f"{HIT_PROBE}({line}) and (", depth=depth)
        self.insert(cond.end_byte, ")", closing=True, depth=depth)

    def _plan_until(self, node: Any, depth: int) -> None:
        cond = node.child_by_field_name("condition")
        if cond is None:
            return
        line = start_line(cond)
        if not self.executable(line):
            return
        stmts = statements(body_of(node))
        if stmts and end_line(stmts[-1]) == line:
            return
        self._wrap_condition(node, line, depth)

    def _plan_for(self, node: Any, depth: int) -> None:
        stmts = statements(body_of(node))
        if not stmts:
            return
        line = start_line(node)
        self.insert(stmts[0].start_byte, "do ", depth=depth)
        self.insert(stmts[-1].end_byte, f" end {self.hit(line)}", closing=True, depth=depth)

    def _call_probe(self, decl_line: int) -> str:
        """Probe crediting the function being planned.

        Functions are met in the same pre-order the extractor lists them in.
        """
        index = self._functions_seen
        self._functions_seen += 1
        functions = self.analysis.functions
        if index >= len(functions) or functions[index].line != decl_line:
            return f"{CALL_PROBE}({decl_line});"
        fn = functions[index]
        same_line = sum(1 for f in functions if f.line == decl_line)
        sharing_block = sum(1 for f in functions if f.block_id == fn.block_id)
        own_body = fn.block_id is not None and (
            self.analysis.blocks[fn.block_id].kind is BlockKind.FUNCTION_BODY
        )
        if same_line > 1 and own_body and sharing_block == 1:
            return f"{BLOCK_PROBE}({fn.block_id});"
        return f"{CALL_PROBE}({decl_line});"

    def _plan_function(self, node: Any, depth: int) -> None:
        decl_line = function_decl_line(node)
        probe = self._call_probe(decl_line)
        stmts = statements(body_of(node))
        if stmts:
            offset = stmts[0].start_byte
        else:
            end_tok = next((c for c in reversed(node.children) if c.type == "end"), None)
            if end_tok is None:
                return
            offset = end_tok.start_byte

        entry_line: int | None = None
        first = _first_code_statement(stmts)
        if first is not None:
            if not self.is_leader(first) and self.executable(start_line(first)):
                entry_line = start_line(first)
        elif not stmts:
            if self.executable(end_line(node)):
                entry_line = end_line(node)
        if entry_line is not None:
            probe += " " + self.hit(entry_line)
        self.insert(offset, probe + " ", depth=depth)

    # -- output ------------------------------------------------------------------

    def render(self, path: str) -> tuple[str, SourceMap]:
        source_map = SourceMap(path=path)
        chunks: list[bytes] = []
        cursor = 0
        for ins in sorted(self.insertions):
            chunks.append(self.text[cursor : ins.offset])
            encoded = ins.text.encode("utf-8")
            chunks.append(encoded)
            cursor = ins.offset
            line = bisect_right(self.line_starts, ins.offset)
            source_map.add(line, self._column(ins.offset), len(encoded))
        chunks.append(self.text[cursor:])
        source_map.finalize()
        return b"".join(chunks).decode("utf-8"), source_map


def _depth(node: Any) -> int:
    depth = 0
    parent = node.parent
    while parent is not None:
        depth += 1
        parent = parent.parent
    return depth


def _constant_loop(node: Any) -> bool:
    cond = node.child_by_field_name("condition")
    return cond is not None and always_true(cond)


def _first_code_statement(stmts: list[Any]) -> Any | None:
    """Statement holding a function's first instruction, looking through do/repeat."""
    for stmt in stmts:
        if stmt.type == "label_statement":
            continue
        if stmt.type in ("do_statement", "repeat_statement"):
            inner = _first_code_statement(statements(body_of(stmt)))
            if inner is not None:
                return inner
            if stmt.type == "repeat_statement":
                return None
            continue
        return stmt
    return None


class Instrumenter:
    """Rewrites Lua source with coverage probes.

    Results are cached by (path, fingerprint); a file is rewritten at most
    once per content version.
    """

    def __init__(self, parser: LuaParser | None = None) -> None:
        self._parser = parser if parser is not None else LuaParser()
        self._cache: dict[tuple[str, str], InstrumentedSource] = {}

    def instrument(self, source: SourceFile, analysis: StaticAnalysis) -> InstrumentedSource:
        """Instrument a file.

        Raises:
            InstrumentationError: If the file cannot be parsed or rewritten.
        """
        key = (source.path, source.fingerprint)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            result = self._parser.parse(source.text, source.path)
        except AnalysisError as e:
            raise InstrumentationError.failed(source.path, e.message) from e
        if result.has_errors:
            raise InstrumentationError.failed(
                source.path, f"syntax error near line {result.first_error_line}"
            )

        planner = _Planner(analysis, result.source)
        planner.plan(result.root_node)
        probes = f"{HIT_PROBE}, {CALL_PROBE}, {BLOCK_PROBE}"
        prelude = f"local {probes} = {PROBE_FACTORY}({lua_quote(source.path)}); "
        planner.insert(0, prelude, depth=-1)
        code, source_map = planner.render(source.path)

        instrumented = InstrumentedSource(
            path=source.path,
            fingerprint=source.fingerprint,
            code=code,
            source_map=source_map,
            probe_count=len(planner.insertions) - 1,
        )
        self._cache[key] = instrumented
        log.debug("instrument.rewritten", path=source.path, probes=instrumented.probe_count)
        return instrumented

    def clear(self) -> None:
        self._cache.clear()

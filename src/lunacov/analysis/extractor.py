"""Block and function extraction from the Lua syntax tree.

Blocks form an arena: a flat list indexed by id, each entry carrying its
parent's id. Block 0 is the top-level block and spans the whole file.

Construct mapping:
    if / elseif / else branch with statements  -> conditional-branch
    while / repeat / for body with statements  -> loop-body
    function declaration or expression         -> function-body + FunctionSpan
    do ... end                                 -> no block, contents flattened

Ranges run from the first to the last statement of the body. An empty
function body gets a block spanning its header to its 'end'.

A line of a block's range that also holds code belonging outside the block
(``if x then a() else b() end``) is a shared line: its execution says
nothing about whether the block ran.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from lunacov.analysis.classifier import is_structural, strip_comments
from lunacov.analysis.models import (
    ROOT_BLOCK_ID,
    BlockKind,
    BlockSpan,
    Classification,
    FunctionSpan,
    LoopEntry,
    LoopExit,
    Structure,
)
from lunacov.analysis.parser import (
    LuaParser,
    ParseResult,
    always_true,
    body_of,
    end_line,
    node_text,
    start_line,
    statements,
)
from lunacov.core.errors import AnalysisError

log = structlog.get_logger(__name__)

_LOOP_TYPES = frozenset({"while_statement", "repeat_statement", "for_statement"})
_FUNCTION_TYPES = frozenset({"function_declaration", "function_definition"})
# statements that compile to no instruction of their own
_SILENT_STATEMENTS = frozenset({"repeat_statement", "do_statement", "label_statement"})
_IGNORED = frozenset({"comment", "empty_statement"})


def function_decl_line(node: Any) -> int:
    """Line Lua reports as the function's linedefined.

    'function name(...)' statements report the 'function' keyword line;
    'local function' and function expressions report the line of the token
    after the name or keyword, i.e. the parameter list.
    """
    params = node.child_by_field_name("parameters")
    is_local = node.child_count > 0 and node.children[0].type == "local"
    if node.type == "function_declaration" and not is_local:
        return start_line(node)
    return start_line(params) if params is not None else start_line(node)


def is_vararg(node: Any) -> bool:
    params = node.child_by_field_name("parameters")
    if params is None:
        return False
    return any(child.type == "vararg_expression" for child in params.named_children)


def infer_function_name(node: Any) -> str | None:
    """Best-effort name for a function expression from its binding site."""
    parent = node.parent
    if parent is None:
        return None
    if parent.type == "field":
        name = parent.child_by_field_name("name")
        return node_text(name) if name is not None else None
    if parent.type == "expression_list":
        stmt = parent.parent
        if stmt is None or stmt.type != "assignment_statement":
            return None
        targets = next((c for c in stmt.named_children if c.type == "variable_list"), None)
        if targets is None:
            return None
        values = parent.named_children
        try:
            index = next(i for i, v in enumerate(values) if v == node)
        except StopIteration:
            return None
        names = targets.named_children
        if index < len(names):
            return node_text(names[index])
    return None


def leads_line(node: Any, source: bytes) -> bool:
    """True when only block keywords or closing punctuation precede node on its line."""
    line_start = source.rfind(b"\n", 0, node.start_byte) + 1
    prefix = strip_comments(source[line_start : node.start_byte].decode("utf-8", errors="replace"))
    return not prefix.strip() or is_structural(prefix)


def _token_line(node: Any, token: str) -> int | None:
    for child in node.children:
        if child.type == token:
            return start_line(child)
    return None


def _loop_span(node: Any) -> tuple[int, int] | None:
    """Lines control stays within while the loop runs, header included."""
    if node.type == "repeat_statement":
        cond = node.child_by_field_name("condition")
        return start_line(node), end_line(cond) if cond is not None else end_line(node)
    stmts = statements(body_of(node))
    if not stmts:
        return None
    return start_line(node), end_line(stmts[-1])


def _folded_break(branch: Any, body: Any | None) -> LoopExit | None:
    """A break Lua compiles into the jump of the condition in front of it."""
    if body is None:
        return None
    first = next((c for c in body.named_children if c.type != "comment"), None)
    then_line = _token_line(branch, "then")
    if first is None or first.type != "break_statement" or then_line is None:
        return None
    if start_line(first) <= then_line:
        return None
    return LoopExit(start_line(branch), then_line, start_line(first), 0, 0)


def loop_exits(loop: Any) -> list[LoopExit]:
    """Folded breaks that leave this loop, i.e. not nested in an inner loop."""
    span = _loop_span(loop)
    if span is None:
        return []
    lo, hi = span
    found: list[LoopExit] = []

    def scan(block: Any | None) -> None:
        for stmt in statements(block):
            if stmt.type == "do_statement":
                scan(body_of(stmt))
            elif stmt.type == "if_statement":
                branches = [stmt, *(c for c in stmt.named_children if c.type == "elseif_statement")]
                for branch in branches:
                    body = body_of(branch, "consequence")
                    folded = _folded_break(branch, body)
                    if folded is not None:
                        found.append(folded._replace(lo=lo, hi=hi))
                    scan(body)
                for other in stmt.named_children:
                    if other.type == "else_statement":
                        scan(body_of(other))

    scan(body_of(loop))
    return found


def loop_entry(loop: Any, source: bytes) -> LoopEntry | None:
    """A 'while <constant>' loop whose header line leads its line and holds no instruction."""
    if loop.type != "while_statement":
        return None
    cond = loop.child_by_field_name("condition")
    if cond is None or not always_true(cond) or not leads_line(loop, source):
        return None
    stmts = statements(body_of(loop))
    if not stmts or start_line(stmts[0]) <= start_line(loop):
        return None
    return LoopEntry(start_line(loop), end_line(loop), start_line(stmts[0]), end_line(stmts[-1]))


@dataclass
class _RawBlock:
    id: int
    kind: BlockKind
    start_line: int
    end_line: int
    parent_id: int | None
    column: int = 0


@dataclass
class _RawFunction:
    name: str
    line: int
    end_line: int
    block_id: int
    is_anonymous: bool
    is_vararg: bool


@dataclass
class _Walker:
    """Collects raw blocks, functions and line ownership in pre-order."""

    source: bytes = b""
    blocks: list[_RawBlock] = field(default_factory=list)
    functions: list[_RawFunction] = field(default_factory=list)
    closure_lines: dict[int, int] = field(default_factory=dict)
    # line -> raw ids of the innermost blocks holding code on it
    owners: dict[int, set[int]] = field(default_factory=dict)
    loop_entries: list[LoopEntry] = field(default_factory=list)
    loop_exits: list[LoopExit] = field(default_factory=list)

    def add_block(
        self, kind: BlockKind, start: int, end: int, parent_id: int | None, column: int = 0
    ) -> int:
        block_id = len(self.blocks)
        self.blocks.append(_RawBlock(block_id, kind, start, end, parent_id, column))
        return block_id

    def own(self, node: Any, block_id: int) -> None:
        parent = node.parent
        is_statement = parent is not None and parent.type in ("chunk", "block")
        if is_statement and node.type not in _SILENT_STATEMENTS and node.type not in _IGNORED:
            self.owners.setdefault(start_line(node), set()).add(block_id)
        elif node.child_count == 0 and node.is_named and node.type != "comment":
            self.owners.setdefault(start_line(node), set()).add(block_id)

    def visit(self, node: Any, parent_id: int) -> None:
        self.own(node, parent_id)
        if node.type in _FUNCTION_TYPES:
            self._visit_function(node, parent_id)
            return

        bodies: dict[tuple[int, int], BlockKind] = {}
        if node.type in ("if_statement", "elseif_statement"):
            body = body_of(node, "consequence")
            if body is not None:
                bodies[(body.start_byte, body.end_byte)] = BlockKind.CONDITIONAL_BRANCH
        elif node.type == "else_statement":
            body = body_of(node)
            if body is not None:
                bodies[(body.start_byte, body.end_byte)] = BlockKind.CONDITIONAL_BRANCH
        elif node.type in _LOOP_TYPES:
            body = body_of(node)
            if body is not None:
                bodies[(body.start_byte, body.end_byte)] = BlockKind.LOOP_BODY
            entry = loop_entry(node, self.source)
            if entry is not None:
                self.loop_entries.append(entry)
            self.loop_exits.extend(loop_exits(node))

        for child in node.named_children:
            kind = bodies.get((child.start_byte, child.end_byte)) if child.type == "block" else None
            stmts = statements(child) if kind is not None else []
            if kind is not None and stmts:
                block_id = self.add_block(
                    kind,
                    start_line(stmts[0]),
                    end_line(stmts[-1]),
                    parent_id,
                    column=int(stmts[0].start_point[1]),
                )
                self.visit(child, block_id)
            else:
                self.visit(child, parent_id)

    def _visit_function(self, node: Any, parent_id: int) -> None:
        decl_line = function_decl_line(node)
        body = body_of(node)
        stmts = statements(body)
        if stmts:
            start, end = start_line(stmts[0]), end_line(stmts[-1])
            column = int(stmts[0].start_point[1])
        else:
            start, end = start_line(node), end_line(node)
            column = int(node.start_point[1])
        block_id = self.add_block(BlockKind.FUNCTION_BODY, start, end, parent_id, column)

        anonymous = node.type == "function_definition"
        if anonymous:
            name = infer_function_name(node) or f"<anonymous:{decl_line}>"
        else:
            name_node = node.child_by_field_name("name")
            name = node_text(name_node) if name_node is not None else f"<anonymous:{decl_line}>"

        self.functions.append(
            _RawFunction(
                name=name,
                line=decl_line,
                end_line=end_line(node),
                block_id=block_id,
                is_anonymous=anonymous,
                is_vararg=is_vararg(node),
            )
        )
        stmt = enclosing_statement(node)
        closing = end_line(node)
        if stmt is not None and end_line(stmt) == closing and start_line(stmt) < closing:
            self.closure_lines.setdefault(closing, start_line(stmt))
        if body is not None:
            self.visit(body, block_id)


def enclosing_statement(node: Any) -> Any | None:
    """Nearest ancestor-or-self that is a direct statement of a block."""
    current = node
    while current is not None:
        parent = current.parent
        if parent is not None and parent.type in ("chunk", "block"):
            return current
        current = parent
    return None


def _first_executable(classification: Classification | None, start: int, end: int) -> int | None:
    if classification is None:
        return start
    for line in range(start, end + 1):
        if classification.is_executable(line):
            return line
    return None


def _is_within(block_id: int, ancestor: int, parent_of: dict[int, int | None]) -> bool:
    current: int | None = block_id
    while current is not None:
        if current == ancestor:
            return True
        current = parent_of.get(current)
    return False


def _finalize(
    walker: _Walker, classification: Classification | None
) -> tuple[tuple[BlockSpan, ...], tuple[FunctionSpan, ...]]:
    """Merge nested blocks with identical ranges and renumber densely.

    The outer block survives a merge; children, function links and line
    ownership are re-pointed to it.
    """
    alias: dict[int, int] = {}

    def resolve(block_id: int) -> int:
        while block_id in alias:
            block_id = alias[block_id]
        return block_id

    for raw in walker.blocks:
        if raw.parent_id is None:
            continue
        parent = walker.blocks[resolve(raw.parent_id)]
        if (parent.start_line, parent.end_line) == (raw.start_line, raw.end_line) and (
            parent.id != ROOT_BLOCK_ID
        ):
            alias[raw.id] = parent.id

    renumber: dict[int, int] = {}
    for raw in walker.blocks:
        if raw.id not in alias:
            renumber[raw.id] = len(renumber)

    parent_of: dict[int, int | None] = {}
    for raw in walker.blocks:
        if raw.id not in alias:
            parent_of[renumber[raw.id]] = (
                None if raw.parent_id is None else renumber[resolve(raw.parent_id)]
            )
    owners = {
        line: {renumber[resolve(raw_id)] for raw_id in raw_ids}
        for line, raw_ids in walker.owners.items()
    }

    blocks: list[BlockSpan] = []
    for raw in walker.blocks:
        if raw.id in alias:
            continue
        block_id = renumber[raw.id]
        shared: tuple[int, ...] = ()
        if raw.kind not in (BlockKind.FUNCTION_BODY, BlockKind.TOP_LEVEL):
            shared = tuple(
                line
                for line in range(raw.start_line, raw.end_line + 1)
                if any(not _is_within(o, block_id, parent_of) for o in owners.get(line, ()))
            )
        blocks.append(
            BlockSpan(
                id=block_id,
                kind=raw.kind,
                start_line=raw.start_line,
                end_line=raw.end_line,
                parent_id=parent_of[block_id],
                entry_line=_first_executable(classification, raw.start_line, raw.end_line),
                column=raw.column,
                shared_lines=shared,
            )
        )

    functions = tuple(
        FunctionSpan(
            name=fn.name,
            line=fn.line,
            end_line=fn.end_line,
            block_id=renumber[resolve(fn.block_id)],
            is_anonymous=fn.is_anonymous,
            is_vararg=fn.is_vararg,
        )
        for fn in walker.functions
    )
    return tuple(blocks), functions


class BlockExtractor:
    """Derives the block forest and function list of a file.

    Never raises for bad input: syntax errors or a missing grammar yield an
    empty Structure with parse_error set, and coverage of that file falls
    back to line classification only.
    """

    def __init__(self, parser: LuaParser | None = None) -> None:
        self._parser = parser if parser is not None else LuaParser()

    @property
    def parser(self) -> LuaParser:
        return self._parser

    def extract(
        self,
        text: str,
        line_count: int,
        *,
        path: str = "<string>",
        classification: Classification | None = None,
    ) -> Structure:
        try:
            result = self._parse_checked(text, path)
        except AnalysisError as e:
            log.warning("analysis.parse_failed", path=path, error=e.message)
            return Structure(parse_error=e.message)

        walker = _Walker(source=result.source)
        walker.add_block(BlockKind.TOP_LEVEL, 1, max(line_count, 1), None)
        for child in result.root_node.named_children:
            walker.visit(child, ROOT_BLOCK_ID)

        blocks, functions = _finalize(walker, classification)
        log.debug(
            "analysis.extracted",
            path=path,
            blocks=len(blocks),
            functions=len(functions),
            shared=sum(1 for b in blocks if b.entry_shared),
        )
        return Structure(
            blocks=blocks,
            functions=functions,
            closure_lines=tuple(sorted(walker.closure_lines.items())),
            loop_entries=tuple(walker.loop_entries),
            loop_exits=tuple(walker.loop_exits),
        )

    def _parse_checked(self, text: str, path: str) -> ParseResult:
        result = self._parser.parse(text, path)
        if result.has_errors or result.root_node.has_error:
            raise AnalysisError.parse_error(
                path, result.first_error_line, f"{result.error_count} syntax error node(s)"
            )
        return result

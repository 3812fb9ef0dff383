"""Tree-sitter parsing for Lua source.

Shared by the block extractor and the instrumenter. The grammar module is
imported lazily so a missing grammar degrades analysis instead of breaking
import of the package.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from typing import Any

import structlog
import tree_sitter

from lunacov.core.errors import AnalysisError

log = structlog.get_logger(__name__)

GRAMMAR_MODULE = "tree_sitter_lua"


def neutralize_shebang(text: str) -> str:
    """Turn a first line starting with '#' into a comment.

    Lua's own loader skips such a line. Neither tree-sitter nor load() on a
    string does, so every consumer of raw file text goes through this.
    Line numbering is unchanged.
    """
    if text.startswith("#"):
        return "--" + text[1:]
    return text


@dataclass
class ParseResult:
    """Result of parsing a file."""

    tree: Any  # Tree-sitter Tree
    root_node: Any  # Tree-sitter Node
    source: bytes
    error_count: int
    total_nodes: int
    first_error_line: int | None = None

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0


@dataclass
class LuaParser:
    """Lazily-initialized tree-sitter parser for the Lua grammar.

    Usage::

        parser = LuaParser()
        result = parser.parse("local x = 1\\n")
        result.root_node.type  # 'chunk'
    """

    _parser: Any = field(default=None, repr=False)
    _language: Any = field(default=None, repr=False)

    def _get_language(self, path: str) -> Any:
        if self._language is not None:
            return self._language
        try:
            mod = importlib.import_module(GRAMMAR_MODULE)
            self._language = tree_sitter.Language(mod.language())
        except (ImportError, AttributeError) as err:
            log.warning("grammar_unavailable", module=GRAMMAR_MODULE, error=str(err))
            raise AnalysisError.parse_error(path, None, f"Lua grammar not available: {err}") from err
        return self._language

    @property
    def available(self) -> bool:
        try:
            self._get_language("<probe>")
        except AnalysisError:
            return False
        return True

    def parse(self, text: str, path: str = "<string>") -> ParseResult:
        """Parse Lua source text.

        Raises:
            AnalysisError: If the grammar cannot be loaded.
        """
        if self._parser is None:
            language = self._get_language(path)
            self._parser = tree_sitter.Parser()
            self._parser.language = language
        source = neutralize_shebang(text).encode("utf-8")
        tree = self._parser.parse(source)

        error_count = 0
        total_nodes = 0
        first_error_line: int | None = None

        def count_nodes(node: Any) -> None:
            nonlocal error_count, total_nodes, first_error_line
            total_nodes += 1
            if node.type == "ERROR" or node.is_missing:
                error_count += 1
                line = node.start_point[0] + 1
                if first_error_line is None or line < first_error_line:
                    first_error_line = line
            for child in node.children:
                count_nodes(child)

        count_nodes(tree.root_node)

        return ParseResult(
            tree=tree,
            root_node=tree.root_node,
            source=source,
            error_count=error_count,
            total_nodes=total_nodes,
            first_error_line=first_error_line,
        )


def node_text(node: Any) -> str:
    text = node.text
    return text.decode("utf-8") if text is not None else ""


def start_line(node: Any) -> int:
    return int(node.start_point[0]) + 1


def end_line(node: Any) -> int:
    return int(node.end_point[0]) + 1


def statements(block: Any | None) -> list[Any]:
    """Named statement children of a block node, comments and ';' excluded."""
    if block is None:
        return []
    return [
        child
        for child in block.named_children
        if child.type not in ("comment", "empty_statement")
    ]


def body_of(node: Any, field_name: str = "body") -> Any | None:
    """Body block of a compound node, or None when the body is empty."""
    body = node.child_by_field_name(field_name)
    if body is not None:
        return body
    for child in node.named_children:
        if child.type == "block":
            return child
    return None


_TRUTHY_LITERALS = frozenset({"true", "number", "string"})


def always_true(node: Any) -> bool:
    """True for a condition Lua folds to a constant true value at compile time."""
    if node.type == "parenthesized_expression":
        inner = [c for c in node.named_children if c.type != "comment"]
        return len(inner) == 1 and always_true(inner[0])
    return node.type in _TRUTHY_LITERALS

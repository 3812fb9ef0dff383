"""Tracked-file selection and discovery.

Glob semantics (anchored, '/' separated):
    **/   zero or more directories
    **    anything, including '/'
    *     anything except '/'
    ?     one character except '/'
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

# Never traversed during discovery
PRUNABLE_DIRS: frozenset[str] = frozenset(
    (
        ".git",
        ".hg",
        ".svn",
        ".lunacov",
        ".luarocks",
        "lua_modules",
        "node_modules",
        "__pycache__",
    )
)


def normalize_path(path: str | Path) -> str:
    """Absolute, '/'-separated form used as the key of every record."""
    return Path(os.path.abspath(path)).as_posix()


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out) + r"\Z")


def matches_glob(rel_path: str, pattern: str) -> bool:
    """Check if a '/'-separated path matches a glob pattern."""
    return glob_to_regex(pattern).match(rel_path) is not None


def _matches_any(candidates: list[str], patterns: list[str]) -> bool:
    return any(matches_glob(c, p) for c in candidates for p in patterns)


@dataclass
class PathFilter:
    """Decides which files a session tracks.

    A file is tracked when it lies under one of the source directories, its
    path relative to that directory (or its absolute path) matches an include
    pattern, and no exclude pattern matches either form.
    """

    source_dirs: list[str] = field(default_factory=lambda: ["."])
    include_patterns: list[str] = field(default_factory=lambda: ["**/*.lua"])
    exclude_patterns: list[str] = field(default_factory=list)
    _roots: list[str] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self._roots = [normalize_path(d) for d in self.source_dirs]

    def _candidates(self, path: str) -> list[str]:
        """Relative forms of a normalized path, one per containing source dir."""
        rels: list[str] = []
        for root in self._roots:
            prefix = root.rstrip("/") + "/"
            if path.startswith(prefix):
                rels.append(path[len(prefix) :])
        return rels

    def is_tracked(self, path: str | Path) -> bool:
        normalized = normalize_path(path)
        rels = self._candidates(normalized)
        if not rels:
            return False
        forms = [*rels, normalized]
        if not _matches_any(forms, self.include_patterns):
            return False
        return not _matches_any(forms, self.exclude_patterns)

    def discover(self) -> list[str]:
        """Every tracked file under the source directories, sorted and de-duplicated."""
        found: set[str] = set()
        for root in self._roots:
            if not os.path.isdir(root):
                continue
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = [d for d in dirnames if d not in PRUNABLE_DIRS]
                for filename in filenames:
                    path = normalize_path(os.path.join(dirpath, filename))
                    if self.is_tracked(path):
                        found.add(path)
        return sorted(found)

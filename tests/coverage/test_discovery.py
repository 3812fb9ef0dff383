"""Tests for tracked-file selection and discovery."""

from __future__ import annotations

from pathlib import Path

import pytest

from lunacov.coverage.discovery import PathFilter, matches_glob, normalize_path


class TestMatchesGlob:
    """Glob semantics."""

    @pytest.mark.parametrize(
        ("path", "pattern", "expected"),
        [
            ("init.lua", "**/*.lua", True),
            ("lib/util/str.lua", "**/*.lua", True),
            ("lib/util.lua", "*.lua", False),
            ("util.lua", "*.lua", True),
            ("spec/a_spec.lua", "**/spec/**", True),
            ("lib/spec/deep/a.lua", "**/spec/**", True),
            ("lib/specs/a.lua", "**/spec/**", False),
            ("a1.lua", "a?.lua", True),
            ("a/1.lua", "a?.lua", False),
            ("lib/x.lua.bak", "**/*.lua", False),
            ("lib/x.lua", "lib/**", True),
        ],
    )
    def test_patterns(self, path: str, pattern: str, expected: bool) -> None:
        assert matches_glob(path, pattern) is expected


class TestPathFilter:
    """is_tracked decisions."""

    def test_must_be_under_source_dir(self, tmp_path: Path) -> None:
        path_filter = PathFilter(source_dirs=[str(tmp_path / "src")])

        assert path_filter.is_tracked(tmp_path / "src" / "a.lua")
        assert not path_filter.is_tracked(tmp_path / "other" / "a.lua")

    def test_prefix_is_not_containment(self, tmp_path: Path) -> None:
        path_filter = PathFilter(source_dirs=[str(tmp_path / "src")])

        assert not path_filter.is_tracked(tmp_path / "src2" / "a.lua")

    def test_exclude_wins(self, tmp_path: Path) -> None:
        path_filter = PathFilter(source_dirs=[str(tmp_path)], exclude_patterns=["**/spec/**"])

        assert path_filter.is_tracked(tmp_path / "lib" / "a.lua")
        assert not path_filter.is_tracked(tmp_path / "spec" / "a_spec.lua")

    def test_include_restricts(self, tmp_path: Path) -> None:
        path_filter = PathFilter(source_dirs=[str(tmp_path)], include_patterns=["lib/**/*.lua"])

        assert path_filter.is_tracked(tmp_path / "lib" / "a.lua")
        assert not path_filter.is_tracked(tmp_path / "bin" / "a.lua")

    def test_absolute_pattern_matches(self, tmp_path: Path) -> None:
        root = normalize_path(tmp_path)
        path_filter = PathFilter(source_dirs=[str(tmp_path)], exclude_patterns=[f"{root}/gen/*.lua"])

        assert not path_filter.is_tracked(tmp_path / "gen" / "a.lua")

    def test_relative_path_normalized(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)
        path_filter = PathFilter(source_dirs=["."])

        assert path_filter.is_tracked("lib/../a.lua")


class TestDiscover:
    """Walking source directories."""

    def test_finds_matching_files_sorted(self, tmp_path: Path) -> None:
        for rel in ("b.lua", "a.lua", "lib/c.lua", "README.md", ".git/hooks/x.lua", "lua_modules/d.lua"):
            path = tmp_path / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("")

        found = PathFilter(source_dirs=[str(tmp_path)]).discover()

        root = normalize_path(tmp_path)
        assert found == [f"{root}/a.lua", f"{root}/b.lua", f"{root}/lib/c.lua"]

    def test_overlapping_roots_deduplicated(self, tmp_path: Path) -> None:
        (tmp_path / "lib").mkdir()
        (tmp_path / "lib" / "a.lua").write_text("")

        found = PathFilter(source_dirs=[str(tmp_path), str(tmp_path / "lib")]).discover()

        assert len(found) == 1

    def test_missing_root_skipped(self, tmp_path: Path) -> None:
        assert PathFilter(source_dirs=[str(tmp_path / "nope")]).discover() == []

"""Tests for the analysis cache and the analyzer's use of it."""

from __future__ import annotations

from pathlib import Path

import pytest

from lunacov.analysis.analyzer import StaticAnalyzer
from lunacov.analysis.cache import AnalysisCache
from lunacov.analysis.classifier import classify
from lunacov.analysis.models import StaticAnalysis
from lunacov.analysis.source import SourceFile, split_lines
from lunacov.config.models import ClassifierConfig
from lunacov.core.errors import AnalysisError


def _analysis(path: str, text: str) -> StaticAnalysis:
    source = SourceFile.from_text(path, text)
    return StaticAnalysis(
        path=path,
        fingerprint=source.fingerprint,
        classification=classify(split_lines(text)),
        closure_lines=((3, 1),),
    )


class TestSourceFile:
    """SourceFile snapshots."""

    def test_fingerprint_changes_with_content(self) -> None:
        a = SourceFile.from_text("a.lua", "x = 1\n")
        b = SourceFile.from_text("a.lua", "x = 2\n")

        assert a.fingerprint != b.fingerprint
        assert len(a.fingerprint) == 64

    def test_from_path_reads_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "m.lua"
        path.write_text("local x = 1\nreturn x\n")

        source = SourceFile.from_path(path)

        assert source.lines == ("local x = 1", "return x")
        assert source.line_count == 2

    def test_from_path_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(AnalysisError):
            SourceFile.from_path(tmp_path / "missing.lua")

    def test_from_path_invalid_utf8_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "bin.lua"
        path.write_bytes(b"\xff\xfe\x00x = 1\n")

        with pytest.raises(AnalysisError):
            SourceFile.from_path(path)


class TestMemoryCache:
    """In-memory cache behavior."""

    def test_get_after_put(self) -> None:
        cache = AnalysisCache()
        analysis = _analysis("a.lua", "x = 1\n")

        cache.put(analysis)

        assert cache.get("a.lua", analysis.fingerprint) is analysis
        assert not cache.persistent

    def test_new_fingerprint_evicts_old_entry(self) -> None:
        cache = AnalysisCache()
        old = _analysis("a.lua", "x = 1\n")
        new = _analysis("a.lua", "x = 2\n")

        cache.put(old)
        cache.put(new)

        assert cache.get("a.lua", old.fingerprint) is None
        assert cache.get("a.lua", new.fingerprint) is new
        assert len(cache) == 1

    def test_policy_is_part_of_key(self) -> None:
        cache = AnalysisCache()
        analysis = _analysis("a.lua", "x = 1\n")

        cache.put(analysis, "structural=0")

        assert cache.get("a.lua", analysis.fingerprint, "structural=1") is None


class TestPersistentCache:
    """SQLite-backed cache."""

    def test_survives_new_instance(self, tmp_path: Path) -> None:
        db_path = tmp_path / ".lunacov" / "analysis.db"
        analysis = _analysis("/src/a.lua", "-- c\nprint(1)\nend\n")

        first = AnalysisCache(db_path)
        first.put(analysis, "structural=0")
        first.close()

        second = AnalysisCache(db_path)
        restored = second.get("/src/a.lua", analysis.fingerprint, "structural=0")
        second.close()

        assert restored == analysis
        assert restored is not None
        assert restored.closure_lines == ((3, 1),)

    def test_stale_rows_replaced(self, tmp_path: Path) -> None:
        db_path = tmp_path / "cache.db"
        old = _analysis("/src/a.lua", "x = 1\n")
        new = _analysis("/src/a.lua", "x = 2\n")

        cache = AnalysisCache(db_path)
        cache.put(old)
        cache.put(new)
        cache.clear()

        assert cache.get("/src/a.lua", old.fingerprint) is None
        assert cache.get("/src/a.lua", new.fingerprint) == new
        cache.close()


class TestAnalyzerCaching:
    """StaticAnalyzer consults the cache by fingerprint and policy."""

    def test_same_text_returns_cached_analysis(self) -> None:
        analyzer = StaticAnalyzer()
        source = SourceFile.from_text("a.lua", "print(1)\n")

        assert analyzer.analyze(source) is analyzer.analyze(source)

    def test_empty_persistent_cache_is_used(self, tmp_path: Path) -> None:
        """An empty cache is still the analyzer's cache."""
        db_path = tmp_path / "analysis.db"
        cache = AnalysisCache(db_path)
        source = SourceFile.from_text("/src/a.lua", "print(1)\n")

        analyzer = StaticAnalyzer(cache=cache)
        analysis = analyzer.analyze(source)
        cache.close()

        assert analyzer.cache is cache
        reopened = AnalysisCache(db_path)
        assert reopened.get("/src/a.lua", source.fingerprint, "structural=0") == analysis
        reopened.close()

    def test_policies_do_not_share_results(self) -> None:
        cache = AnalysisCache()
        source = SourceFile.from_text("a.lua", "if x then\n  y()\nend\n")

        default = StaticAnalyzer(cache=cache).analyze(source)
        structural = StaticAnalyzer(
            ClassifierConfig(structural_lines_executable=True), cache=cache
        ).analyze(source)

        assert not default.classification.is_executable(3)
        assert structural.classification.is_executable(3)

    def test_incomplete_classification_flagged(self) -> None:
        source = SourceFile.from_text("a.lua", "x = 1\n--[[ open\ny = 2\n")

        analysis = StaticAnalyzer().analyze(source)

        assert analysis.classification_incomplete is True

    def test_analysis_round_trips_through_dict(self) -> None:
        source = SourceFile.from_text("a.lua", "local function f()\n  return 1\nend\n")
        analysis = StaticAnalyzer().analyze(source)

        assert StaticAnalysis.from_dict(analysis.to_dict()) == analysis

"""Tests for the coverage session lifecycle and record ownership."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from lunacov.analysis.source import SourceFile
from lunacov.config.models import CoverageConfig, LunacovConfig
from lunacov.core.errors import ErrorCode, SessionError
from lunacov.core.logging import configure_logging
from lunacov.coverage.aggregate import aggregate
from lunacov.coverage.discovery import normalize_path
from lunacov.coverage.models import LineStatus

pytest.importorskip("lupa")
pytest.importorskip("tree_sitter_lua")

from lunacov.coverage.session import CoverageSession, SessionState  # noqa: E402


@pytest.fixture
def session() -> Iterator[CoverageSession]:
    s = CoverageSession()
    yield s
    s.close()


@pytest.fixture
def src(tmp_path: Path) -> Path:
    root = tmp_path / "src"
    root.mkdir()
    return root


def _config(src: Path, **kwargs: object) -> CoverageConfig:
    return CoverageConfig(source_dirs=[str(src)], **kwargs)  # type: ignore[arg-type]


def _fingerprint(path: Path) -> str:
    return SourceFile.from_path(normalize_path(path)).fingerprint


class TestLifecycle:
    """idle -> active -> stopped -> idle."""

    def test_start_twice_rejected(self, session: CoverageSession, src: Path) -> None:
        session.start(_config(src))

        with pytest.raises(SessionError) as exc_info:
            session.start(_config(src))

        assert exc_info.value.code == ErrorCode.SESSION_ALREADY_ACTIVE

    def test_start_after_stop_requires_reset(self, session: CoverageSession, src: Path) -> None:
        session.start(_config(src))
        session.stop()

        with pytest.raises(SessionError) as exc_info:
            session.start(_config(src))

        assert exc_info.value.code == ErrorCode.SESSION_FROZEN

    def test_reset_allows_restart(self, session: CoverageSession, src: Path) -> None:
        session.start(_config(src))
        session.stop()

        session.reset()
        session.start(_config(src))

        assert session.state is SessionState.ACTIVE

    def test_stop_without_start_rejected(self, session: CoverageSession) -> None:
        with pytest.raises(SessionError) as exc_info:
            session.stop()

        assert exc_info.value.code == ErrorCode.SESSION_NOT_ACTIVE

    def test_stop_is_idempotent(self, session: CoverageSession, src: Path) -> None:
        (src / "a.lua").write_text("print(1)\n")
        session.start(_config(src))
        session.run_file(src / "a.lua")

        first = session.stop()
        second = session.stop()

        assert [r.to_dict() for r in first] == [r.to_dict() for r in second]

    def test_stopped_records_are_frozen(self, session: CoverageSession, src: Path) -> None:
        (src / "a.lua").write_text("local x = 1\n")
        session.start(_config(src))
        session.run_file(src / "a.lua")
        records = session.stop()

        records[0].record_execution(1, 10)

        assert session.records[0].line(1).execution_count == 1

    def test_reset_discards_records(self, session: CoverageSession, src: Path) -> None:
        (src / "a.lua").write_text("local x = 1\n")
        session.start(_config(src))
        session.stop()

        session.reset()

        assert session.records == []
        assert session.state is SessionState.IDLE

    def test_sessions_are_independent(self, src: Path) -> None:
        (src / "a.lua").write_text("local x = 1\n")
        first = CoverageSession()
        second = CoverageSession()
        first.start(_config(src))
        second.start(_config(src))

        first.run_file(src / "a.lua")
        a = first.stop()
        b = second.stop()

        assert a[0].executed_lines == 1
        assert b[0].executed_lines == 0
        first.close()
        second.close()


class TestExecution:
    """Execution counts end to end."""

    def test_comment_then_call(self, session: CoverageSession, src: Path) -> None:
        path = src / "a.lua"
        path.write_text("-- comment\nprint(1)\n")
        session.start(_config(src))

        session.run_file(path)
        record = session.stop()[0]

        assert record.line(1).status is LineStatus.NOT_EXECUTABLE
        assert record.line(2).execution_count == 1
        assert record.line(2).covered is False

    def test_reloaded_file_accumulates(self, session: CoverageSession, src: Path) -> None:
        path = src / "a.lua"
        path.write_text("local x = 1\n")
        session.start(_config(src))

        session.run_file(path)
        session.run_file(path)

        assert session.stop()[0].line(1).execution_count == 2

    def test_changed_file_replaces_record(self, session: CoverageSession, src: Path) -> None:
        path = src / "a.lua"
        path.write_text("local x = 1\n")
        session.start(_config(src))
        session.run_file(path)

        path.write_text("local x = 1\nlocal y = 2\n")
        session.run_file(path)
        record = session.stop()[0]

        assert record.total_lines == 2
        assert record.line(1).execution_count == 1

    def test_aggregate_flushes_pending_counts(self, session: CoverageSession, src: Path) -> None:
        path = src / "a.lua"
        path.write_text("local x = 1\n")
        session.start(_config(src))
        session.run_file(path)

        records = aggregate(session)

        assert records[0].line(1).execution_count == 1
        assert session.is_active

    def test_execute_snippets_untracked(self, session: CoverageSession, src: Path) -> None:
        session.start(_config(src))

        assert session.execute("return 40 + 2") == 42
        assert session.stop() == []


class TestMarkCovered:
    """Assertion-driven coverage through the session."""

    def test_marks_executed_line(self, session: CoverageSession, src: Path) -> None:
        path = src / "a.lua"
        path.write_text("local x = 1\nif x > 5 then\n  x = 0\nend\n")
        session.start(_config(src))
        session.run_file(path)

        session.mark_covered(path, 1)
        session.mark_covered(path, 1)
        session.mark_covered(path, 3)  # never ran
        session.mark_covered(path, 4)  # not executable
        session.mark_covered(src / "other.lua", 1)  # not tracked

        record = session.stop()[0]
        assert [rec.line for rec in record.lines if rec.covered] == [1]

    def test_requires_active_session(self, session: CoverageSession, src: Path) -> None:
        with pytest.raises(SessionError):
            session.mark_covered(src / "a.lua", 1)

        session.start(_config(src))
        session.stop()

        with pytest.raises(SessionError):
            session.mark_covered(src / "a.lua", 1)


class TestTracebackMarking:
    """Marking the frames of a Lua traceback as validated."""

    def test_tracked_frames_marked(self, session: CoverageSession, src: Path) -> None:
        path = src / "a.lua"
        path.write_text("local x = 1\nlocal y = 2\n")
        session.start(_config(src))
        session.run_file(path)
        key = normalize_path(path)
        traceback = (
            "stack traceback:\n"
            f"\t{key}:1: in main chunk\n"
            "\t[C]: in ?\n"
            "\t/elsewhere/b.lua:3: in function 'f'\n"
        )

        assert session.mark_covered_from_traceback(traceback) == 1

        record = session.stop()[0]
        assert [rec.line for rec in record.lines if rec.covered] == [1]

    def test_shortened_chunk_name_matched_by_tail(
        self, session: CoverageSession, src: Path
    ) -> None:
        path = src / "a.lua"
        path.write_text("local x = 1\nlocal y = 2\n")
        session.start(_config(src))
        session.run_file(path)
        tail = normalize_path(path)[-12:]

        marked = session.mark_covered_from_traceback(f"stack traceback:\n\t...{tail}:2: in main chunk\n")

        assert marked == 1
        record = session.stop()[0]
        assert [rec.line for rec in record.lines if rec.covered] == [2]

    @pytest.mark.parametrize("backend", ["trace_hook", "instrumentation"])
    def test_traceback_from_lua(self, session: CoverageSession, src: Path, backend: str) -> None:
        path = src / "check.lua"
        path.write_text(
            "local function check(v)\n"
            "  local tb = debug.traceback()\n"
            "  return tb\n"
            "end\n"
            "local tb = check(1)\n"
            "return tb\n"
        )
        session.start(_config(src, backend=backend))

        traceback = session.run_file(path)
        marked = session.mark_covered_from_traceback(traceback)

        assert marked == 2
        record = session.stop()[0]
        assert [rec.line for rec in record.lines if rec.covered] == [2, 5]

    def test_unexecuted_and_untracked_frames_skipped(
        self, session: CoverageSession, src: Path
    ) -> None:
        path = src / "a.lua"
        path.write_text("if false then\n  x = 1\nend\n")
        session.start(_config(src))
        session.run_file(path)
        key = normalize_path(path)

        marked = session.mark_covered_from_traceback(
            f"\t{key}:2: in main chunk\n\t{key}:3: in main chunk\n\t=stdin:1: in main chunk\n"
        )

        assert marked == 0

    def test_requires_active_session(self, session: CoverageSession) -> None:
        with pytest.raises(SessionError):
            session.mark_covered_from_traceback("stack traceback:\n")


class TestUnloadedFiles:
    """Files matching the filter that never ran."""

    def test_included_with_zero_counts(self, session: CoverageSession, src: Path) -> None:
        (src / "used.lua").write_text("local x = 1\n")
        (src / "lib").mkdir()
        (src / "lib" / "unused.lua").write_text("local y = 2\n")
        session.start(_config(src))
        session.run_file(src / "used.lua")

        records = {r.path: r for r in session.stop()}

        unused = records[normalize_path(src / "lib" / "unused.lua")]
        assert unused.loaded is False
        assert unused.executed_lines == 0
        assert unused.executable_lines == 1
        assert records[normalize_path(src / "used.lua")].loaded is True

    def test_excluded_by_config(self, session: CoverageSession, src: Path) -> None:
        (src / "unused.lua").write_text("local y = 2\n")
        session.start(_config(src, include_unloaded=False))

        assert session.stop() == []

    def test_exclude_patterns_apply(self, session: CoverageSession, src: Path) -> None:
        (src / "spec").mkdir()
        (src / "spec" / "a_spec.lua").write_text("local y = 2\n")
        (src / "a.lua").write_text("local x = 1\n")
        session.start(_config(src, exclude_patterns=["**/spec/**"]))
        session.run_file(src / "spec" / "a_spec.lua")

        paths = [r.path for r in session.stop()]

        assert paths == [normalize_path(src / "a.lua")]

    def test_unreadable_file_reported(self, session: CoverageSession, src: Path) -> None:
        (src / "bad.lua").write_bytes(b"\xff\xfe local\n")
        session.start(_config(src))

        record = session.stop()[0]

        assert record.unreadable is True
        assert record.total_lines == 0


class TestFromConfig:
    def test_persistent_cache_under_repo(self, tmp_path: Path) -> None:
        config = LunacovConfig(cache={"enabled": True})  # type: ignore[arg-type]

        session = CoverageSession.from_config(config, repo_root=tmp_path)

        assert session.analyzer.cache.persistent
        session.close()

    def test_memory_cache_by_default(self) -> None:
        session = CoverageSession.from_config(LunacovConfig())

        assert not session.analyzer.cache.persistent
        session.close()

    def test_analysis_persisted_across_sessions(self, tmp_path: Path, src: Path) -> None:
        module = src / "mod.lua"
        module.write_text("local x = 1\nreturn x\n")
        config = LunacovConfig(
            cache={"enabled": True},  # type: ignore[arg-type]
            coverage=_config(src),
        )

        first = CoverageSession.from_config(config, repo_root=tmp_path)
        first.start()
        first.run_file(module)
        first.stop()
        first.close()

        assert (tmp_path / ".lunacov" / "analysis.db").exists()
        second = CoverageSession.from_config(config, repo_root=tmp_path)
        assert second.analyzer.cache.get(normalize_path(module), _fingerprint(module), "structural=0")
        second.close()

    def test_logging_section_applied(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "lunacov.log"
        config = LunacovConfig(
            logging={"outputs": [{"format": "json", "destination": str(log_file)}]},  # type: ignore[arg-type]
        )

        session = CoverageSession.from_config(config)
        session.start(_config(tmp_path))
        session.stop()
        session.close()

        assert '"event": "session.started"' in log_file.read_text()
        configure_logging()

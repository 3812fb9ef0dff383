"""Static analysis cache.

Two layers:
- In-memory dict, always on, shared by every session in the process.
- Optional SQLite table (SQLModel), one row per (path, fingerprint, policy)
  holding the JSON-serialized StaticAnalysis. Writing a new fingerprint for
  a path replaces the stale rows.
"""

from __future__ import annotations

import json
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import event
from sqlmodel import Field, Session, SQLModel, create_engine, select

from lunacov.analysis.models import StaticAnalysis

if TYPE_CHECKING:
    from sqlalchemy import Engine

log = structlog.get_logger(__name__)


class AnalysisRow(SQLModel, table=True):
    """Persisted static analysis of one file version."""

    __tablename__ = "analysis_cache"

    id: int | None = Field(default=None, primary_key=True)
    path: str = Field(index=True)
    fingerprint: str = Field(index=True)
    policy: str = ""  # classifier policy the lines were computed under
    payload: str  # StaticAnalysis.to_dict() as JSON
    created_at: float | None = None


def _configure_pragmas(dbapi_conn: Any, _connection_record: Any) -> None:
    """Configure SQLite for concurrent access from parallel workers."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")  # 30 second wait
    cursor.execute("PRAGMA synchronous=NORMAL")  # Safe with WAL
    cursor.close()


class CacheDatabase:
    """SQLite connection manager for the analysis cache."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = self._create_engine()

    def _create_engine(self) -> Engine:
        engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
        event.listen(engine, "connect", _configure_pragmas)
        return engine

    def create_all(self) -> None:
        """Create the cache table if missing."""
        SQLModel.metadata.create_all(self.engine, tables=[AnalysisRow.__table__])  # type: ignore[attr-defined]

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        with Session(self.engine) as session:
            yield session

    def close(self) -> None:
        self.engine.dispose()


class AnalysisCache:
    """Fingerprint-keyed cache of StaticAnalysis results.

    Entries are immutable; a changed fingerprint is a cache miss and the old
    entry for that path is evicted.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._memory: dict[tuple[str, str, str], StaticAnalysis] = {}
        self._latest: dict[tuple[str, str], str] = {}  # (path, policy) -> fingerprint
        self._db: CacheDatabase | None = None
        if db_path is not None:
            self._db = CacheDatabase(db_path)
            self._db.create_all()

    @property
    def persistent(self) -> bool:
        return self._db is not None

    def get(self, path: str, fingerprint: str, policy: str = "") -> StaticAnalysis | None:
        key = (path, fingerprint, policy)
        hit = self._memory.get(key)
        if hit is not None:
            return hit
        if self._db is None:
            return None

        with self._db.session() as session:
            row = session.exec(
                select(AnalysisRow).where(
                    AnalysisRow.path == path,
                    AnalysisRow.fingerprint == fingerprint,
                    AnalysisRow.policy == policy,
                )
            ).first()
        if row is None:
            return None
        try:
            analysis = StaticAnalysis.from_dict(json.loads(row.payload))
        except (ValueError, KeyError) as e:
            log.warning("cache.corrupt_row", path=path, error=str(e))
            return None
        self._remember(analysis, policy)
        log.debug("cache.hit_persisted", path=path)
        return analysis

    def put(self, analysis: StaticAnalysis, policy: str = "") -> None:
        self._remember(analysis, policy)
        if self._db is None:
            return
        with self._db.session() as session:
            stale = session.exec(
                select(AnalysisRow).where(
                    AnalysisRow.path == analysis.path,
                    AnalysisRow.policy == policy,
                )
            ).all()
            for row in stale:
                session.delete(row)
            session.add(
                AnalysisRow(
                    path=analysis.path,
                    fingerprint=analysis.fingerprint,
                    policy=policy,
                    payload=json.dumps(analysis.to_dict()),
                    created_at=time.time(),
                )
            )
            session.commit()

    def _remember(self, analysis: StaticAnalysis, policy: str) -> None:
        stale = self._latest.get((analysis.path, policy))
        if stale is not None and stale != analysis.fingerprint:
            self._memory.pop((analysis.path, stale, policy), None)
        self._latest[(analysis.path, policy)] = analysis.fingerprint
        self._memory[(analysis.path, analysis.fingerprint, policy)] = analysis

    def clear(self) -> None:
        self._memory.clear()
        self._latest.clear()

    def close(self) -> None:
        if self._db is not None:
            self._db.close()

    def __len__(self) -> int:
        return len(self._memory)

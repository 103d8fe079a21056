"""Run history. SQLite by default; set DATABASE_URL for another SQLAlchemy backend.
Startup ensures required tables exist; on failure falls back to in-memory SQLite so the app can start."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from converter import config as app_config
from converter.conversion.models import BatchSummary

logger = logging.getLogger("converter.db")

_engine: Optional[Engine] = None

REQUIRED_TABLES = ("batch_runs", "file_outcomes")


def _is_sqlite() -> bool:
    return app_config.DATABASE_URL.startswith("sqlite")


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        kwargs = {}
        if _is_sqlite():
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in app_config.DATABASE_URL:
                # one shared connection, or each thread sees its own empty database
                kwargs["poolclass"] = StaticPool
        _engine = create_engine(app_config.DATABASE_URL, **kwargs)
        logger.info("Database engine created (%s)", _engine.dialect.name)
    return _engine


def _create_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS batch_runs (
            batch_id VARCHAR(64) PRIMARY KEY,
            session_id VARCHAR(64),
            success_count INTEGER NOT NULL DEFAULT 0,
            failure_count INTEGER NOT NULL DEFAULT 0,
            duration_seconds REAL,
            cancelled INTEGER NOT NULL DEFAULT 0,
            input_bytes BIGINT,
            output_bytes BIGINT,
            created_at VARCHAR(50) NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS file_outcomes (
            batch_id VARCHAR(64) NOT NULL,
            file_index INTEGER NOT NULL,
            filename VARCHAR(512),
            output_name VARCHAR(512),
            status VARCHAR(20) NOT NULL,
            error TEXT,
            input_bytes BIGINT,
            output_bytes BIGINT,
            requires_server_conversion INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (batch_id, file_index)
        )
    """))
    conn.commit()


def init_db() -> None:
    """Ensure required tables exist; fall back to in-memory SQLite on failure."""
    global _engine
    try:
        with get_engine().connect() as conn:
            _create_tables(conn)
        logger.info("Database ready (tables: %s)", ", ".join(REQUIRED_TABLES))
        return
    except SQLAlchemyError as e:
        logger.exception("Database init failed: %s. Trying in-memory SQLite.", e)

    # Last resort: in-memory SQLite so the app can run (history will not persist across restarts)
    app_config.DATABASE_URL = "sqlite:///:memory:"
    _engine = None
    with get_engine().connect() as conn:
        _create_tables(conn)
    logger.warning("Database unavailable. Using in-memory SQLite. History will not persist across restarts.")


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def record_batch_run(batch_id: str, summary: BatchSummary, session_id: Optional[str] = None) -> None:
    results = summary.results
    with session() as conn:
        conn.execute(
            text("""
                INSERT INTO batch_runs (batch_id, session_id, success_count, failure_count, duration_seconds, cancelled, input_bytes, output_bytes, created_at)
                VALUES (:batch_id, :session_id, :success_count, :failure_count, :duration_seconds, :cancelled, :input_bytes, :output_bytes, :created_at)
            """),
            {
                "batch_id": batch_id,
                "session_id": session_id,
                "success_count": summary.success_count,
                "failure_count": summary.failure_count,
                "duration_seconds": summary.duration_seconds,
                "cancelled": int(summary.cancelled),
                "input_bytes": sum(r.original_size for r in results),
                "output_bytes": sum(r.converted_size for r in results),
                "created_at": _now_iso(),
            },
        )
        for outcome in summary.outcomes:
            r = outcome.result
            conn.execute(
                text("""
                    INSERT INTO file_outcomes (batch_id, file_index, filename, output_name, status, error, input_bytes, output_bytes, requires_server_conversion)
                    VALUES (:batch_id, :file_index, :filename, :output_name, :status, :error, :input_bytes, :output_bytes, :rsc)
                """),
                {
                    "batch_id": batch_id,
                    "file_index": outcome.index,
                    "filename": outcome.filename,
                    "output_name": r.name if r else None,
                    "status": "completed" if outcome.success else "failed",
                    "error": outcome.error,
                    "input_bytes": r.original_size if r else None,
                    "output_bytes": r.converted_size if r else None,
                    "rsc": int(r.requires_server_conversion) if r else 0,
                },
            )


def get_recent_runs(limit: int = 20, session_id: Optional[str] = None) -> list[dict]:
    """Recorded batch runs, newest first."""
    query = """
        SELECT batch_id, success_count, failure_count, duration_seconds, cancelled, input_bytes, output_bytes, created_at
        FROM batch_runs {where} ORDER BY created_at DESC LIMIT :lim
    """
    params: dict = {"lim": limit}
    where = ""
    if session_id:
        where = "WHERE session_id = :sid"
        params["sid"] = session_id
    with get_engine().connect() as conn:
        rows = conn.execute(text(query.format(where=where)), params).fetchall()
    runs = []
    for r in rows:
        input_bytes, output_bytes = int(r[5] or 0), int(r[6] or 0)
        compression = round((1.0 - output_bytes / input_bytes) * 100.0, 1) if input_bytes > 0 else 0.0
        runs.append({
            "batch_id": r[0],
            "success_count": r[1],
            "failure_count": r[2],
            "duration_seconds": r[3],
            "cancelled": bool(r[4]),
            "input_bytes": input_bytes,
            "output_bytes": output_bytes,
            "compression_percent": compression,
            "created_at": r[7],
        })
    return runs


def get_run_outcomes(batch_id: str) -> list[dict]:
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("""
                SELECT file_index, filename, output_name, status, error, input_bytes, output_bytes, requires_server_conversion
                FROM file_outcomes WHERE batch_id = :id ORDER BY file_index
            """),
            {"id": batch_id},
        ).fetchall()
    return [
        {
            "index": r[0],
            "filename": r[1],
            "output_name": r[2],
            "status": r[3],
            "error": r[4],
            "input_bytes": r[5],
            "output_bytes": r[6],
            "requires_server_conversion": bool(r[7]),
        }
        for r in rows
    ]

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, inspect as sa_inspect, text
from sqlalchemy.orm import Session, sessionmaker

from dealdesk.config import get_settings
from dealdesk.models import Base

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None
_current_db_path: Path | None = None

# Columns added after the first release: {table: {column: DDL type + default}}
_LATE_COLUMNS: dict[str, dict[str, str]] = {
    "contacts": {
        "warmth_score": "FLOAT DEFAULT 5.0",
        "relationship_context": "TEXT DEFAULT ''",
        "access_paths_json": "TEXT DEFAULT '[]'",
    },
    "deals": {
        "pass_reason": "TEXT DEFAULT ''",
        "pass_date": "DATETIME",
        "objections_at_pass_json": "TEXT DEFAULT '[]'",
        "stage_history_json": "TEXT DEFAULT '[]'",
    },
    "portfolio": {
        "monthly_revenue": "FLOAT",
        "burn_rate": "FLOAT",
        "runway_months": "INTEGER",
        "health_status": "VARCHAR(20) DEFAULT 'healthy'",
        "last_metrics_update": "DATETIME",
    },
}


def _enable_foreign_keys(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal, _current_db_path
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = get_settings().database_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        event.listen(_engine, "connect", _enable_foreign_keys)
        _migrate_existing_db(_engine)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _current_db_path = db_path
        log.info("Database ready at %s", db_path)


def _migrate_existing_db(engine) -> None:
    """Add columns that may be missing in older databases."""
    inspector = sa_inspect(engine)
    for table, columns in _LATE_COLUMNS.items():
        if not inspector.has_table(table):
            continue
        existing = {col["name"] for col in inspector.get_columns(table)}
        for name, ddl in columns.items():
            if name in existing:
                continue
            log.info("Migrating %s: adding column %s", table, name)
            with engine.begin() as conn:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, CLI, scripts)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_db_path() -> Path | None:
    return _current_db_path

from __future__ import annotations
import os
import sys
import sqlite3
from pathlib import Path
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from chatstream.core.config import settings


class Base(DeclarativeBase):
    pass


def _is_testing() -> bool:
    """Detect if the code is running under pytest."""
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return True
    return any(m.startswith("pytest") for m in sys.modules)


def _runtime_sqlite_path() -> Path:
    """Return the sqlite file path for the current runtime (test vs normal)."""
    base = Path(settings.SQLITE_PATH).expanduser().resolve()
    if _is_testing():
        # e.g. chat.sqlite3 -> chat.test.sqlite3
        test_name = (
            f"{base.stem}.test{base.suffix}" if base.suffix else f"{base.name}.test"
        )
        return base.with_name(test_name)
    return base


def _database_uri() -> str:
    if settings.DATABASE_URL and not _is_testing():
        return settings.DATABASE_URL
    db_path = _runtime_sqlite_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+pysqlite:///{db_path}"


_db_uri = _database_uri()
_is_sqlite = _db_uri.startswith("sqlite")

engine = create_engine(
    _db_uri,
    connect_args=(
        {
            "check_same_thread": False,  # handlers run in the threadpool
            "timeout": 30,
        }
        if _is_sqlite
        else {}
    ),
    pool_pre_ping=True,
    future=True,
)


# WAL lets the SSE backfill reads run alongside message writes
@event.listens_for(engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    if isinstance(dbapi_conn, sqlite3.Connection):
        cur = dbapi_conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA busy_timeout=5000;")  # ms
        except sqlite3.DatabaseError:
            pass
        finally:
            cur.close()


SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)

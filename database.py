from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


# SQLite has no SELECT ... FOR UPDATE, so concurrent ledger writers queue on
# the database lock instead. Wait for it rather than fail with "locked".
SQLITE_BUSY_TIMEOUT_MS = 5000


def make_engine(url: str) -> Engine:
    """Engine for the ledger database at ``url``."""
    connect_args: dict[str, object] = {}
    sqlite = url.startswith("sqlite")
    if sqlite:
        connect_args["check_same_thread"] = False

    eng = create_engine(url, connect_args=connect_args)
    if sqlite:
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
    cursor.close()


engine = make_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(readonly: bool = False) -> Iterator[Session]:
    """Session committed on success and rolled back on error.

    A ``readonly`` scope is always rolled back, so readers such as the audit
    can never leave anything behind in the ledger.
    """
    session: Session = SessionLocal()
    try:
        yield session
        if readonly:
            session.rollback()
        else:
            session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

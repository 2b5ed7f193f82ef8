import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

import database
from database import SQLITE_BUSY_TIMEOUT_MS, Base, make_engine, session_scope
from models import Wallet


@pytest.fixture
def memory_sessions(monkeypatch):
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    monkeypatch.setattr(
        database, "SessionLocal", sessionmaker(bind=engine, expire_on_commit=False)
    )
    return engine


def wallet_count(engine) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count(Wallet.id)))


def test_sqlite_engine_waits_for_locks_and_enforces_foreign_keys() -> None:
    engine = make_engine("sqlite:///:memory:")

    with engine.connect() as conn:
        assert conn.exec_driver_sql("PRAGMA busy_timeout").scalar() == SQLITE_BUSY_TIMEOUT_MS
        assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1


def test_session_scope_commits(memory_sessions) -> None:
    with session_scope() as session:
        session.add(Wallet(user_id=1, name="Cash"))

    assert wallet_count(memory_sessions) == 1


def test_readonly_session_scope_never_writes(memory_sessions) -> None:
    with session_scope(readonly=True) as session:
        session.add(Wallet(user_id=1, name="Cash"))
        session.flush()
        assert session.scalar(select(func.count(Wallet.id))) == 1

    assert wallet_count(memory_sessions) == 0


def test_session_scope_rolls_back_on_error(memory_sessions) -> None:
    with pytest.raises(RuntimeError):
        with session_scope() as session:
            session.add(Wallet(user_id=1, name="Cash"))
            session.flush()
            raise RuntimeError("boom")

    assert wallet_count(memory_sessions) == 0

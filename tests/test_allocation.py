import threading
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from allocation import AllocationEngine, AllocationState, ReconciliationError
from database import Base
from models import EntryDirection, EntryKind
from schemas import EntryIn, SavingsGoalIn, SavingsMovementIn, WalletIn
import projections
from services import (
    EntryFilters,
    EntryValidationError,
    GoalService,
    LedgerService,
    TransferService,
    WalletService,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def funded_wallet(session: Session, name: str, saved: str):
    wallet = WalletService(session).create(WalletIn(name=name))
    LedgerService(session).append(
        EntryIn(
            kind=EntryKind.income,
            amount=Decimal(saved),
            wallet_id=wallet.id,
            occurred_at=datetime(2025, 1, 1, 8, 0),
        )
    )
    TransferService(session).deposit_savings(
        SavingsMovementIn(wallet_id=wallet.id, amount=Decimal(saved))
    )
    return wallet


def make_goal(session: Session, name: str, target: str):
    return GoalService(session).create(
        SavingsGoalIn(name=name, target_amount=Decimal(target))
    )


def test_capacity_shrinks_after_another_goal_allocates() -> None:
    session = make_session()
    wallet = funded_wallet(session, "Bank", "1000000")
    first = make_goal(session, "Laptop", "600000")
    second = make_goal(session, "Holiday", "800000")
    engine = AllocationEngine(session)

    assert engine.max_allocation(first.id, wallet.id) == Decimal("600000")
    result = engine.apply(first.id, {wallet.id: Decimal("600000")})

    assert result.state == AllocationState.committed
    assert result.clamped == []
    assert engine.max_allocation(second.id, wallet.id) == Decimal("400000")


def test_resave_releases_then_reapplies() -> None:
    session = make_session()
    wallet = funded_wallet(session, "Bank", "1000000")
    goal = make_goal(session, "Bike", "900000")
    engine = AllocationEngine(session)
    engine.apply(goal.id, {wallet.id: Decimal("500000")})

    result = engine.apply(goal.id, {wallet.id: Decimal("300000")})

    ledger = LedgerService(session)
    legs = [
        projections.signed_amount(e)
        for e in ledger.query(EntryFilters(goal_id=goal.id))
    ]
    assert legs == [50_000_000, -50_000_000, 30_000_000]
    assert result.released == {wallet.id: Decimal("500000")}
    assert result.applied == {wallet.id: Decimal("300000")}
    assert ledger.goal_allocated_amount(goal.id) == Decimal("300000")


def test_request_above_goal_target_is_clamped_and_reported() -> None:
    session = make_session()
    wallet = funded_wallet(session, "Bank", "1000000")
    goal = make_goal(session, "Phone", "600000")

    result = AllocationEngine(session).apply(goal.id, {wallet.id: Decimal("900000")})

    assert result.allocated_total == Decimal("600000")
    assert len(result.clamped) == 1
    clamp = result.clamped[0]
    assert clamp.wallet_id == wallet.id
    assert clamp.requested == Decimal("900000")
    assert clamp.applied == Decimal("600000")


def test_wallet_savings_are_never_overdrawn_across_goals() -> None:
    session = make_session()
    small = funded_wallet(session, "Cash", "300000")
    large = funded_wallet(session, "Bank", "500000")
    first = make_goal(session, "Car", "1000000")
    second = make_goal(session, "House", "1000000")
    engine = AllocationEngine(session)

    engine.apply(first.id, {small.id: Decimal("300000"), large.id: Decimal("200000")})
    result = engine.apply(
        second.id, {small.id: Decimal("100000"), large.id: Decimal("400000")}
    )

    assert result.applied == {large.id: Decimal("300000")}
    assert {c.wallet_id: c.applied for c in result.clamped} == {
        small.id: Decimal("0"),
        large.id: Decimal("300000"),
    }
    ledger = LedgerService(session)
    for wallet in (small, large):
        assert ledger.wallet_allocated_total(wallet.id) <= ledger.wallet_savings_total(
            wallet.id
        )
    assert ledger.goal_allocated_amount(second.id) == Decimal("300000")


def test_replaying_the_same_request_is_idempotent() -> None:
    session = make_session()
    cash = funded_wallet(session, "Cash", "200000")
    bank = funded_wallet(session, "Bank", "700000")
    goal = make_goal(session, "Wedding", "800000")
    engine = AllocationEngine(session)
    desired = {cash.id: Decimal("150000"), bank.id: Decimal("650000")}

    first = engine.apply(goal.id, desired)
    second = engine.apply(goal.id, desired)

    assert first.allocated_total == second.allocated_total == Decimal("800000")
    assert second.applied == first.applied
    assert LedgerService(session).goal_allocated_amount(goal.id) == Decimal("800000")


def test_empty_request_releases_everything() -> None:
    session = make_session()
    wallet = funded_wallet(session, "Bank", "100000")
    goal = make_goal(session, "Camera", "100000")
    engine = AllocationEngine(session)
    engine.apply(goal.id, {wallet.id: Decimal("100000")})

    result = engine.apply(goal.id, {})

    assert result.allocated_total == Decimal("0")
    assert engine.max_allocation(goal.id, wallet.id) == Decimal("100000")


def test_invalid_requests_write_nothing() -> None:
    session = make_session()
    wallet = funded_wallet(session, "Bank", "100000")
    goal = make_goal(session, "Camera", "100000")
    engine = AllocationEngine(session)
    engine.apply(goal.id, {wallet.id: Decimal("40000")})
    before = len(LedgerService(session).query())

    with pytest.raises(EntryValidationError):
        engine.apply(goal.id, {wallet.id: Decimal("-1")})
    with pytest.raises(EntryValidationError):
        engine.apply(goal.id, {wallet.id: Decimal("1.001")})
    with pytest.raises(EntryValidationError):
        engine.apply(goal.id, {999: Decimal("10")})
    with pytest.raises(ValueError):
        engine.apply(999, {wallet.id: Decimal("10")})

    assert len(LedgerService(session).query()) == before
    assert LedgerService(session).goal_allocated_amount(goal.id) == Decimal("40000")


def test_failure_while_reapplying_reports_actual_allocation(monkeypatch) -> None:
    session = make_session()
    wallet = funded_wallet(session, "Bank", "1000000")
    goal = make_goal(session, "Bike", "900000")
    AllocationEngine(session).apply(goal.id, {wallet.id: Decimal("500000")})

    engine = AllocationEngine(session)
    append = engine.ledger.append

    def failing_append(data, *, commit=True):
        if data.direction == EntryDirection.inflow:
            raise RuntimeError("disk full")
        return append(data, commit=commit)

    monkeypatch.setattr(engine.ledger, "append", failing_append)

    with pytest.raises(ReconciliationError) as excinfo:
        engine.apply(goal.id, {wallet.id: Decimal("300000")})

    assert excinfo.value.goal_id == goal.id
    assert excinfo.value.state == AllocationState.reapplying
    assert excinfo.value.actual_allocated == Decimal("0")
    assert engine.state == AllocationState.failed

    result = AllocationEngine(session).apply(goal.id, {wallet.id: Decimal("300000")})
    assert result.allocated_total == Decimal("300000")


def test_failure_while_resetting_leaves_previous_allocation(monkeypatch) -> None:
    session = make_session()
    wallet = funded_wallet(session, "Bank", "1000000")
    goal = make_goal(session, "Bike", "900000")
    AllocationEngine(session).apply(goal.id, {wallet.id: Decimal("500000")})

    engine = AllocationEngine(session)

    def failing_append(data, *, commit=True):
        raise RuntimeError("connection lost")

    monkeypatch.setattr(engine.ledger, "append", failing_append)

    with pytest.raises(ReconciliationError) as excinfo:
        engine.apply(goal.id, {wallet.id: Decimal("300000")})

    assert excinfo.value.state == AllocationState.resetting
    assert excinfo.value.actual_allocated == Decimal("500000")


def file_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    return engine


def test_stale_capacity_from_a_second_session_is_clamped(tmp_path) -> None:
    engine = file_engine(tmp_path)
    with Session(engine) as setup:
        wallet_id = funded_wallet(setup, "Bank", "600000").id
        first_id = make_goal(setup, "Laptop", "600000").id
        second_id = make_goal(setup, "Holiday", "600000").id

    with Session(engine) as one, Session(engine) as two:
        first = AllocationEngine(one)
        second = AllocationEngine(two)
        assert first.max_allocation(first_id, wallet_id) == Decimal("600000")
        assert second.max_allocation(second_id, wallet_id) == Decimal("600000")

        first.apply(first_id, {wallet_id: Decimal("600000")})
        result = second.apply(second_id, {wallet_id: Decimal("600000")})

        assert result.allocated_total == Decimal("0")
        assert result.clamped[0].applied == Decimal("0")

    with Session(engine) as check:
        ledger = LedgerService(check)
        assert ledger.wallet_allocated_total(wallet_id) == Decimal("600000")
        assert ledger.wallet_savings_total(wallet_id) == Decimal("600000")


def test_concurrent_sessions_are_serialized(tmp_path) -> None:
    engine = file_engine(tmp_path)
    with Session(engine) as setup:
        wallet_id = funded_wallet(setup, "Bank", "600000").id
        goal_ids = [
            make_goal(setup, "Laptop", "600000").id,
            make_goal(setup, "Holiday", "600000").id,
        ]

    results = {}
    errors = []

    def run(goal_id: int) -> None:
        try:
            with Session(engine) as session:
                results[goal_id] = AllocationEngine(session).apply(
                    goal_id, {wallet_id: Decimal("600000")}
                )
        except Exception as exc:  # pragma: no cover
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(g,)) for g in goal_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    totals = sorted(r.allocated_total for r in results.values())
    assert totals == [Decimal("0"), Decimal("600000")]
    with Session(engine) as check:
        assert LedgerService(check).wallet_allocated_total(wallet_id) == Decimal(
            "600000"
        )


def test_snapshot_lists_every_wallet() -> None:
    session = make_session()
    cash = funded_wallet(session, "Cash", "100000")
    bank = funded_wallet(session, "Bank", "400000")
    goal = make_goal(session, "Trip", "300000")
    engine = AllocationEngine(session)
    engine.apply(goal.id, {bank.id: Decimal("250000")})

    snapshot = engine.snapshot(goal.id)

    assert snapshot["allocated"] == Decimal("250000")
    rows = {row["wallet_id"]: row for row in snapshot["wallets"]}
    assert rows[bank.id]["allocated"] == Decimal("250000")
    assert rows[cash.id]["allocated"] == Decimal("0")
    assert rows[cash.id]["max_allocation"] == Decimal("50000")
    assert rows[bank.id]["max_allocation"] == Decimal("50000")


def test_row_locks_are_taken_again_after_the_reset_commit(monkeypatch) -> None:
    session = make_session()
    bank = funded_wallet(session, "Bank", "400000")
    goal = make_goal(session, "Trip", "300000")
    engine = AllocationEngine(session)
    engine.apply(goal.id, {bank.id: Decimal("100000")})

    events: list[str] = []
    lock_rows = engine._lock_rows
    commit = session.commit

    def recording_lock_rows(goal_id: int) -> None:
        events.append(f"lock:{engine.state.value}")
        lock_rows(goal_id)

    def recording_commit() -> None:
        events.append("commit")
        commit()

    monkeypatch.setattr(engine, "_lock_rows", recording_lock_rows)
    monkeypatch.setattr(session, "commit", recording_commit)

    engine.apply(goal.id, {bank.id: Decimal("250000")})

    assert events == ["lock:resetting", "commit", "lock:reapplying", "commit"]

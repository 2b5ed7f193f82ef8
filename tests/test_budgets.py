from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import EntryKind
from schemas import BudgetIn, EntryIn, WalletIn
from services import BudgetService, LedgerService, WalletService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def spend(session: Session, wallet_id: int, amount: str, tag: str, when: datetime):
    return LedgerService(session).append(
        EntryIn(
            kind=EntryKind.expense,
            amount=Decimal(amount),
            wallet_id=wallet_id,
            tag=tag,
            occurred_at=when,
        )
    )


def test_budget_spent_counts_only_matching_expenses_in_month() -> None:
    session = make_session()
    wallet = WalletService(session).create(WalletIn(name="Cash"))
    spend(session, wallet.id, "25000", "Food", datetime(2025, 3, 1, 0, 0))
    spend(session, wallet.id, "15000", "Food", datetime(2025, 3, 31, 23, 59))
    spend(session, wallet.id, "99000", "Food", datetime(2025, 4, 1, 0, 0))
    spend(session, wallet.id, "70000", "Transport", datetime(2025, 3, 10))
    removed = spend(session, wallet.id, "5000", "Food", datetime(2025, 3, 15))
    LedgerService(session).remove(removed.id)

    svc = BudgetService(session)
    assert svc.spent("Food", 3, 2025) == Decimal("40000")
    assert svc.spent("Food", 4, 2025) == Decimal("99000")
    assert svc.spent("Groceries", 3, 2025) == Decimal("0")


def test_upsert_replaces_amount_for_same_month() -> None:
    session = make_session()
    svc = BudgetService(session)

    first = svc.upsert(BudgetIn(category="Food", amount=Decimal("500000"), month=3, year=2025))
    second = svc.upsert(BudgetIn(category="Food", amount=Decimal("650000"), month=3, year=2025))
    svc.upsert(BudgetIn(category="Food", amount=Decimal("400000"), month=4, year=2025))

    assert first.id == second.id
    assert second.amount_cents == 65_000_000
    assert [b.category for b in svc.list_for_month(2025, 3)] == ["Food"]


def test_progress_for_month() -> None:
    session = make_session()
    wallet = WalletService(session).create(WalletIn(name="Cash"))
    svc = BudgetService(session)
    svc.upsert(BudgetIn(category="Food", amount=Decimal("100000"), month=3, year=2025))
    svc.upsert(BudgetIn(category="Fun", amount=Decimal("50000"), month=3, year=2025))
    spend(session, wallet.id, "120000", "Food", datetime(2025, 3, 2))

    rows = {row["category"]: row for row in svc.progress_for_month(2025, 3)}

    assert rows["Food"]["spent"] == Decimal("120000")
    assert rows["Food"]["remaining"] == Decimal("-20000")
    assert rows["Fun"]["spent"] == Decimal("0")
    assert rows["Fun"]["remaining"] == Decimal("50000")


def test_delete_budget() -> None:
    session = make_session()
    svc = BudgetService(session)
    budget = svc.upsert(BudgetIn(category="Food", amount=Decimal("1"), month=1, year=2025))

    svc.delete(budget.id)

    assert svc.list_for_month(2025, 1) == []
    with pytest.raises(ValueError):
        svc.delete(budget.id)

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import EntryKind
from schemas import BudgetIn, IngestEntryIn, WalletIn
from services import (
    BudgetService,
    IngestService,
    IngestWalletAmbiguous,
    IngestWalletNotFound,
    LedgerService,
    WalletService,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_ingest_defaults_to_the_only_wallet() -> None:
    session = make_session()
    cash = WalletService(session).create(WalletIn(name="Cash"))

    entry = IngestService(session).ingest(
        IngestEntryIn(
            amount=Decimal("12500"),
            note="Coffee",
            occurred_at=datetime(2025, 1, 1, 8, 30),
        )
    )

    assert entry.kind == EntryKind.expense
    assert entry.wallet_id == cash.id
    assert entry.description == "Coffee"
    assert LedgerService(session).wallet_balance(cash.id) == Decimal("-12500")


def test_ingest_requires_a_wallet_when_several_exist() -> None:
    session = make_session()
    WalletService(session).create(WalletIn(name="Cash"))
    WalletService(session).create(WalletIn(name="Bank"))

    with pytest.raises(IngestWalletAmbiguous):
        IngestService(session).ingest(IngestEntryIn(amount=Decimal("1"), note="x"))


def test_ingest_without_wallets_fails() -> None:
    session = make_session()

    with pytest.raises(IngestWalletNotFound):
        IngestService(session).ingest(IngestEntryIn(amount=Decimal("1"), note="x"))


def test_ingest_matches_wallet_case_insensitive_and_fuzzy() -> None:
    session = make_session()
    cash = WalletService(session).create(WalletIn(name="Cash"))
    bank = WalletService(session).create(WalletIn(name="Bank Jago"))
    svc = IngestService(session)

    salary = svc.ingest(
        IngestEntryIn(kind="income", amount=Decimal("100"), note="Salary", wallet="bank jago")
    )
    snack = svc.ingest(IngestEntryIn(amount=Decimal("5"), note="Snack", wallet="Csh"))

    assert salary.wallet_id == bank.id
    assert salary.kind == EntryKind.income
    assert snack.wallet_id == cash.id

    with pytest.raises(IngestWalletNotFound):
        svc.ingest(IngestEntryIn(amount=Decimal("5"), note="Snack", wallet="Gopay"))


def test_ingest_wallet_ambiguous_on_tie() -> None:
    session = make_session()
    WalletService(session).create(WalletIn(name="BCA"))
    WalletService(session).create(WalletIn(name="BCB"))

    with pytest.raises(IngestWalletAmbiguous):
        IngestService(session).ingest(
            IngestEntryIn(amount=Decimal("5"), note="Snack", wallet="BC")
        )


def test_ingest_normalizes_category_to_known_tags() -> None:
    session = make_session()
    WalletService(session).create(WalletIn(name="Cash"))
    BudgetService(session).upsert(
        BudgetIn(category="Groceries", amount=Decimal("100"), month=1, year=2025)
    )
    svc = IngestService(session)

    exact = svc.ingest(IngestEntryIn(amount=Decimal("5"), note="Milk", category="groceries"))
    fuzzy = svc.ingest(IngestEntryIn(amount=Decimal("5"), note="Eggs", category="Grocerie"))
    fresh = svc.ingest(IngestEntryIn(amount=Decimal("5"), note="Taxi", category="Transport"))
    reused = svc.ingest(IngestEntryIn(amount=Decimal("5"), note="Bus", category="transport"))

    assert exact.tag == "Groceries"
    assert fuzzy.tag == "Groceries"
    assert fresh.tag == "Transport"
    assert reused.tag == "Transport"


def test_ingest_accepts_typed_rupiah_amounts() -> None:
    session = make_session()
    WalletService(session).create(WalletIn(name="Cash"))

    entry = IngestService(session).ingest(
        IngestEntryIn(amount="Rp 12.500", note="Parking")
    )

    assert entry.amount_cents == 1_250_000

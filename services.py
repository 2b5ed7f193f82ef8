from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from rapidfuzz.distance import Levenshtein

import projections
from config import get_settings
from models import (
    Budget,
    Entry,
    EntryDirection,
    EntryKind,
    SavingsGoal,
    TransferKind,
    Wallet,
)
from money import from_cents, to_cents
from schemas import (
    BudgetIn,
    EntryIn,
    EntryPatch,
    IngestEntryIn,
    SavingsGoalIn,
    SavingsMovementIn,
    WalletIn,
    WalletTransferIn,
)


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def local_now() -> datetime:
    return (
        datetime.now(ZoneInfo(get_settings().timezone))
        .replace(tzinfo=None)
        .replace(microsecond=0)
    )


class EntryValidationError(ValueError):
    pass


class EntryNotFound(ValueError):
    pass


@dataclass
class EntryFilters:
    wallet_id: Optional[int] = None
    goal_id: Optional[int] = None
    kind: Optional[EntryKind] = None
    tag: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    include_deleted: bool = False


_PATCHABLE_FIELDS = (
    "kind",
    "amount",
    "direction",
    "wallet_id",
    "goal_id",
    "tag",
    "transfer_kind",
    "description",
    "occurred_at",
)


class LedgerService:
    """Append-only entry store plus the projections read from it.

    Writes commit by default. The allocation engine passes ``commit=False``
    to group several appends into one durable step.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    # -- reads ---------------------------------------------------------------

    def get(self, entry_id: int, *, include_deleted: bool = False) -> Entry:
        entry = self.session.get(Entry, entry_id)
        if not entry or entry.user_id != self.user_id:
            raise EntryNotFound("Entry not found")
        if entry.deleted_at is not None and not include_deleted:
            raise EntryNotFound("Entry not found")
        return entry

    def query(self, filters: Optional[EntryFilters] = None) -> list[Entry]:
        filters = filters or EntryFilters()
        stmt = (
            select(Entry)
            .where(Entry.user_id == self.user_id)
            .order_by(Entry.occurred_at.asc(), Entry.id.asc())
        )
        if not filters.include_deleted:
            stmt = stmt.where(Entry.deleted_at.is_(None))
        if filters.wallet_id is not None:
            stmt = stmt.where(Entry.wallet_id == filters.wallet_id)
        if filters.goal_id is not None:
            stmt = stmt.where(Entry.goal_id == filters.goal_id)
        if filters.kind is not None:
            stmt = stmt.where(Entry.kind == filters.kind)
        if filters.tag is not None:
            stmt = stmt.where(Entry.tag == filters.tag)
        if filters.start is not None:
            stmt = stmt.where(Entry.occurred_at >= filters.start)
        if filters.end is not None:
            stmt = stmt.where(Entry.occurred_at < filters.end)
        return list(self.session.scalars(stmt).all())

    def savings_entries(self) -> list[Entry]:
        return self.query(EntryFilters(kind=EntryKind.savings))

    def wallet_balance_cents(self, wallet_id: int) -> int:
        return projections.wallet_balance(
            self.query(EntryFilters(wallet_id=wallet_id)), wallet_id
        )

    def wallet_balance(self, wallet_id: int) -> Decimal:
        return from_cents(self.wallet_balance_cents(wallet_id))

    def wallet_savings_total_cents(self, wallet_id: int) -> int:
        return projections.wallet_savings_total(
            self.query(EntryFilters(wallet_id=wallet_id, kind=EntryKind.savings)),
            wallet_id,
        )

    def wallet_savings_total(self, wallet_id: int) -> Decimal:
        return from_cents(self.wallet_savings_total_cents(wallet_id))

    def wallet_allocated_total(self, wallet_id: int) -> Decimal:
        return from_cents(
            projections.wallet_allocated_total(
                self.query(
                    EntryFilters(wallet_id=wallet_id, kind=EntryKind.savings)
                ),
                wallet_id,
            )
        )

    def goal_allocated_cents(self, goal_id: int) -> int:
        return projections.goal_allocated_amount(
            self.query(EntryFilters(goal_id=goal_id)), goal_id
        )

    def goal_allocated_amount(self, goal_id: int) -> Decimal:
        return from_cents(self.goal_allocated_cents(goal_id))

    def budget_spent(self, category: str, month: int, year: int) -> Decimal:
        entries = self.query(EntryFilters(kind=EntryKind.expense, tag=category))
        return from_cents(projections.budget_spent(entries, category, month, year))

    # -- writes --------------------------------------------------------------

    def append(self, data: EntryIn, *, commit: bool = True) -> Entry:
        fields = self._validated_fields(
            kind=data.kind,
            amount=data.amount,
            direction=data.direction,
            wallet_id=data.wallet_id,
            goal_id=data.goal_id,
            transfer_kind=data.transfer_kind,
        )
        entry = Entry(
            user_id=self.user_id,
            tag=_clean_text(data.tag),
            description=_clean_text(data.description),
            occurred_at=data.occurred_at or local_now(),
            **fields,
        )
        self.session.add(entry)
        self.session.flush()
        self._guard_savings_invariants(
            wallet_ids={entry.wallet_id}, goal_ids={entry.goal_id}
        )
        logger.info(
            f"entry_appended: id={entry.id} user={self.user_id} "
            f"kind={entry.kind.value} direction={entry.direction.value} "
            f"amount_cents={entry.amount_cents} wallet={entry.wallet_id} "
            f"goal={entry.goal_id}"
        )
        if commit:
            self.session.commit()
            self.session.refresh(entry)
        return entry

    def edit(self, entry_id: int, patch: EntryPatch) -> Entry:
        entry = self.get(entry_id)
        changes = {
            name: getattr(patch, name)
            for name in _PATCHABLE_FIELDS
            if name in patch.model_fields_set
        }
        kind = changes.get("kind", entry.kind)
        if "direction" in changes:
            direction = changes["direction"]
        elif "kind" in changes and kind != entry.kind:
            direction = None
        else:
            direction = entry.direction
        fields = self._validated_fields(
            kind=kind,
            amount=changes.get("amount", from_cents(entry.amount_cents)),
            direction=direction,
            wallet_id=changes.get("wallet_id", entry.wallet_id),
            goal_id=changes.get("goal_id", entry.goal_id),
            transfer_kind=changes.get("transfer_kind", entry.transfer_kind),
        )

        touched_wallets = {entry.wallet_id, fields["wallet_id"]}
        touched_goals = {entry.goal_id, fields["goal_id"]}
        for name, value in fields.items():
            setattr(entry, name, value)
        if "tag" in changes:
            entry.tag = _clean_text(changes["tag"])
        if "description" in changes:
            entry.description = _clean_text(changes["description"])
        if changes.get("occurred_at") is not None:
            entry.occurred_at = changes["occurred_at"]

        self.session.flush()
        self._guard_savings_invariants(
            wallet_ids=touched_wallets, goal_ids=touched_goals
        )
        self.session.commit()
        self.session.refresh(entry)
        logger.info(f"entry_edited: id={entry.id} user={self.user_id}")
        return entry

    def remove(self, entry_id: int) -> None:
        entry = self.get(entry_id)
        entry.deleted_at = datetime.utcnow()
        self.session.flush()
        self._guard_savings_invariants(
            wallet_ids={entry.wallet_id}, goal_ids={entry.goal_id}
        )
        self.session.commit()
        logger.info(f"entry_removed: id={entry.id} user={self.user_id}")

    # -- validation ----------------------------------------------------------

    def _validated_fields(
        self,
        *,
        kind: Optional[EntryKind],
        amount: Optional[Decimal],
        direction: Optional[EntryDirection],
        wallet_id: Optional[int],
        goal_id: Optional[int],
        transfer_kind: Optional[TransferKind],
    ) -> dict[str, object]:
        if kind is None:
            raise EntryValidationError("Entry kind is required")
        try:
            kind = EntryKind(kind)
        except ValueError as exc:
            raise EntryValidationError(f"Unknown entry kind: {kind}") from exc

        if amount is None:
            raise EntryValidationError("Amount is required")
        try:
            amount_cents = to_cents(amount)
        except ValueError as exc:
            raise EntryValidationError(str(exc)) from exc
        if amount_cents <= 0:
            raise EntryValidationError(
                "Amount must be a positive magnitude; the sign follows the kind"
            )

        if kind == EntryKind.income:
            if direction not in (None, EntryDirection.inflow):
                raise EntryValidationError("Income entries always flow in")
            direction = EntryDirection.inflow
        elif kind == EntryKind.expense:
            if direction not in (None, EntryDirection.outflow):
                raise EntryValidationError("Expense entries always flow out")
            direction = EntryDirection.outflow
        elif direction is None:
            raise EntryValidationError(f"Direction is required for {kind.value} entries")

        if transfer_kind is not None and kind not in (
            EntryKind.transfer,
            EntryKind.savings,
        ):
            raise EntryValidationError(
                "Transfer kind only applies to transfer and savings entries"
            )

        if wallet_id is not None:
            wallet = self.session.get(Wallet, wallet_id)
            if not wallet or wallet.user_id != self.user_id:
                raise EntryValidationError("Wallet not found")

        if goal_id is not None:
            if kind != EntryKind.savings:
                raise EntryValidationError("Only savings entries can target a goal")
            goal = self.session.get(SavingsGoal, goal_id)
            if not goal or goal.user_id != self.user_id:
                raise EntryValidationError("Savings goal not found")
            if wallet_id is None:
                raise EntryValidationError(
                    "Goal allocations must be drawn from a wallet"
                )

        return {
            "kind": kind,
            "direction": direction,
            "amount_cents": amount_cents,
            "wallet_id": wallet_id,
            "goal_id": goal_id,
            "transfer_kind": transfer_kind,
        }

    def savings_violations(
        self, wallet_ids: Iterable[Optional[int]], goal_ids: Iterable[Optional[int]]
    ) -> list[str]:
        entries = self.savings_entries()
        problems: list[str] = []
        for wallet_id in sorted(w for w in set(wallet_ids) if w is not None):
            savings = projections.wallet_savings_total(entries, wallet_id)
            drawn = projections.wallet_allocated_total(entries, wallet_id)
            if savings < 0:
                problems.append(f"Wallet {wallet_id} savings are negative")
            if drawn > savings:
                problems.append(
                    f"Wallet {wallet_id} has {from_cents(drawn)} allocated "
                    f"against {from_cents(savings)} saved"
                )
        for goal_id in sorted(g for g in set(goal_ids) if g is not None):
            goal = self.session.get(SavingsGoal, goal_id)
            if goal is None:
                continue
            allocated = projections.goal_allocated_amount(entries, goal_id)
            if allocated > goal.target_amount_cents:
                problems.append(f"Goal '{goal.name}' exceeds its target")
            if allocated < 0:
                problems.append(f"Goal '{goal.name}' allocation is negative")
            if any(
                signed_amount < 0
                for signed_amount in _allocation_legs(entries, goal_id).values()
            ):
                problems.append(
                    f"Goal '{goal.name}' releases more than a wallet allocated"
                )
        return problems

    def _guard_savings_invariants(
        self, wallet_ids: Iterable[Optional[int]], goal_ids: Iterable[Optional[int]]
    ) -> None:
        problems = self.savings_violations(wallet_ids, goal_ids)
        if problems:
            self.session.rollback()
            raise EntryValidationError("; ".join(problems))


def _allocation_legs(entries: Iterable[Entry], goal_id: int) -> dict[int, int]:
    legs: dict[int, int] = {}
    for entry in entries:
        if entry.deleted_at is None and entry.is_allocation and entry.goal_id == goal_id:
            legs[entry.wallet_id] = legs.get(entry.wallet_id, 0) + (
                projections.signed_amount(entry)
            )
    return legs


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    clean = value.strip()
    return clean or None


class WalletService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def list_all(self) -> list[Wallet]:
        stmt = (
            select(Wallet)
            .where(Wallet.user_id == self.user_id)
            .order_by(Wallet.name, Wallet.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, wallet_id: int) -> Wallet:
        wallet = self.session.get(Wallet, wallet_id)
        if not wallet or wallet.user_id != self.user_id:
            raise ValueError("Wallet not found")
        return wallet

    def _ensure_unique_name(self, name: str, *, exclude_id: Optional[int] = None) -> None:
        stmt = select(Wallet).where(
            Wallet.user_id == self.user_id, func.lower(Wallet.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Wallet.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValueError("Wallet already exists")

    def create(self, data: WalletIn) -> Wallet:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Wallet name cannot be empty")
        self._ensure_unique_name(clean_name)
        wallet = Wallet(
            user_id=self.user_id, name=clean_name, color=data.color, icon=data.icon
        )
        self.session.add(wallet)
        self.session.commit()
        self.session.refresh(wallet)
        return wallet

    def update(self, wallet_id: int, data: WalletIn) -> Wallet:
        wallet = self.get(wallet_id)
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Wallet name cannot be empty")
        self._ensure_unique_name(clean_name, exclude_id=wallet_id)
        wallet.name = clean_name
        wallet.color = data.color
        wallet.icon = data.icon
        self.session.commit()
        self.session.refresh(wallet)
        return wallet

    def delete(self, wallet_id: int) -> int:
        """Delete a wallet and soft-delete every entry that references it.

        The removed entries are detached from the wallet row; their goal
        allocations disappear with them. Returns the number of entries removed.
        """
        wallet = self.get(wallet_id)
        result = self.session.execute(
            update(Entry)
            .where(
                Entry.user_id == self.user_id,
                Entry.wallet_id == wallet_id,
                Entry.deleted_at.is_(None),
            )
            .values(deleted_at=datetime.utcnow(), wallet_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            update(Entry)
            .where(Entry.user_id == self.user_id, Entry.wallet_id == wallet_id)
            .values(wallet_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(wallet)
        self.session.commit()
        self.session.expire_all()
        removed = int(result.rowcount or 0)
        logger.info(
            f"wallet_deleted: id={wallet_id} user={self.user_id} entries_removed={removed}"
        )
        return removed

    def summary(self, wallet_id: int) -> dict[str, object]:
        wallet = self.get(wallet_id)
        ledger = LedgerService(self.session, self.user_id)
        entries = ledger.query(EntryFilters(wallet_id=wallet_id))
        savings = projections.wallet_savings_total(entries, wallet_id)
        allocated = projections.wallet_allocated_total(entries, wallet_id)
        goals = {
            goal.id: goal
            for goal in GoalService(self.session, self.user_id).list_all()
        }
        by_goal = projections.wallet_allocations_by_goal(entries, wallet_id)
        recent = sorted(
            (e for e in entries if e.kind == EntryKind.savings),
            key=lambda e: (e.occurred_at, e.id),
            reverse=True,
        )[: get_settings().recent_savings_limit]
        return {
            "wallet_id": wallet.id,
            "name": wallet.name,
            "balance": from_cents(projections.wallet_balance(entries, wallet_id)),
            "savings_total": from_cents(savings),
            "allocated": from_cents(allocated),
            "unallocated": from_cents(savings - allocated),
            "savings_by_goal": [
                {
                    "goal_id": goal_id,
                    "goal_name": goals[goal_id].name if goal_id in goals else None,
                    "amount": from_cents(cents),
                }
                for goal_id, cents in sorted(
                    by_goal.items(), key=lambda item: item[1], reverse=True
                )
            ],
            "recent_savings": [
                {
                    "id": e.id,
                    "amount": from_cents(projections.signed_amount(e)),
                    "goal_id": e.goal_id,
                    "description": e.description,
                    "occurred_at": e.occurred_at,
                }
                for e in recent
            ],
        }


class GoalService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def list_all(self) -> list[SavingsGoal]:
        stmt = (
            select(SavingsGoal)
            .where(SavingsGoal.user_id == self.user_id)
            .order_by(SavingsGoal.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, goal_id: int) -> SavingsGoal:
        goal = self.session.get(SavingsGoal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise ValueError("Savings goal not found")
        return goal

    def _ensure_unique_name(self, name: str, *, exclude_id: Optional[int] = None) -> None:
        stmt = select(SavingsGoal).where(
            SavingsGoal.user_id == self.user_id,
            func.lower(SavingsGoal.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(SavingsGoal.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValueError("Savings goal already exists")

    def create(self, data: SavingsGoalIn) -> SavingsGoal:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Goal name cannot be empty")
        self._ensure_unique_name(clean_name)
        goal = SavingsGoal(
            user_id=self.user_id,
            name=clean_name,
            target_amount_cents=to_cents(data.target_amount),
            target_date=data.target_date,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: SavingsGoalIn) -> SavingsGoal:
        goal = self.get(goal_id)
        target_cents = to_cents(data.target_amount)
        allocated = LedgerService(self.session, self.user_id).goal_allocated_cents(
            goal_id
        )
        if target_cents < allocated:
            raise ValueError(
                "Target cannot be lower than the amount already allocated "
                f"({from_cents(allocated)})"
            )
        clean_name = data.name.strip() or goal.name
        self._ensure_unique_name(clean_name, exclude_id=goal_id)
        goal.name = clean_name
        goal.target_amount_cents = target_cents
        goal.target_date = data.target_date
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> int:
        goal = self.get(goal_id)
        result = self.session.execute(
            update(Entry)
            .where(
                Entry.user_id == self.user_id,
                Entry.goal_id == goal_id,
                Entry.deleted_at.is_(None),
            )
            .values(deleted_at=datetime.utcnow(), goal_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            update(Entry)
            .where(Entry.user_id == self.user_id, Entry.goal_id == goal_id)
            .values(goal_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(goal)
        self.session.commit()
        self.session.expire_all()
        removed = int(result.rowcount or 0)
        logger.info(
            f"goal_deleted: id={goal_id} user={self.user_id} entries_removed={removed}"
        )
        return removed

    def progress(self, goal_id: int) -> dict[str, object]:
        goal = self.get(goal_id)
        allocated = LedgerService(self.session, self.user_id).goal_allocated_cents(
            goal_id
        )
        target = goal.target_amount_cents
        percent = round(allocated * 100 / target, 1) if target else 0.0
        return {
            "goal_id": goal.id,
            "name": goal.name,
            "target_amount": from_cents(target),
            "target_date": goal.target_date,
            "allocated": from_cents(allocated),
            "remaining": from_cents(max(0, target - allocated)),
            "percent": percent,
        }


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def list_for_month(self, year: int, month: int) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.year == year,
                Budget.month == month,
            )
            .order_by(Budget.category)
        )
        return list(self.session.scalars(stmt).all())

    def upsert(self, data: BudgetIn) -> Budget:
        category = data.category.strip()
        if not category:
            raise ValueError("Budget category cannot be empty")
        amount_cents = to_cents(data.amount)
        existing = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category == category,
                Budget.month == data.month,
                Budget.year == data.year,
            )
        )
        if existing:
            existing.amount_cents = amount_cents
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = Budget(
            user_id=self.user_id,
            category=category,
            amount_cents=amount_cents,
            month=data.month,
            year=data.year,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        self.session.delete(budget)
        self.session.commit()

    def spent(self, category: str, month: int, year: int) -> Decimal:
        return LedgerService(self.session, self.user_id).budget_spent(
            category, month, year
        )

    def progress_for_month(self, year: int, month: int) -> list[dict[str, object]]:
        budgets = self.list_for_month(year, month)
        if not budgets:
            return []
        expenses = LedgerService(self.session, self.user_id).query(
            EntryFilters(kind=EntryKind.expense)
        )
        spent_by_tag = projections.spent_by_tag(expenses, month, year)
        rows: list[dict[str, object]] = []
        for budget in budgets:
            spent = spent_by_tag.get(budget.category, 0)
            rows.append(
                {
                    "id": budget.id,
                    "category": budget.category,
                    "budget": from_cents(budget.amount_cents),
                    "spent": from_cents(spent),
                    "remaining": from_cents(budget.amount_cents - spent),
                    "month": budget.month,
                    "year": budget.year,
                }
            )
        return rows


class TransferService:
    """Multi-leg money movements between wallets and wallet savings."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()
        self.ledger = LedgerService(session, self.user_id)

    def wallet_to_wallet(self, data: WalletTransferIn) -> tuple[Entry, Entry]:
        if data.from_wallet_id == data.to_wallet_id:
            raise EntryValidationError("Cannot transfer to the same wallet")
        wallets = WalletService(self.session, self.user_id)
        try:
            source = wallets.get(data.from_wallet_id)
            target = wallets.get(data.to_wallet_id)
        except ValueError as exc:
            raise EntryValidationError(str(exc)) from exc

        amount_cents = to_cents(data.amount)
        available = self.ledger.wallet_balance_cents(source.id)
        if available < amount_cents:
            raise EntryValidationError(
                f"Insufficient balance in {source.name}. "
                f"Available: {from_cents(available)}, Required: {data.amount}"
            )

        occurred_at = data.occurred_at or local_now()
        suffix = f": {data.description}" if data.description else ""
        try:
            outgoing = self.ledger.append(
                EntryIn(
                    kind=EntryKind.transfer,
                    direction=EntryDirection.outflow,
                    amount=data.amount,
                    wallet_id=source.id,
                    tag="Transfer",
                    transfer_kind=TransferKind.wallet_to_wallet,
                    description=f"Transfer to {target.name}{suffix}",
                    occurred_at=occurred_at,
                ),
                commit=False,
            )
            incoming = self.ledger.append(
                EntryIn(
                    kind=EntryKind.transfer,
                    direction=EntryDirection.inflow,
                    amount=data.amount,
                    wallet_id=target.id,
                    tag="Transfer",
                    transfer_kind=TransferKind.wallet_to_wallet,
                    description=f"Transfer from {source.name}{suffix}",
                    occurred_at=occurred_at,
                ),
                commit=False,
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(outgoing)
        self.session.refresh(incoming)
        return outgoing, incoming

    def deposit_savings(self, data: SavingsMovementIn) -> Entry:
        """Earmark part of a wallet's balance as savings."""
        wallet = self._wallet(data.wallet_id)
        amount_cents = to_cents(data.amount)
        balance = self.ledger.wallet_balance_cents(wallet.id)
        saved = self.ledger.wallet_savings_total_cents(wallet.id)
        if saved + amount_cents > balance:
            raise EntryValidationError(
                f"Insufficient balance in {wallet.name}. "
                f"Available: {from_cents(balance - saved)}, Required: {data.amount}"
            )
        return self.ledger.append(
            EntryIn(
                kind=EntryKind.savings,
                direction=EntryDirection.inflow,
                amount=data.amount,
                wallet_id=wallet.id,
                transfer_kind=TransferKind.wallet_to_savings,
                description=data.description or f"Savings from {wallet.name}",
                occurred_at=data.occurred_at,
            )
        )

    def withdraw_savings(self, data: SavingsMovementIn) -> Entry:
        """Release savings back into the wallet's spendable balance.

        Savings already allocated to goals cannot be withdrawn; the ledger
        guard rejects the write if the wallet would be over-allocated.
        """
        wallet = self._wallet(data.wallet_id)
        return self.ledger.append(
            EntryIn(
                kind=EntryKind.savings,
                direction=EntryDirection.outflow,
                amount=data.amount,
                wallet_id=wallet.id,
                transfer_kind=TransferKind.savings_to_wallet,
                description=data.description or f"Savings back to {wallet.name}",
                occurred_at=data.occurred_at,
            )
        )

    def _wallet(self, wallet_id: int) -> Wallet:
        try:
            return WalletService(self.session, self.user_id).get(wallet_id)
        except ValueError as exc:
            raise EntryValidationError(str(exc)) from exc


class IngestWalletNotFound(ValueError):
    pass


class IngestWalletAmbiguous(ValueError):
    pass


class IngestService:
    """Entry point for free-text front-ends such as the chat bot."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def ingest(self, data: IngestEntryIn) -> Entry:
        wallet = self._resolve_wallet(data.wallet)
        tag = self._resolve_tag(data.category) if data.category else None
        kind = EntryKind(data.kind)
        return LedgerService(self.session, self.user_id).append(
            EntryIn(
                kind=kind,
                amount=data.amount,
                wallet_id=wallet.id,
                tag=tag,
                description=data.note,
                occurred_at=data.occurred_at or local_now().replace(second=0),
            )
        )

    def _resolve_wallet(self, name: Optional[str]) -> Wallet:
        wallets = WalletService(self.session, self.user_id).list_all()
        if not wallets:
            raise IngestWalletNotFound("No wallets configured")
        raw = (name or "").strip()
        if not raw:
            if len(wallets) == 1:
                return wallets[0]
            options = ", ".join(w.name for w in wallets)
            raise IngestWalletAmbiguous(f"Please specify a wallet: {options}")

        best = _closest(raw, wallets, key=lambda w: w.name)
        if not best:
            raise IngestWalletNotFound(f"Wallet '{raw}' not found")
        if len(best) > 1:
            options = ", ".join(sorted(w.name for w in best))
            raise IngestWalletAmbiguous(f"Wallet '{raw}' is ambiguous; matches: {options}")
        return best[0]

    def _resolve_tag(self, category: str) -> Optional[str]:
        raw = category.strip()
        if not raw:
            return None
        known = set(
            self.session.scalars(
                select(Budget.category).where(Budget.user_id == self.user_id)
            ).all()
        )
        known.update(
            tag
            for tag in self.session.scalars(
                select(Entry.tag)
                .where(Entry.user_id == self.user_id, Entry.tag.is_not(None))
                .distinct()
            ).all()
            if tag
        )
        best = _closest(raw, sorted(known), key=lambda t: t)
        if len(best) == 1:
            return best[0]
        return raw


def _closest(raw: str, candidates, *, key) -> list:
    """Exact case-insensitive match first, then edit distance of at most one."""
    needle = raw.lower()
    exact = [c for c in candidates if key(c).strip().lower() == needle]
    if exact:
        return exact
    best_distance: Optional[int] = None
    best: list = []
    for candidate in candidates:
        dist = int(Levenshtein.distance(needle, key(candidate).strip().lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [candidate]
        elif dist == best_distance:
            best.append(candidate)
    if best_distance is not None and best_distance <= 1:
        return best
    return []


class AuditService:
    """Recomputes every projection for an owner and reports broken invariants."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def audit(self) -> list[str]:
        ledger = LedgerService(self.session, self.user_id)
        wallet_ids = [w.id for w in WalletService(self.session, self.user_id).list_all()]
        goal_ids = [g.id for g in GoalService(self.session, self.user_id).list_all()]
        problems = ledger.savings_violations(wallet_ids, goal_ids)

        entries = ledger.query()
        balances = sum(projections.wallet_balance(entries, w) for w in wallet_ids)
        orphaned = sum(
            projections.balance_contribution(e)
            for e in entries
            if e.wallet_id is not None and e.wallet_id not in wallet_ids
        )
        if balances + orphaned != projections.net_contribution(entries):
            problems.append("Wallet balances do not add up to the ledger total")
        return problems

    @staticmethod
    def owners(session: Session) -> list[int]:
        return list(session.scalars(select(Entry.user_id).distinct()).all())

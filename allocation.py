"""Savings allocation engine.

A goal's allocation is never updated in place. Saving a new allocation for a
goal first releases everything the goal currently holds (one deallocation
entry per wallet) and then appends fresh allocation entries, each clamped to
the capacity left in its wallet and in the goal. Both groups of entries stay
in the ledger, so the whole history of a goal can be replayed.

Sessions for the same owner are serialized by a process-local lock. Each
phase also row-locks the goal and the owner's wallets, since the commit
that ends a phase releases them. Capacity is recomputed under both locks
right before each allocation entry is written.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

import projections
from models import Entry, EntryDirection, EntryKind, SavingsGoal, Wallet
from money import from_cents, to_cents
from schemas import EntryIn
from services import (
    EntryValidationError,
    GoalService,
    LedgerService,
    WalletService,
    get_current_user_id,
    local_now,
)


logger = logging.getLogger(__name__)


class AllocationState(str, Enum):
    idle = "idle"
    resetting = "resetting"
    reapplying = "reapplying"
    committed = "committed"
    failed = "failed"


@dataclass(frozen=True)
class ClampedAllocation:
    wallet_id: int
    requested: Decimal
    applied: Decimal


@dataclass
class AllocationResult:
    goal_id: int
    state: AllocationState
    allocated_total: Decimal
    applied: dict[int, Decimal] = field(default_factory=dict)
    clamped: list[ClampedAllocation] = field(default_factory=list)
    released: dict[int, Decimal] = field(default_factory=dict)


class ReconciliationError(RuntimeError):
    """An allocation session stopped between its two phases.

    ``actual_allocated`` is what the ledger holds for the goal after the
    unfinished phase was rolled back. Replaying the same request converges.
    """

    def __init__(
        self,
        goal_id: int,
        state: AllocationState,
        actual_allocated: Decimal,
        reason: str = "",
    ) -> None:
        self.goal_id = goal_id
        self.state = state
        self.actual_allocated = actual_allocated
        self.reason = reason
        message = (
            f"Allocation for goal {goal_id} failed while {state.value}; "
            f"goal now holds {actual_allocated}"
        )
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


_owner_locks: dict[int, threading.Lock] = {}
_owner_locks_guard = threading.Lock()


def owner_lock(user_id: int) -> threading.Lock:
    with _owner_locks_guard:
        lock = _owner_locks.get(user_id)
        if lock is None:
            lock = threading.Lock()
            _owner_locks[user_id] = lock
        return lock


class AllocationEngine:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()
        self.ledger = LedgerService(session, self.user_id)
        self.state = AllocationState.idle

    # -- capacity ------------------------------------------------------------

    def _max_allocation_cents(
        self,
        entries: list[Entry],
        goal: SavingsGoal,
        wallet_id: int,
        wallet_ids: Iterable[int],
    ) -> int:
        by_goal = projections.allocations_by_goal(entries)
        allocated_to_other_goals = sum(
            cents for goal_id, cents in by_goal.items() if goal_id != goal.id
        )
        total_savings = sum(
            projections.wallet_savings_total(entries, w) for w in wallet_ids
        )
        total_unallocated = max(0, total_savings - allocated_to_other_goals)

        wallet_savings = projections.wallet_savings_total(entries, wallet_id)
        drawn_by_other_goals = projections.wallet_allocated_total(
            entries, wallet_id, exclude_goal_id=goal.id
        )
        wallet_free = max(0, wallet_savings - drawn_by_other_goals)
        available = min(wallet_savings, wallet_free, total_unallocated)

        remaining = max(0, goal.target_amount_cents - by_goal.get(goal.id, 0))
        return max(0, min(available, remaining))

    def max_allocation(self, goal_id: int, wallet_id: int) -> Decimal:
        goal = GoalService(self.session, self.user_id).get(goal_id)
        WalletService(self.session, self.user_id).get(wallet_id)
        entries = self.ledger.savings_entries()
        return from_cents(
            self._max_allocation_cents(entries, goal, wallet_id, self._wallet_ids())
        )

    def snapshot(self, goal_id: int) -> dict[str, object]:
        goal = GoalService(self.session, self.user_id).get(goal_id)
        wallets = WalletService(self.session, self.user_id).list_all()
        wallet_ids = [w.id for w in wallets]
        entries = self.ledger.savings_entries()
        by_wallet = projections.goal_allocations_by_wallet(entries, goal_id)
        allocated = projections.goal_allocated_amount(entries, goal_id)
        return {
            "goal_id": goal.id,
            "name": goal.name,
            "target_amount": from_cents(goal.target_amount_cents),
            "allocated": from_cents(allocated),
            "wallets": [
                {
                    "wallet_id": wallet.id,
                    "name": wallet.name,
                    "savings_total": from_cents(
                        projections.wallet_savings_total(entries, wallet.id)
                    ),
                    "allocated": from_cents(by_wallet.get(wallet.id, 0)),
                    "max_allocation": from_cents(
                        self._max_allocation_cents(entries, goal, wallet.id, wallet_ids)
                    ),
                }
                for wallet in wallets
            ],
        }

    # -- apply ---------------------------------------------------------------

    def apply(
        self, goal_id: int, desired: Mapping[int, Decimal]
    ) -> AllocationResult:
        """Replace the goal's allocation with ``desired`` (wallet id -> amount).

        Amounts above the capacity of a wallet are clamped and reported in
        ``AllocationResult.clamped``. Raises ``ReconciliationError`` if either
        phase fails after the session started writing.
        """
        goal = GoalService(self.session, self.user_id).get(goal_id)
        requested = self._validated_request(desired)

        with owner_lock(self.user_id):
            self.state = AllocationState.idle
            try:
                released = self._reset(goal)
                applied, clamped = self._reapply(goal, requested)
            except Exception as exc:
                failed_in = self.state
                self.state = AllocationState.failed
                self.session.rollback()
                actual = self.ledger.goal_allocated_amount(goal_id)
                logger.error(
                    f"allocation_failed: goal={goal_id} user={self.user_id} "
                    f"phase={failed_in.value} actual_allocated={actual} error={exc}"
                )
                raise ReconciliationError(goal_id, failed_in, actual, str(exc)) from exc

            self.state = AllocationState.committed
            total = self.ledger.goal_allocated_amount(goal_id)
            logger.info(
                f"allocation_committed: goal={goal_id} user={self.user_id} "
                f"allocated={total} clamped={len(clamped)}"
            )
            return AllocationResult(
                goal_id=goal_id,
                state=self.state,
                allocated_total=total,
                applied=applied,
                clamped=clamped,
                released=released,
            )

    def _validated_request(self, desired: Mapping[int, Decimal]) -> dict[int, int]:
        wallets = WalletService(self.session, self.user_id)
        requested: dict[int, int] = {}
        for wallet_id, amount in desired.items():
            try:
                wallets.get(int(wallet_id))
                cents = to_cents(amount)
            except ValueError as exc:
                raise EntryValidationError(str(exc)) from exc
            if cents < 0:
                raise EntryValidationError("Allocation amounts cannot be negative")
            requested[int(wallet_id)] = cents
        return requested

    def _lock_rows(self, goal_id: int) -> None:
        """Row-lock the goal and every wallet of the owner until the next commit.

        Each phase commits, which releases the locks, so every phase takes
        them again. Wallets are locked in id order; capacity depends on the
        savings of all of them.
        """
        self.session.execute(
            select(SavingsGoal.id).where(SavingsGoal.id == goal_id).with_for_update()
        )
        self.session.execute(
            select(Wallet.id)
            .where(Wallet.user_id == self.user_id)
            .order_by(Wallet.id)
            .with_for_update()
        )

    def _reset(self, goal: SavingsGoal) -> dict[int, Decimal]:
        self.state = AllocationState.resetting
        logger.info(f"allocation_state: goal={goal.id} state={self.state.value}")
        self._lock_rows(goal.id)
        current = projections.goal_allocations_by_wallet(
            self.ledger.savings_entries(), goal.id
        )
        released: dict[int, Decimal] = {}
        occurred_at = local_now()
        for wallet_id in sorted(current):
            cents = current[wallet_id]
            if cents <= 0:
                continue
            self.ledger.append(
                EntryIn(
                    kind=EntryKind.savings,
                    direction=EntryDirection.outflow,
                    amount=from_cents(cents),
                    wallet_id=wallet_id,
                    goal_id=goal.id,
                    description=f"Released from {goal.name}",
                    occurred_at=occurred_at,
                ),
                commit=False,
            )
            released[wallet_id] = from_cents(cents)
        self.session.commit()
        return released

    def _reapply(
        self, goal: SavingsGoal, requested: Mapping[int, int]
    ) -> tuple[dict[int, Decimal], list[ClampedAllocation]]:
        self.state = AllocationState.reapplying
        logger.info(f"allocation_state: goal={goal.id} state={self.state.value}")
        self._lock_rows(goal.id)
        wallet_ids = self._wallet_ids()
        applied: dict[int, Decimal] = {}
        clamped: list[ClampedAllocation] = []
        occurred_at = local_now()
        for wallet_id in sorted(requested):
            want = requested[wallet_id]
            if want <= 0:
                continue
            ceiling = self._max_allocation_cents(
                self.ledger.savings_entries(), goal, wallet_id, wallet_ids
            )
            amount = min(want, ceiling)
            if amount < want:
                clamp = ClampedAllocation(
                    wallet_id=wallet_id,
                    requested=from_cents(want),
                    applied=from_cents(amount),
                )
                clamped.append(clamp)
                logger.warning(
                    f"allocation_clamped: goal={goal.id} wallet={wallet_id} "
                    f"requested={clamp.requested} applied={clamp.applied}"
                )
            if amount <= 0:
                continue
            self.ledger.append(
                EntryIn(
                    kind=EntryKind.savings,
                    direction=EntryDirection.inflow,
                    amount=from_cents(amount),
                    wallet_id=wallet_id,
                    goal_id=goal.id,
                    description=f"Allocated to {goal.name}",
                    occurred_at=occurred_at,
                ),
                commit=False,
            )
            applied[wallet_id] = from_cents(amount)
        self.session.commit()
        return applied, clamped

    def _wallet_ids(self) -> list[int]:
        return [w.id for w in WalletService(self.session, self.user_id).list_all()]

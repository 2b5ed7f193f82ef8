"""Pure folds over ledger entries.

Every figure the application shows (wallet balances, wallet savings, budget
spend, goal allocation) is recomputed from the entry history by the functions
below. They never touch the database and never keep state between calls, so
folding the same entries twice yields the same result.

Entries store a positive magnitude; the sign is decided here from
``(kind, direction)``. Savings entries earmark money that stays inside its
wallet and never change the wallet balance. Savings entries without a goal
make up the wallet savings total; savings entries carrying a goal are
allocations claiming part of that total for the goal.
"""

from collections import defaultdict
from typing import Iterable, Optional

from models import Entry, EntryDirection, EntryKind
from periods import month_window


def _live(entries: Iterable[Entry]) -> Iterable[Entry]:
    return (e for e in entries if e.deleted_at is None)


def signed_amount(entry: Entry) -> int:
    if entry.direction == EntryDirection.outflow:
        return -entry.amount_cents
    return entry.amount_cents


def balance_contribution(entry: Entry) -> int:
    """Signed effect of one entry on the liquid balance of its wallet."""
    if entry.wallet_id is None or entry.kind == EntryKind.savings:
        return 0
    if entry.kind == EntryKind.income:
        return entry.amount_cents
    if entry.kind == EntryKind.expense:
        return -entry.amount_cents
    return signed_amount(entry)


def wallet_balance(entries: Iterable[Entry], wallet_id: int) -> int:
    return sum(
        balance_contribution(e) for e in _live(entries) if e.wallet_id == wallet_id
    )


def net_contribution(entries: Iterable[Entry]) -> int:
    return sum(balance_contribution(e) for e in _live(entries))


def wallet_savings_total(entries: Iterable[Entry], wallet_id: int) -> int:
    return sum(
        signed_amount(e)
        for e in _live(entries)
        if e.kind == EntryKind.savings
        and e.goal_id is None
        and e.wallet_id == wallet_id
    )


def wallet_allocated_total(
    entries: Iterable[Entry], wallet_id: int, *, exclude_goal_id: Optional[int] = None
) -> int:
    return sum(
        signed_amount(e)
        for e in _live(entries)
        if e.is_allocation
        and e.wallet_id == wallet_id
        and (exclude_goal_id is None or e.goal_id != exclude_goal_id)
    )


def goal_allocated_amount(entries: Iterable[Entry], goal_id: int) -> int:
    return sum(
        signed_amount(e)
        for e in _live(entries)
        if e.is_allocation and e.goal_id == goal_id
    )


def goal_allocations_by_wallet(
    entries: Iterable[Entry], goal_id: int
) -> dict[int, int]:
    totals: dict[int, int] = defaultdict(int)
    for e in _live(entries):
        if e.is_allocation and e.goal_id == goal_id and e.wallet_id is not None:
            totals[e.wallet_id] += signed_amount(e)
    return {wallet_id: cents for wallet_id, cents in totals.items() if cents != 0}


def allocations_by_goal(entries: Iterable[Entry]) -> dict[int, int]:
    totals: dict[int, int] = defaultdict(int)
    for e in _live(entries):
        if e.is_allocation:
            totals[e.goal_id] += signed_amount(e)
    return dict(totals)


def wallet_allocations_by_goal(
    entries: Iterable[Entry], wallet_id: int
) -> dict[int, int]:
    totals: dict[int, int] = defaultdict(int)
    for e in _live(entries):
        if e.is_allocation and e.wallet_id == wallet_id:
            totals[e.goal_id] += signed_amount(e)
    return {goal_id: cents for goal_id, cents in totals.items() if cents != 0}


def budget_spent(
    entries: Iterable[Entry], category: str, month: int, year: int
) -> int:
    window = month_window(year, month)
    return sum(
        e.amount_cents
        for e in _live(entries)
        if e.kind == EntryKind.expense
        and e.tag == category
        and window.contains(e.occurred_at)
    )


def spent_by_tag(entries: Iterable[Entry], month: int, year: int) -> dict[str, int]:
    window = month_window(year, month)
    totals: dict[str, int] = defaultdict(int)
    for e in _live(entries):
        if e.kind == EntryKind.expense and e.tag and window.contains(e.occurred_at):
            totals[e.tag] += e.amount_cents
    return dict(totals)

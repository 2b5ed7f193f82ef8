import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from allocation import AllocationEngine, ReconciliationError
from csrf import CSRF_HEADER, generate_csrf_token, validate_csrf_token
from database import SessionLocal
from models import Budget, Entry, EntryKind, SavingsGoal, Wallet
from money import from_cents
from periods import resolve_month
from scheduler import SchedulerManager
from schemas import (
    AllocationIn,
    BudgetIn,
    EntryIn,
    EntryPatch,
    IngestEntryIn,
    SavingsGoalIn,
    SavingsMovementIn,
    WalletIn,
    WalletTransferIn,
)
from services import (
    BudgetService,
    EntryFilters,
    EntryNotFound,
    EntryValidationError,
    GoalService,
    IngestService,
    LedgerService,
    TransferService,
    WalletService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Rupiah Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def require_csrf(token: str = Header(default="", alias=CSRF_HEADER)) -> None:
    if not validate_csrf_token(token, get_current_user_id()):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, EntryValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, EntryNotFound) or str(exc).endswith("not found"):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def entry_to_dict(entry: Entry) -> dict[str, object]:
    return {
        "id": entry.id,
        "kind": entry.kind.value,
        "direction": entry.direction.value,
        "amount": from_cents(entry.amount_cents),
        "wallet_id": entry.wallet_id,
        "goal_id": entry.goal_id,
        "tag": entry.tag,
        "transfer_kind": entry.transfer_kind.value if entry.transfer_kind else None,
        "description": entry.description,
        "occurred_at": entry.occurred_at,
        "recorded_at": entry.recorded_at,
        "deleted_at": entry.deleted_at,
    }


def wallet_to_dict(wallet: Wallet) -> dict[str, object]:
    return {
        "id": wallet.id,
        "name": wallet.name,
        "color": wallet.color,
        "icon": wallet.icon,
    }


def goal_to_dict(goal: SavingsGoal) -> dict[str, object]:
    return {
        "id": goal.id,
        "name": goal.name,
        "target_amount": from_cents(goal.target_amount_cents),
        "target_date": goal.target_date,
    }


def budget_to_dict(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "category": budget.category,
        "amount": from_cents(budget.amount_cents),
        "month": budget.month,
        "year": budget.year,
    }


@app.get("/api/csrf-token")
def csrf_token():
    return {"token": generate_csrf_token(get_current_user_id())}


# Entries


@app.get("/api/entries")
def list_entries(
    wallet_id: Optional[int] = None,
    goal_id: Optional[int] = None,
    kind: Optional[EntryKind] = None,
    tag: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    include_deleted: bool = False,
    db: Session = Depends(get_db),
):
    filters = EntryFilters(
        wallet_id=wallet_id,
        goal_id=goal_id,
        kind=kind,
        tag=tag,
        start=start,
        end=end,
        include_deleted=include_deleted,
    )
    return [entry_to_dict(e) for e in LedgerService(db).query(filters)]


@app.post("/api/entries", status_code=201, dependencies=[Depends(require_csrf)])
def create_entry(payload: EntryIn, db: Session = Depends(get_db)):
    try:
        entry = LedgerService(db).append(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return entry_to_dict(entry)


@app.get("/api/entries/{entry_id}")
def get_entry(entry_id: int, db: Session = Depends(get_db)):
    try:
        entry = LedgerService(db).get(entry_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return entry_to_dict(entry)


@app.patch("/api/entries/{entry_id}", dependencies=[Depends(require_csrf)])
def edit_entry(entry_id: int, payload: EntryPatch, db: Session = Depends(get_db)):
    try:
        entry = LedgerService(db).edit(entry_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return entry_to_dict(entry)


@app.delete("/api/entries/{entry_id}", dependencies=[Depends(require_csrf)])
def remove_entry(entry_id: int, db: Session = Depends(get_db)):
    try:
        LedgerService(db).remove(entry_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# Wallets


@app.get("/api/wallets")
def list_wallets(db: Session = Depends(get_db)):
    ledger = LedgerService(db)
    return [
        {
            **wallet_to_dict(wallet),
            "balance": ledger.wallet_balance(wallet.id),
            "savings_total": ledger.wallet_savings_total(wallet.id),
        }
        for wallet in WalletService(db).list_all()
    ]


@app.post("/api/wallets", status_code=201, dependencies=[Depends(require_csrf)])
def create_wallet(payload: WalletIn, db: Session = Depends(get_db)):
    try:
        wallet = WalletService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return wallet_to_dict(wallet)


@app.put("/api/wallets/{wallet_id}", dependencies=[Depends(require_csrf)])
def update_wallet(wallet_id: int, payload: WalletIn, db: Session = Depends(get_db)):
    try:
        wallet = WalletService(db).update(wallet_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return wallet_to_dict(wallet)


@app.delete("/api/wallets/{wallet_id}", dependencies=[Depends(require_csrf)])
def delete_wallet(wallet_id: int, db: Session = Depends(get_db)):
    try:
        removed = WalletService(db).delete(wallet_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": wallet_id, "entries_removed": removed}


@app.get("/api/wallets/{wallet_id}/balance")
def wallet_balance(wallet_id: int, db: Session = Depends(get_db)):
    try:
        WalletService(db).get(wallet_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    ledger = LedgerService(db)
    return {
        "wallet_id": wallet_id,
        "balance": ledger.wallet_balance(wallet_id),
        "savings_total": ledger.wallet_savings_total(wallet_id),
    }


@app.get("/api/wallets/{wallet_id}/summary")
def wallet_summary(wallet_id: int, db: Session = Depends(get_db)):
    try:
        return WalletService(db).summary(wallet_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Savings goals


@app.get("/api/goals")
def list_goals(db: Session = Depends(get_db)):
    svc = GoalService(db)
    return [svc.progress(goal.id) for goal in svc.list_all()]


@app.post("/api/goals", status_code=201, dependencies=[Depends(require_csrf)])
def create_goal(payload: SavingsGoalIn, db: Session = Depends(get_db)):
    try:
        goal = GoalService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return goal_to_dict(goal)


@app.get("/api/goals/{goal_id}")
def get_goal(goal_id: int, db: Session = Depends(get_db)):
    try:
        return GoalService(db).progress(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/goals/{goal_id}", dependencies=[Depends(require_csrf)])
def update_goal(goal_id: int, payload: SavingsGoalIn, db: Session = Depends(get_db)):
    try:
        goal = GoalService(db).update(goal_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return goal_to_dict(goal)


@app.delete("/api/goals/{goal_id}", dependencies=[Depends(require_csrf)])
def delete_goal(goal_id: int, db: Session = Depends(get_db)):
    try:
        removed = GoalService(db).delete(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": goal_id, "entries_removed": removed}


@app.get("/api/goals/{goal_id}/allocation")
def goal_allocation(goal_id: int, db: Session = Depends(get_db)):
    try:
        return AllocationEngine(db).snapshot(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/goals/{goal_id}/max-allocation")
def goal_max_allocation(goal_id: int, wallet_id: int, db: Session = Depends(get_db)):
    try:
        amount = AllocationEngine(db).max_allocation(goal_id, wallet_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"goal_id": goal_id, "wallet_id": wallet_id, "max_allocation": amount}


@app.post("/api/goals/{goal_id}/allocation", dependencies=[Depends(require_csrf)])
def apply_goal_allocation(
    goal_id: int, payload: AllocationIn, db: Session = Depends(get_db)
):
    try:
        result = AllocationEngine(db).apply(goal_id, payload.allocations)
    except ReconciliationError as exc:
        return JSONResponse(
            status_code=409,
            content={
                "detail": str(exc),
                "goal_id": exc.goal_id,
                "state": exc.state.value,
                "actual_allocated": str(exc.actual_allocated),
            },
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "goal_id": result.goal_id,
        "state": result.state.value,
        "allocated_total": result.allocated_total,
        "applied": result.applied,
        "released": result.released,
        "clamped": [
            {
                "wallet_id": clamp.wallet_id,
                "requested": clamp.requested,
                "applied": clamp.applied,
            }
            for clamp in result.clamped
        ],
    }


# Budgets


@app.get("/api/budgets")
def list_budgets(
    month: Optional[str] = None,
    year: Optional[str] = None,
    db: Session = Depends(get_db),
):
    try:
        window = resolve_month(month, year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return BudgetService(db).progress_for_month(window.year, window.month)


@app.post("/api/budgets", dependencies=[Depends(require_csrf)])
def upsert_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).upsert(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget_to_dict(budget)


@app.delete("/api/budgets/{budget_id}", dependencies=[Depends(require_csrf)])
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/budgets/spent")
def budget_spent(
    category: str,
    month: Optional[str] = None,
    year: Optional[str] = None,
    db: Session = Depends(get_db),
):
    try:
        window = resolve_month(month, year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    spent = BudgetService(db).spent(category, window.month, window.year)
    return {
        "category": category,
        "month": window.month,
        "year": window.year,
        "spent": spent,
    }


# Movements


@app.post("/api/transfers", status_code=201, dependencies=[Depends(require_csrf)])
def create_transfer(payload: WalletTransferIn, db: Session = Depends(get_db)):
    try:
        outgoing, incoming = TransferService(db).wallet_to_wallet(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"out": entry_to_dict(outgoing), "in": entry_to_dict(incoming)}


@app.post(
    "/api/savings/deposit", status_code=201, dependencies=[Depends(require_csrf)]
)
def deposit_savings(payload: SavingsMovementIn, db: Session = Depends(get_db)):
    try:
        entry = TransferService(db).deposit_savings(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return entry_to_dict(entry)


@app.post(
    "/api/savings/withdraw", status_code=201, dependencies=[Depends(require_csrf)]
)
def withdraw_savings(payload: SavingsMovementIn, db: Session = Depends(get_db)):
    try:
        entry = TransferService(db).withdraw_savings(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return entry_to_dict(entry)


@app.post("/api/ingest", status_code=201, dependencies=[Depends(require_csrf)])
def ingest_entry(payload: IngestEntryIn, db: Session = Depends(get_db)):
    try:
        entry = IngestService(db).ingest(payload)
    except EntryValidationError as exc:
        raise http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info(f"ingest: entry={entry.id} wallet={entry.wallet_id} tag={entry.tag}")
    return entry_to_dict(entry)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()

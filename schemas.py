from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import EntryDirection, EntryKind, TransferKind
from money import from_cents, parse_amount


class EntryIn(BaseModel):
    kind: EntryKind
    amount: Decimal
    direction: Optional[EntryDirection] = None
    wallet_id: Optional[int] = None
    goal_id: Optional[int] = None
    tag: Optional[str] = Field(default=None, max_length=100)
    transfer_kind: Optional[TransferKind] = None
    description: Optional[str] = Field(default=None, max_length=200)
    occurred_at: Optional[datetime] = None


class EntryPatch(BaseModel):
    """Partial edit; only fields explicitly present are applied."""

    model_config = ConfigDict(extra="forbid")

    kind: Optional[EntryKind] = None
    amount: Optional[Decimal] = None
    direction: Optional[EntryDirection] = None
    wallet_id: Optional[int] = None
    goal_id: Optional[int] = None
    tag: Optional[str] = Field(default=None, max_length=100)
    transfer_kind: Optional[TransferKind] = None
    description: Optional[str] = Field(default=None, max_length=200)
    occurred_at: Optional[datetime] = None


class WalletIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=40)


class SavingsGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_amount: Decimal = Field(..., gt=0)
    target_date: Optional[date] = None


class BudgetIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., ge=0)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)


class WalletTransferIn(BaseModel):
    from_wallet_id: int
    to_wallet_id: int
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=200)
    occurred_at: Optional[datetime] = None


class SavingsMovementIn(BaseModel):
    wallet_id: int
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=200)
    occurred_at: Optional[datetime] = None


class AllocationIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    allocations: dict[int, Decimal] = Field(default_factory=dict)


class IngestEntryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["income", "expense"] = "expense"
    amount: Decimal = Field(..., gt=0)
    note: str = Field(..., min_length=1, max_length=200)
    wallet: Optional[str] = Field(default=None, max_length=100)
    category: Optional[str] = Field(default=None, max_length=100)
    occurred_at: Optional[datetime] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _typed_amount(cls, value):
        if isinstance(value, str):
            return from_cents(parse_amount(value))
        return value

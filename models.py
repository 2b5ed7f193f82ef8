from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class EntryKind(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"
    savings = "savings"


class EntryDirection(str, Enum):
    inflow = "in"
    outflow = "out"


ENTRY_DIRECTION_ENUM = SAEnum(
    EntryDirection,
    name="entrydirection",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TransferKind(str, Enum):
    wallet_to_wallet = "wallet_to_wallet"
    wallet_to_savings = "wallet_to_savings"
    savings_to_wallet = "savings_to_wallet"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Wallet(Base, TimestampMixin):
    __tablename__ = "wallets"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_wallet_user_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    icon: Mapped[Optional[str]] = mapped_column(String(40))

    entries: Mapped[list["Entry"]] = relationship("Entry", back_populates="wallet")


class SavingsGoal(Base, TimestampMixin):
    __tablename__ = "savings_goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    target_date: Mapped[Optional[date]] = mapped_column(Date)

    entries: Mapped[list["Entry"]] = relationship("Entry", back_populates="goal")

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_goal_user_name"),
        CheckConstraint(
            "target_amount_cents > 0", name="ck_goal_target_amount_positive"
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "category", "month", "year", name="uq_budget_user_category_month"
        ),
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        Index("ix_budget_user_month", "user_id", "year", "month"),
    )


class Entry(Base):
    __tablename__ = "entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    kind: Mapped[EntryKind] = mapped_column(SAEnum(EntryKind), nullable=False)
    direction: Mapped[EntryDirection] = mapped_column(
        ENTRY_DIRECTION_ENUM, nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("wallets.id", ondelete="SET NULL")
    )
    goal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_goals.id", ondelete="SET NULL")
    )
    tag: Mapped[Optional[str]] = mapped_column(String(100))
    transfer_kind: Mapped[Optional[TransferKind]] = mapped_column(
        SAEnum(TransferKind)
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    wallet: Mapped[Optional["Wallet"]] = relationship(
        "Wallet", back_populates="entries"
    )
    goal: Mapped[Optional["SavingsGoal"]] = relationship(
        "SavingsGoal", back_populates="entries"
    )

    __table_args__ = (
        Index("ix_entries_user_wallet", "user_id", "wallet_id"),
        Index("ix_entries_user_goal", "user_id", "goal_id"),
        Index("ix_entries_user_tag_occurred", "user_id", "tag", "occurred_at"),
        CheckConstraint("amount_cents > 0", name="ck_entries_amount_positive"),
        CheckConstraint(
            "goal_id IS NULL OR kind = 'savings'", name="ck_entries_goal_savings_only"
        ),
    )

    @property
    def is_allocation(self) -> bool:
        return self.kind == EntryKind.savings and self.goal_id is not None

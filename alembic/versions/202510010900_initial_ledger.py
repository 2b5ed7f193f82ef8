"""initial ledger schema

Revision ID: 202510010900
Revises:
Create Date: 2025-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202510010900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("color", sa.String(length=9)),
        sa.Column("icon", sa.String(length=40)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_wallet_user_name"),
    )

    op.create_table(
        "savings_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column("target_date", sa.Date()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_goal_user_name"),
        sa.CheckConstraint(
            "target_amount_cents > 0", name="ck_goal_target_amount_positive"
        ),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id", "category", "month", "year", name="uq_budget_user_category_month"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
    )
    op.create_index("ix_budget_user_month", "budgets", ["user_id", "year", "month"])

    op.create_table(
        "entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "kind",
            sa.Enum("income", "expense", "transfer", "savings", name="entrykind"),
            nullable=False,
        ),
        sa.Column(
            "direction", sa.Enum("in", "out", name="entrydirection"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "wallet_id",
            sa.Integer(),
            sa.ForeignKey("wallets.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "goal_id",
            sa.Integer(),
            sa.ForeignKey("savings_goals.id", ondelete="SET NULL"),
        ),
        sa.Column("tag", sa.String(length=100)),
        sa.Column(
            "transfer_kind",
            sa.Enum(
                "wallet_to_wallet",
                "wallet_to_savings",
                "savings_to_wallet",
                name="transferkind",
            ),
        ),
        sa.Column("description", sa.Text()),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
        sa.CheckConstraint("amount_cents > 0", name="ck_entries_amount_positive"),
        sa.CheckConstraint(
            "goal_id IS NULL OR kind = 'savings'", name="ck_entries_goal_savings_only"
        ),
    )
    op.create_index("ix_entries_user_wallet", "entries", ["user_id", "wallet_id"])
    op.create_index("ix_entries_user_goal", "entries", ["user_id", "goal_id"])
    op.create_index(
        "ix_entries_user_tag_occurred", "entries", ["user_id", "tag", "occurred_at"]
    )


def downgrade():
    op.drop_index("ix_entries_user_tag_occurred", table_name="entries")
    op.drop_index("ix_entries_user_goal", table_name="entries")
    op.drop_index("ix_entries_user_wallet", table_name="entries")
    op.drop_table("entries")
    op.drop_index("ix_budget_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("savings_goals")
    op.drop_table("wallets")

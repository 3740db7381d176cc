"""initial budget schema

Revision ID: 202501010000
Revises:
Create Date: 2025-01-01 00:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202501010000"
down_revision = None
branch_labels = None
depends_on = None


CATEGORY = sa.Enum("need", "want", "culture", "unexpected", name="spendcategory")
FREQUENCY = sa.Enum(
    "daily", "weekly", "fortnightly", "monthly", name="schedulefrequency"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "periods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("goals", sa.Text(), nullable=False, server_default=""),
        sa.Column("target_spend_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "target_savings_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("closed_at", sa.DateTime()),
        sa.Column("reflection", sa.Text(), nullable=False, server_default=""),
        *_timestamps(),
        sa.CheckConstraint("end_date >= start_date", name="ck_period_window"),
        sa.CheckConstraint("target_spend_cents >= 0", name="ck_period_target_spend"),
    )
    op.create_index(
        "uq_period_one_open_per_account",
        "periods",
        ["account_id"],
        unique=True,
        sqlite_where=sa.text("closed_at IS NULL"),
        postgresql_where=sa.text("closed_at IS NULL"),
    )
    op.create_index("ix_periods_account_start", "periods", ["account_id", "start_date"])

    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "period_id", sa.Integer(), sa.ForeignKey("periods.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("name_key", sa.String(length=50), nullable=False),
        sa.Column("spending_limit_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("period_id", "name_key", name="uq_wallet_period_name"),
        sa.CheckConstraint("spending_limit_cents >= 0", name="ck_wallet_limit_positive"),
    )
    op.create_index(
        "uq_wallet_one_default_per_period",
        "wallets",
        ["period_id"],
        unique=True,
        sqlite_where=sa.text("is_default = 1"),
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=50), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("account_id", "name", name="uq_tag_account_name"),
    )

    op.create_table(
        "recurring_spends",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "wallet_id",
            sa.Integer(),
            sa.ForeignKey("wallets.id", ondelete="SET NULL"),
        ),
        sa.Column("wallet_name", sa.String(length=50)),
        sa.Column("description", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", CATEGORY, nullable=False),
        sa.Column("tags_json", sa.Text()),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("day_of_week", sa.Integer()),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_recurring_amount_positive"),
    )
    op.create_index(
        "ix_recurring_account_active", "recurring_spends", ["account_id", "active"]
    )

    op.create_table(
        "spends",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "period_id", sa.Integer(), sa.ForeignKey("periods.id"), nullable=False
        ),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id")),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", CATEGORY, nullable=False),
        sa.Column("description", sa.String(length=100), nullable=False, server_default=""),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "origin_rule_id",
            sa.Integer(),
            sa.ForeignKey("recurring_spends.id", ondelete="SET NULL"),
        ),
        sa.Column("occurrence_date", sa.Date()),
        sa.Column(
            "copied_from_id",
            sa.Integer(),
            sa.ForeignKey("spends.id", ondelete="SET NULL"),
        ),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint(
            "period_id",
            "origin_rule_id",
            "occurrence_date",
            name="uq_spend_rule_occurrence",
        ),
        sa.UniqueConstraint("period_id", "copied_from_id", name="uq_spend_copied_from"),
        sa.CheckConstraint("amount_cents > 0", name="ck_spends_amount_positive"),
    )
    op.create_index("ix_spends_period_wallet", "spends", ["period_id", "wallet_id"])
    op.create_index("ix_spends_account_date", "spends", ["account_id", "date"])

    op.create_table(
        "spend_tags",
        sa.Column(
            "spend_id", sa.Integer(), sa.ForeignKey("spends.id"), primary_key=True
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )


def downgrade() -> None:
    op.drop_table("spend_tags")
    op.drop_index("ix_spends_account_date", table_name="spends")
    op.drop_index("ix_spends_period_wallet", table_name="spends")
    op.drop_table("spends")
    op.drop_index("ix_recurring_account_active", table_name="recurring_spends")
    op.drop_table("recurring_spends")
    op.drop_table("tags")
    op.drop_index("uq_wallet_one_default_per_period", table_name="wallets")
    op.drop_table("wallets")
    op.drop_index("ix_periods_account_start", table_name="periods")
    op.drop_index("uq_period_one_open_per_account", table_name="periods")
    op.drop_table("periods")

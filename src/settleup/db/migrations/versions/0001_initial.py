"""ledger schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scopes",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("kind", sa.Text(), nullable=False, server_default="group"),
        sa.Column("version", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.CheckConstraint("kind in ('group','friend_pair')", name="scopes_kind_check"),
    )

    op.create_table(
        "scope_members",
        sa.Column("scope_id", sa.Text(), sa.ForeignKey("scopes.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("participant_id", sa.Text(), primary_key=True),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("scope_id", sa.Text(), sa.ForeignKey("scopes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("payer_id", sa.Text(), nullable=False),
        sa.Column("title", sa.Text()),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("split_method", sa.Text(), nullable=False),
        sa.Column("replaces", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount_minor > 0", name="expenses_amount_positive"),
    )
    op.create_index("ix_expenses_scope_id", "expenses", ["scope_id"])

    op.create_table(
        "expense_splits",
        sa.Column("expense_id", sa.Text(), sa.ForeignKey("expenses.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("participant_id", sa.Text(), primary_key=True),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.CheckConstraint("amount_minor >= 0", name="expense_splits_amount_non_negative"),
    )

    op.create_table(
        "settlements",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("scope_id", sa.Text(), sa.ForeignKey("scopes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("from_participant", sa.Text(), nullable=False),
        sa.Column("to_participant", sa.Text(), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("paid_minor", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("note", sa.Text()),
        sa.Column("method", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status in ('pending','partially_paid','completed','cancelled')",
            name="settlements_status_check",
        ),
        sa.CheckConstraint("amount_minor > 0", name="settlements_amount_positive"),
        sa.CheckConstraint("paid_minor >= 0 AND paid_minor <= amount_minor", name="settlements_paid_range"),
    )
    op.create_index("ix_settlements_scope_id", "settlements", ["scope_id"])

    op.create_table(
        "settlement_payments",
        sa.Column("idempotency_key", sa.Text(), primary_key=True),
        sa.Column("settlement_id", sa.Text(), sa.ForeignKey("settlements.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("settlement_payments")
    op.drop_index("ix_settlements_scope_id", table_name="settlements")
    op.drop_table("settlements")
    op.drop_table("expense_splits")
    op.drop_index("ix_expenses_scope_id", table_name="expenses")
    op.drop_table("expenses")
    op.drop_table("scope_members")
    op.drop_table("scopes")

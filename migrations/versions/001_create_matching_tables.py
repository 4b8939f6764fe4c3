"""Create ledger and reconciliation tables.

Revision ID: 001
Revises:
Create Date: 2026-10-16

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONB = postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("bank_account_ref", sa.String(100), nullable=True),
        sa.Column("last_reconciled_date", sa.Date(), nullable=True),
        sa.Column("last_reconciled_balance", sa.Numeric(15, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "account_shares",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(20), server_default="viewer"),
    )
    op.create_index(
        "idx_account_shares_user", "account_shares", ["account_id", "user_id"], unique=True
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("reference", sa.String(255), nullable=True),
        sa.Column("bank_category", sa.String(100), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("is_reviewed", sa.Boolean(), server_default="false"),
        sa.Column("is_deleted", sa.Boolean(), server_default="false"),
        sa.Column("transfer_id", sa.String(36), nullable=True),
        sa.Column("is_transfer_source", sa.Boolean(), nullable=True),
        sa.Column("related_transaction_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_tx_account_date", "transactions", ["account_id", "date"])
    op.create_index("idx_tx_user_date", "transactions", ["user_id", "date"])
    op.create_index("idx_tx_external_id", "transactions", ["external_id"])
    op.create_index(
        "idx_tx_transfer",
        "transactions",
        ["transfer_id"],
        postgresql_where=sa.text("transfer_id IS NOT NULL"),
    )

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("transfer_id", sa.String(36), nullable=False, unique=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), server_default="completed"),
        sa.Column("source_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("destination_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "duplicate_dismissals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("transaction_ids", JSONB, nullable=False),
        sa.Column("member_key", sa.String(1000), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "idx_dismissals_user_key", "duplicate_dismissals", ["user_id", "member_key"], unique=True
    )

    op.create_table(
        "reconciliation_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("statement_end_date", sa.Date(), nullable=False),
        sa.Column("statement_end_balance", sa.Numeric(15, 2), nullable=False),
        sa.Column("calculated_balance", sa.Numeric(15, 2), nullable=True),
        sa.Column("status", sa.String(20), server_default="in_progress"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_recon_sessions_account",
        "reconciliation_sessions",
        ["account_id", "statement_end_date"],
    )
    op.create_index("idx_recon_sessions_user", "reconciliation_sessions", ["user_id"])

    op.create_table(
        "reconciliation_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.Integer(),
            sa.ForeignKey("reconciliation_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("item_type", sa.String(30), nullable=False),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("bank_provider", sa.String(50), nullable=True),
        sa.Column("bank_reference", JSONB, nullable=True),
        sa.Column("match_confidence", sa.Numeric(5, 4), nullable=True),
        sa.Column("match_method", sa.String(20), nullable=True),
        sa.Column("match_reasons", JSONB, nullable=True),
        sa.Column("is_approved", sa.Boolean(), server_default="false"),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "idx_recon_items_session", "reconciliation_items", ["session_id", "item_type"]
    )
    op.create_index("idx_recon_items_tx", "reconciliation_items", ["transaction_id"])

    op.create_table(
        "reconciliation_audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.Integer(),
            sa.ForeignKey("reconciliation_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("details", JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "idx_recon_audit_session", "reconciliation_audit_log", ["session_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_table("reconciliation_audit_log")
    op.drop_table("reconciliation_items")
    op.drop_table("reconciliation_sessions")
    op.drop_table("duplicate_dismissals")
    op.drop_table("transfers")
    op.drop_table("transactions")
    op.drop_table("account_shares")
    op.drop_table("accounts")

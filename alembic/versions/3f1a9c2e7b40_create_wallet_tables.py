"""Create wallet account and transaction tables.

Revision ID: 3f1a9c2e7b40
Revises:
Create Date: 2026-10-19 09:00:00.000000

This migration adds:
- wallet_account: one custody address and cached balance per phone number
- wallet_transaction: the ledger of every money movement
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "3f1a9c2e7b40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create wallet_account and wallet_transaction."""
    op.create_table(
        "wallet_account",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("phone_number", sa.String(20), nullable=False),
        sa.Column("custody_address", sa.String(128), nullable=False, unique=True),
        sa.Column(
            "cached_balance",
            sa.Numeric(18, 8),
            nullable=False,
            server_default="0",
            comment="Custody balance as of balance_refreshed_at",
        ),
        sa.Column("balance_refreshed_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_wallet_account_phone_number", "wallet_account", ["phone_number"], unique=True
    )

    op.create_table(
        "wallet_transaction",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("phone_number", sa.String(20), nullable=False),
        # Movement
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Numeric(18, 8), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        # External references
        sa.Column("provider", sa.String(30), nullable=True),
        sa.Column("external_ref", sa.String(128), nullable=True),
        sa.Column("tx_hash", sa.String(128), nullable=True),
        sa.Column(
            "idempotency_key",
            sa.String(64),
            nullable=True,
            unique=True,
            comment="Deduplicates a repeated confirmation",
        ),
        sa.Column(
            "needs_reconciliation",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "metadata",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=True,
            comment="Intended effect, saga stages, provider ids, retry count",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_wallet_transaction_phone_number", "wallet_transaction", ["phone_number"]
    )
    op.create_index(
        "ix_wallet_transaction_external_ref", "wallet_transaction", ["external_ref"]
    )
    op.create_index("ix_wallet_transaction_tx_hash", "wallet_transaction", ["tx_hash"])
    op.create_index(
        "ix_wallet_transaction_phone_created",
        "wallet_transaction",
        ["phone_number", "created_at"],
    )


def downgrade() -> None:
    """Drop wallet tables."""
    op.drop_index("ix_wallet_transaction_phone_created", table_name="wallet_transaction")
    op.drop_index("ix_wallet_transaction_tx_hash", table_name="wallet_transaction")
    op.drop_index("ix_wallet_transaction_external_ref", table_name="wallet_transaction")
    op.drop_index("ix_wallet_transaction_phone_number", table_name="wallet_transaction")
    op.drop_table("wallet_transaction")

    op.drop_index("ix_wallet_account_phone_number", table_name="wallet_account")
    op.drop_table("wallet_account")

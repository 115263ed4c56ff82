"""Transaction model: the ledger of every money movement."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Numeric, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ussd_wallet.database import Base


class TransactionType(str, Enum):
    TRANSFER = "transfer"
    RECEIVE = "receive"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INVESTMENT = "investment"
    REDEMPTION = "redemption"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Transaction(Base):
    """
    Ledger entry for a financial operation.

    Rows are created `pending` before any external call and leave that
    state exactly once through a conditional update (see storage.ledger).
    `meta` holds the full intended effect, provider correlation ids,
    saga stage progress and the retry count.
    """

    __tablename__ = "wallet_transaction"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # Movement
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value
    )

    # External references
    provider: Mapped[str | None] = mapped_column(String(30), nullable=True)
    external_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Client-supplied key that deduplicates a repeated confirmation
    idempotency_key: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True
    )

    # Out-of-band resolution flag (compensation failed, outcome unknown)
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, default=False)

    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON().with_variant(JSONB(), "postgresql"), default=dict
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("ix_wallet_transaction_external_ref", "external_ref"),
        Index("ix_wallet_transaction_tx_hash", "tx_hash"),
        Index("ix_wallet_transaction_phone_created", "phone_number", "created_at"),
    )

    @property
    def retry_count(self) -> int:
        return int((self.meta or {}).get("retry_count", 0))

    @property
    def is_final(self) -> bool:
        return self.status != TransactionStatus.PENDING.value

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, type={self.type}, "
            f"amount={self.amount} {self.currency}, status={self.status})>"
        )

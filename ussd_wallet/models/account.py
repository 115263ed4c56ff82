"""Account model: one managed custody address per phone number."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ussd_wallet.database import Base


class Account(Base):
    """
    Wallet account keyed by phone number.

    `cached_balance` mirrors the custody balance after every mutation.
    It is a fast-path display value; authorization re-reads custody.
    """

    __tablename__ = "wallet_account"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Identity
    phone_number: Mapped[str] = mapped_column(
        String(20), unique=True, nullable=False, index=True
    )  # normalized, digits only
    custody_address: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)

    # Balance cache
    cached_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 8), nullable=False, default=Decimal("0")
    )
    balance_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Status
    is_active: Mapped[bool] = mapped_column(default=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, phone=***{self.phone_number[-4:]})>"

"""
SQLAlchemy ORM models for the application.
All models must be imported here for Alembic to detect them.
"""

from ussd_wallet.models.account import Account
from ussd_wallet.models.transaction import (
    Transaction,
    TransactionStatus,
    TransactionType,
)

__all__ = [
    "Account",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
]

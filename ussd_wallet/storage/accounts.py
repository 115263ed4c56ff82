"""
Account storage operations.

Accounts are created lazily on a phone number's first interaction, with a
custody address provisioned at the same time.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ussd_wallet.integrations.custody import CustodyClient
from ussd_wallet.logging_config import get_logger, mask_phone
from ussd_wallet.models import Account

logger = get_logger(__name__)


def get_account_by_phone(db: Session, phone_number: str) -> Account | None:
    """
    Get account by phone number.

    Args:
        db: Database session
        phone_number: Normalized phone number (digits only)

    Returns:
        Account or None if not found
    """
    return db.execute(
        select(Account).where(Account.phone_number == phone_number)
    ).scalar_one_or_none()


def get_account_by_address(db: Session, custody_address: str) -> Account | None:
    return db.execute(
        select(Account).where(Account.custody_address == custody_address)
    ).scalar_one_or_none()


def get_or_create_account(
    db: Session,
    phone_number: str,
    custody: CustodyClient,
) -> tuple[Account, bool]:
    """
    Get an existing account or provision a new one.

    Args:
        db: Database session
        phone_number: Normalized phone number
        custody: Custody client used to create the managed address

    Returns:
        (account, is_new)
    """
    account = get_account_by_phone(db, phone_number)
    if account:
        return account, False

    address = custody.create_address(owner_ref=phone_number)
    account = Account(
        phone_number=phone_number,
        custody_address=address,
        cached_balance=Decimal("0"),
        balance_refreshed_at=datetime.utcnow(),
    )
    db.add(account)
    try:
        db.commit()
    except IntegrityError:
        # Another worker created it first
        db.rollback()
        existing = get_account_by_phone(db, phone_number)
        if existing is None:
            raise
        return existing, False

    db.refresh(account)
    logger.info("account_created", account_id=str(account.id), phone=mask_phone(phone_number))
    return account, True


def refresh_cached_balance(db: Session, account: Account, custody: CustodyClient) -> Decimal:
    """
    Re-read the authoritative balance into the cache.

    Returns:
        The authoritative balance
    """
    balance = custody.balance_of(account.custody_address)
    account.cached_balance = balance
    account.balance_refreshed_at = datetime.utcnow()
    db.commit()
    logger.debug(
        "account_balance_refreshed",
        account_id=str(account.id),
        balance=str(balance),
    )
    return balance

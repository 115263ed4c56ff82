"""
Balance lookups for the API and SMS channels.

The custody ledger is authoritative; when it cannot be reached the cached
balance is reported and marked stale.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.orm import Session

from ussd_wallet.errors import ExternalFailure, UnsupportedCurrency
from ussd_wallet.integrations.custody import CustodyClient
from ussd_wallet.integrations.custody.client import VaultPosition
from ussd_wallet.logging_config import get_logger
from ussd_wallet.models import Account
from ussd_wallet.services.fx import CurrencyConverter
from ussd_wallet.storage.accounts import refresh_cached_balance

logger = get_logger(__name__)


@dataclass
class BalanceSnapshot:
    balance: Decimal
    currency: str
    local_currency: str
    local_amount: Decimal | None = None
    positions: list[VaultPosition] = field(default_factory=list)
    stale: bool = False


def balance_snapshot(
    db: Session,
    account: Account,
    custody: CustodyClient,
    converter: CurrencyConverter,
    token: str,
    local_currency: str,
) -> BalanceSnapshot:
    """
    Read the wallet balance, vault positions and local-currency equivalent.

    Args:
        db: Database session (the cached balance is refreshed on success)
        account: Wallet owner
        custody: Custody client
        converter: Converter for the local equivalent
        token: Wallet token symbol
        local_currency: Currency of the owner's market

    Returns:
        BalanceSnapshot; `stale` when custody was unavailable
    """
    try:
        balance = refresh_cached_balance(db, account, custody)
        positions = custody.positions(account.custody_address)
        stale = False
    except ExternalFailure as e:
        logger.warning("balance_lookup_failed", account_id=str(account.id), error=str(e))
        balance, positions, stale = account.cached_balance or Decimal("0"), [], True

    try:
        local_amount = converter.convert(balance, token, local_currency).amount
    except UnsupportedCurrency:
        local_amount = None

    return BalanceSnapshot(
        balance=balance,
        currency=token,
        local_currency=local_currency,
        local_amount=local_amount,
        positions=positions,
        stale=stale,
    )

"""
Currency conversion between local mobile-money currencies and the token.

Exactly one conversion function is registered per (source, target) pair.
Pairs with no registered function raise UnsupportedCurrency; nothing is
inferred by chaining or inverting at lookup time.

Usage:
    >>> converter = CurrencyConverter.from_rates({"KES": Decimal("130")}, token="USDX")
    >>> converter.convert(Decimal("1000"), "KES", "USDX").amount
    Decimal('7.69')
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

from ussd_wallet.errors import UnsupportedCurrency
from ussd_wallet.logging_config import get_logger

logger = get_logger(__name__)

TWO_PLACES = Decimal("0.01")

ConversionFn = Callable[[Decimal], Decimal]


@dataclass
class Conversion:
    """Result of a conversion."""

    source_currency: str
    target_currency: str
    source_amount: Decimal
    amount: Decimal
    rate: Decimal  # target units per source unit

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for ledger metadata."""
        return {
            "source_currency": self.source_currency,
            "target_currency": self.target_currency,
            "source_amount": str(self.source_amount),
            "amount": str(self.amount),
            "rate": str(self.rate),
        }


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class CurrencyConverter:
    """Registry of per-pair conversion functions."""

    def __init__(self):
        self._pairs: dict[tuple[str, str], ConversionFn] = {}

    @classmethod
    def from_rates(cls, rates: dict[str, Decimal], token: str) -> "CurrencyConverter":
        """
        Build a converter from static rates.

        Args:
            rates: Units of local currency per one token, e.g. {"KES": 130}
            token: Token symbol

        Returns:
            Converter with local->token and token->local registered per currency
        """
        converter = cls()
        for currency, rate in rates.items():
            rate = Decimal(str(rate))
            converter.register_pair(currency, token, lambda amount, r=rate: amount / r)
            converter.register_pair(token, currency, lambda amount, r=rate: amount * r)
        return converter

    def register_pair(self, source: str, target: str, fn: ConversionFn) -> None:
        """Register (or replace) the conversion for one direction of a pair."""
        self._pairs[(source.upper(), target.upper())] = fn

    def supports(self, source: str, target: str) -> bool:
        source, target = source.upper(), target.upper()
        return source == target or (source, target) in self._pairs

    def convert(self, amount: Decimal, source: str, target: str) -> Conversion:
        """
        Convert an amount, rounded half-up to 2 decimal places.

        Raises:
            UnsupportedCurrency: No function registered for the pair
        """
        source, target = source.upper(), target.upper()
        if source == target:
            return Conversion(source, target, amount, amount, Decimal("1"))

        fn = self._pairs.get((source, target))
        if fn is None:
            raise UnsupportedCurrency(f"No conversion available from {source} to {target}")

        converted = quantize(fn(Decimal(amount)))
        rate = (converted / amount) if amount else Decimal("0")
        logger.debug(
            "currency_converted",
            source=source,
            target=target,
            amount=str(amount),
            converted=str(converted),
        )
        return Conversion(source, target, Decimal(amount), converted, rate)

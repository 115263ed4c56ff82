"""
Phone number validation for supported markets.

Numbers are normalized to digits only with the country calling code,
e.g. "+254 712 345 678" -> "254712345678".
"""

import re
from dataclasses import dataclass

from ussd_wallet.errors import InvalidPhoneFormat


@dataclass(frozen=True)
class PhonePattern:
    country_code: str
    country: str  # ISO 3166-1 alpha-2
    currency: str  # local mobile-money currency
    pattern: re.Pattern


PHONE_PATTERNS: tuple[PhonePattern, ...] = (
    PhonePattern("254", "KE", "KES", re.compile(r"^254\d{9}$")),
    PhonePattern("255", "TZ", "TZS", re.compile(r"^255\d{9}$")),
    PhonePattern("256", "UG", "UGX", re.compile(r"^256\d{9}$")),
    PhonePattern("234", "NG", "NGN", re.compile(r"^234\d{10,11}$")),
    PhonePattern("233", "GH", "GHS", re.compile(r"^233\d{9}$")),
    PhonePattern("260", "ZM", "ZMW", re.compile(r"^260\d{9}$")),
    PhonePattern("265", "MW", "MWK", re.compile(r"^265\d{9}$")),
)


@dataclass(frozen=True)
class PhoneNumber:
    normalized: str
    country_code: str
    country: str
    currency: str


def _digits(raw: str) -> str:
    return re.sub(r"\D", "", raw or "")


def validate_phone_number(raw: str) -> PhoneNumber:
    """
    Validate and normalize a phone number.

    Args:
        raw: Number in any common format ("+254712345678", "254 712 345678")

    Returns:
        PhoneNumber with the normalized digits and country details

    Raises:
        InvalidPhoneFormat: If no supported country pattern matches
    """
    digits = _digits(raw)
    for candidate in PHONE_PATTERNS:
        if candidate.pattern.match(digits):
            return PhoneNumber(
                normalized=digits,
                country_code=candidate.country_code,
                country=candidate.country,
                currency=candidate.currency,
            )
    raise InvalidPhoneFormat(f"Unsupported phone number format: {raw!r}")


def country_for_phone(phone_number: str) -> str | None:
    """ISO country of a normalized number, or None if unsupported."""
    try:
        return validate_phone_number(phone_number).country
    except InvalidPhoneFormat:
        return None


def expand_local_number(raw: str, country_code: str) -> str:
    """
    Turn a local-format number into international digits.

    "0712345678" with country code "254" -> "254712345678". Numbers that
    already carry a country code are returned as digits unchanged.
    """
    digits = _digits(raw)
    if digits.startswith("0") and not digits.startswith("00"):
        return f"{country_code}{digits[1:]}"
    if digits.startswith("00"):
        return digits[2:]
    return digits

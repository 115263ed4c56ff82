"""
USSD Input Validators.

Each validator takes the raw segment the user typed and returns a
ValidationResult; invalid input is always recoverable by re-prompting.
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any

from ussd_wallet.auth.phone import expand_local_number, validate_phone_number
from ussd_wallet.errors import InvalidPhoneFormat


@dataclass
class ValidationResult:
    """Result of a validation operation."""
    valid: bool
    value: Any = None
    error: str | None = None


# ─────────────────────────────────────────────────────────────────────────────
# Amount Validation
# ─────────────────────────────────────────────────────────────────────────────

# Ledger amounts are Numeric(18, 8)
MAX_AMOUNT_INTEGER_DIGITS = 10


def validate_amount(
    input_text: str,
    minimum: Decimal | None = None,
    maximum: Decimal | None = None,
) -> ValidationResult:
    """
    Validate a positive amount.

    Accepts "1000", "1,000" and "1000.50"; more than two decimals are
    truncated.

    Args:
        input_text: User's input
        minimum: Smallest accepted amount
        maximum: Largest accepted amount (e.g. the cached balance)

    Returns:
        ValidationResult with Decimal amount
    """
    text = input_text.strip().replace(",", "").replace(" ", "")

    try:
        amount = Decimal(text)
    except InvalidOperation:
        return ValidationResult(valid=False, error="Invalid amount. Enter numbers only.")

    if not amount.is_finite() or amount <= 0:
        return ValidationResult(valid=False, error="Amount must be greater than 0.")

    if amount.adjusted() >= MAX_AMOUNT_INTEGER_DIGITS:
        return ValidationResult(valid=False, error="Amount is too large.")

    amount = amount.quantize(Decimal("0.01"), rounding=ROUND_DOWN)
    if amount <= 0:
        return ValidationResult(valid=False, error="Amount must be greater than 0.")

    if minimum is not None and amount < minimum:
        return ValidationResult(valid=False, error=f"Minimum amount is {minimum:,.2f}.")

    if maximum is not None and amount > maximum:
        return ValidationResult(
            valid=False,
            error=f"Insufficient balance. Maximum is {max(maximum, Decimal('0')):,.2f}.",
        )

    return ValidationResult(valid=True, value=amount)


# ─────────────────────────────────────────────────────────────────────────────
# Menu and Code Validation
# ─────────────────────────────────────────────────────────────────────────────

def validate_menu_choice(input_text: str, option_count: int) -> ValidationResult:
    """
    Validate a numbered menu choice.

    Returns:
        ValidationResult with the zero-based index of the choice
    """
    text = input_text.strip()
    if text.isascii() and text.isdigit() and 1 <= int(text) <= option_count:
        return ValidationResult(valid=True, value=int(text) - 1)
    return ValidationResult(valid=False, error=f"Invalid choice. Select 1-{option_count}.")


def validate_otp_code(input_text: str, length: int = 6) -> ValidationResult:
    """Validate the shape of an OTP code (digits, exact length)."""
    code = input_text.strip().replace(" ", "")
    if len(code) != length or not (code.isascii() and code.isdigit()):
        return ValidationResult(valid=False, error=f"Enter the {length}-digit code.")
    return ValidationResult(valid=True, value=code)


# ─────────────────────────────────────────────────────────────────────────────
# Recipient Validation
# ─────────────────────────────────────────────────────────────────────────────

def validate_recipient(input_text: str, sender_country_code: str) -> ValidationResult:
    """
    Validate a recipient phone number.

    Local numbers ("0712345678") are expanded with the sender's country
    calling code.

    Args:
        input_text: User's input
        sender_country_code: Calling code of the sender, e.g. "254"

    Returns:
        ValidationResult with the normalized number
    """
    candidate = expand_local_number(input_text, sender_country_code)
    try:
        phone = validate_phone_number(candidate)
    except InvalidPhoneFormat:
        return ValidationResult(valid=False, error="Invalid phone number.")
    return ValidationResult(valid=True, value=phone.normalized)

"""
Error taxonomy for the wallet.

Every domain failure derives from WalletError and carries a stable `code`
so API routes and the USSD menu can map it to a response without string
matching.
"""

from decimal import Decimal


class WalletError(Exception):
    """Base exception for wallet errors."""

    code = "wallet_error"

    def __init__(self, message: str = "", code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────

class ValidationError(WalletError):
    """Malformed input. Always recoverable by re-prompting."""

    code = "validation_error"


class InvalidPhoneFormat(ValidationError):
    """Phone number does not match a supported country pattern."""

    code = "invalid_phone_format"


class DraftDecodeError(ValidationError):
    """Persisted session data could not be decoded into a flow draft."""

    code = "draft_decode_error"


# ─────────────────────────────────────────────────────────────────────────────
# Authorization
# ─────────────────────────────────────────────────────────────────────────────

class AuthError(WalletError):
    """Authorization gate failure."""

    code = "auth_error"


class AuthRequired(AuthError):
    """No active auth session for the phone number."""

    code = "requires_auth"


class AuthStale(AuthError):
    """Auth session exists but the recent-auth marker has expired."""

    code = "requires_recent_auth"


class Forbidden(AuthError):
    code = "forbidden"


class RateLimited(AuthError):
    """Too many requests in the current window."""

    code = "rate_limited"

    def __init__(self, message: str = "", retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class OtpNotFound(AuthError):
    """No OTP issued for this phone and purpose, or it expired."""

    code = "otp_not_found"


class InvalidOtp(AuthError):
    code = "invalid_otp"

    def __init__(self, message: str = "", remaining_attempts: int = 0):
        super().__init__(message)
        self.remaining_attempts = remaining_attempts


class TooManyAttempts(AuthError):
    """Attempt budget exhausted. The code is invalidated."""

    code = "too_many_attempts"


class AuthSessionNotFound(AuthError):
    code = "session_not_found"


class AuthSessionExpired(AuthError):
    code = "session_expired"


# ─────────────────────────────────────────────────────────────────────────────
# Business rules
# ─────────────────────────────────────────────────────────────────────────────

class BusinessRuleError(WalletError):
    """Rejected by a business rule before any external call."""

    code = "business_rule"


class InsufficientBalance(BusinessRuleError):
    code = "insufficient_balance"

    def __init__(
        self,
        message: str = "",
        available: Decimal | None = None,
        required: Decimal | None = None,
    ):
        super().__init__(message)
        self.available = available
        self.required = required


class UnsupportedCurrency(BusinessRuleError):
    code = "unsupported_currency"


class LimitExceeded(BusinessRuleError):
    code = "limit_exceeded"


class RecipientNotFound(BusinessRuleError):
    code = "recipient_not_found"


# ─────────────────────────────────────────────────────────────────────────────
# External systems
# ─────────────────────────────────────────────────────────────────────────────

class ExternalFailure(WalletError):
    """A custody or settlement provider call failed."""

    code = "external_failure"


class ExternalTimeout(ExternalFailure):
    """The call timed out and its outcome is unknown."""

    code = "external_timeout"


class SmsDeliveryError(ExternalFailure):
    code = "sms_delivery_failed"


# ─────────────────────────────────────────────────────────────────────────────
# Ledger and session state
# ─────────────────────────────────────────────────────────────────────────────

class ReconciliationPending(WalletError):
    """Outcome unknown; the transaction stays pending until reconciled."""

    code = "reconciliation_pending"


class InvalidTransactionState(WalletError):
    code = "invalid_transaction_state"


class TransactionNotFound(WalletError):
    code = "transaction_not_found"


class SessionConflict(WalletError):
    """Session was modified concurrently; compare-and-set lost."""

    code = "session_conflict"

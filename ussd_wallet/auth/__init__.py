"""Authorization gate: phone validation, OTPs, auth sessions and recent-auth freshness."""

from ussd_wallet.auth.gate import (
    SENSITIVE_OPERATIONS,
    AuthorizationGate,
    AuthorizationResult,
    AuthSession,
    AuthStatus,
)
from ussd_wallet.auth.phone import PhoneNumber, validate_phone_number

__all__ = [
    "SENSITIVE_OPERATIONS",
    "AuthSession",
    "AuthStatus",
    "AuthorizationGate",
    "AuthorizationResult",
    "PhoneNumber",
    "validate_phone_number",
]

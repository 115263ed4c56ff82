"""
Authentication endpoints.

OTP issue and verification for API clients; a verified code yields a
bearer token backed by an auth session in Redis. `/auth/authorize` reports
what the gate would decide for an operation.
"""

from datetime import datetime

from fastapi import APIRouter

from ussd_wallet.api.deps import BearerToken, CurrentSession, DbSession, Gate, to_http_exception
from ussd_wallet.errors import WalletError
from ussd_wallet.logging_config import get_logger, mask_phone
from ussd_wallet.schemas import (
    AuthorizeRequest,
    AuthorizeResponse,
    AuthSessionResponse,
    LogoutResponse,
    OtpIssuedResponse,
    OtpRequest,
    OtpVerifyRequest,
    TokenResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/otp", response_model=OtpIssuedResponse)
def request_otp(body: OtpRequest, gate: Gate) -> OtpIssuedResponse:
    """
    Send a one-time code by SMS.

    Raises:
        HTTPException: 400 invalid phone, 429 rate limited, 502 SMS failure
    """
    try:
        issued = gate.issue_otp(body.phone_number, body.purpose)
    except WalletError as e:
        logger.warning("api_otp_rejected", phone=mask_phone(body.phone_number), code=e.code)
        raise to_http_exception(e) from e

    return OtpIssuedResponse(
        phone_number=issued.phone_number,
        purpose=issued.purpose,
        expires_at=issued.expires_at,
    )


@router.post("/verify", response_model=TokenResponse)
def verify_otp(body: OtpVerifyRequest, gate: Gate) -> TokenResponse:
    """
    Verify a code and open an auth session.

    Raises:
        HTTPException: 400 invalid phone, 401 wrong or expired code,
            429 attempt budget spent
    """
    try:
        gate.verify_otp(body.phone_number, body.code, body.purpose)
        session = gate.create_auth_session(body.phone_number)
    except WalletError as e:
        logger.warning("api_verify_rejected", phone=mask_phone(body.phone_number), code=e.code)
        raise to_http_exception(e) from e

    return TokenResponse(
        token=session.token,
        expires_at=datetime.fromisoformat(session.expires_at),
    )


@router.get("/session", response_model=AuthSessionResponse)
def current_session(session: CurrentSession) -> AuthSessionResponse:
    return AuthSessionResponse(
        phone_number=session.phone_number,
        purpose=session.purpose,
        created_at=datetime.fromisoformat(session.created_at),
        expires_at=datetime.fromisoformat(session.expires_at),
    )


@router.post("/logout", response_model=LogoutResponse)
def logout(gate: Gate, token: BearerToken) -> LogoutResponse:
    """Invalidate the bearer session. Unknown tokens report success=False."""
    return LogoutResponse(success=gate.invalidate_auth_session(token))


@router.post("/authorize", response_model=AuthorizeResponse)
def authorize_operation(
    body: AuthorizeRequest,
    db: DbSession,
    gate: Gate,
    session: CurrentSession,
) -> AuthorizeResponse:
    """
    Report whether the caller may run an operation now.

    A `requires_recent_auth` answer means a fresh code must be verified
    before the operation is attempted.
    """
    decision = gate.authorize(db, session.phone_number, body.operation)
    return AuthorizeResponse(
        operation=body.operation,
        status=decision.status.value,
        authorized=decision.authorized,
    )

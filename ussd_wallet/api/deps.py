"""
FastAPI dependencies for dependency injection.

Provides the service container, database sessions, bearer authentication
and request-scoped services.
"""

from typing import Annotated, Generator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from ussd_wallet.auth import AuthorizationGate, AuthSession
from ussd_wallet.container import ServiceContainer
from ussd_wallet.database import session_scope
from ussd_wallet.errors import (
    AuthError,
    AuthSessionExpired,
    AuthSessionNotFound,
    BusinessRuleError,
    ExternalFailure,
    ExternalTimeout,
    Forbidden,
    InvalidTransactionState,
    RateLimited,
    ReconciliationPending,
    SessionConflict,
    TooManyAttempts,
    TransactionNotFound,
    ValidationError,
    WalletError,
)
from ussd_wallet.logging_config import get_logger
from ussd_wallet.services.orchestrator import MoneyMovementOrchestrator
from ussd_wallet.services.reconciler import WebhookReconciler
from ussd_wallet.services.sms_commands import SmsCommandService
from ussd_wallet.services.ussd_service import UssdService

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Service Container
# ─────────────────────────────────────────────────────────────────────────────

def get_container(request: Request) -> ServiceContainer:
    """
    Dependency to get the process-wide service container.

    The lifespan stores it on `app.state.container` at startup.
    """
    return request.app.state.container


Container = Annotated[ServiceContainer, Depends(get_container)]


# ─────────────────────────────────────────────────────────────────────────────
# Database Session
# ─────────────────────────────────────────────────────────────────────────────

def get_db(container: Container) -> Generator[Session, None, None]:
    """
    Dependency to get a database session.

    Yields:
        SQLAlchemy Session
    """
    yield from session_scope(container.session_factory)


# Type alias for cleaner dependency injection
DbSession = Annotated[Session, Depends(get_db)]


# ─────────────────────────────────────────────────────────────────────────────
# Services
# ─────────────────────────────────────────────────────────────────────────────

def get_gate(container: Container) -> AuthorizationGate:
    return container.gate


Gate = Annotated[AuthorizationGate, Depends(get_gate)]


def get_orchestrator(container: Container, db: DbSession) -> MoneyMovementOrchestrator:
    return container.orchestrator(db)


Orchestrator = Annotated[MoneyMovementOrchestrator, Depends(get_orchestrator)]


def get_reconciler(container: Container, db: DbSession) -> WebhookReconciler:
    return container.reconciler(db)


Reconciler = Annotated[WebhookReconciler, Depends(get_reconciler)]


def get_ussd_service(container: Container, db: DbSession) -> UssdService:
    return container.ussd_service(db)


UssdServiceDep = Annotated[UssdService, Depends(get_ussd_service)]


def get_sms_commands(container: Container, db: DbSession) -> SmsCommandService:
    return container.sms_commands(db)


SmsCommands = Annotated[SmsCommandService, Depends(get_sms_commands)]


# ─────────────────────────────────────────────────────────────────────────────
# Bearer Authentication
# ─────────────────────────────────────────────────────────────────────────────

def get_bearer_token(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """
    Extract the token from an `Authorization: Bearer <token>` header.

    Raises:
        HTTPException: 401 if the header is missing or malformed
    """
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token.strip()


BearerToken = Annotated[str, Depends(get_bearer_token)]


def get_current_session(gate: Gate, token: BearerToken) -> AuthSession:
    """
    Resolve the bearer token to an active auth session.

    Raises:
        HTTPException: 401 if the session is unknown or expired
    """
    try:
        return gate.validate_auth_session(token)
    except (AuthSessionNotFound, AuthSessionExpired) as e:
        logger.info("api_auth_rejected", code=e.code)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


CurrentSession = Annotated[AuthSession, Depends(get_current_session)]


# ─────────────────────────────────────────────────────────────────────────────
# Error Translation
# ─────────────────────────────────────────────────────────────────────────────

# Most specific first
_ERROR_STATUS: list[tuple[type[WalletError], int]] = [
    (RateLimited, status.HTTP_429_TOO_MANY_REQUESTS),
    (TooManyAttempts, status.HTTP_429_TOO_MANY_REQUESTS),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (TransactionNotFound, status.HTTP_404_NOT_FOUND),
    (InvalidTransactionState, status.HTTP_409_CONFLICT),
    (SessionConflict, status.HTTP_409_CONFLICT),
    (ReconciliationPending, status.HTTP_409_CONFLICT),
    (BusinessRuleError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ExternalTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
    (ExternalFailure, status.HTTP_502_BAD_GATEWAY),
]


def error_status(error: WalletError) -> int:
    """HTTP status for a domain error."""
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def to_http_exception(error: WalletError) -> HTTPException:
    """
    Translate a domain error into an HTTPException.

    The detail carries the stable error code so clients never match on
    message text.
    """
    headers = None
    if isinstance(error, RateLimited) and error.retry_after:
        headers = {"Retry-After": str(error.retry_after)}
    return HTTPException(
        status_code=error_status(error),
        detail={"code": error.code, "message": error.message},
        headers=headers,
    )

"""
Transaction endpoints.

Every route requires a bearer session and only exposes the caller's own
ledger rows; someone else's transaction id answers 404. Routes that move
money pass the same authorization policy as the USSD menu.
"""

from decimal import Decimal
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy.orm import Session

from ussd_wallet.api.deps import (
    Container,
    CurrentSession,
    DbSession,
    Gate,
    Orchestrator,
    to_http_exception,
)
from ussd_wallet.auth import (
    AuthorizationGate,
    AuthSession,
    AuthStatus,
    validate_phone_number,
)
from ussd_wallet.errors import WalletError
from ussd_wallet.flows.validators import validate_amount
from ussd_wallet.logging_config import get_logger, mask_phone
from ussd_wallet.models import Transaction
from ussd_wallet.schemas import (
    BalanceResponse,
    CurrenciesResponse,
    DepositRequest,
    MovementResponse,
    PositionResponse,
    QuoteResponse,
    ReconcileResponse,
    TransactionListResponse,
    TransactionResponse,
    TransferRequest,
    WithdrawRequest,
)
from ussd_wallet.services.balance import balance_snapshot
from ussd_wallet.storage import ledger
from ussd_wallet.storage.accounts import get_account_by_phone

logger = get_logger(__name__)

router = APIRouter(prefix="/transactions", tags=["transactions"])

# Operation names recorded in metadata that authorize as another operation
_AUTH_OPERATION = {
    "redeem": "withdraw",
    "withdrawal": "withdraw",
    "redemption": "withdraw",
    "investment": "invest",
}

_DENIED_MESSAGES = {
    AuthStatus.REQUIRES_AUTH: "Authentication required",
    AuthStatus.REQUIRES_RECENT_AUTH: "Recent authentication required",
    AuthStatus.FORBIDDEN: "Operation not permitted",
}


def _owned_transaction(db, session: AuthSession, transaction_id: UUID) -> Transaction:
    transaction = ledger.get_transaction(db, transaction_id)
    if transaction is None or transaction.phone_number != session.phone_number:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return transaction


def _require_authorized(
    db: Session,
    gate: AuthorizationGate,
    session: AuthSession,
    operation: str,
) -> None:
    """
    Run the gate policy for an operation.

    Raises:
        HTTPException: 403 with the gate's status as the error code
    """
    decision = gate.authorize(db, session.phone_number, operation)
    if decision.authorized:
        return
    logger.info(
        "api_operation_unauthorized",
        phone=mask_phone(session.phone_number),
        operation=operation,
        status=decision.status.value,
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": decision.status.value, "message": _DENIED_MESSAGES[decision.status]},
    )


def _checked_amount(amount: Decimal, minimum: Decimal | None = None) -> Decimal:
    result = validate_amount(str(amount), minimum=minimum)
    if not result.valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_amount", "message": result.error},
        )
    return result.value


def _movement(fn, *args, **kwargs) -> MovementResponse:
    try:
        result = fn(*args, **kwargs)
    except WalletError as e:
        raise to_http_exception(e) from e
    return MovementResponse.from_result(result)


@router.get("", response_model=TransactionListResponse)
def list_transactions(
    db: DbSession,
    session: CurrentSession,
    limit: Annotated[int, Query(ge=1, le=50)] = 10,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> TransactionListResponse:
    """Caller's transactions, most recent first."""
    rows = ledger.get_history(db, session.phone_number, limit=limit, offset=offset)
    return TransactionListResponse(
        items=[TransactionResponse.from_model(row) for row in rows],
        limit=limit,
        offset=offset,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Balance and quotes
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    db: DbSession,
    gate: Gate,
    session: CurrentSession,
    container: Container,
) -> BalanceResponse:
    """Wallet balance, vault positions and the local-currency equivalent."""
    _require_authorized(db, gate, session, "balance")
    account = get_account_by_phone(db, session.phone_number)
    phone = validate_phone_number(session.phone_number)

    snapshot = balance_snapshot(
        db,
        account,
        container.custody,
        container.converter,
        container.settings.token_symbol,
        phone.currency,
    )
    return BalanceResponse(
        phone_number=session.phone_number,
        balance=snapshot.balance,
        currency=snapshot.currency,
        local_amount=snapshot.local_amount,
        local_currency=snapshot.local_currency,
        positions=[
            PositionResponse(
                vault_address=p.vault_address,
                vault_name=p.vault_name,
                shares=p.shares,
                assets=p.assets,
            )
            for p in snapshot.positions
        ],
        stale=snapshot.stale,
    )


@router.get("/quote", response_model=QuoteResponse)
def get_quote(
    session: CurrentSession,
    container: Container,
    amount: Annotated[Decimal, Query(gt=0, max_digits=12, decimal_places=2)],
    source: Annotated[str, Query(min_length=3, max_length=5)],
    target: Annotated[str, Query(min_length=3, max_length=5)],
) -> QuoteResponse:
    """Convert an amount at the current rates without moving money."""
    try:
        conversion = container.converter.convert(amount, source, target)
    except WalletError as e:
        raise to_http_exception(e) from e
    return QuoteResponse(
        source_currency=conversion.source_currency,
        target_currency=conversion.target_currency,
        source_amount=conversion.source_amount,
        amount=conversion.amount,
        rate=conversion.rate,
    )


@router.get("/currencies", response_model=CurrenciesResponse)
def list_currencies(session: CurrentSession, container: Container) -> CurrenciesResponse:
    """Local currencies each provider settles that have a conversion rate."""
    token = container.settings.token_symbol
    return CurrenciesResponse(
        token=token,
        providers={
            name: [
                c
                for c in container.providers.get(name).supported_currencies
                if container.converter.supports(c, token)
            ]
            for name in container.providers.names()
        },
    )


# ─────────────────────────────────────────────────────────────────────────────
# Money movement
# ─────────────────────────────────────────────────────────────────────────────

@router.post("/transfer", response_model=MovementResponse)
def create_transfer(
    body: TransferRequest,
    db: DbSession,
    gate: Gate,
    session: CurrentSession,
    orchestrator: Orchestrator,
    container: Container,
) -> MovementResponse:
    """
    Send tokens to another registered number.

    Raises:
        HTTPException: 400 invalid amount or recipient, 403 without recent
            authentication
    """
    _require_authorized(db, gate, session, "transfer")
    amount = _checked_amount(body.amount, container.settings.min_transfer_amount)
    try:
        recipient = validate_phone_number(body.recipient_phone)
    except WalletError as e:
        raise to_http_exception(e) from e

    return _movement(
        orchestrator.transfer,
        session.phone_number,
        recipient.normalized,
        amount,
        idempotency_key=body.idempotency_key,
    )


@router.post("/deposit", response_model=MovementResponse)
def create_deposit(
    body: DepositRequest,
    db: DbSession,
    gate: Gate,
    session: CurrentSession,
    orchestrator: Orchestrator,
    container: Container,
) -> MovementResponse:
    """
    Start a mobile-money collection.

    The response is pending until the provider's webhook settles it.
    """
    _require_authorized(db, gate, session, "deposit")
    amount = _checked_amount(body.amount)
    return _movement(
        orchestrator.initiate_deposit,
        session.phone_number,
        amount,
        body.currency,
        body.provider or container.settings.default_collection_provider,
        idempotency_key=body.idempotency_key,
    )


@router.post("/withdraw", response_model=MovementResponse)
def create_withdrawal(
    body: WithdrawRequest,
    db: DbSession,
    gate: Gate,
    session: CurrentSession,
    orchestrator: Orchestrator,
    container: Container,
) -> MovementResponse:
    """
    Burn tokens and pay out local currency.

    Raises:
        HTTPException: 400 invalid amount, 403 without recent authentication
    """
    _require_authorized(db, gate, session, "withdraw")
    amount = _checked_amount(body.amount, container.settings.min_withdrawal_amount)
    return _movement(
        orchestrator.withdraw,
        session.phone_number,
        amount,
        body.currency,
        body.provider,
        idempotency_key=body.idempotency_key,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Single transaction
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: UUID,
    db: DbSession,
    session: CurrentSession,
) -> TransactionResponse:
    return TransactionResponse.from_model(_owned_transaction(db, session, transaction_id))


@router.post("/{transaction_id}/retry", response_model=MovementResponse)
def retry_transaction(
    transaction_id: UUID,
    db: DbSession,
    session: CurrentSession,
    gate: Gate,
    orchestrator: Orchestrator,
) -> MovementResponse:
    """
    Retry a failed transaction.

    A retry moves money again, so it passes the same authorization policy
    as the original operation.

    Raises:
        HTTPException: 403 without recent authentication, 409 when the
            transaction is not retryable, 422 when the retry cap is reached
    """
    transaction = _owned_transaction(db, session, transaction_id)
    operation = (transaction.meta or {}).get("operation") or transaction.type
    _require_authorized(db, gate, session, _AUTH_OPERATION.get(operation, operation))
    return _movement(orchestrator.retry, transaction.id)


@router.post("/{transaction_id}/cancel", response_model=MovementResponse)
def cancel_transaction(
    transaction_id: UUID,
    db: DbSession,
    session: CurrentSession,
    orchestrator: Orchestrator,
) -> MovementResponse:
    """Cancel a pending transaction that has not reached any external system."""
    transaction = _owned_transaction(db, session, transaction_id)
    return _movement(orchestrator.cancel, transaction.id)


@router.post("/{transaction_id}/reconcile", response_model=ReconcileResponse)
def reconcile_transaction(
    transaction_id: UUID,
    db: DbSession,
    session: CurrentSession,
    orchestrator: Orchestrator,
) -> ReconcileResponse:
    """Ask the provider for the status of a pending leg and apply the answer."""
    transaction = _owned_transaction(db, session, transaction_id)
    try:
        outcome = orchestrator.refresh_status(transaction.id)
    except WalletError as e:
        raise to_http_exception(e) from e

    db.refresh(transaction)
    return ReconcileResponse(
        outcome=outcome.value,
        transaction=TransactionResponse.from_model(transaction),
    )

"""
Pydantic schemas for the wallet HTTP API.
Used by the auth, transaction and webhook routes to validate input and
shape responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ussd_wallet.models import Transaction
from ussd_wallet.services.orchestrator import MovementResult


# ─────────────────────────────────────────────────────────────────────────────
# Authentication
# ─────────────────────────────────────────────────────────────────────────────

class OtpRequest(BaseModel):
    """Request a one-time code by SMS."""

    phone_number: str = Field(
        ...,
        description="Phone number in international format",
        min_length=9,
        max_length=20,
        examples=["+254712345678"],
    )
    purpose: str = Field(
        default="ussd",
        description="What the code authorizes",
        min_length=1,
        max_length=30,
        examples=["ussd", "transfer"],
    )


class OtpVerifyRequest(OtpRequest):
    """Submit a one-time code."""

    code: str = Field(
        ...,
        description="Digits received by SMS",
        min_length=4,
        max_length=10,
        examples=["482913"],
    )


class OtpIssuedResponse(BaseModel):
    phone_number: str
    purpose: str
    expires_at: datetime


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime


class AuthSessionResponse(BaseModel):
    phone_number: str
    purpose: str
    created_at: datetime
    expires_at: datetime


class LogoutResponse(BaseModel):
    success: bool


class AuthorizeRequest(BaseModel):
    """Ask whether the caller may run an operation right now."""

    operation: Literal["balance", "history", "deposit", "transfer", "invest", "withdraw"] = Field(
        ...,
        description="Operation to check",
        examples=["transfer"],
    )


class AuthorizeResponse(BaseModel):
    operation: str
    status: str
    authorized: bool


# ─────────────────────────────────────────────────────────────────────────────
# Transactions
# ─────────────────────────────────────────────────────────────────────────────

class TransactionResponse(BaseModel):
    """Ledger row as exposed to its owner."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    amount: Decimal
    currency: str
    status: str
    provider: str | None = None
    external_ref: str | None = None
    tx_hash: str | None = None
    needs_reconciliation: bool = False
    retry_count: int = 0
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, transaction: Transaction) -> "TransactionResponse":
        meta = transaction.meta or {}
        return cls(
            id=transaction.id,
            type=transaction.type,
            amount=transaction.amount,
            currency=transaction.currency,
            status=transaction.status,
            provider=transaction.provider,
            external_ref=transaction.external_ref,
            tx_hash=transaction.tx_hash,
            needs_reconciliation=bool(transaction.needs_reconciliation),
            retry_count=transaction.retry_count,
            failure_reason=meta.get("failure_reason"),
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        )


class TransactionListResponse(BaseModel):
    items: list[TransactionResponse]
    limit: int
    offset: int


class MovementResponse(BaseModel):
    """Outcome of a money movement, retry or cancel."""

    success: bool
    status: str
    transaction_id: UUID | None = None
    transaction_type: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    tx_hash: str | None = None
    external_ref: str | None = None
    error: str | None = None
    error_code: str | None = None
    needs_reconciliation: bool = False
    duplicate: bool = False

    @classmethod
    def from_result(cls, result: MovementResult) -> "MovementResponse":
        return cls(
            success=result.success,
            status=result.status,
            transaction_id=result.transaction_id,
            transaction_type=result.transaction_type,
            amount=result.amount,
            currency=result.currency,
            tx_hash=result.tx_hash,
            external_ref=result.external_ref,
            error=result.error,
            error_code=result.error_code,
            needs_reconciliation=result.needs_reconciliation,
            duplicate=result.duplicate,
        )


class ReconcileResponse(BaseModel):
    outcome: str
    transaction: TransactionResponse


# Two decimals and at most ten integer digits, matching the USSD amount rules
AmountField = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=2)]


class TransferRequest(BaseModel):
    """Send tokens to another registered number."""

    recipient_phone: str = Field(
        ...,
        description="Recipient phone number in international format",
        min_length=9,
        max_length=20,
        examples=["+254798765432"],
    )
    amount: AmountField
    idempotency_key: str | None = Field(default=None, max_length=64)


class DepositRequest(BaseModel):
    """Collect local currency by mobile money and mint the token equivalent."""

    amount: AmountField
    currency: str = Field(..., min_length=3, max_length=3, examples=["KES"])
    provider: Literal["kotanipay", "yellowcard"] | None = Field(
        default=None,
        description="Collection provider; the configured default when omitted",
    )
    idempotency_key: str | None = Field(default=None, max_length=64)


class WithdrawRequest(BaseModel):
    """Burn tokens and pay out local currency by mobile money."""

    amount: AmountField
    currency: str = Field(..., min_length=3, max_length=3, examples=["KES"])
    provider: Literal["kotanipay", "yellowcard"] = "kotanipay"
    idempotency_key: str | None = Field(default=None, max_length=64)


class PositionResponse(BaseModel):
    vault_address: str
    vault_name: str
    shares: Decimal
    assets: Decimal


class BalanceResponse(BaseModel):
    """Wallet balance; `stale` when custody could not be reached."""

    phone_number: str
    balance: Decimal
    currency: str
    local_amount: Decimal | None = None
    local_currency: str
    positions: list[PositionResponse]
    stale: bool


class QuoteResponse(BaseModel):
    source_currency: str
    target_currency: str
    source_amount: Decimal
    amount: Decimal
    rate: Decimal


class CurrenciesResponse(BaseModel):
    token: str
    providers: dict[str, list[str]]


# ─────────────────────────────────────────────────────────────────────────────
# Webhooks
# ─────────────────────────────────────────────────────────────────────────────

class WebhookAck(BaseModel):
    """Acknowledgement returned to providers; any 2xx stops their retries."""

    status: str = "ok"
    outcome: str
    detail: dict[str, Any] | None = None

"""Pydantic request and response models for the HTTP API."""

from ussd_wallet.schemas.api import (
    AuthorizeRequest,
    AuthorizeResponse,
    AuthSessionResponse,
    BalanceResponse,
    CurrenciesResponse,
    DepositRequest,
    LogoutResponse,
    MovementResponse,
    OtpIssuedResponse,
    OtpRequest,
    OtpVerifyRequest,
    PositionResponse,
    QuoteResponse,
    ReconcileResponse,
    TokenResponse,
    TransactionListResponse,
    TransactionResponse,
    TransferRequest,
    WebhookAck,
    WithdrawRequest,
)

__all__ = [
    "AuthSessionResponse",
    "AuthorizeRequest",
    "AuthorizeResponse",
    "BalanceResponse",
    "CurrenciesResponse",
    "DepositRequest",
    "LogoutResponse",
    "MovementResponse",
    "OtpIssuedResponse",
    "OtpRequest",
    "OtpVerifyRequest",
    "PositionResponse",
    "QuoteResponse",
    "ReconcileResponse",
    "TokenResponse",
    "TransactionListResponse",
    "TransactionResponse",
    "TransferRequest",
    "WebhookAck",
    "WithdrawRequest",
]

"""
Yellow Card client.

Requests are signed with Yellow Card's HMAC scheme:
signature = base64(HMAC-SHA256(secret, timestamp + path + METHOD + base64(sha256(body))))
sent as `Authorization: YcHmacV1 {api_key}:{signature}` with `X-YC-Timestamp`.
"""

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Generator

import httpx

from ussd_wallet.auth.phone import country_for_phone
from ussd_wallet.integrations.providers.base import (
    LegKind,
    ProviderEvent,
    ProviderResult,
    ProviderStatus,
    SettlementProvider,
    normalize_status,
)
from ussd_wallet.logging_config import get_logger

logger = get_logger(__name__)

YELLOWCARD_STATUSES = {
    "created": ProviderStatus.PENDING,
    "pending": ProviderStatus.PENDING,
    "processing": ProviderStatus.PENDING,
    "pending_approval": ProviderStatus.PENDING,
    "complete": ProviderStatus.COMPLETED,
    "completed": ProviderStatus.COMPLETED,
    "success": ProviderStatus.COMPLETED,
    "failed": ProviderStatus.FAILED,
    "expired": ProviderStatus.FAILED,
    "cancelled": ProviderStatus.FAILED,
}

_LEG_PATHS = {
    LegKind.COLLECTION: "/business/collections",
    LegKind.DISBURSEMENT: "/business/payments",
}


class YellowCardAuth(httpx.Auth):
    """httpx auth flow that signs each request."""

    requires_request_body = True

    def __init__(self, api_key: str, secret_key: str):
        self.api_key = api_key
        self.secret_key = secret_key

    def sign(self, timestamp: str, path: str, method: str, body: bytes) -> str:
        message = f"{timestamp}{path}{method.upper()}"
        if body and method.upper() in ("POST", "PUT"):
            message += base64.b64encode(hashlib.sha256(body).digest()).decode()
        digest = hmac.new(
            self.secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
        ).digest()
        return base64.b64encode(digest).decode()

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        timestamp = datetime.now(timezone.utc).isoformat()
        signature = self.sign(timestamp, request.url.path, request.method, request.content)
        request.headers["X-YC-Timestamp"] = timestamp
        request.headers["Authorization"] = f"YcHmacV1 {self.api_key}:{signature}"
        yield request


class YellowCardClient(SettlementProvider):
    """Yellow Card business API."""

    name = "yellowcard"
    supported_currencies = ("NGN", "GHS", "KES", "UGX", "TZS", "ZAR")
    signature_header = "X-YellowCard-Signature"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        secret_key: str,
        webhook_secret: str = "",
        timeout: float = 30.0,
        channel: str = "momo",
        http_client: httpx.Client | None = None,
    ):
        client = http_client or httpx.Client(
            base_url=base_url,
            auth=YellowCardAuth(api_key, secret_key),
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout),
        )
        super().__init__(client, webhook_secret)
        self.channel = channel

    def _initiate(
        self,
        kind: LegKind,
        customer_ref: str,
        amount: Decimal,
        currency: str,
        callback_url: str,
        reference: str,
    ) -> ProviderResult:
        self.ensure_supported(currency)
        party_key = "customer" if kind is LegKind.COLLECTION else "beneficiary"

        data = self._request(
            "POST",
            _LEG_PATHS[kind],
            json={
                "amount": str(amount),
                "currency": currency.upper(),
                "country": country_for_phone(customer_ref),
                "channel": self.channel,
                party_key: {"phoneNumber": f"+{customer_ref}"},
                "sequenceId": reference,
                "callbackUrl": callback_url,
            },
        )
        result = ProviderResult(
            provider_tx_id=self._require_id(data, "id"),
            status=normalize_status(data.get("status"), YELLOWCARD_STATUSES),
            raw=data,
        )
        logger.info(
            "yellowcard_leg_initiated",
            kind=kind.value,
            provider_tx_id=result.provider_tx_id,
            amount=str(amount),
            currency=currency,
            status=result.status.value,
        )
        return result

    def initiate_collection(
        self,
        customer_ref: str,
        amount: Decimal,
        currency: str,
        callback_url: str,
        reference: str,
    ) -> ProviderResult:
        return self._initiate(
            LegKind.COLLECTION, customer_ref, amount, currency, callback_url, reference
        )

    def initiate_disbursement(
        self,
        customer_ref: str,
        amount: Decimal,
        currency: str,
        callback_url: str,
        reference: str,
    ) -> ProviderResult:
        return self._initiate(
            LegKind.DISBURSEMENT, customer_ref, amount, currency, callback_url, reference
        )

    def query_status(self, provider_tx_id: str, kind: LegKind) -> ProviderStatus:
        data = self._request("GET", f"{_LEG_PATHS[kind]}/{provider_tx_id}")
        return normalize_status(data.get("status"), YELLOWCARD_STATUSES)

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderEvent:
        """
        Normalize a Yellow Card callback.

        Expected body: {"event_type": "collection.completed", "data": {...}}.
        The event suffix is authoritative for the status.
        """
        event_type = payload.get("event_type") or payload.get("event")
        data = payload.get("data") or {}
        provider_tx_id = data.get("id")
        if not event_type or not provider_tx_id:
            raise ValueError("Yellow Card webhook missing event_type or data.id")

        kind, _, outcome = str(event_type).partition(".")
        if kind not in (LegKind.COLLECTION.value, LegKind.DISBURSEMENT.value):
            raise ValueError(f"Unsupported Yellow Card event: {event_type}")
        status = normalize_status(outcome or data.get("status"), YELLOWCARD_STATUSES)

        amount = data.get("amount")
        phone = data.get("customer_phone")
        return ProviderEvent(
            event_type=f"{kind}.{status.value}",
            provider_tx_id=str(provider_tx_id),
            status=status,
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=data.get("currency"),
            customer_phone=phone.lstrip("+") if phone else None,
            raw=payload,
        )

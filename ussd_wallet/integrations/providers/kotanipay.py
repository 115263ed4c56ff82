"""
Kotani Pay client.

Mobile-money collections (deposits) and disbursements (withdrawals) for
East and West African markets. Each phone number maps to a Kotani
"mobile money customer", created on first use.
"""

from decimal import Decimal
from typing import Any

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
from ussd_wallet.logging_config import get_logger, mask_phone

logger = get_logger(__name__)

KOTANI_STATUSES = {
    "pending": ProviderStatus.PENDING,
    "initiated": ProviderStatus.PENDING,
    "processing": ProviderStatus.PENDING,
    "success": ProviderStatus.COMPLETED,
    "successful": ProviderStatus.COMPLETED,
    "completed": ProviderStatus.COMPLETED,
    "failed": ProviderStatus.FAILED,
    "cancelled": ProviderStatus.FAILED,
    "reversed": ProviderStatus.FAILED,
    "expired": ProviderStatus.FAILED,
}

_LEG_PATHS = {
    LegKind.COLLECTION: "deposit",
    LegKind.DISBURSEMENT: "withdraw",
}


class KotaniPayClient(SettlementProvider):
    """Kotani Pay REST API (v3)."""

    name = "kotanipay"
    supported_currencies = ("KES", "UGX", "TZS", "GHS", "NGN")
    signature_header = "X-Kotani-Signature"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        integrator_id: str = "",
        webhook_secret: str = "",
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ):
        client = http_client or httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
        )
        super().__init__(client, webhook_secret)
        self.integrator_id = integrator_id

    # ─────────────────────────────────────────────────────────────────────────
    # Customers
    # ─────────────────────────────────────────────────────────────────────────

    def ensure_customer(self, phone_number: str) -> str:
        """
        Get or create the mobile-money customer for a phone number.

        Returns:
            Kotani customer key
        """
        found = self._request(
            "GET", f"/customer/mobile-money/phone/{phone_number}", allow_not_found=True
        )
        customer = found.get("data", found)
        if customer.get("customer_key"):
            return customer["customer_key"]

        created = self._request(
            "POST",
            "/customer/mobile-money",
            json={
                "phone": phone_number,
                "country": country_for_phone(phone_number) or "KE",
                "integrator_id": self.integrator_id,
            },
        )
        customer_key = self._require_id(created.get("data", created), "customer_key")
        logger.info("kotani_customer_created", phone=mask_phone(phone_number))
        return customer_key

    # ─────────────────────────────────────────────────────────────────────────
    # Collections and disbursements
    # ─────────────────────────────────────────────────────────────────────────

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
        customer_key = self.ensure_customer(customer_ref)

        data = self._request(
            "POST",
            f"/{_LEG_PATHS[kind]}/mobile-money",
            json={
                "customer_key": customer_key,
                "amount": str(amount),
                "currency": currency.upper(),
                "phone": customer_ref,
                "callback_url": callback_url,
                "reference_id": reference,
                "integrator_id": self.integrator_id,
            },
        )
        body = data.get("data", data)
        result = ProviderResult(
            provider_tx_id=self._require_id(body, "transaction_id", "id"),
            status=normalize_status(body.get("status"), KOTANI_STATUSES),
            raw=body,
        )
        logger.info(
            "kotani_leg_initiated",
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
        data = self._request("GET", f"/{_LEG_PATHS[kind]}/mobile-money/status/{provider_tx_id}")
        body = data.get("data", data)
        return normalize_status(body.get("status"), KOTANI_STATUSES)

    # ─────────────────────────────────────────────────────────────────────────
    # Webhooks
    # ─────────────────────────────────────────────────────────────────────────

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderEvent:
        """
        Normalize a Kotani callback.

        Kotani sends `type` ("deposit" | "withdrawal") with its own status
        vocabulary; it maps onto collection/disbursement events.
        """
        body = payload.get("data", payload)
        provider_tx_id = body.get("transaction_id") or body.get("id")
        if not provider_tx_id:
            raise ValueError("Kotani webhook missing transaction_id")

        leg_type = str(body.get("type", "")).lower()
        kind = LegKind.DISBURSEMENT if leg_type.startswith("withdraw") else LegKind.COLLECTION
        status = normalize_status(body.get("status"), KOTANI_STATUSES)

        amount = body.get("amount")
        return ProviderEvent(
            event_type=f"{kind.value}.{status.value}",
            provider_tx_id=str(provider_tx_id),
            status=status,
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=body.get("currency"),
            customer_phone=body.get("phone"),
            raw=payload,
        )

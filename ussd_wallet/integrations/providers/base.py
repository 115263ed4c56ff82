"""
Settlement provider contract.

Both mobile-money providers are interchangeable behind this shape:
initiate a collection or disbursement and get back a provider reference
plus a status, query a reference's status, and normalize inbound
webhooks into a ProviderEvent.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

import httpx

from ussd_wallet.errors import ExternalFailure, UnsupportedCurrency
from ussd_wallet.integrations.http import request_json


class ProviderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class LegKind(str, Enum):
    """Direction of a mobile-money leg."""
    COLLECTION = "collection"  # money in (deposit)
    DISBURSEMENT = "disbursement"  # money out (withdrawal)


@dataclass
class ProviderResult:
    """Result of initiating a collection or disbursement."""
    provider_tx_id: str
    status: ProviderStatus
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderEvent:
    """Normalized inbound webhook."""
    event_type: str  # e.g. "collection.completed"
    provider_tx_id: str
    status: ProviderStatus
    amount: Decimal | None = None
    currency: str | None = None
    customer_phone: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> LegKind:
        return LegKind(self.event_type.split(".", 1)[0])


def normalize_status(raw_status: Any, mapping: dict[str, ProviderStatus]) -> ProviderStatus:
    """Map a provider-specific status string; unknown values count as pending."""
    if raw_status is None:
        return ProviderStatus.PENDING
    return mapping.get(str(raw_status).strip().lower(), ProviderStatus.PENDING)


class SettlementProvider(ABC):
    """
    Base class for mobile-money settlement providers.

    Subclasses set `name`, `supported_currencies` and `signature_header`
    and implement the four provider calls.
    """

    name: str = ""
    supported_currencies: tuple[str, ...] = ()
    signature_header: str = ""

    def __init__(self, http_client: httpx.Client, webhook_secret: str = ""):
        self._client = http_client
        self.webhook_secret = webhook_secret

    def close(self) -> None:
        self._client.close()

    def supports(self, currency: str) -> bool:
        return currency.upper() in self.supported_currencies

    def ensure_supported(self, currency: str) -> None:
        if not self.supports(currency):
            raise UnsupportedCurrency(f"{self.name} does not support {currency}")

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        return request_json(self._client, method, path, self.name, **kwargs)

    @staticmethod
    def _require_id(data: dict[str, Any], *keys: str) -> str:
        for key in keys:
            if data.get(key):
                return str(data[key])
        raise ExternalFailure(f"provider response missing transaction id ({', '.join(keys)})")

    @abstractmethod
    def initiate_collection(
        self,
        customer_ref: str,
        amount: Decimal,
        currency: str,
        callback_url: str,
        reference: str,
    ) -> ProviderResult:
        """Request money from the customer's mobile-money wallet."""

    @abstractmethod
    def initiate_disbursement(
        self,
        customer_ref: str,
        amount: Decimal,
        currency: str,
        callback_url: str,
        reference: str,
    ) -> ProviderResult:
        """Pay out to the customer's mobile-money wallet."""

    @abstractmethod
    def query_status(self, provider_tx_id: str, kind: LegKind) -> ProviderStatus:
        """Current status of a previously initiated leg."""

    @abstractmethod
    def parse_webhook(self, payload: dict[str, Any]) -> ProviderEvent:
        """Normalize a webhook body. Raises ValueError when required fields are missing."""


class ProviderRegistry:
    """Settlement providers by name."""

    def __init__(self, providers: list[SettlementProvider] | None = None):
        self._providers: dict[str, SettlementProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: SettlementProvider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> SettlementProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise KeyError(f"Unknown settlement provider: {name}") from None

    def names(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def close(self) -> None:
        for provider in self._providers.values():
            provider.close()

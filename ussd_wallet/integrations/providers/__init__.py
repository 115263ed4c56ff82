"""Mobile-money settlement providers."""

from ussd_wallet.integrations.providers.base import (
    LegKind,
    ProviderEvent,
    ProviderRegistry,
    ProviderResult,
    ProviderStatus,
    SettlementProvider,
)
from ussd_wallet.integrations.providers.kotanipay import KotaniPayClient
from ussd_wallet.integrations.providers.yellowcard import YellowCardClient

__all__ = [
    "KotaniPayClient",
    "LegKind",
    "ProviderEvent",
    "ProviderRegistry",
    "ProviderResult",
    "ProviderStatus",
    "SettlementProvider",
    "YellowCardClient",
]

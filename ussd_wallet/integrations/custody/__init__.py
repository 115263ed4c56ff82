"""Custody service integration (token and vault operations)."""

from ussd_wallet.integrations.custody.client import (
    CustodyClient,
    CustodyReceipt,
    Vault,
    VaultPosition,
)

__all__ = ["CustodyClient", "CustodyReceipt", "Vault", "VaultPosition"]

"""
Custody service client.

The custody service manages one address per account and executes the
stable-value token operations (mint, burn, transfer) and vault deposits
and redemptions on its behalf. Every mutating call carries an
Idempotency-Key derived from the ledger transaction and saga stage, so a
retried request is applied at most once on the custody side.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx

from ussd_wallet.errors import ExternalFailure
from ussd_wallet.integrations.http import request_json
from ussd_wallet.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class CustodyReceipt:
    """Outcome of a mutating custody operation."""
    tx_hash: str
    amount: Decimal | None = None
    shares: Decimal | None = None
    assets: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for ledger metadata (decimals as strings)."""
        data: dict[str, Any] = {"tx_hash": self.tx_hash}
        for name in ("amount", "shares", "assets"):
            value = getattr(self, name)
            if value is not None:
                data[name] = str(value)
        return data


@dataclass
class Vault:
    address: str
    name: str
    symbol: str = ""
    apy: Decimal = Decimal("0")
    risk_level: str = "medium"


@dataclass
class VaultPosition:
    vault_address: str
    vault_name: str
    shares: Decimal
    assets: Decimal


def _decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


class CustodyClient:
    """
    HTTP client for the custody service.

    Example:
        custody = CustodyClient("https://custody.internal", api_key="...")
        receipt = custody.mint(address, Decimal("7.69"), reference="tx-uuid:mint")
        print(receipt.tx_hash)
    """

    service_name = "custody"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        token_symbol: str = "USDX",
        http_client: httpx.Client | None = None,
    ):
        """
        Initialize the custody client.

        Args:
            base_url: Custody service base URL
            api_key: Service API key
            timeout: Per-request timeout in seconds
            token_symbol: Symbol of the stable-value token
            http_client: Pre-built client (tests inject a MockTransport)
        """
        self.token_symbol = token_symbol
        self._client = http_client or httpx.Client(
            base_url=base_url,
            headers={"X-API-Key": api_key, "Accept": "application/json"},
            timeout=httpx.Timeout(timeout),
        )

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, payload: dict[str, Any], reference: str | None) -> dict:
        headers = {"Idempotency-Key": reference} if reference else {}
        return request_json(
            self._client, "POST", path, self.service_name, json=payload, headers=headers
        )

    @staticmethod
    def _receipt(data: dict[str, Any], operation: str) -> CustodyReceipt:
        tx_hash = data.get("txHash") or data.get("tx_hash")
        if not tx_hash:
            raise ExternalFailure(f"custody {operation} returned no transaction hash")
        return CustodyReceipt(
            tx_hash=tx_hash,
            amount=_decimal(data["amount"]) if data.get("amount") is not None else None,
            shares=_decimal(data["shares"]) if data.get("shares") is not None else None,
            assets=_decimal(data["assets"]) if data.get("assets") is not None else None,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Accounts and balances
    # ─────────────────────────────────────────────────────────────────────────

    def create_address(self, owner_ref: str) -> str:
        """Provision a managed address for a new account."""
        data = self._post("/v1/addresses", {"ownerRef": owner_ref}, reference=owner_ref)
        address = data.get("address")
        if not address:
            raise ExternalFailure("custody did not return an address")
        logger.info("custody_address_created", address=address)
        return address

    def balance_of(self, address: str) -> Decimal:
        """Authoritative token balance of an address."""
        data = request_json(self._client, "GET", f"/v1/balances/{address}", self.service_name)
        return _decimal(data.get("balance"))

    # ─────────────────────────────────────────────────────────────────────────
    # Token operations
    # ─────────────────────────────────────────────────────────────────────────

    def mint(self, address: str, amount: Decimal, reference: str | None = None) -> CustodyReceipt:
        data = self._post("/v1/mint", {"address": address, "amount": str(amount)}, reference)
        receipt = self._receipt(data, "mint")
        logger.info("custody_mint", address=address, amount=str(amount), tx_hash=receipt.tx_hash)
        return receipt

    def burn(self, address: str, amount: Decimal, reference: str | None = None) -> CustodyReceipt:
        data = self._post("/v1/burn", {"address": address, "amount": str(amount)}, reference)
        receipt = self._receipt(data, "burn")
        logger.info("custody_burn", address=address, amount=str(amount), tx_hash=receipt.tx_hash)
        return receipt

    def transfer(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        reference: str | None = None,
    ) -> CustodyReceipt:
        data = self._post(
            "/v1/transfer",
            {"from": from_address, "to": to_address, "amount": str(amount)},
            reference,
        )
        receipt = self._receipt(data, "transfer")
        logger.info(
            "custody_transfer",
            from_address=from_address,
            to_address=to_address,
            amount=str(amount),
            tx_hash=receipt.tx_hash,
        )
        return receipt

    # ─────────────────────────────────────────────────────────────────────────
    # Vaults
    # ─────────────────────────────────────────────────────────────────────────

    def list_vaults(self, addresses: list[str] | None = None) -> list[Vault]:
        """
        List investable vaults.

        Args:
            addresses: Restrict to these vault addresses, in this order

        Returns:
            Vaults as reported by custody
        """
        params = {"address": addresses} if addresses else None
        data = request_json(self._client, "GET", "/v1/vaults", self.service_name, params=params)
        vaults = [
            Vault(
                address=item["address"],
                name=item.get("name") or item["address"],
                symbol=item.get("symbol", ""),
                apy=_decimal(item.get("apy")),
                risk_level=item.get("riskLevel", "medium"),
            )
            for item in data.get("vaults", [])
        ]
        if addresses:
            order = {address: i for i, address in enumerate(addresses)}
            vaults.sort(key=lambda v: order.get(v.address, len(order)))
        return vaults

    def positions(self, address: str) -> list[VaultPosition]:
        """Vault positions held by an address (empty positions filtered out)."""
        data = request_json(
            self._client, "GET", f"/v1/vaults/positions/{address}", self.service_name
        )
        positions = [
            VaultPosition(
                vault_address=item["vaultAddress"],
                vault_name=item.get("vaultName") or item["vaultAddress"],
                shares=_decimal(item.get("shares")),
                assets=_decimal(item.get("assets")),
            )
            for item in data.get("positions", [])
        ]
        return [p for p in positions if p.assets > 0]

    def deposit_to_vault(
        self,
        address: str,
        vault_address: str,
        amount: Decimal,
        reference: str | None = None,
    ) -> CustodyReceipt:
        data = self._post(
            f"/v1/vaults/{vault_address}/deposit",
            {"address": address, "amount": str(amount)},
            reference,
        )
        receipt = self._receipt(data, "vault deposit")
        logger.info(
            "custody_vault_deposit",
            vault=vault_address,
            amount=str(amount),
            shares=str(receipt.shares),
            tx_hash=receipt.tx_hash,
        )
        return receipt

    def redeem_from_vault(
        self,
        address: str,
        vault_address: str,
        amount: Decimal,
        reference: str | None = None,
    ) -> CustodyReceipt:
        data = self._post(
            f"/v1/vaults/{vault_address}/redeem",
            {"address": address, "amount": str(amount)},
            reference,
        )
        receipt = self._receipt(data, "vault redeem")
        logger.info(
            "custody_vault_redeem",
            vault=vault_address,
            amount=str(amount),
            assets=str(receipt.assets),
            tx_hash=receipt.tx_hash,
        )
        return receipt

"""
Pytest configuration and fixtures for the wallet test suite.

Provides:
- Database fixtures (engine, session, accounts)
- An in-memory Redis double covering the commands the wallet uses
- Fakes for the custody service, settlement providers and SMS
- Wired services (gate, orchestrator, reconciler, menu, USSD service)
"""

import os
import re
import time
from decimal import Decimal
from typing import Any, Generator

import pytest
import redis
from sqlalchemy.orm import Session

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ.setdefault("LOG_FORMAT", "console")

from ussd_wallet.auth import AuthorizationGate
from ussd_wallet.config import Settings
from ussd_wallet.database import Base, build_engine, build_session_factory
from ussd_wallet.errors import ExternalFailure
from ussd_wallet.flows.ussd_menu import UssdMenu
from ussd_wallet.integrations.custody import CustodyReceipt, Vault, VaultPosition
from ussd_wallet.integrations.providers import (
    LegKind,
    ProviderEvent,
    ProviderRegistry,
    ProviderResult,
    ProviderStatus,
    SettlementProvider,
)
from ussd_wallet.integrations.sms import Notifier
from ussd_wallet.models import Account
from ussd_wallet.services.fx import CurrencyConverter
from ussd_wallet.services.orchestrator import MoneyMovementOrchestrator
from ussd_wallet.services.reconciler import WebhookReconciler
from ussd_wallet.services.ussd_service import UssdService
from ussd_wallet.storage import SessionStore

SENDER_PHONE = "254712345678"
RECIPIENT_PHONE = "254798765432"
VAULT_ADDRESS = "0xvault01"


# ─────────────────────────────────────────────────────────────────────────────
# Redis Double
# ─────────────────────────────────────────────────────────────────────────────

class FakePipeline:
    """
    Pipeline over FakeRedis.

    Commands are queued until execute(); after watch() they run immediately
    until multi(), and execute() raises WatchError if a watched key changed.
    """

    def __init__(self, client: "FakeRedis"):
        self._client = client
        self._queue: list[tuple[Any, tuple, dict]] = []
        self._watched: dict[str, int] = {}
        self._immediate = False

    def __enter__(self) -> "FakePipeline":
        return self

    def __exit__(self, *exc) -> None:
        self.reset()

    def watch(self, *keys: str) -> None:
        self._immediate = True
        for key in keys:
            self._watched[key] = self._client.version(key)

    def multi(self) -> None:
        self._immediate = False

    def reset(self) -> None:
        self._queue.clear()
        self._watched.clear()
        self._immediate = False

    def execute(self) -> list[Any]:
        for key, version in self._watched.items():
            if self._client.version(key) != version:
                self.reset()
                raise redis.WatchError(f"Watched variable changed: {key}")
        results = [method(*args, **kwargs) for method, args, kwargs in self._queue]
        self.reset()
        return results

    def __getattr__(self, name: str):
        method = getattr(self._client, name)
        if self._immediate:
            return method

        def queued(*args, **kwargs):
            self._queue.append((method, args, kwargs))
            return self

        return queued


class FakeRedis:
    """In-memory stand-in for redis.Redis(decode_responses=True)."""

    def __init__(self):
        self.now = time.time()
        self._data: dict[str, Any] = {}
        self._expires: dict[str, float] = {}
        self._versions: dict[str, int] = {}

    # Test helpers
    def advance(self, seconds: float) -> None:
        self.now += seconds

    def version(self, key: str) -> int:
        self._purge(key)
        return self._versions.get(key, 0)

    def _touch(self, key: str) -> None:
        self._versions[key] = self._versions.get(key, 0) + 1

    def _purge(self, key: str) -> None:
        expires = self._expires.get(key)
        if expires is not None and expires <= self.now:
            self._data.pop(key, None)
            self._expires.pop(key, None)
            self._touch(key)

    def _alive(self, key: str) -> bool:
        self._purge(key)
        return key in self._data

    # Commands
    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    def get(self, key: str) -> str | None:
        if not self._alive(key):
            return None
        return self._data[key]

    def set(self, key: str, value: Any, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and self._alive(key):
            return None
        self._data[key] = str(value)
        self._expires.pop(key, None)
        if ex is not None:
            self._expires[key] = self.now + ex
        self._touch(key)
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                del self._data[key]
                self._expires.pop(key, None)
                self._touch(key)
                removed += 1
        return removed

    def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._alive(key))

    def incr(self, key: str) -> int:
        value = int(self.get(key) or 0) + 1
        self._data[key] = str(value)
        self._touch(key)
        return value

    def expire(self, key: str, seconds: int, nx: bool = False) -> bool:
        if not self._alive(key):
            return False
        if nx and key in self._expires:
            return False
        self._expires[key] = self.now + seconds
        return True

    def ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        if key not in self._expires:
            return -1
        return int(self._expires[key] - self.now)

    def hset(self, key: str, mapping: dict[str, Any]) -> int:
        current = self._data.get(key) if self._alive(key) else None
        data = dict(current or {})
        added = len(set(mapping) - set(data))
        data.update({field: str(value) for field, value in mapping.items()})
        self._data[key] = data
        self._touch(key)
        return added

    def hgetall(self, key: str) -> dict[str, str]:
        if not self._alive(key):
            return {}
        return dict(self._data[key])

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        data = dict(self._data.get(key) or {}) if self._alive(key) else {}
        value = int(data.get(field, 0)) + amount
        data[field] = str(value)
        self._data[key] = data
        self._touch(key)
        return value


# ─────────────────────────────────────────────────────────────────────────────
# External Service Fakes
# ─────────────────────────────────────────────────────────────────────────────

class FakeSms:
    """Records outgoing SMS instead of calling Twilio."""

    is_configured = True

    def __init__(self):
        self.sent: list[dict[str, str]] = []
        self.fail = False

    def send_message(self, to: str, body: str, from_: str | None = None) -> dict[str, Any]:
        if self.fail:
            return {"success": False, "error": "delivery failed", "message_id": None}
        self.sent.append({"to": to, "body": body})
        return {"success": True, "message_id": f"SM{len(self.sent):04d}", "status": "queued"}

    def messages_to(self, phone: str) -> list[str]:
        return [m["body"] for m in self.sent if m["to"] == phone]

    def last_code(self, phone: str) -> str:
        for body in reversed(self.messages_to(phone)):
            match = re.search(r"code is (\d+)", body)
            if match:
                return match.group(1)
        raise AssertionError(f"no code sent to {phone}")


class FakeCustody:
    """
    In-memory custody service.

    Mutations are keyed by their reference like the real service: a repeated
    reference returns the first receipt without applying the effect again.
    `failures` maps an operation name ("burn", "mint", ...) to the exception
    raised on its next call.
    """

    def __init__(self):
        self.balances: dict[str, Decimal] = {}
        self.vault_assets: dict[tuple[str, str], Decimal] = {}
        self.vaults = [
            Vault(address=VAULT_ADDRESS, name="Stable Yield", symbol="syUSDX", apy=Decimal("5.2")),
            Vault(address="0xvault02", name="Growth Vault", symbol="gvUSDX", apy=Decimal("8.75")),
        ]
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, Exception] = {}
        self.balance_failure: Exception | None = None
        self._receipts: dict[str, CustodyReceipt] = {}
        self._counter = 0

    def close(self) -> None:
        pass

    def _maybe_fail(self, operation: str) -> None:
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    def _receipt(self, reference: str | None, apply, **fields) -> CustodyReceipt:
        if reference and reference in self._receipts:
            return self._receipts[reference]
        apply()
        self._counter += 1
        receipt = CustodyReceipt(tx_hash=f"0xhash{self._counter:04d}", **fields)
        if reference:
            self._receipts[reference] = receipt
        return receipt

    def operations(self, name: str) -> list[dict[str, Any]]:
        return [args for op, args in self.calls if op == name]

    def create_address(self, owner_ref: str) -> str:
        address = f"0xaddr{owner_ref}"
        self.balances.setdefault(address, Decimal("0"))
        return address

    def balance_of(self, address: str) -> Decimal:
        if self.balance_failure is not None:
            raise self.balance_failure
        return self.balances.get(address, Decimal("0"))

    def mint(self, address: str, amount: Decimal, reference: str | None = None) -> CustodyReceipt:
        self.calls.append(("mint", {"address": address, "amount": amount, "reference": reference}))
        self._maybe_fail("mint")

        def apply():
            self.balances[address] = self.balances.get(address, Decimal("0")) + amount

        return self._receipt(reference, apply, amount=amount)

    def burn(self, address: str, amount: Decimal, reference: str | None = None) -> CustodyReceipt:
        self.calls.append(("burn", {"address": address, "amount": amount, "reference": reference}))
        self._maybe_fail("burn")

        def apply():
            self.balances[address] = self.balances.get(address, Decimal("0")) - amount

        return self._receipt(reference, apply, amount=amount)

    def transfer(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        reference: str | None = None,
    ) -> CustodyReceipt:
        self.calls.append((
            "transfer",
            {"from": from_address, "to": to_address, "amount": amount, "reference": reference},
        ))
        self._maybe_fail("transfer")

        def apply():
            self.balances[from_address] = self.balances.get(from_address, Decimal("0")) - amount
            self.balances[to_address] = self.balances.get(to_address, Decimal("0")) + amount

        return self._receipt(reference, apply, amount=amount)

    def list_vaults(self, addresses: list[str] | None = None) -> list[Vault]:
        if addresses:
            return [v for v in self.vaults if v.address in addresses]
        return list(self.vaults)

    def positions(self, address: str) -> list[VaultPosition]:
        names = {v.address: v.name for v in self.vaults}
        return [
            VaultPosition(vault_address=vault, vault_name=names.get(vault, vault), shares=assets, assets=assets)
            for (owner, vault), assets in self.vault_assets.items()
            if owner == address and assets > 0
        ]

    def deposit_to_vault(
        self,
        address: str,
        vault_address: str,
        amount: Decimal,
        reference: str | None = None,
    ) -> CustodyReceipt:
        self.calls.append((
            "vault_deposit",
            {"address": address, "vault": vault_address, "amount": amount, "reference": reference},
        ))
        self._maybe_fail("vault_deposit")

        def apply():
            key = (address, vault_address)
            self.vault_assets[key] = self.vault_assets.get(key, Decimal("0")) + amount

        return self._receipt(reference, apply, amount=amount, shares=amount)

    def redeem_from_vault(
        self,
        address: str,
        vault_address: str,
        amount: Decimal,
        reference: str | None = None,
    ) -> CustodyReceipt:
        self.calls.append((
            "vault_redeem",
            {"address": address, "vault": vault_address, "amount": amount, "reference": reference},
        ))
        self._maybe_fail("vault_redeem")

        def apply():
            key = (address, vault_address)
            self.vault_assets[key] = self.vault_assets.get(key, Decimal("0")) - amount

        return self._receipt(reference, apply, amount=amount, assets=amount)


class FakeProvider(SettlementProvider):
    """
    Settlement provider that answers from configuration.

    `next_status` is the status returned by the next initiation;
    `failure` is raised instead when set.
    """

    signature_header = "X-Fake-Signature"

    def __init__(
        self,
        name: str,
        supported_currencies: tuple[str, ...] = ("KES", "UGX", "TZS", "NGN", "GHS"),
        webhook_secret: str = "",
    ):
        self.name = name
        self.supported_currencies = supported_currencies
        self.webhook_secret = webhook_secret
        self.next_status = ProviderStatus.PENDING
        self.failure: Exception | None = None
        self.statuses: dict[str, ProviderStatus] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._counter = 0

    def close(self) -> None:
        pass

    def _initiate(self, kind: LegKind, **fields: Any) -> ProviderResult:
        self.calls.append((kind.value, fields))
        if self.failure is not None:
            error, self.failure = self.failure, None
            raise error
        self._counter += 1
        provider_tx_id = f"{self.name}-{kind.value}-{self._counter}"
        self.statuses[provider_tx_id] = self.next_status
        return ProviderResult(provider_tx_id=provider_tx_id, status=self.next_status)

    def initiate_collection(self, customer_ref, amount, currency, callback_url, reference):
        return self._initiate(
            LegKind.COLLECTION, customer_ref=customer_ref, amount=amount,
            currency=currency, callback_url=callback_url, reference=reference,
        )

    def initiate_disbursement(self, customer_ref, amount, currency, callback_url, reference):
        return self._initiate(
            LegKind.DISBURSEMENT, customer_ref=customer_ref, amount=amount,
            currency=currency, callback_url=callback_url, reference=reference,
        )

    def query_status(self, provider_tx_id: str, kind: LegKind) -> ProviderStatus:
        if provider_tx_id not in self.statuses:
            raise ExternalFailure(f"{self.name} has no transaction {provider_tx_id}")
        return self.statuses[provider_tx_id]

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderEvent:
        if not payload.get("id") or not payload.get("event"):
            raise ValueError("fake webhook missing id or event")
        kind, _, status = payload["event"].partition(".")
        amount = payload.get("amount")
        return ProviderEvent(
            event_type=payload["event"],
            provider_tx_id=payload["id"],
            status=ProviderStatus(status),
            amount=Decimal(str(amount)) if amount is not None else None,
            raw=payload,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        environment="development",
        otp_secret="test-otp-secret",
        treasury_address="",
        vault_addresses=[],
        webhook_base_url="https://wallet.test",
        custody_webhook_secret="custody-secret",
    )


# ─────────────────────────────────────────────────────────────────────────────
# Database Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def engine():
    """
    Test database engine.

    Uses TEST_DATABASE_URL when set, otherwise in-memory SQLite. Tables are
    created and dropped per test because the ledger commits on every write.
    """
    import ussd_wallet.models  # noqa: F401

    engine = build_engine(os.environ.get("TEST_DATABASE_URL", "sqlite://"))
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ─────────────────────────────────────────────────────────────────────────────
# Service Fakes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def sms() -> FakeSms:
    return FakeSms()


@pytest.fixture
def notifier(sms: FakeSms, settings: Settings) -> Notifier:
    return Notifier(sms, app_name=settings.app_name)


@pytest.fixture
def custody() -> FakeCustody:
    return FakeCustody()


@pytest.fixture
def yellowcard() -> FakeProvider:
    return FakeProvider("yellowcard", ("NGN", "GHS", "KES", "UGX", "TZS", "ZAR"))


@pytest.fixture
def kotanipay() -> FakeProvider:
    return FakeProvider("kotanipay", ("KES", "UGX", "TZS", "GHS", "NGN"))


@pytest.fixture
def providers(kotanipay: FakeProvider, yellowcard: FakeProvider) -> ProviderRegistry:
    return ProviderRegistry([kotanipay, yellowcard])


@pytest.fixture
def converter(settings: Settings) -> CurrencyConverter:
    return CurrencyConverter.from_rates(settings.fx_rates, token=settings.token_symbol)


# ─────────────────────────────────────────────────────────────────────────────
# Wired Services
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def gate(fake_redis: FakeRedis, notifier: Notifier, settings: Settings) -> AuthorizationGate:
    return AuthorizationGate.from_settings(fake_redis, notifier, settings)


@pytest.fixture
def orchestrator(db, custody, providers, converter, notifier, settings) -> MoneyMovementOrchestrator:
    return MoneyMovementOrchestrator(db, custody, providers, converter, notifier, settings)


@pytest.fixture
def reconciler(db, orchestrator, notifier, settings) -> WebhookReconciler:
    return WebhookReconciler(
        db,
        orchestrator,
        notifier,
        confirmations_required=settings.custody_confirmations_required,
    )


@pytest.fixture
def menu(db, gate, orchestrator, custody, providers, converter, settings) -> UssdMenu:
    return UssdMenu(db, gate, orchestrator, custody, providers, converter, settings)


@pytest.fixture
def session_store(fake_redis: FakeRedis, settings: Settings) -> SessionStore:
    return SessionStore(fake_redis, ttl_seconds=settings.session_ttl_seconds)


@pytest.fixture
def ussd_service(session_store, gate, menu, settings) -> UssdService:
    return UssdService(session_store, gate, menu, settings)


# ─────────────────────────────────────────────────────────────────────────────
# Account Fixtures
# ─────────────────────────────────────────────────────────────────────────────

def make_account(db: Session, custody: FakeCustody, phone: str, balance: Decimal) -> Account:
    """Create an account whose custody balance and cache agree."""
    address = custody.create_address(phone)
    custody.balances[address] = balance
    account = Account(phone_number=phone, custody_address=address, cached_balance=balance)
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def sender(db: Session, custody: FakeCustody) -> Account:
    """Kenyan account holding 100 tokens."""
    return make_account(db, custody, SENDER_PHONE, Decimal("100"))


@pytest.fixture
def recipient(db: Session, custody: FakeCustody) -> Account:
    """Kenyan account with an empty wallet."""
    return make_account(db, custody, RECIPIENT_PHONE, Decimal("0"))


@pytest.fixture
def authenticated(gate: AuthorizationGate, sender: Account) -> AuthorizationGate:
    """Sender has an active USSD session and a fresh recent-auth marker."""
    gate.create_auth_session(sender.phone_number)
    gate.mark_recent_auth(sender.phone_number)
    return gate

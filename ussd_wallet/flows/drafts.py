"""
Flow drafts.

A draft is the typed content a flow has collected so far. It is stored in
the session's `state_data` as a plain dict (decimals as strings, `kind`
first, unset fields omitted) and decoded back at the start of every turn.

STATE_FIELDS lists the fields each state may carry. Moving back to a
parent state truncates the draft to the parent's fields, so values
entered further down a flow never leak into an earlier screen.
"""

from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Union

from ussd_wallet.errors import DraftDecodeError
from ussd_wallet.flows.constants import MenuState


@dataclass
class TransferDraft:
    recipient: str | None = None
    amount: Decimal | None = None
    fee: Decimal | None = None
    idempotency_key: str | None = None


@dataclass
class DepositDraft:
    provider: str | None = None
    currency: str | None = None
    amount: Decimal | None = None
    idempotency_key: str | None = None


@dataclass
class WithdrawalDraft:
    """Withdrawal to mobile money, or out of a vault position."""
    destination: str | None = None  # "mobile_money" | "investment"
    provider: str | None = None
    currency: str | None = None
    amount: Decimal | None = None
    payout_amount: Decimal | None = None
    vault_address: str | None = None
    vault_name: str | None = None
    vault_assets: Decimal | None = None
    idempotency_key: str | None = None


@dataclass
class InvestmentDraft:
    """Investment funded from the wallet balance or by a mobile-money deposit."""
    funding: str | None = None  # "balance" | "mobile_money"
    currency: str | None = None
    amount: Decimal | None = None
    settlement_amount: Decimal | None = None
    vault_address: str | None = None
    vault_name: str | None = None
    vault_apy: Decimal | None = None
    idempotency_key: str | None = None


Draft = Union[TransferDraft, DepositDraft, WithdrawalDraft, InvestmentDraft]

DRAFT_KINDS: dict[str, type] = {
    "transfer": TransferDraft,
    "deposit": DepositDraft,
    "withdrawal": WithdrawalDraft,
    "investment": InvestmentDraft,
}
_KIND_BY_TYPE = {cls: kind for kind, cls in DRAFT_KINDS.items()}

DECIMAL_FIELDS = frozenset({
    "amount", "fee", "payout_amount", "vault_assets", "settlement_amount", "vault_apy",
})


# ─────────────────────────────────────────────────────────────────────────────
# Per-state fields
# ─────────────────────────────────────────────────────────────────────────────

_TRANSFER_CONFIRM = ("recipient", "amount", "fee", "idempotency_key")
_DEPOSIT_CONFIRM = ("provider", "currency", "amount", "idempotency_key")
_WITHDRAW_CONFIRM = (
    "destination", "provider", "currency", "amount", "payout_amount", "idempotency_key",
)
_REDEEM_AMOUNT = ("destination", "vault_address", "vault_name", "vault_assets")
_INVEST_VAULT = ("funding", "currency", "amount", "settlement_amount")
_INVEST_CONFIRM = _INVEST_VAULT + ("vault_address", "vault_name", "vault_apy", "idempotency_key")

STATE_FIELDS: dict[MenuState, tuple[str, ...]] = {
    MenuState.MAIN: (),
    MenuState.BALANCE: (),
    MenuState.HISTORY: (),
    MenuState.ACCOUNT: (),
    MenuState.END: (),

    MenuState.TRANSFER_RECIPIENT: (),
    MenuState.TRANSFER_AMOUNT: ("recipient",),
    MenuState.TRANSFER_CONFIRM: _TRANSFER_CONFIRM,
    MenuState.TRANSFER_OTP: _TRANSFER_CONFIRM,

    MenuState.DEPOSIT_PROVIDER: (),
    MenuState.DEPOSIT_CURRENCY: ("provider",),
    MenuState.DEPOSIT_AMOUNT: ("provider", "currency"),
    MenuState.DEPOSIT_CONFIRM: _DEPOSIT_CONFIRM,
    MenuState.DEPOSIT_OTP: _DEPOSIT_CONFIRM,

    MenuState.WITHDRAW_MENU: (),
    MenuState.WITHDRAW_PROVIDER: ("destination",),
    MenuState.WITHDRAW_CURRENCY: ("destination", "provider"),
    MenuState.WITHDRAW_AMOUNT: ("destination", "provider", "currency"),
    MenuState.WITHDRAW_CONFIRM: _WITHDRAW_CONFIRM,
    MenuState.WITHDRAW_OTP: _WITHDRAW_CONFIRM,

    MenuState.REDEEM_POSITION: ("destination",),
    MenuState.REDEEM_AMOUNT: _REDEEM_AMOUNT,
    MenuState.REDEEM_CONFIRM: _REDEEM_AMOUNT + ("amount", "idempotency_key"),
    MenuState.REDEEM_OTP: _REDEEM_AMOUNT + ("amount", "idempotency_key"),

    MenuState.INVEST_MENU: (),
    MenuState.INVEST_AMOUNT: ("funding", "currency"),
    MenuState.INVEST_VAULT: _INVEST_VAULT,
    MenuState.INVEST_CONFIRM: _INVEST_CONFIRM,
    MenuState.INVEST_OTP: _INVEST_CONFIRM,
}


# ─────────────────────────────────────────────────────────────────────────────
# Encoding
# ─────────────────────────────────────────────────────────────────────────────

def encode_draft(draft: Draft | None) -> dict[str, Any]:
    """
    Convert a draft to its stored form.

    Returns:
        {} for no draft, otherwise {"kind": ..., <set fields>}
    """
    if draft is None:
        return {}

    data: dict[str, Any] = {"kind": _KIND_BY_TYPE[type(draft)]}
    for f in fields(draft):
        value = getattr(draft, f.name)
        if value is None:
            continue
        data[f.name] = str(value) if isinstance(value, Decimal) else value
    return data


def decode_draft(data: dict[str, Any] | None) -> Draft | None:
    """
    Rebuild a draft from stored session data.

    Raises:
        DraftDecodeError: Unknown kind or a malformed decimal
    """
    if not data:
        return None

    cls = DRAFT_KINDS.get(data.get("kind"))
    if cls is None:
        raise DraftDecodeError(f"Unknown draft kind: {data.get('kind')!r}")

    values: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data or data[f.name] is None:
            continue
        value = data[f.name]
        if f.name in DECIMAL_FIELDS:
            try:
                value = Decimal(str(value))
            except InvalidOperation as e:
                raise DraftDecodeError(f"Invalid decimal for {f.name}: {value!r}") from e
        values[f.name] = value
    return cls(**values)


def truncate_for(state: MenuState, draft: Draft | None) -> Draft | None:
    """
    Keep only the fields `state` may carry.

    Returns:
        None when the state carries no draft fields
    """
    allowed = STATE_FIELDS.get(state, ())
    if draft is None or not allowed:
        return None

    cleared = {f.name: None for f in fields(draft) if f.name not in allowed}
    return replace(draft, **cleared)

"""
USSD Flow Processing Module.

Menu-driven flows for the USSD channel:

- Balance, history and account screens
- Send money
- Deposit and withdraw through mobile money
- Invest into and withdraw from vaults

Usage:
    from ussd_wallet.flows import UssdMenu, MenuState

    menu = UssdMenu(db, gate, orchestrator, custody, providers, converter, settings)
    response = menu.transition(MenuState.MAIN, "2", {}, "254712345678")
    print(response.wire_text)
"""

from ussd_wallet.flows.constants import InputClass, MenuState
from ussd_wallet.flows.drafts import (
    DepositDraft,
    InvestmentDraft,
    TransferDraft,
    WithdrawalDraft,
    decode_draft,
    encode_draft,
    truncate_for,
)
from ussd_wallet.flows.transitions import TRANSITIONS, classify_input, next_state
from ussd_wallet.flows.ussd_menu import MenuResponse, UssdMenu

__all__ = [
    "DepositDraft",
    "InputClass",
    "InvestmentDraft",
    "MenuResponse",
    "MenuState",
    "TRANSITIONS",
    "TransferDraft",
    "UssdMenu",
    "WithdrawalDraft",
    "classify_input",
    "decode_draft",
    "encode_draft",
    "next_state",
    "truncate_for",
]

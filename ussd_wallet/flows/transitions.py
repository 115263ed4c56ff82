"""
USSD menu transition table.

Every (state, input class) pair the machine accepts is listed here; the
menu handlers decide the input class and look the target state up
instead of hard-coding it. BACK, EXIT and INVALID edges are generated
for every non-main state from PARENTS.
"""

from collections import deque

from ussd_wallet.flows.constants import (
    BACK,
    CONFIRM,
    CONFIRM_STATES,
    DECLINE,
    DISPLAY_STATES,
    EXIT,
    MAIN_OPTIONS,
    SUBMENU_OPTIONS,
    SUBMENU_STATES,
    InputClass,
    MenuState,
)

S = MenuState
I = InputClass

# Back navigation target per state
PARENTS: dict[MenuState, MenuState] = {
    S.BALANCE: S.MAIN,
    S.HISTORY: S.MAIN,
    S.ACCOUNT: S.MAIN,

    S.TRANSFER_RECIPIENT: S.MAIN,
    S.TRANSFER_AMOUNT: S.TRANSFER_RECIPIENT,
    S.TRANSFER_CONFIRM: S.TRANSFER_AMOUNT,
    S.TRANSFER_OTP: S.TRANSFER_CONFIRM,

    S.DEPOSIT_PROVIDER: S.MAIN,
    S.DEPOSIT_CURRENCY: S.DEPOSIT_PROVIDER,
    S.DEPOSIT_AMOUNT: S.DEPOSIT_CURRENCY,
    S.DEPOSIT_CONFIRM: S.DEPOSIT_AMOUNT,
    S.DEPOSIT_OTP: S.DEPOSIT_CONFIRM,

    S.WITHDRAW_MENU: S.MAIN,
    S.WITHDRAW_PROVIDER: S.WITHDRAW_MENU,
    S.WITHDRAW_CURRENCY: S.WITHDRAW_PROVIDER,
    S.WITHDRAW_AMOUNT: S.WITHDRAW_CURRENCY,
    S.WITHDRAW_CONFIRM: S.WITHDRAW_AMOUNT,
    S.WITHDRAW_OTP: S.WITHDRAW_CONFIRM,

    S.REDEEM_POSITION: S.WITHDRAW_MENU,
    S.REDEEM_AMOUNT: S.REDEEM_POSITION,
    S.REDEEM_CONFIRM: S.REDEEM_AMOUNT,
    S.REDEEM_OTP: S.REDEEM_CONFIRM,

    S.INVEST_MENU: S.MAIN,
    S.INVEST_AMOUNT: S.INVEST_MENU,
    S.INVEST_VAULT: S.INVEST_AMOUNT,
    S.INVEST_CONFIRM: S.INVEST_VAULT,
    S.INVEST_OTP: S.INVEST_CONFIRM,
}

TERMINAL_STATES = frozenset({S.END})


def _flow_edges(*states: MenuState) -> dict[tuple[MenuState, InputClass], MenuState]:
    """VALID edges chaining states in order, ending at a confirm state."""
    return {(current, I.VALID): following for current, following in zip(states, states[1:])}


def _confirm_edges(confirm: MenuState, otp: MenuState) -> dict[tuple[MenuState, InputClass], MenuState]:
    return {
        (confirm, I.CONFIRM): S.END,
        (confirm, I.DECLINE): S.END,
        (confirm, I.AUTH_REQUIRED): otp,
        (otp, I.VALID): S.END,
    }


TRANSITIONS: dict[tuple[MenuState, InputClass], MenuState] = {
    (S.MAIN, I.OPTION_1): S.BALANCE,
    (S.MAIN, I.OPTION_2): S.TRANSFER_RECIPIENT,
    (S.MAIN, I.OPTION_3): S.DEPOSIT_PROVIDER,
    (S.MAIN, I.OPTION_4): S.WITHDRAW_MENU,
    (S.MAIN, I.OPTION_5): S.INVEST_MENU,
    (S.MAIN, I.OPTION_6): S.HISTORY,
    (S.MAIN, I.OPTION_7): S.ACCOUNT,
    (S.MAIN, I.EXIT): S.END,
    (S.MAIN, I.INVALID): S.MAIN,

    (S.WITHDRAW_MENU, I.OPTION_1): S.WITHDRAW_PROVIDER,
    (S.WITHDRAW_MENU, I.OPTION_2): S.REDEEM_POSITION,
    (S.INVEST_MENU, I.OPTION_1): S.INVEST_AMOUNT,
    (S.INVEST_MENU, I.OPTION_2): S.INVEST_AMOUNT,

    **_flow_edges(S.TRANSFER_RECIPIENT, S.TRANSFER_AMOUNT, S.TRANSFER_CONFIRM),
    **_confirm_edges(S.TRANSFER_CONFIRM, S.TRANSFER_OTP),

    **_flow_edges(S.DEPOSIT_PROVIDER, S.DEPOSIT_CURRENCY, S.DEPOSIT_AMOUNT, S.DEPOSIT_CONFIRM),
    **_confirm_edges(S.DEPOSIT_CONFIRM, S.DEPOSIT_OTP),

    **_flow_edges(S.WITHDRAW_PROVIDER, S.WITHDRAW_CURRENCY, S.WITHDRAW_AMOUNT, S.WITHDRAW_CONFIRM),
    **_confirm_edges(S.WITHDRAW_CONFIRM, S.WITHDRAW_OTP),

    **_flow_edges(S.REDEEM_POSITION, S.REDEEM_AMOUNT, S.REDEEM_CONFIRM),
    **_confirm_edges(S.REDEEM_CONFIRM, S.REDEEM_OTP),

    **_flow_edges(S.INVEST_AMOUNT, S.INVEST_VAULT, S.INVEST_CONFIRM),
    **_confirm_edges(S.INVEST_CONFIRM, S.INVEST_OTP),
}

for _state, _parent in PARENTS.items():
    TRANSITIONS[(_state, I.BACK)] = _parent
    TRANSITIONS[(_state, I.EXIT)] = S.END
    TRANSITIONS[(_state, I.INVALID)] = _state


def next_state(state: MenuState, input_class: InputClass) -> MenuState:
    """
    Look up the target of a transition.

    Raises:
        KeyError: If the machine has no such edge
    """
    return TRANSITIONS[(state, input_class)]


def classify_input(state: MenuState, text: str) -> InputClass:
    """
    Classify raw input before the state's own validation.

    Navigation tokens win over content, so an amount of "9" means back;
    content that passes this step is VALID until the state's validator
    says otherwise.
    """
    text = text.strip()

    if state is S.MAIN:
        if text == EXIT:
            return I.EXIT
        return MAIN_OPTIONS.get(text, I.INVALID)

    if text == BACK:
        return I.BACK
    if text == EXIT:
        return I.EXIT

    if state in CONFIRM_STATES:
        if text == CONFIRM:
            return I.CONFIRM
        if text == DECLINE:
            return I.DECLINE
        return I.INVALID

    if state in SUBMENU_STATES:
        return SUBMENU_OPTIONS.get(text, I.INVALID)

    if state in DISPLAY_STATES or not text:
        return I.INVALID

    return I.VALID


def reachable_from(state: MenuState) -> set[MenuState]:
    """All states reachable from `state`, including itself."""
    seen = {state}
    queue = deque([state])
    while queue:
        current = queue.popleft()
        for (source, _), target in TRANSITIONS.items():
            if source is current and target not in seen:
                seen.add(target)
                queue.append(target)
    return seen

"""
USSD Flow Constants.

Defines the menu states, input classes, navigation tokens and the
supported currency/provider tables for the USSD menus.
"""

from enum import Enum


class MenuState(str, Enum):
    """States of the USSD menu machine."""
    MAIN = "main"
    BALANCE = "balance"
    HISTORY = "history"
    ACCOUNT = "account"
    END = "end"

    TRANSFER_RECIPIENT = "transfer_recipient"
    TRANSFER_AMOUNT = "transfer_amount"
    TRANSFER_CONFIRM = "transfer_confirm"
    TRANSFER_OTP = "transfer_otp"

    DEPOSIT_PROVIDER = "deposit_provider"
    DEPOSIT_CURRENCY = "deposit_currency"
    DEPOSIT_AMOUNT = "deposit_amount"
    DEPOSIT_CONFIRM = "deposit_confirm"
    DEPOSIT_OTP = "deposit_otp"

    WITHDRAW_MENU = "withdraw_menu"
    WITHDRAW_PROVIDER = "withdraw_provider"
    WITHDRAW_CURRENCY = "withdraw_currency"
    WITHDRAW_AMOUNT = "withdraw_amount"
    WITHDRAW_CONFIRM = "withdraw_confirm"
    WITHDRAW_OTP = "withdraw_otp"

    REDEEM_POSITION = "redeem_position"
    REDEEM_AMOUNT = "redeem_amount"
    REDEEM_CONFIRM = "redeem_confirm"
    REDEEM_OTP = "redeem_otp"

    INVEST_MENU = "invest_menu"
    INVEST_AMOUNT = "invest_amount"
    INVEST_VAULT = "invest_vault"
    INVEST_CONFIRM = "invest_confirm"
    INVEST_OTP = "invest_otp"


class InputClass(str, Enum):
    """What a user's input means in the current state."""
    BACK = "back"
    EXIT = "exit"
    VALID = "valid"
    INVALID = "invalid"
    CONFIRM = "confirm"
    DECLINE = "decline"
    AUTH_REQUIRED = "auth_required"
    OPTION_1 = "option_1"
    OPTION_2 = "option_2"
    OPTION_3 = "option_3"
    OPTION_4 = "option_4"
    OPTION_5 = "option_5"
    OPTION_6 = "option_6"
    OPTION_7 = "option_7"


# ─────────────────────────────────────────────────────────────────────────────
# Navigation Tokens
# ─────────────────────────────────────────────────────────────────────────────

BACK = "9"
EXIT = "0"
CONFIRM = "1"
DECLINE = "2"

MAIN_OPTIONS = {
    "1": InputClass.OPTION_1,
    "2": InputClass.OPTION_2,
    "3": InputClass.OPTION_3,
    "4": InputClass.OPTION_4,
    "5": InputClass.OPTION_5,
    "6": InputClass.OPTION_6,
    "7": InputClass.OPTION_7,
}

SUBMENU_OPTIONS = {
    "1": InputClass.OPTION_1,
    "2": InputClass.OPTION_2,
}


# ─────────────────────────────────────────────────────────────────────────────
# State Groups
# ─────────────────────────────────────────────────────────────────────────────

CONFIRM_STATES = frozenset({
    MenuState.TRANSFER_CONFIRM,
    MenuState.DEPOSIT_CONFIRM,
    MenuState.WITHDRAW_CONFIRM,
    MenuState.REDEEM_CONFIRM,
    MenuState.INVEST_CONFIRM,
})

OTP_STATES = frozenset({
    MenuState.TRANSFER_OTP,
    MenuState.DEPOSIT_OTP,
    MenuState.WITHDRAW_OTP,
    MenuState.REDEEM_OTP,
    MenuState.INVEST_OTP,
})

SUBMENU_STATES = frozenset({MenuState.WITHDRAW_MENU, MenuState.INVEST_MENU})

DISPLAY_STATES = frozenset({MenuState.BALANCE, MenuState.HISTORY, MenuState.ACCOUNT})

# Operation name passed to the authorization gate per confirm/OTP state.
# Redemption moves value out of a vault, so it is gated like a withdrawal.
STATE_OPERATIONS = {
    MenuState.TRANSFER_CONFIRM: "transfer",
    MenuState.TRANSFER_OTP: "transfer",
    MenuState.DEPOSIT_CONFIRM: "deposit",
    MenuState.DEPOSIT_OTP: "deposit",
    MenuState.WITHDRAW_CONFIRM: "withdraw",
    MenuState.WITHDRAW_OTP: "withdraw",
    MenuState.REDEEM_CONFIRM: "withdraw",
    MenuState.REDEEM_OTP: "withdraw",
    MenuState.INVEST_CONFIRM: "invest",
    MenuState.INVEST_OTP: "invest",
}


# ─────────────────────────────────────────────────────────────────────────────
# Currencies and Providers
# ─────────────────────────────────────────────────────────────────────────────

CURRENCY_NAMES = {
    "KES": "Kenyan Shilling",
    "UGX": "Ugandan Shilling",
    "TZS": "Tanzanian Shilling",
    "GHS": "Ghanaian Cedi",
    "NGN": "Nigerian Naira",
    "ZAR": "South African Rand",
}

PROVIDER_NAMES = {
    "kotanipay": "Kotani Pay",
    "yellowcard": "Yellow Card",
}


# ─────────────────────────────────────────────────────────────────────────────
# Display Limits
# ─────────────────────────────────────────────────────────────────────────────

MAX_VAULTS_DISPLAYED = 5
HISTORY_LIMIT = 5
VAULT_NAME_MAX_LENGTH = 25


# ─────────────────────────────────────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────────────────────────────────────

NAV_FOOTER = f"{BACK}. Back\n{EXIT}. Exit"
GOODBYE_MESSAGE = "Thank you for using {app_name}. Goodbye!"
CANCELLED_MESSAGE = "Transaction cancelled."
SERVICE_UNAVAILABLE_MESSAGE = "Service temporarily unavailable. Please try again later."
INVESTMENTS_UNAVAILABLE_MESSAGE = "Investments are unavailable right now. Please try again later."
CONFIRM_FOOTER = f"{CONFIRM}. Confirm\n{DECLINE}. Cancel\n{BACK}. Back"

# Short transaction labels for the history screen
HISTORY_LABELS = {
    "transfer": "Sent",
    "receive": "Received",
    "deposit": "Deposit",
    "withdrawal": "Withdraw",
    "investment": "Invest",
    "redemption": "Redeem",
}

"""
USSD Menu.

Runs one turn of the USSD menu machine: classify the input, validate it
for the current state, update the flow draft and render the next screen.
Confirmations go through the authorization gate; money movements go
through the orchestrator, whose ledger outcome becomes the final screen.

The menu holds no conversation state of its own. Everything a later turn
needs travels in the returned `session_data`.
"""

import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy.orm import Session

from ussd_wallet.auth import AuthorizationGate, AuthStatus, PhoneNumber, validate_phone_number
from ussd_wallet.config import Settings
from ussd_wallet.errors import (
    DraftDecodeError,
    ExternalFailure,
    InvalidOtp,
    OtpNotFound,
    RateLimited,
    SmsDeliveryError,
    TooManyAttempts,
    UnsupportedCurrency,
)
from ussd_wallet.flows.constants import (
    CANCELLED_MESSAGE,
    CONFIRM_FOOTER,
    CURRENCY_NAMES,
    GOODBYE_MESSAGE,
    HISTORY_LABELS,
    HISTORY_LIMIT,
    INVESTMENTS_UNAVAILABLE_MESSAGE,
    MAX_VAULTS_DISPLAYED,
    NAV_FOOTER,
    PROVIDER_NAMES,
    STATE_OPERATIONS,
    VAULT_NAME_MAX_LENGTH,
    InputClass,
    MenuState,
)
from ussd_wallet.flows.drafts import (
    DepositDraft,
    Draft,
    InvestmentDraft,
    TransferDraft,
    WithdrawalDraft,
    decode_draft,
    encode_draft,
    truncate_for,
)
from ussd_wallet.flows.transitions import PARENTS, classify_input, next_state
from ussd_wallet.flows.validators import (
    validate_amount,
    validate_menu_choice,
    validate_otp_code,
    validate_recipient,
)
from ussd_wallet.integrations.custody import CustodyClient, Vault, VaultPosition
from ussd_wallet.integrations.providers import ProviderRegistry
from ussd_wallet.integrations.sms.notifications import TYPE_LABELS
from ussd_wallet.logging_config import get_logger, mask_phone
from ussd_wallet.models import Account, TransactionStatus
from ussd_wallet.services.fx import CurrencyConverter
from ussd_wallet.services.orchestrator import MoneyMovementOrchestrator, MovementResult
from ussd_wallet.storage import ledger
from ussd_wallet.storage.accounts import (
    get_account_by_phone,
    get_or_create_account,
    refresh_cached_balance,
)

logger = get_logger(__name__)

S = MenuState


class _InvestmentsUnavailable(Exception):
    """Custody could not list vaults or positions for an investment screen."""


@dataclass
class MenuResponse:
    """Result of one menu turn."""
    text: str
    should_continue: bool
    next_state: MenuState
    session_data: dict[str, Any] = field(default_factory=dict)

    @property
    def wire_text(self) -> str:
        """Gateway response body: "CON ..." keeps the session open, "END ..." closes it."""
        return f"{'CON' if self.should_continue else 'END'} {self.text}"


@dataclass
class _Turn:
    state: MenuState
    text: str
    draft: Draft | None
    account: Account
    phone: PhoneNumber
    session_data: dict[str, Any]


def _new_idempotency_key() -> str:
    return uuid.uuid4().hex


def _vault_label(name: str) -> str:
    return name[:VAULT_NAME_MAX_LENGTH]


def _short_ref(result: MovementResult) -> str:
    return str(result.transaction_id).split("-")[0].upper() if result.transaction_id else "-"


class UssdMenu:
    """
    USSD menu state machine.

    Constructed per request; all collaborators except the database
    session are the process-wide ones from the service container.
    """

    def __init__(
        self,
        db: Session,
        gate: AuthorizationGate,
        orchestrator: MoneyMovementOrchestrator,
        custody: CustodyClient,
        providers: ProviderRegistry,
        converter: CurrencyConverter,
        settings: Settings,
    ):
        self.db = db
        self.gate = gate
        self.orchestrator = orchestrator
        self.custody = custody
        self.providers = providers
        self.converter = converter
        self.settings = settings
        self.token = settings.token_symbol

        self._handlers: dict[MenuState, Callable[[_Turn, InputClass], MenuResponse]] = {
            S.MAIN: self._handle_main,
            S.BALANCE: self._handle_display,
            S.HISTORY: self._handle_display,
            S.ACCOUNT: self._handle_display,
            S.TRANSFER_RECIPIENT: self._handle_transfer_recipient,
            S.TRANSFER_AMOUNT: self._handle_transfer_amount,
            S.DEPOSIT_PROVIDER: self._handle_provider,
            S.DEPOSIT_CURRENCY: self._handle_currency,
            S.DEPOSIT_AMOUNT: self._handle_deposit_amount,
            S.WITHDRAW_MENU: self._handle_withdraw_menu,
            S.WITHDRAW_PROVIDER: self._handle_provider,
            S.WITHDRAW_CURRENCY: self._handle_currency,
            S.WITHDRAW_AMOUNT: self._handle_withdraw_amount,
            S.REDEEM_POSITION: self._handle_redeem_position,
            S.REDEEM_AMOUNT: self._handle_redeem_amount,
            S.INVEST_MENU: self._handle_invest_menu,
            S.INVEST_AMOUNT: self._handle_invest_amount,
            S.INVEST_VAULT: self._handle_invest_vault,
        }
        self._prompts: dict[MenuState, Callable[[_Turn, Any], str]] = {
            S.MAIN: self._main_prompt,
            S.BALANCE: self._balance_prompt,
            S.HISTORY: self._history_prompt,
            S.ACCOUNT: self._account_prompt,
            S.TRANSFER_RECIPIENT: lambda turn, draft: f"Enter recipient phone number:\n{NAV_FOOTER}",
            S.TRANSFER_AMOUNT: self._transfer_amount_prompt,
            S.TRANSFER_CONFIRM: self._transfer_confirm_prompt,
            S.DEPOSIT_PROVIDER: self._provider_prompt,
            S.DEPOSIT_CURRENCY: self._currency_prompt,
            S.DEPOSIT_AMOUNT: self._deposit_amount_prompt,
            S.DEPOSIT_CONFIRM: self._deposit_confirm_prompt,
            S.WITHDRAW_MENU: lambda turn, draft: (
                f"Withdraw\n1. To Mobile Money\n2. From Investment\n{NAV_FOOTER}"
            ),
            S.WITHDRAW_PROVIDER: self._provider_prompt,
            S.WITHDRAW_CURRENCY: self._currency_prompt,
            S.WITHDRAW_AMOUNT: self._withdraw_amount_prompt,
            S.WITHDRAW_CONFIRM: self._withdraw_confirm_prompt,
            S.REDEEM_POSITION: self._redeem_position_prompt,
            S.REDEEM_AMOUNT: self._redeem_amount_prompt,
            S.REDEEM_CONFIRM: self._redeem_confirm_prompt,
            S.INVEST_MENU: lambda turn, draft: (
                f"Invest\n1. From Wallet Balance\n2. Buy & Invest (Mobile Money)\n{NAV_FOOTER}"
            ),
            S.INVEST_AMOUNT: self._invest_amount_prompt,
            S.INVEST_VAULT: self._invest_vault_prompt,
            S.INVEST_CONFIRM: self._invest_confirm_prompt,
        }
        self._executors: dict[MenuState, Callable[[_Turn, Any], MovementResult]] = {
            S.TRANSFER_CONFIRM: self._execute_transfer,
            S.DEPOSIT_CONFIRM: self._execute_deposit,
            S.WITHDRAW_CONFIRM: self._execute_withdrawal,
            S.REDEEM_CONFIRM: self._execute_redemption,
            S.INVEST_CONFIRM: self._execute_investment,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Turn entry point
    # ─────────────────────────────────────────────────────────────────────────

    def transition(
        self,
        state: str,
        user_input: str,
        session_data: dict[str, Any] | None,
        phone_number: str,
    ) -> MenuResponse:
        """
        Run one turn.

        Args:
            state: Current MenuState value from the session
            user_input: Latest input segment (may be empty on the first turn)
            session_data: Encoded draft from the session
            phone_number: Caller (raw or normalized)

        Returns:
            MenuResponse with the screen text and the state to persist
        """
        phone = validate_phone_number(phone_number)
        account = self._ensure_account(phone.normalized)
        session_data = session_data or {}

        try:
            menu_state = MenuState(state)
        except ValueError:
            logger.warning("ussd_unknown_state", state=state, phone=mask_phone(phone.normalized))
            menu_state, session_data = S.MAIN, {}
        if menu_state is S.END:
            menu_state, session_data = S.MAIN, {}

        try:
            draft = decode_draft(session_data)
        except DraftDecodeError as e:
            logger.warning("ussd_draft_reset", state=menu_state.value, error=str(e))
            menu_state, draft, session_data = S.MAIN, None, {}

        turn = _Turn(
            state=menu_state,
            text=(user_input or "").strip(),
            draft=draft,
            account=account,
            phone=phone,
            session_data=session_data,
        )

        if menu_state is S.MAIN and not turn.text:
            return self._render(turn, S.MAIN, None)

        input_class = classify_input(menu_state, turn.text)
        logger.debug(
            "ussd_transition",
            state=menu_state.value,
            input_class=input_class.value,
            phone=mask_phone(phone.normalized),
        )

        try:
            return self._dispatch(turn, input_class)
        except _InvestmentsUnavailable:
            return self._end(INVESTMENTS_UNAVAILABLE_MESSAGE)

    def _dispatch(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        menu_state, draft = turn.state, turn.draft

        if input_class is InputClass.BACK:
            parent = next_state(menu_state, InputClass.BACK)
            return self._render(turn, parent, truncate_for(parent, draft))

        if input_class is InputClass.EXIT:
            next_state(menu_state, InputClass.EXIT)
            if menu_state is S.MAIN:
                return self._end(GOODBYE_MESSAGE.format(app_name=self.settings.app_name))
            return self._end(CANCELLED_MESSAGE)

        if menu_state in self._executors:
            return self._handle_confirm(turn, input_class)
        if menu_state in PARENTS and PARENTS[menu_state] in self._executors:
            return self._handle_otp(turn, input_class)
        return self._handlers[menu_state](turn, input_class)

    # ─────────────────────────────────────────────────────────────────────────
    # Rendering helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _ensure_account(self, phone_number: str) -> Account:
        account, is_new = get_or_create_account(self.db, phone_number, self.custody)
        if is_new:
            self.orchestrator.notifier.send_welcome(phone_number)
        return account

    def _prompt(self, turn: _Turn, state: MenuState, draft: Draft | None) -> str:
        if state in PARENTS and PARENTS[state] in self._executors:
            return (
                f"Enter the {self.settings.otp_length}-digit code sent to your phone:\n"
                f"{NAV_FOOTER}"
            )
        return self._prompts[state](turn, draft)

    def _render(self, turn: _Turn, state: MenuState, draft: Draft | None) -> MenuResponse:
        return MenuResponse(
            text=self._prompt(turn, state, draft),
            should_continue=True,
            next_state=state,
            session_data=encode_draft(draft),
        )

    def _advance(self, turn: _Turn, input_class: InputClass, draft: Draft | None) -> MenuResponse:
        return self._render(turn, next_state(turn.state, input_class), draft)

    def _reprompt(self, turn: _Turn, error: str) -> MenuResponse:
        """Redisplay the current state with an error; session data is returned untouched."""
        state = next_state(turn.state, InputClass.INVALID)
        return MenuResponse(
            text=f"{error}\n{self._prompt(turn, state, turn.draft)}",
            should_continue=True,
            next_state=state,
            session_data=turn.session_data,
        )

    @staticmethod
    def _end(text: str) -> MenuResponse:
        return MenuResponse(text=text, should_continue=False, next_state=S.END, session_data={})

    def _local_equivalent(self, amount: Decimal, currency: str) -> str | None:
        try:
            converted = self.converter.convert(amount, self.token, currency)
        except UnsupportedCurrency:
            return None
        return f"~{converted.amount:,.2f} {currency}"

    def _provider_choices(self) -> list[str]:
        return [name for name in PROVIDER_NAMES if name in self.providers]

    def _currency_choices(self, turn: _Turn, provider_name: str) -> list[str]:
        provider = self.providers.get(provider_name)
        currencies = [
            c for c in provider.supported_currencies if self.converter.supports(c, self.token)
        ]
        # Caller's own currency first
        return sorted(currencies, key=lambda c: c != turn.phone.currency)

    def _positions(self, turn: _Turn) -> list[VaultPosition]:
        try:
            positions = self.custody.positions(turn.account.custody_address)
        except ExternalFailure as e:
            logger.warning("positions_lookup_failed", account_id=str(turn.account.id), error=str(e))
            raise _InvestmentsUnavailable() from e
        return positions[:MAX_VAULTS_DISPLAYED]

    def _vaults(self) -> list[Vault]:
        try:
            vaults = self.custody.list_vaults(self.settings.vault_addresses or None)
        except ExternalFailure as e:
            logger.warning("vaults_lookup_failed", error=str(e))
            raise _InvestmentsUnavailable() from e
        return vaults[:MAX_VAULTS_DISPLAYED]

    # ─────────────────────────────────────────────────────────────────────────
    # Main menu and display screens
    # ─────────────────────────────────────────────────────────────────────────

    def _main_prompt(self, turn: _Turn, draft: Any) -> str:
        return (
            f"Welcome to {self.settings.app_name}\n"
            "1. Check Balance\n"
            "2. Send Money\n"
            "3. Deposit\n"
            "4. Withdraw\n"
            "5. Invest\n"
            "6. Transactions\n"
            "7. My Account\n"
            "0. Exit"
        )

    def _handle_main(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        if input_class is InputClass.INVALID:
            return self._reprompt(turn, "Invalid choice.")
        return self._advance(turn, input_class, None)

    def _handle_display(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        return self._reprompt(turn, "Invalid choice.")

    def _balance_prompt(self, turn: _Turn, draft: Any) -> str:
        account = turn.account
        try:
            balance = refresh_cached_balance(self.db, account, self.custody)
            positions = self._positions(turn)
            stale = False
        except (ExternalFailure, _InvestmentsUnavailable) as e:
            logger.warning("balance_lookup_failed", account_id=str(account.id), error=str(e))
            balance, positions, stale = account.cached_balance or Decimal("0"), [], True

        lines = [f"Balance: {balance:,.2f} {self.token}"]
        local = self._local_equivalent(balance, turn.phone.currency)
        if local:
            lines.append(local)
        if positions:
            lines.append("Investments:")
            lines.extend(f"{_vault_label(p.vault_name)}: {p.assets:,.2f}" for p in positions)
        if stale:
            lines.append("(last known balance)")
        lines.append(NAV_FOOTER)
        return "\n".join(lines)

    def _history_prompt(self, turn: _Turn, draft: Any) -> str:
        transactions = ledger.get_history(self.db, turn.phone.normalized, limit=HISTORY_LIMIT)
        if not transactions:
            return f"No transactions yet.\n{NAV_FOOTER}"

        lines = ["Recent transactions:"]
        for i, tx in enumerate(transactions, 1):
            label = HISTORY_LABELS.get(tx.type, tx.type)
            lines.append(
                f"{i}. {tx.created_at:%d/%m} {label} {tx.amount:,.2f} {tx.currency} ({tx.status})"
            )
        lines.append(NAV_FOOTER)
        return "\n".join(lines)

    def _account_prompt(self, turn: _Turn, draft: Any) -> str:
        address = turn.account.custody_address
        short_address = f"{address[:6]}...{address[-4:]}" if len(address) > 12 else address
        return (
            "My Account\n"
            f"Phone: +{turn.phone.normalized}\n"
            f"Wallet: {short_address}\n"
            f"Currency: {turn.phone.currency}\n"
            f"{NAV_FOOTER}"
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Send money
    # ─────────────────────────────────────────────────────────────────────────

    def _handle_transfer_recipient(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        result = validate_recipient(turn.text, turn.phone.country_code)
        if not result.valid:
            return self._reprompt(turn, result.error)
        if result.value == turn.phone.normalized:
            return self._reprompt(turn, "You cannot send money to yourself.")
        recipient = get_account_by_phone(self.db, result.value)
        if recipient is None or not recipient.is_active:
            return self._reprompt(turn, f"+{result.value} is not registered.")
        return self._advance(turn, InputClass.VALID, TransferDraft(recipient=result.value))

    def _transfer_amount_prompt(self, turn: _Turn, draft: TransferDraft) -> str:
        return (
            f"Send to +{draft.recipient}\n"
            f"Balance: {turn.account.cached_balance:,.2f} {self.token}\n"
            f"Fee: {self.settings.transfer_fee:,.2f} {self.token}\n"
            f"Enter amount:\n{NAV_FOOTER}"
        )

    def _handle_transfer_amount(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        fee = self.settings.transfer_fee
        result = validate_amount(
            turn.text,
            minimum=self.settings.min_transfer_amount,
            maximum=turn.account.cached_balance - fee,
        )
        if not result.valid:
            return self._reprompt(turn, result.error)
        draft = replace(
            turn.draft,
            amount=result.value,
            fee=fee,
            idempotency_key=_new_idempotency_key(),
        )
        return self._advance(turn, InputClass.VALID, draft)

    def _transfer_confirm_prompt(self, turn: _Turn, draft: TransferDraft) -> str:
        return (
            f"Send {draft.amount:,.2f} {self.token} to +{draft.recipient}\n"
            f"Fee: {draft.fee:,.2f} {self.token}\n"
            f"Total: {draft.amount + draft.fee:,.2f} {self.token}\n"
            f"{CONFIRM_FOOTER}"
        )

    def _execute_transfer(self, turn: _Turn, draft: TransferDraft) -> MovementResult:
        return self.orchestrator.transfer(
            turn.phone.normalized,
            draft.recipient,
            draft.amount,
            idempotency_key=draft.idempotency_key,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Provider and currency selection (deposit and withdraw)
    # ─────────────────────────────────────────────────────────────────────────

    def _provider_prompt(self, turn: _Turn, draft: Any) -> str:
        options = "\n".join(
            f"{i}. {PROVIDER_NAMES[name]}" for i, name in enumerate(self._provider_choices(), 1)
        )
        return f"Select provider:\n{options}\n{NAV_FOOTER}"

    def _handle_provider(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        choices = self._provider_choices()
        result = validate_menu_choice(turn.text, len(choices))
        if not result.valid:
            return self._reprompt(turn, result.error)

        if turn.state is S.DEPOSIT_PROVIDER:
            draft = DepositDraft(provider=choices[result.value])
        else:
            draft = replace(
                turn.draft or WithdrawalDraft(destination="mobile_money"),
                provider=choices[result.value],
            )
        return self._advance(turn, InputClass.VALID, draft)

    def _currency_prompt(self, turn: _Turn, draft: DepositDraft | WithdrawalDraft) -> str:
        options = "\n".join(
            f"{i}. {code} - {CURRENCY_NAMES.get(code, code)}"
            for i, code in enumerate(self._currency_choices(turn, draft.provider), 1)
        )
        return f"Select currency:\n{options}\n{NAV_FOOTER}"

    def _handle_currency(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        choices = self._currency_choices(turn, turn.draft.provider)
        result = validate_menu_choice(turn.text, len(choices))
        if not result.valid:
            return self._reprompt(turn, result.error)
        return self._advance(
            turn, InputClass.VALID, replace(turn.draft, currency=choices[result.value])
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Deposit
    # ─────────────────────────────────────────────────────────────────────────

    def _deposit_minimum(self, currency: str) -> Decimal:
        return self.settings.deposit_minimums.get(currency, Decimal("1"))

    def _deposit_amount_prompt(self, turn: _Turn, draft: DepositDraft) -> str:
        minimum = self._deposit_minimum(draft.currency)
        return f"Enter amount in {draft.currency} (min {minimum:,.2f}):\n{NAV_FOOTER}"

    def _handle_deposit_amount(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        result = validate_amount(turn.text, minimum=self._deposit_minimum(turn.draft.currency))
        if not result.valid:
            return self._reprompt(turn, result.error)
        draft = replace(turn.draft, amount=result.value, idempotency_key=_new_idempotency_key())
        return self._advance(turn, InputClass.VALID, draft)

    def _deposit_confirm_prompt(self, turn: _Turn, draft: DepositDraft) -> str:
        quote = self.converter.convert(draft.amount, draft.currency, self.token)
        return (
            f"Deposit {draft.amount:,.2f} {draft.currency} via {PROVIDER_NAMES[draft.provider]}\n"
            f"You receive: {quote.amount:,.2f} {self.token}\n"
            f"{CONFIRM_FOOTER}"
        )

    def _execute_deposit(self, turn: _Turn, draft: DepositDraft) -> MovementResult:
        return self.orchestrator.initiate_deposit(
            turn.phone.normalized,
            draft.amount,
            draft.currency,
            draft.provider,
            idempotency_key=draft.idempotency_key,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Withdraw (mobile money)
    # ─────────────────────────────────────────────────────────────────────────

    def _handle_withdraw_menu(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        if input_class is InputClass.OPTION_1:
            return self._advance(turn, input_class, WithdrawalDraft(destination="mobile_money"))
        if input_class is InputClass.OPTION_2:
            return self._advance(turn, input_class, WithdrawalDraft(destination="investment"))
        return self._reprompt(turn, "Invalid choice.")

    def _withdraw_amount_prompt(self, turn: _Turn, draft: WithdrawalDraft) -> str:
        return (
            f"Balance: {turn.account.cached_balance:,.2f} {self.token}\n"
            f"Enter {self.token} amount to withdraw to {draft.currency}:\n{NAV_FOOTER}"
        )

    def _handle_withdraw_amount(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        result = validate_amount(
            turn.text,
            minimum=self.settings.min_withdrawal_amount,
            maximum=turn.account.cached_balance,
        )
        if not result.valid:
            return self._reprompt(turn, result.error)
        try:
            payout = self.converter.convert(result.value, self.token, turn.draft.currency)
        except UnsupportedCurrency as e:
            return self._reprompt(turn, e.message)

        draft = replace(
            turn.draft,
            amount=result.value,
            payout_amount=payout.amount,
            idempotency_key=_new_idempotency_key(),
        )
        return self._advance(turn, InputClass.VALID, draft)

    def _withdraw_confirm_prompt(self, turn: _Turn, draft: WithdrawalDraft) -> str:
        return (
            f"Withdraw {draft.amount:,.2f} {self.token}\n"
            f"You receive: {draft.payout_amount:,.2f} {draft.currency} "
            f"via {PROVIDER_NAMES[draft.provider]}\n"
            f"{CONFIRM_FOOTER}"
        )

    def _execute_withdrawal(self, turn: _Turn, draft: WithdrawalDraft) -> MovementResult:
        return self.orchestrator.withdraw(
            turn.phone.normalized,
            draft.amount,
            draft.currency,
            draft.provider,
            idempotency_key=draft.idempotency_key,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Withdraw from investment
    # ─────────────────────────────────────────────────────────────────────────

    def _redeem_position_prompt(self, turn: _Turn, draft: Any) -> str:
        positions = self._positions(turn)
        if not positions:
            return f"You have no investments.\n{NAV_FOOTER}"
        options = "\n".join(
            f"{i}. {_vault_label(p.vault_name)}: {p.assets:,.2f}" for i, p in enumerate(positions, 1)
        )
        return f"Select investment:\n{options}\n{NAV_FOOTER}"

    def _handle_redeem_position(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        positions = self._positions(turn)
        if not positions:
            return self._reprompt(turn, "No investments found.")
        result = validate_menu_choice(turn.text, len(positions))
        if not result.valid:
            return self._reprompt(turn, result.error)

        position = positions[result.value]
        draft = replace(
            turn.draft or WithdrawalDraft(destination="investment"),
            vault_address=position.vault_address,
            vault_name=position.vault_name,
            vault_assets=position.assets,
        )
        return self._advance(turn, InputClass.VALID, draft)

    def _redeem_amount_prompt(self, turn: _Turn, draft: WithdrawalDraft) -> str:
        return (
            f"{_vault_label(draft.vault_name)}\n"
            f"Available: {draft.vault_assets:,.2f} {self.token}\n"
            f"Enter amount to withdraw:\n{NAV_FOOTER}"
        )

    def _handle_redeem_amount(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        result = validate_amount(turn.text, maximum=turn.draft.vault_assets)
        if not result.valid:
            return self._reprompt(turn, result.error)
        draft = replace(turn.draft, amount=result.value, idempotency_key=_new_idempotency_key())
        return self._advance(turn, InputClass.VALID, draft)

    def _redeem_confirm_prompt(self, turn: _Turn, draft: WithdrawalDraft) -> str:
        return (
            f"Withdraw {draft.amount:,.2f} {self.token} from "
            f"{_vault_label(draft.vault_name)} to your wallet\n"
            f"{CONFIRM_FOOTER}"
        )

    def _execute_redemption(self, turn: _Turn, draft: WithdrawalDraft) -> MovementResult:
        return self.orchestrator.redeem(
            turn.phone.normalized,
            draft.amount,
            draft.vault_address,
            draft.vault_name,
            idempotency_key=draft.idempotency_key,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Invest
    # ─────────────────────────────────────────────────────────────────────────

    def _buy_and_invest_available(self, currency: str) -> bool:
        provider_name = self.settings.default_collection_provider
        return (
            provider_name in self.providers
            and self.providers.get(provider_name).supports(currency)
            and self.converter.supports(currency, self.token)
        )

    def _handle_invest_menu(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        if input_class is InputClass.OPTION_1:
            return self._advance(
                turn, input_class, InvestmentDraft(funding="balance", currency=self.token)
            )
        if input_class is InputClass.OPTION_2:
            if not self._buy_and_invest_available(turn.phone.currency):
                return self._reprompt(turn, "Buy & Invest is not available in your country.")
            return self._advance(
                turn,
                input_class,
                InvestmentDraft(funding="mobile_money", currency=turn.phone.currency),
            )
        return self._reprompt(turn, "Invalid choice.")

    def _invest_amount_prompt(self, turn: _Turn, draft: InvestmentDraft) -> str:
        if draft.funding == "balance":
            return (
                f"Balance: {turn.account.cached_balance:,.2f} {self.token}\n"
                f"Enter amount to invest (min {self.settings.min_investment_amount:,.2f}):\n"
                f"{NAV_FOOTER}"
            )
        minimum = self._deposit_minimum(draft.currency)
        return f"Enter amount in {draft.currency} (min {minimum:,.2f}):\n{NAV_FOOTER}"

    def _handle_invest_amount(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        draft: InvestmentDraft = turn.draft
        if draft.funding == "balance":
            result = validate_amount(
                turn.text,
                minimum=self.settings.min_investment_amount,
                maximum=turn.account.cached_balance,
            )
            if not result.valid:
                return self._reprompt(turn, result.error)
            settlement = result.value
        else:
            result = validate_amount(turn.text, minimum=self._deposit_minimum(draft.currency))
            if not result.valid:
                return self._reprompt(turn, result.error)
            settlement = self.converter.convert(result.value, draft.currency, self.token).amount

        return self._advance(
            turn,
            InputClass.VALID,
            replace(draft, amount=result.value, settlement_amount=settlement),
        )

    def _invest_vault_prompt(self, turn: _Turn, draft: InvestmentDraft) -> str:
        vaults = self._vaults()
        if not vaults:
            return f"No vaults available.\n{NAV_FOOTER}"
        options = "\n".join(
            f"{i}. {_vault_label(v.name)} ({v.apy:.2f}% APY)" for i, v in enumerate(vaults, 1)
        )
        return f"Select vault:\n{options}\n{NAV_FOOTER}"

    def _handle_invest_vault(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        vaults = self._vaults()
        if not vaults:
            return self._reprompt(turn, "No vaults available.")
        result = validate_menu_choice(turn.text, len(vaults))
        if not result.valid:
            return self._reprompt(turn, result.error)

        vault = vaults[result.value]
        draft = replace(
            turn.draft,
            vault_address=vault.address,
            vault_name=vault.name,
            vault_apy=vault.apy,
            idempotency_key=_new_idempotency_key(),
        )
        return self._advance(turn, InputClass.VALID, draft)

    def _invest_confirm_prompt(self, turn: _Turn, draft: InvestmentDraft) -> str:
        vault = _vault_label(draft.vault_name)
        if draft.funding == "balance":
            return (
                f"Invest {draft.amount:,.2f} {self.token} in {vault}\n"
                f"APY: {draft.vault_apy or 0:.2f}%\n"
                f"{CONFIRM_FOOTER}"
            )
        return (
            f"Pay {draft.amount:,.2f} {draft.currency} and invest "
            f"~{draft.settlement_amount:,.2f} {self.token} in {vault}\n"
            f"{CONFIRM_FOOTER}"
        )

    def _execute_investment(self, turn: _Turn, draft: InvestmentDraft) -> MovementResult:
        if draft.funding == "balance":
            return self.orchestrator.invest(
                turn.phone.normalized,
                draft.amount,
                draft.vault_address,
                draft.vault_name,
                idempotency_key=draft.idempotency_key,
            )
        return self.orchestrator.initiate_deposit(
            turn.phone.normalized,
            draft.amount,
            draft.currency,
            self.settings.default_collection_provider,
            auto_invest_vault={"address": draft.vault_address, "name": draft.vault_name},
            idempotency_key=draft.idempotency_key,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Confirmation, OTP and execution
    # ─────────────────────────────────────────────────────────────────────────

    def _handle_confirm(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        if input_class is InputClass.INVALID:
            return self._reprompt(turn, "Select 1 to confirm or 2 to cancel.")
        if input_class is InputClass.DECLINE:
            next_state(turn.state, InputClass.DECLINE)
            logger.info("ussd_flow_cancelled", state=turn.state.value)
            return self._end(CANCELLED_MESSAGE)

        operation = STATE_OPERATIONS[turn.state]
        phone = turn.phone.normalized
        auth = self.gate.authorize(self.db, phone, operation)

        if auth.authorized:
            return self._execute(turn, turn.state)
        if auth.status is AuthStatus.FORBIDDEN:
            return self._end("You are not authorized to perform this operation.")

        try:
            self.gate.issue_otp(phone, operation)
        except RateLimited as e:
            minutes = max(1, (e.retry_after or 60) // 60)
            return self._end(f"Too many code requests. Try again in {minutes} minutes.")
        except SmsDeliveryError:
            return self._end("We could not send your verification code. Please try again later.")

        logger.info(
            "ussd_otp_required",
            operation=operation,
            status=auth.status.value,
            phone=mask_phone(phone),
        )
        return self._advance(turn, InputClass.AUTH_REQUIRED, turn.draft)

    def _handle_otp(self, turn: _Turn, input_class: InputClass) -> MenuResponse:
        result = validate_otp_code(turn.text, self.settings.otp_length)
        if not result.valid:
            return self._reprompt(turn, result.error)

        operation = STATE_OPERATIONS[turn.state]
        phone = turn.phone.normalized
        try:
            self.gate.verify_otp(phone, result.value, operation)
        except InvalidOtp as e:
            return self._reprompt(turn, f"Invalid code. {e.remaining_attempts} attempts remaining.")
        except TooManyAttempts:
            return self._end("Too many failed attempts. Please try again later.")
        except OtpNotFound:
            return self._end("Your code has expired. Please start again.")

        if self.gate.get_active_session(phone) is None:
            self.gate.create_auth_session(phone)

        auth = self.gate.authorize(self.db, phone, operation)
        if not auth.authorized:
            logger.warning("ussd_reauthorization_failed", operation=operation, status=auth.status.value)
            return self._end("Authorization failed. Please start again.")

        next_state(turn.state, InputClass.VALID)
        return self._execute(turn, PARENTS[turn.state])

    def _execute(self, turn: _Turn, confirm_state: MenuState) -> MenuResponse:
        if turn.draft is None:
            return self._end("Your session has expired. Please start again.")

        result = self._executors[confirm_state](turn, turn.draft)
        logger.info(
            "ussd_operation_executed",
            state=confirm_state.value,
            status=result.status,
            transaction_id=str(result.transaction_id) if result.transaction_id else None,
            duplicate=result.duplicate,
        )
        return self._end(self._result_text(result))

    @staticmethod
    def _result_text(result: MovementResult) -> str:
        label = TYPE_LABELS.get(result.transaction_type, "Transaction")
        amount = f"{result.amount:,.2f} {result.currency}" if result.amount is not None else ""
        ref = _short_ref(result)

        if result.status == TransactionStatus.COMPLETED.value:
            return f"{label} successful.\n{amount}\nRef: {ref}"
        if result.status == TransactionStatus.PENDING.value:
            return (
                f"{label} of {amount} initiated.\n"
                "You will receive an SMS once it completes.\n"
                f"Ref: {ref}"
            )
        if result.status == TransactionStatus.CANCELLED.value:
            return f"{label} cancelled.\nRef: {ref}"
        reason = (result.error or "please try again later").rstrip(".")
        return f"{label} failed: {reason}.\nRef: {ref}"

"""
Money Movement Orchestrator.

Every mutating operation follows the same sequence:
1. write a pending Transaction with the full intended effect in metadata
2. re-check balance and limits against custody (never the cached value)
3. convert currencies where the operation crosses them
4. run the external steps as a saga (see services.saga)
5. success: mark completed with the custody hash or provider reference,
   refresh cached balances, notify
6. failure after a destructive step: compensate (re-mint, reverse), then
   mark failed; if compensation fails, mark failed and flag for
   reconciliation
7. failure before any destructive step: mark failed

Errors are caught here and returned as a MovementResult; callers never
see exceptions from a money movement, only its ledger outcome.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from ussd_wallet.config import Settings
from ussd_wallet.errors import (
    BusinessRuleError,
    ExternalFailure,
    InsufficientBalance,
    InvalidTransactionState,
    LimitExceeded,
    ReconciliationPending,
    RecipientNotFound,
    TransactionNotFound,
    ValidationError,
    WalletError,
)
from ussd_wallet.integrations.custody import CustodyClient, CustodyReceipt
from ussd_wallet.integrations.providers import (
    ProviderRegistry,
    ProviderResult,
    ProviderStatus,
)
from ussd_wallet.integrations.sms import Notifier
from ussd_wallet.logging_config import get_logger, mask_phone
from ussd_wallet.models import Account, Transaction, TransactionStatus, TransactionType
from ussd_wallet.services.fx import CurrencyConverter
from ussd_wallet.services.saga import SagaOutcome, SagaStage, run_saga
from ussd_wallet.storage import ledger
from ussd_wallet.storage.accounts import get_account_by_phone, refresh_cached_balance

logger = get_logger(__name__)


@dataclass
class MovementResult:
    """Outcome of a money movement as seen by the caller."""

    success: bool
    status: str
    transaction_id: UUID | None = None
    transaction_type: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    tx_hash: str | None = None
    external_ref: str | None = None
    error: str | None = None
    error_code: str | None = None
    needs_reconciliation: bool = False
    duplicate: bool = False

    @property
    def pending(self) -> bool:
        return self.status == TransactionStatus.PENDING.value

    @classmethod
    def from_transaction(cls, transaction: Transaction, **overrides: Any) -> "MovementResult":
        meta = transaction.meta or {}
        values = {
            "success": transaction.status in (
                TransactionStatus.COMPLETED.value,
                TransactionStatus.PENDING.value,
            ),
            "status": transaction.status,
            "transaction_id": transaction.id,
            "transaction_type": transaction.type,
            "amount": transaction.amount,
            "currency": transaction.currency,
            "tx_hash": transaction.tx_hash,
            "external_ref": transaction.external_ref,
            "error": meta.get("failure_reason"),
            "error_code": meta.get("failure_code"),
            "needs_reconciliation": bool(transaction.needs_reconciliation),
        }
        values.update(overrides)
        return cls(**values)


def _stage_record(result: Any) -> dict[str, Any]:
    """Serializable summary of a stage result for ledger metadata."""
    if isinstance(result, CustodyReceipt):
        return result.to_dict()
    if isinstance(result, ProviderResult):
        return {"provider_tx_id": result.provider_tx_id, "status": result.status.value}
    return {}


class MoneyMovementOrchestrator:
    """
    Executes transfers, deposits, withdrawals, investments and redemptions.

    Constructed per request with a database session; the clients it holds
    are the process-wide ones from the service container.
    """

    def __init__(
        self,
        db: Session,
        custody: CustodyClient,
        providers: ProviderRegistry,
        converter: CurrencyConverter,
        notifier: Notifier,
        settings: Settings,
    ):
        self.db = db
        self.custody = custody
        self.providers = providers
        self.converter = converter
        self.notifier = notifier
        self.settings = settings
        self.token = settings.token_symbol

    # ─────────────────────────────────────────────────────────────────────────
    # Shared steps
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _ref(transaction: Transaction, stage: str) -> str:
        """Idempotency reference for one custody call of one transaction."""
        return f"{transaction.id}:{stage}"

    def _require_account(self, phone_number: str) -> Account:
        account = get_account_by_phone(self.db, phone_number)
        if account is None or not account.is_active:
            raise BusinessRuleError("Account not found", code="account_not_found")
        return account

    def _require_balance(self, account: Account, required: Decimal) -> Decimal:
        """Check the authoritative custody balance, not the cached one."""
        balance = self.custody.balance_of(account.custody_address)
        if balance < required:
            raise InsufficientBalance(
                f"Insufficient balance: {balance:.2f} {self.token} available, "
                f"{required:.2f} {self.token} required",
                available=balance,
                required=required,
            )
        return balance

    def _refresh(self, *accounts: Account) -> None:
        for account in accounts:
            try:
                refresh_cached_balance(self.db, account, self.custody)
            except ExternalFailure as e:
                logger.warning(
                    "balance_refresh_failed",
                    account_id=str(account.id),
                    error=str(e),
                )

    def _notify(self, transaction: Transaction) -> None:
        self.notifier.notify_transaction(transaction)

    def _begin(
        self,
        phone_number: str,
        tx_type: TransactionType,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any],
        provider: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[Transaction, bool]:
        result = ledger.create_pending(
            self.db,
            phone_number=phone_number,
            tx_type=tx_type.value,
            amount=amount,
            currency=currency,
            metadata=metadata,
            provider=provider,
            idempotency_key=idempotency_key,
        )
        return result.transaction, result.created

    def _fail(
        self,
        transaction: Transaction,
        error: WalletError | str,
        needs_reconciliation: bool = False,
        accounts: tuple[Account, ...] = (),
        **meta: Any,
    ) -> MovementResult:
        reason = error.message if isinstance(error, WalletError) else str(error)
        code = error.code if isinstance(error, WalletError) else "failed"

        applied = ledger.mark_failed(
            self.db,
            transaction,
            reason,
            needs_reconciliation=needs_reconciliation,
            failure_code=code,
            **meta,
        )
        if accounts:
            self._refresh(*accounts)
        if applied:
            self._notify(transaction)

        logger.warning(
            "movement_failed",
            transaction_id=str(transaction.id),
            type=transaction.type,
            reason=reason,
            needs_reconciliation=needs_reconciliation,
        )
        return MovementResult.from_transaction(transaction, error=reason, error_code=code)

    def _complete(
        self,
        transaction: Transaction,
        tx_hash: str | None = None,
        external_ref: str | None = None,
        accounts: tuple[Account, ...] = (),
        **meta: Any,
    ) -> MovementResult:
        applied = ledger.mark_completed(
            self.db, transaction, tx_hash=tx_hash, external_ref=external_ref, **meta
        )
        if accounts:
            self._refresh(*accounts)
        if applied:
            self._notify(transaction)
            logger.info(
                "movement_completed",
                transaction_id=str(transaction.id),
                type=transaction.type,
                amount=str(transaction.amount),
                currency=transaction.currency,
            )
        return MovementResult.from_transaction(transaction, duplicate=not applied)

    def _await_settlement(self, transaction: Transaction, *accounts: Account) -> MovementResult:
        """Leave a transaction pending for the provider's webhook."""
        if accounts:
            self._refresh(*accounts)
        self._notify(transaction)
        logger.info(
            "movement_awaiting_settlement",
            transaction_id=str(transaction.id),
            external_ref=transaction.external_ref,
        )
        return MovementResult.from_transaction(transaction)

    def _run(self, transaction: Transaction, stages: list[SagaStage]) -> SagaOutcome:
        def record(stage: str, result: Any) -> None:
            ledger.record_stage(self.db, transaction, stage, _stage_record(result))

        return run_saga(stages, on_stage_complete=record)

    def _saga_failed(
        self,
        transaction: Transaction,
        outcome: SagaOutcome,
        accounts: tuple[Account, ...] = (),
    ) -> MovementResult:
        """Turn a failed saga into the ledger outcome."""
        error = outcome.error
        if outcome.outcome_unknown:
            # No compensation: the late truth arrives by webhook or status query
            ledger.flag_for_reconciliation(
                self.db, transaction, f"outcome unknown at stage {outcome.failed_stage}"
            )
            self._notify(transaction)
            pending = ReconciliationPending("Outcome unknown; awaiting confirmation")
            return MovementResult.from_transaction(
                transaction, error=pending.message, error_code=pending.code
            )

        if outcome.compensation_failed:
            logger.error(
                "compensation_failed",
                transaction_id=str(transaction.id),
                stage=outcome.failed_stage,
                error=str(outcome.compensation_error),
            )
            return self._fail(
                transaction,
                error if isinstance(error, WalletError) else str(error),
                needs_reconciliation=True,
                accounts=accounts,
                failed_stage=outcome.failed_stage,
                compensated=False,
                compensation_error=str(outcome.compensation_error),
            )

        return self._fail(
            transaction,
            error if isinstance(error, WalletError) else str(error),
            accounts=accounts,
            failed_stage=outcome.failed_stage,
            compensated=bool(outcome.compensated),
            compensated_stages=outcome.compensated,
        )

    def _execute(
        self,
        transaction: Transaction,
        stages: list[SagaStage],
        accounts: tuple[Account, ...],
    ) -> SagaOutcome | MovementResult:
        """Run stages; any non-success comes back as a MovementResult."""
        try:
            outcome = self._run(transaction, stages)
        except Exception as e:
            logger.error(
                "movement_unexpected_error",
                transaction_id=str(transaction.id),
                error=str(e),
                exc_info=True,
            )
            return self._fail(transaction, f"internal error: {e}", needs_reconciliation=True)

        if not outcome.succeeded:
            return self._saga_failed(transaction, outcome, accounts)
        return outcome

    @staticmethod
    def _retry_meta(retry_count: int, retry_of: str | None) -> dict[str, Any]:
        meta: dict[str, Any] = {"retry_count": retry_count}
        if retry_of:
            meta["retry_of"] = retry_of
        return meta

    # ─────────────────────────────────────────────────────────────────────────
    # Transfer
    # ─────────────────────────────────────────────────────────────────────────

    def transfer(
        self,
        sender_phone: str,
        recipient_phone: str,
        amount: Decimal,
        idempotency_key: str | None = None,
        retry_count: int = 0,
        retry_of: str | None = None,
    ) -> MovementResult:
        """
        Send tokens to another registered account.

        The sender pays `amount + fee`; the recipient receives `amount` and
        gets a `receive` entry of their own.
        """
        amount = Decimal(amount)
        fee = Decimal(self.settings.transfer_fee)
        transaction, created = self._begin(
            sender_phone,
            TransactionType.TRANSFER,
            amount,
            self.token,
            {
                "operation": "transfer",
                "recipient": recipient_phone,
                "fee": str(fee),
                **self._retry_meta(retry_count, retry_of),
            },
            idempotency_key=idempotency_key,
        )
        if not created:
            return MovementResult.from_transaction(transaction, duplicate=True)

        try:
            if amount <= 0:
                raise ValidationError("Amount must be greater than zero")
            sender = self._require_account(sender_phone)
            recipient = get_account_by_phone(self.db, recipient_phone)
            if recipient is None or not recipient.is_active:
                raise RecipientNotFound(f"Recipient +{recipient_phone} is not registered")
            if recipient.id == sender.id:
                raise ValidationError("Cannot send money to yourself")
            self._require_balance(sender, amount + fee)
        except (BusinessRuleError, ValidationError, ExternalFailure) as e:
            return self._fail(transaction, e)

        stages = [
            SagaStage(
                "transfer",
                forward=lambda: self.custody.transfer(
                    sender.custody_address,
                    recipient.custody_address,
                    amount,
                    reference=self._ref(transaction, "transfer"),
                ),
                compensate=lambda: self.custody.transfer(
                    recipient.custody_address,
                    sender.custody_address,
                    amount,
                    reference=self._ref(transaction, "transfer_reversal"),
                ),
            ),
        ]
        if fee > 0:
            stages.append(SagaStage("fee", forward=lambda: self._collect_fee(sender, fee, transaction)))

        outcome = self._execute(transaction, stages, (sender, recipient))
        if isinstance(outcome, MovementResult):
            return outcome

        receipt: CustodyReceipt = outcome.results["transfer"]
        result = self._complete(transaction, tx_hash=receipt.tx_hash, accounts=(sender, recipient))

        received = ledger.create_completed(
            self.db,
            phone_number=recipient_phone,
            tx_type=TransactionType.RECEIVE.value,
            amount=amount,
            currency=self.token,
            tx_hash=receipt.tx_hash,
            metadata={"sender": sender_phone, "transfer_id": str(transaction.id)},
        )
        self._notify(received)

        logger.info(
            "transfer_completed",
            transaction_id=str(transaction.id),
            sender=mask_phone(sender_phone),
            recipient=mask_phone(recipient_phone),
            amount=str(amount),
            fee=str(fee),
        )
        return result

    def _collect_fee(self, sender: Account, fee: Decimal, transaction: Transaction) -> CustodyReceipt:
        reference = self._ref(transaction, "fee")
        if self.settings.treasury_address:
            return self.custody.transfer(
                sender.custody_address, self.settings.treasury_address, fee, reference=reference
            )
        return self.custody.burn(sender.custody_address, fee, reference=reference)

    # ─────────────────────────────────────────────────────────────────────────
    # Deposit (mobile money -> token)
    # ─────────────────────────────────────────────────────────────────────────

    def initiate_deposit(
        self,
        phone_number: str,
        amount: Decimal,
        currency: str,
        provider_name: str,
        auto_invest_vault: dict[str, str] | None = None,
        idempotency_key: str | None = None,
        retry_count: int = 0,
        retry_of: str | None = None,
    ) -> MovementResult:
        """
        Start a mobile-money collection.

        The transaction stays pending until the provider confirms the
        collection (webhook or status query); `settle_deposit` then mints.

        Args:
            auto_invest_vault: {"address", "name"} to invest the minted
                amount into once the deposit settles
        """
        amount = Decimal(amount)
        currency = currency.upper()
        metadata: dict[str, Any] = {
            "operation": "deposit",
            "provider": provider_name,
            **self._retry_meta(retry_count, retry_of),
        }
        if auto_invest_vault:
            metadata["auto_invest_vault"] = auto_invest_vault

        transaction, created = self._begin(
            phone_number,
            TransactionType.DEPOSIT,
            amount,
            currency,
            metadata,
            provider=provider_name,
            idempotency_key=idempotency_key,
        )
        if not created:
            return MovementResult.from_transaction(transaction, duplicate=True)

        try:
            account = self._require_account(phone_number)
            if provider_name not in self.providers:
                raise ValidationError(f"Unknown provider: {provider_name}")
            provider = self.providers.get(provider_name)
            provider.ensure_supported(currency)
            minimum = self.settings.deposit_minimums.get(currency, Decimal("1"))
            if amount < minimum:
                raise LimitExceeded(f"Minimum deposit is {minimum} {currency}")
            quote = self.converter.convert(amount, currency, self.token)
        except (BusinessRuleError, ValidationError) as e:
            return self._fail(transaction, e)

        transaction = ledger.update_metadata(self.db, transaction, quote=quote.to_dict())
        callback_url = self.settings.provider_callback_url(provider_name)

        outcome = self._execute(
            transaction,
            [
                SagaStage(
                    "collection",
                    forward=lambda: provider.initiate_collection(
                        phone_number, amount, currency, callback_url, reference=str(transaction.id)
                    ),
                ),
            ],
            (),
        )
        if isinstance(outcome, MovementResult):
            return outcome

        collection: ProviderResult = outcome.results["collection"]
        transaction = ledger.set_external_ref(self.db, transaction, collection.provider_tx_id)

        if collection.status is ProviderStatus.COMPLETED:
            return self.settle_deposit(transaction)
        if collection.status is ProviderStatus.FAILED:
            return self._fail(transaction, ExternalFailure("Collection rejected by provider"))
        return self._await_settlement(transaction, account)

    def settle_deposit(
        self,
        transaction: Transaction,
        settled_amount: Decimal | None = None,
    ) -> MovementResult:
        """
        Mint the token equivalent of a confirmed collection.

        Safe to call more than once: a non-pending transaction is returned
        as a duplicate, and the mint carries the transaction's idempotency
        reference so custody applies it once.
        """
        if transaction.status != TransactionStatus.PENDING.value:
            return MovementResult.from_transaction(transaction, duplicate=True)

        amount = Decimal(settled_amount) if settled_amount is not None else transaction.amount
        try:
            account = self._require_account(transaction.phone_number)
            conversion = self.converter.convert(amount, transaction.currency, self.token)
        except BusinessRuleError as e:
            # Money was collected but cannot be credited
            return self._fail(transaction, e, needs_reconciliation=True)

        outcome = self._execute(
            transaction,
            [
                SagaStage(
                    "mint",
                    forward=lambda: self.custody.mint(
                        account.custody_address,
                        conversion.amount,
                        reference=self._ref(transaction, "mint"),
                    ),
                ),
            ],
            (account,),
        )
        if isinstance(outcome, MovementResult):
            if outcome.status == TransactionStatus.FAILED.value and not outcome.needs_reconciliation:
                ledger.flag_for_reconciliation(
                    self.db, transaction, "collected funds were not minted"
                )
                return MovementResult.from_transaction(transaction)
            return outcome

        receipt: CustodyReceipt = outcome.results["mint"]
        result = self._complete(
            transaction,
            tx_hash=receipt.tx_hash,
            accounts=(account,),
            settlement_amount=str(conversion.amount),
            conversion=conversion.to_dict(),
        )

        vault = (transaction.meta or {}).get("auto_invest_vault")
        if vault and not result.duplicate:
            self.invest(
                transaction.phone_number,
                conversion.amount,
                vault_address=vault["address"],
                vault_name=vault.get("name"),
                funded_by=str(transaction.id),
            )
        return result

    # ─────────────────────────────────────────────────────────────────────────
    # Withdrawal (token -> mobile money)
    # ─────────────────────────────────────────────────────────────────────────

    def withdraw(
        self,
        phone_number: str,
        amount: Decimal,
        target_currency: str,
        provider_name: str,
        idempotency_key: str | None = None,
        retry_count: int = 0,
        retry_of: str | None = None,
    ) -> MovementResult:
        """
        Burn tokens and pay out local currency.

        A payout that fails after the burn re-mints the burned amount before
        the transaction is marked failed.
        """
        amount = Decimal(amount)
        target_currency = target_currency.upper()
        transaction, created = self._begin(
            phone_number,
            TransactionType.WITHDRAWAL,
            amount,
            self.token,
            {
                "operation": "withdraw",
                "provider": provider_name,
                "target_currency": target_currency,
                **self._retry_meta(retry_count, retry_of),
            },
            provider=provider_name,
            idempotency_key=idempotency_key,
        )
        if not created:
            return MovementResult.from_transaction(transaction, duplicate=True)

        try:
            account = self._require_account(phone_number)
            if provider_name not in self.providers:
                raise ValidationError(f"Unknown provider: {provider_name}")
            provider = self.providers.get(provider_name)
            provider.ensure_supported(target_currency)
            if amount < self.settings.min_withdrawal_amount:
                raise LimitExceeded(
                    f"Minimum withdrawal is {self.settings.min_withdrawal_amount} {self.token}"
                )
            payout = self.converter.convert(amount, self.token, target_currency)
            self._require_balance(account, amount)
        except (BusinessRuleError, ValidationError, ExternalFailure) as e:
            return self._fail(transaction, e)

        transaction = ledger.update_metadata(
            self.db,
            transaction,
            payout_amount=str(payout.amount),
            conversion=payout.to_dict(),
        )
        callback_url = self.settings.provider_callback_url(provider_name)

        stages = [
            SagaStage(
                "burn",
                forward=lambda: self.custody.burn(
                    account.custody_address, amount, reference=self._ref(transaction, "burn")
                ),
                compensate=lambda: self.custody.mint(
                    account.custody_address, amount, reference=self._ref(transaction, "remint")
                ),
            ),
            SagaStage(
                "payout",
                forward=lambda: provider.initiate_disbursement(
                    phone_number,
                    payout.amount,
                    target_currency,
                    callback_url,
                    reference=str(transaction.id),
                ),
            ),
        ]
        outcome = self._execute(transaction, stages, (account,))
        if isinstance(outcome, MovementResult):
            return outcome

        burn: CustodyReceipt = outcome.results["burn"]
        disbursement: ProviderResult = outcome.results["payout"]
        transaction = ledger.set_external_ref(
            self.db, transaction, disbursement.provider_tx_id, tx_hash=burn.tx_hash
        )

        if disbursement.status is ProviderStatus.COMPLETED:
            return self._complete(transaction, accounts=(account,))
        if disbursement.status is ProviderStatus.FAILED:
            return self.compensate_withdrawal(transaction, "Payout rejected by provider")
        return self._await_settlement(transaction, account)

    def compensate_withdrawal(self, transaction: Transaction, reason: str) -> MovementResult:
        """
        Re-mint a withdrawal whose payout failed after the burn.

        Used for synchronous rejections and for `disbursement.failed`
        webhooks. The re-mint reuses the saga's reference, so a compensation
        already applied by the saga is not applied twice by custody.
        """
        if transaction.status != TransactionStatus.PENDING.value:
            return MovementResult.from_transaction(transaction, duplicate=True)

        account = get_account_by_phone(self.db, transaction.phone_number)
        burned = "burn" in (transaction.meta or {}).get("stages", {})
        if not burned or account is None:
            return self._fail(
                transaction,
                reason,
                needs_reconciliation=burned,
                compensated=False,
            )

        try:
            receipt = self.custody.mint(
                account.custody_address,
                transaction.amount,
                reference=self._ref(transaction, "remint"),
            )
        except ExternalFailure as e:
            logger.error(
                "compensation_failed",
                transaction_id=str(transaction.id),
                error=str(e),
            )
            return self._fail(
                transaction,
                reason,
                needs_reconciliation=True,
                accounts=(account,),
                compensated=False,
                compensation_error=str(e),
            )

        logger.info(
            "withdrawal_compensated",
            transaction_id=str(transaction.id),
            amount=str(transaction.amount),
            tx_hash=receipt.tx_hash,
        )
        return self._fail(
            transaction,
            reason,
            accounts=(account,),
            compensated=True,
            compensation_tx_hash=receipt.tx_hash,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Investment
    # ─────────────────────────────────────────────────────────────────────────

    def invest(
        self,
        phone_number: str,
        amount: Decimal,
        vault_address: str,
        vault_name: str | None = None,
        funded_by: str | None = None,
        idempotency_key: str | None = None,
        retry_count: int = 0,
        retry_of: str | None = None,
    ) -> MovementResult:
        """
        Move tokens from the wallet into a vault.

        Args:
            funded_by: Deposit transaction id when investing a just-settled
                mobile-money deposit (skips the wallet minimum)
        """
        amount = Decimal(amount)
        metadata: dict[str, Any] = {
            "operation": "invest",
            "vault_address": vault_address,
            "vault_name": vault_name or vault_address,
            **self._retry_meta(retry_count, retry_of),
        }
        if funded_by:
            metadata["funded_by"] = funded_by

        transaction, created = self._begin(
            phone_number,
            TransactionType.INVESTMENT,
            amount,
            self.token,
            metadata,
            idempotency_key=idempotency_key,
        )
        if not created:
            return MovementResult.from_transaction(transaction, duplicate=True)

        try:
            account = self._require_account(phone_number)
            vaults = self.settings.vault_addresses
            if vaults and vault_address not in vaults:
                raise ValidationError(f"Unknown vault: {vault_address}")
            if not funded_by and amount < self.settings.min_investment_amount:
                raise LimitExceeded(
                    f"Minimum investment is {self.settings.min_investment_amount} {self.token}"
                )
            self._require_balance(account, amount)
        except (BusinessRuleError, ValidationError, ExternalFailure) as e:
            return self._fail(transaction, e)

        stages = [
            SagaStage(
                "burn",
                forward=lambda: self.custody.burn(
                    account.custody_address, amount, reference=self._ref(transaction, "burn")
                ),
                compensate=lambda: self.custody.mint(
                    account.custody_address, amount, reference=self._ref(transaction, "remint")
                ),
            ),
            SagaStage(
                "vault_deposit",
                forward=lambda: self.custody.deposit_to_vault(
                    account.custody_address,
                    vault_address,
                    amount,
                    reference=self._ref(transaction, "vault_deposit"),
                ),
            ),
        ]
        outcome = self._execute(transaction, stages, (account,))
        if isinstance(outcome, MovementResult):
            return outcome

        deposit: CustodyReceipt = outcome.results["vault_deposit"]
        return self._complete(
            transaction,
            tx_hash=deposit.tx_hash,
            accounts=(account,),
            shares=str(deposit.shares) if deposit.shares is not None else None,
        )

    def redeem(
        self,
        phone_number: str,
        amount: Decimal,
        vault_address: str,
        vault_name: str | None = None,
        idempotency_key: str | None = None,
        retry_count: int = 0,
        retry_of: str | None = None,
    ) -> MovementResult:
        """
        Withdraw from a vault back into the wallet.

        The redeemed assets are minted as tokens; if the mint fails the
        assets are deposited back into the vault.
        """
        amount = Decimal(amount)
        transaction, created = self._begin(
            phone_number,
            TransactionType.REDEMPTION,
            amount,
            self.token,
            {
                "operation": "redeem",
                "vault_address": vault_address,
                "vault_name": vault_name or vault_address,
                **self._retry_meta(retry_count, retry_of),
            },
            idempotency_key=idempotency_key,
        )
        if not created:
            return MovementResult.from_transaction(transaction, duplicate=True)

        try:
            if amount <= 0:
                raise ValidationError("Amount must be greater than zero")
            account = self._require_account(phone_number)
            position = next(
                (
                    p for p in self.custody.positions(account.custody_address)
                    if p.vault_address == vault_address
                ),
                None,
            )
            available = position.assets if position else Decimal("0")
            if available < amount:
                raise InsufficientBalance(
                    f"Insufficient investment balance: {available:.2f} {self.token} available",
                    available=available,
                    required=amount,
                )
        except (BusinessRuleError, ValidationError, ExternalFailure) as e:
            return self._fail(transaction, e)

        redeemed: dict[str, Decimal] = {}

        def redeem_from_vault() -> CustodyReceipt:
            receipt = self.custody.redeem_from_vault(
                account.custody_address,
                vault_address,
                amount,
                reference=self._ref(transaction, "vault_redeem"),
            )
            redeemed["assets"] = receipt.assets if receipt.assets is not None else amount
            return receipt

        def mint_assets() -> CustodyReceipt:
            return self.custody.mint(
                account.custody_address,
                redeemed["assets"],
                reference=self._ref(transaction, "mint"),
            )

        def redeposit() -> CustodyReceipt:
            return self.custody.deposit_to_vault(
                account.custody_address,
                vault_address,
                redeemed["assets"],
                reference=self._ref(transaction, "redeposit"),
            )

        stages = [
            SagaStage("vault_redeem", forward=redeem_from_vault, compensate=redeposit),
            SagaStage("mint", forward=mint_assets),
        ]
        outcome = self._execute(transaction, stages, (account,))
        if isinstance(outcome, MovementResult):
            return outcome

        mint: CustodyReceipt = outcome.results["mint"]
        return self._complete(
            transaction,
            tx_hash=mint.tx_hash,
            accounts=(account,),
            assets=str(redeemed["assets"]),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Retry and cancel
    # ─────────────────────────────────────────────────────────────────────────

    def _get(self, transaction_id: UUID) -> Transaction:
        transaction = ledger.get_transaction(self.db, transaction_id)
        if transaction is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return transaction

    def retry(self, transaction_id: UUID) -> MovementResult:
        """
        Retry a failed transaction as a fresh attempt.

        The failed row keeps its final status; the new attempt carries the
        original parameters, `retry_of`, and the incremented retry count.

        Raises:
            TransactionNotFound: Unknown id
            InvalidTransactionState: Not failed, already retried, or awaiting
                reconciliation
            LimitExceeded: Retry count reached the cap
        """
        original = self._get(transaction_id)
        meta = original.meta or {}

        if original.status != TransactionStatus.FAILED.value:
            raise InvalidTransactionState("Only failed transactions can be retried")
        if original.needs_reconciliation:
            raise InvalidTransactionState("Transaction is awaiting reconciliation")
        if meta.get("retried_by"):
            raise InvalidTransactionState("Transaction was already retried")
        if original.retry_count >= self.settings.max_retry_count:
            raise LimitExceeded("Maximum retry attempts reached")

        retry_count = original.retry_count + 1
        retry_of = str(original.id)
        operation = meta.get("operation")
        logger.info(
            "transaction_retry",
            transaction_id=retry_of,
            operation=operation,
            retry_count=retry_count,
        )

        if operation == "transfer":
            result = self.transfer(
                original.phone_number, meta["recipient"], original.amount,
                retry_count=retry_count, retry_of=retry_of,
            )
        elif operation == "deposit":
            result = self.initiate_deposit(
                original.phone_number, original.amount, original.currency, meta["provider"],
                auto_invest_vault=meta.get("auto_invest_vault"),
                retry_count=retry_count, retry_of=retry_of,
            )
        elif operation == "withdraw":
            result = self.withdraw(
                original.phone_number, original.amount, meta["target_currency"], meta["provider"],
                retry_count=retry_count, retry_of=retry_of,
            )
        elif operation == "invest":
            result = self.invest(
                original.phone_number, original.amount, meta["vault_address"], meta.get("vault_name"),
                funded_by=meta.get("funded_by"),
                retry_count=retry_count, retry_of=retry_of,
            )
        elif operation == "redeem":
            result = self.redeem(
                original.phone_number, original.amount, meta["vault_address"], meta.get("vault_name"),
                retry_count=retry_count, retry_of=retry_of,
            )
        else:
            raise InvalidTransactionState(f"Transactions of type {original.type} cannot be retried")

        ledger.update_metadata(self.db, original, retried_by=str(result.transaction_id))
        return result

    def cancel(self, transaction_id: UUID, reason: str = "user_cancelled") -> MovementResult:
        """
        Cancel a pending transaction that has not reached any external system.

        Raises:
            TransactionNotFound: Unknown id
            InvalidTransactionState: Not pending, or an external step already ran
        """
        transaction = self._get(transaction_id)
        if transaction.status != TransactionStatus.PENDING.value:
            raise InvalidTransactionState(
                f"Cannot cancel a {transaction.status} transaction"
            )
        if transaction.external_ref or transaction.tx_hash or (transaction.meta or {}).get("stages"):
            raise InvalidTransactionState(
                "Transaction was already submitted for settlement"
            )
        if not ledger.mark_cancelled(self.db, transaction, reason):
            raise InvalidTransactionState("Transaction is no longer pending")

        self._notify(transaction)
        return MovementResult.from_transaction(transaction)

    def refresh_status(self, transaction_id: UUID):
        """Query the provider for a pending provider leg and reconcile the answer."""
        from ussd_wallet.services.reconciler import WebhookReconciler

        reconciler = WebhookReconciler(
            self.db,
            self,
            self.notifier,
            confirmations_required=self.settings.custody_confirmations_required,
        )
        return reconciler.refresh_status(transaction_id)

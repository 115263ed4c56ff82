"""
Webhook reconciler.

Applies asynchronous settlement reports (provider callbacks, custody
confirmations, status queries) to the ledger. Every handler is safe to
run more than once: the ledger only leaves `pending` through a
conditional update, so a replayed delivery finds the transaction final
and is reported as DUPLICATE without side effects.
"""

from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from ussd_wallet.errors import InvalidTransactionState, TransactionNotFound
from ussd_wallet.integrations.providers import (
    LegKind,
    ProviderEvent,
    ProviderStatus,
)
from ussd_wallet.integrations.sms import Notifier
from ussd_wallet.logging_config import get_logger
from ussd_wallet.models import Transaction, TransactionStatus, TransactionType
from ussd_wallet.services.orchestrator import MoneyMovementOrchestrator
from ussd_wallet.storage import ledger

logger = get_logger(__name__)


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN_REFERENCE = "unknown_reference"
    IGNORED = "ignored"


LEG_TYPES = {
    LegKind.COLLECTION: TransactionType.DEPOSIT.value,
    LegKind.DISBURSEMENT: TransactionType.WITHDRAWAL.value,
}


class WebhookReconciler:
    """Turns settlement reports into ledger transitions."""

    def __init__(
        self,
        db: Session,
        orchestrator: MoneyMovementOrchestrator,
        notifier: Notifier,
        confirmations_required: int = 3,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.confirmations_required = confirmations_required

    def _late_report(self, transaction: Transaction, status: ProviderStatus) -> ReconcileOutcome:
        """Handle a report for a transaction that is already final."""
        if (
            status is ProviderStatus.COMPLETED
            and transaction.status == TransactionStatus.FAILED.value
            and not transaction.needs_reconciliation
        ):
            # Money moved after we gave up on it
            ledger.flag_for_reconciliation(
                self.db, transaction, "provider reported success after failure"
            )
        logger.info(
            "webhook_duplicate",
            transaction_id=str(transaction.id),
            current_status=transaction.status,
            reported_status=status.value,
        )
        return ReconcileOutcome.DUPLICATE

    def apply_provider_event(self, provider_name: str, event: ProviderEvent) -> ReconcileOutcome:
        """
        Apply a normalized provider webhook.

        Args:
            provider_name: Registry name of the provider that sent the event
            event: Normalized event

        Returns:
            ReconcileOutcome
        """
        log = logger.bind(
            provider=provider_name,
            event_type=event.event_type,
            provider_tx_id=event.provider_tx_id,
        )

        transaction = ledger.find_by_external_ref(self.db, event.provider_tx_id, provider=provider_name)
        if transaction is None:
            log.warning("webhook_unknown_reference")
            return ReconcileOutcome.UNKNOWN_REFERENCE

        if event.status is ProviderStatus.PENDING:
            log.info("webhook_still_pending", transaction_id=str(transaction.id))
            return ReconcileOutcome.IGNORED

        if transaction.type != LEG_TYPES[event.kind]:
            log.warning(
                "webhook_leg_mismatch",
                transaction_id=str(transaction.id),
                transaction_type=transaction.type,
            )
            return ReconcileOutcome.IGNORED

        if transaction.status != TransactionStatus.PENDING.value:
            return self._late_report(transaction, event.status)

        if event.kind is LegKind.COLLECTION:
            if event.status is ProviderStatus.COMPLETED:
                applied = not self.orchestrator.settle_deposit(
                    transaction, settled_amount=event.amount
                ).duplicate
            else:
                applied = ledger.mark_failed(
                    self.db,
                    transaction,
                    "Mobile money collection failed",
                    failure_code="collection_failed",
                )
                if applied:
                    self.notifier.notify_transaction(transaction)
        else:
            if event.status is ProviderStatus.COMPLETED:
                applied = ledger.mark_completed(self.db, transaction, external_ref=event.provider_tx_id)
                if applied:
                    self.notifier.notify_transaction(transaction)
            else:
                applied = not self.orchestrator.compensate_withdrawal(
                    transaction, "Mobile money payout failed"
                ).duplicate

        if not applied:
            return ReconcileOutcome.DUPLICATE

        log.info("webhook_applied", transaction_id=str(transaction.id), status=transaction.status)
        return ReconcileOutcome.APPLIED

    def apply_custody_confirmation(
        self,
        tx_hash: str,
        status: str,
        confirmations: int = 0,
    ) -> ReconcileOutcome:
        """
        Apply a custody confirmation for a transaction still pending on its hash.

        `confirmed` completes the transaction once the confirmation count is
        reached; `failed` fails it and flags it, since an earlier stage of the
        same movement may already have taken effect.
        """
        transaction = ledger.find_by_tx_hash(self.db, tx_hash)
        if transaction is None:
            logger.warning("custody_confirmation_unknown_hash", tx_hash=tx_hash)
            return ReconcileOutcome.UNKNOWN_REFERENCE

        normalized = status.strip().lower()
        if transaction.status != TransactionStatus.PENDING.value:
            reported = ProviderStatus.COMPLETED if normalized == "confirmed" else ProviderStatus.FAILED
            return self._late_report(transaction, reported)

        if transaction.external_ref and transaction.type in LEG_TYPES.values():
            # The provider leg settles this row; the hash only confirms a stage
            if normalized == "failed" and not transaction.needs_reconciliation:
                ledger.flag_for_reconciliation(
                    self.db, transaction, "custody stage failed while provider leg pending"
                )
            logger.info(
                "custody_confirmation_awaiting_provider",
                transaction_id=str(transaction.id),
                custody_status=normalized,
            )
            return ReconcileOutcome.IGNORED

        if normalized == "confirmed":
            if confirmations < self.confirmations_required:
                logger.info(
                    "custody_confirmation_below_threshold",
                    transaction_id=str(transaction.id),
                    confirmations=confirmations,
                )
                return ReconcileOutcome.IGNORED
            applied = ledger.mark_completed(
                self.db, transaction, tx_hash=tx_hash, confirmations=confirmations
            )
        elif normalized == "failed":
            applied = ledger.mark_failed(
                self.db,
                transaction,
                "Custody transaction failed",
                needs_reconciliation=True,
                failure_code="custody_failed",
            )
        else:
            return ReconcileOutcome.IGNORED

        if not applied:
            return ReconcileOutcome.DUPLICATE
        self.notifier.notify_transaction(transaction)
        logger.info(
            "custody_confirmation_applied",
            transaction_id=str(transaction.id),
            status=transaction.status,
        )
        return ReconcileOutcome.APPLIED

    def refresh_status(self, transaction_id: UUID) -> ReconcileOutcome:
        """
        Query the provider for a pending provider leg and apply the answer.

        Raises:
            TransactionNotFound: Unknown id
            InvalidTransactionState: Not a pending provider leg
        """
        transaction = ledger.get_transaction(self.db, transaction_id)
        if transaction is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        if (
            transaction.status != TransactionStatus.PENDING.value
            or not transaction.external_ref
            or not transaction.provider
        ):
            raise InvalidTransactionState("Transaction has no pending provider leg")

        kind = (
            LegKind.COLLECTION
            if transaction.type == TransactionType.DEPOSIT.value
            else LegKind.DISBURSEMENT
        )
        provider = self.orchestrator.providers.get(transaction.provider)
        status = provider.query_status(transaction.external_ref, kind)
        logger.info(
            "provider_status_queried",
            transaction_id=str(transaction.id),
            provider=transaction.provider,
            status=status.value,
        )

        event = ProviderEvent(
            event_type=f"{kind.value}.{status.value}",
            provider_tx_id=transaction.external_ref,
            status=status,
        )
        return self.apply_provider_event(transaction.provider, event)

"""
Transaction ledger writer.

Every money movement is written `pending` before the first external call.
Leaving `pending` goes through a conditional UPDATE so that exactly one
writer (the orchestrator or a webhook delivery) wins the transition; the
loser sees `False` and must not repeat side effects such as notifications.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ussd_wallet.logging_config import get_logger, mask_phone
from ussd_wallet.models import Transaction, TransactionStatus

logger = get_logger(__name__)


@dataclass
class LedgerWriteResult:
    """Result of creating a ledger entry."""

    transaction: Transaction
    created: bool  # False when an entry with the same idempotency key exists


# ─────────────────────────────────────────────────────────────────────────────
# Creation
# ─────────────────────────────────────────────────────────────────────────────

def create_pending(
    db: Session,
    phone_number: str,
    tx_type: str,
    amount: Decimal,
    currency: str,
    metadata: dict[str, Any] | None = None,
    provider: str | None = None,
    idempotency_key: str | None = None,
) -> LedgerWriteResult:
    """
    Insert a pending transaction and commit it.

    Args:
        db: Database session
        phone_number: Owner (normalized)
        tx_type: TransactionType value
        amount: Amount in `currency`
        currency: Currency or token symbol
        metadata: Full intended effect (recipient, fee, vault, ...)
        provider: Settlement provider name for mobile-money legs
        idempotency_key: Deduplicates repeated confirmations

    Returns:
        LedgerWriteResult; `created=False` returns the existing entry
    """
    if idempotency_key:
        existing = find_by_idempotency_key(db, idempotency_key)
        if existing is not None:
            logger.info(
                "transaction_duplicate_skipped",
                transaction_id=str(existing.id),
                idempotency_key=idempotency_key,
            )
            return LedgerWriteResult(transaction=existing, created=False)

    meta = dict(metadata or {})
    meta.setdefault("retry_count", 0)

    transaction = Transaction(
        phone_number=phone_number,
        type=tx_type,
        amount=amount,
        currency=currency,
        status=TransactionStatus.PENDING.value,
        provider=provider,
        idempotency_key=idempotency_key,
        meta=meta,
    )
    db.add(transaction)
    db.commit()
    db.refresh(transaction)

    logger.info(
        "transaction_created",
        transaction_id=str(transaction.id),
        type=tx_type,
        amount=str(amount),
        currency=currency,
        phone=mask_phone(phone_number),
    )
    return LedgerWriteResult(transaction=transaction, created=True)


def create_completed(
    db: Session,
    phone_number: str,
    tx_type: str,
    amount: Decimal,
    currency: str,
    tx_hash: str | None,
    metadata: dict[str, Any] | None = None,
) -> Transaction:
    """
    Insert an entry that mirrors an already-settled movement.

    Used for the recipient side of a transfer, whose custody operation is
    the sender's completed transfer.
    """
    transaction = Transaction(
        phone_number=phone_number,
        type=tx_type,
        amount=amount,
        currency=currency,
        status=TransactionStatus.COMPLETED.value,
        tx_hash=tx_hash,
        meta=dict(metadata or {}),
    )
    db.add(transaction)
    db.commit()
    db.refresh(transaction)
    return transaction


# ─────────────────────────────────────────────────────────────────────────────
# Lookups
# ─────────────────────────────────────────────────────────────────────────────

def get_transaction(db: Session, transaction_id: UUID) -> Transaction | None:
    return db.get(Transaction, transaction_id)


def find_by_idempotency_key(db: Session, idempotency_key: str) -> Transaction | None:
    return db.execute(
        select(Transaction).where(Transaction.idempotency_key == idempotency_key)
    ).scalar_one_or_none()


def find_by_external_ref(
    db: Session,
    external_ref: str,
    provider: str | None = None,
) -> Transaction | None:
    """
    Find a transaction by its provider transaction id.

    Args:
        db: Database session
        external_ref: Provider-issued id
        provider: Restrict to one provider's ids

    Returns:
        Transaction or None
    """
    stmt = select(Transaction).where(Transaction.external_ref == external_ref)
    if provider:
        stmt = stmt.where(Transaction.provider == provider)
    return db.execute(stmt.order_by(Transaction.created_at.desc())).scalars().first()


def find_by_tx_hash(db: Session, tx_hash: str) -> Transaction | None:
    return db.execute(
        select(Transaction)
        .where(Transaction.tx_hash == tx_hash)
        .order_by(Transaction.created_at.desc())
    ).scalars().first()


def get_history(
    db: Session,
    phone_number: str,
    limit: int = 5,
    offset: int = 0,
) -> list[Transaction]:
    """Most recent transactions first."""
    return list(
        db.execute(
            select(Transaction)
            .where(Transaction.phone_number == phone_number)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).scalars()
    )


def list_needing_reconciliation(db: Session, limit: int = 100) -> list[Transaction]:
    return list(
        db.execute(
            select(Transaction)
            .where(Transaction.needs_reconciliation.is_(True))
            .order_by(Transaction.created_at)
            .limit(limit)
        ).scalars()
    )


# ─────────────────────────────────────────────────────────────────────────────
# Progress updates (status stays pending)
# ─────────────────────────────────────────────────────────────────────────────

def update_metadata(db: Session, transaction: Transaction, **changes: Any) -> Transaction:
    """Merge keys into the transaction metadata and commit."""
    transaction.meta = {**(transaction.meta or {}), **changes}
    db.commit()
    db.refresh(transaction)
    return transaction


def record_stage(
    db: Session,
    transaction: Transaction,
    stage: str,
    result: dict[str, Any] | None = None,
) -> Transaction:
    """
    Record a completed saga stage.

    Committed before the next stage starts so a crash leaves enough state
    to know which side effects already happened.
    """
    stages = dict((transaction.meta or {}).get("stages", {}))
    stages[stage] = result or {}
    logger.debug("transaction_stage_recorded", transaction_id=str(transaction.id), stage=stage)
    return update_metadata(db, transaction, stages=stages)


def set_external_ref(
    db: Session,
    transaction: Transaction,
    external_ref: str,
    tx_hash: str | None = None,
    **meta: Any,
) -> Transaction:
    """Store the provider reference (and custody hash) while still pending."""
    transaction.external_ref = external_ref
    if tx_hash:
        transaction.tx_hash = tx_hash
    if meta:
        transaction.meta = {**(transaction.meta or {}), **meta}
    db.commit()
    db.refresh(transaction)
    return transaction


def flag_for_reconciliation(db: Session, transaction: Transaction, reason: str) -> Transaction:
    """Mark a transaction for out-of-band resolution without changing its status."""
    transaction.needs_reconciliation = True
    transaction.meta = {**(transaction.meta or {}), "reconciliation_reason": reason}
    db.commit()
    db.refresh(transaction)

    logger.warning(
        "transaction_flagged_for_reconciliation",
        transaction_id=str(transaction.id),
        status=transaction.status,
        reason=reason,
    )
    return transaction


# ─────────────────────────────────────────────────────────────────────────────
# Final transitions (conditional on pending)
# ─────────────────────────────────────────────────────────────────────────────

def _finalize(
    db: Session,
    transaction: Transaction,
    status: TransactionStatus,
    meta_changes: dict[str, Any],
    **values: Any,
) -> bool:
    stmt = (
        update(Transaction)
        .where(
            Transaction.id == transaction.id,
            Transaction.status == TransactionStatus.PENDING.value,
        )
        .values(
            status=status.value,
            meta={**(transaction.meta or {}), **meta_changes},
            updated_at=datetime.utcnow(),
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    db.refresh(transaction)

    applied = result.rowcount == 1
    if applied:
        logger.info(
            "transaction_status_changed",
            transaction_id=str(transaction.id),
            status=status.value,
        )
    else:
        logger.info(
            "transaction_status_unchanged",
            transaction_id=str(transaction.id),
            current_status=transaction.status,
            requested_status=status.value,
        )
    return applied


def mark_completed(
    db: Session,
    transaction: Transaction,
    tx_hash: str | None = None,
    external_ref: str | None = None,
    **meta: Any,
) -> bool:
    """
    Move a pending transaction to completed.

    Requires a custody tx hash or a provider reference, either passed in or
    already stored on the row.

    Returns:
        True if this call performed the transition
    """
    tx_hash = tx_hash or transaction.tx_hash
    external_ref = external_ref or transaction.external_ref
    if not tx_hash and not external_ref:
        raise ValueError("A completed transaction needs a tx hash or external reference")

    meta["completed_at"] = datetime.utcnow().isoformat()
    return _finalize(
        db,
        transaction,
        TransactionStatus.COMPLETED,
        meta,
        tx_hash=tx_hash,
        external_ref=external_ref,
    )


def mark_failed(
    db: Session,
    transaction: Transaction,
    reason: str,
    needs_reconciliation: bool = False,
    **meta: Any,
) -> bool:
    meta["failure_reason"] = reason
    meta["failed_at"] = datetime.utcnow().isoformat()
    values: dict[str, Any] = {}
    if needs_reconciliation:
        values["needs_reconciliation"] = True
    return _finalize(db, transaction, TransactionStatus.FAILED, meta, **values)


def mark_cancelled(db: Session, transaction: Transaction, reason: str = "user_cancelled") -> bool:
    return _finalize(
        db,
        transaction,
        TransactionStatus.CANCELLED,
        {"cancel_reason": reason, "cancelled_at": datetime.utcnow().isoformat()},
    )

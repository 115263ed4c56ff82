"""Unit tests for the transaction ledger writer."""

from decimal import Decimal

import pytest

from ussd_wallet.models import TransactionStatus, TransactionType
from ussd_wallet.storage import ledger

PHONE = "254712345678"


@pytest.fixture
def pending(db):
    """A pending transfer of 40."""
    return ledger.create_pending(
        db,
        phone_number=PHONE,
        tx_type=TransactionType.TRANSFER.value,
        amount=Decimal("40"),
        currency="USDX",
        metadata={"recipient": "254798765432", "fee": "0.1"},
        idempotency_key="confirm-1",
    ).transaction


class TestCreatePending:
    """Tests for create_pending."""

    def test_stores_intended_effect(self, pending):
        """Should persist metadata with a zero retry count."""
        assert pending.status == TransactionStatus.PENDING.value
        assert pending.meta["recipient"] == "254798765432"
        assert pending.retry_count == 0
        assert pending.is_final is False

    def test_idempotency_key_returns_existing(self, db, pending):
        """Should not create a second row for a repeated confirmation."""
        result = ledger.create_pending(
            db,
            phone_number=PHONE,
            tx_type=TransactionType.TRANSFER.value,
            amount=Decimal("40"),
            currency="USDX",
            idempotency_key="confirm-1",
        )

        assert result.created is False
        assert result.transaction.id == pending.id
        assert len(ledger.get_history(db, PHONE)) == 1


class TestFinalTransitions:
    """Tests for the conditional pending -> final transitions."""

    def test_complete_once(self, db, pending):
        """Should apply the first completion and refuse the second."""
        assert ledger.mark_completed(db, pending, tx_hash="0xabc") is True
        assert pending.status == TransactionStatus.COMPLETED.value
        assert pending.tx_hash == "0xabc"
        assert "completed_at" in pending.meta

        assert ledger.mark_completed(db, pending, tx_hash="0xdef") is False
        assert pending.tx_hash == "0xabc"

    def test_completed_needs_reference(self, db, pending):
        """Should refuse completion without a hash or provider reference."""
        with pytest.raises(ValueError):
            ledger.mark_completed(db, pending)

    def test_completion_uses_stored_external_ref(self, db, pending):
        """Should accept a provider reference already on the row."""
        ledger.set_external_ref(db, pending, "kp-123")

        assert ledger.mark_completed(db, pending) is True
        assert pending.external_ref == "kp-123"

    def test_final_states_are_terminal(self, db, pending):
        """Should keep the first final status against later writers."""
        assert ledger.mark_failed(db, pending, "payout_failed") is True

        assert ledger.mark_completed(db, pending, tx_hash="0xabc") is False
        assert ledger.mark_cancelled(db, pending) is False
        assert pending.status == TransactionStatus.FAILED.value
        assert pending.meta["failure_reason"] == "payout_failed"

    def test_stale_object_loses_race(self, db, session_factory, pending):
        """Should let only one of two sessions finalize the row."""
        other = session_factory()
        try:
            racer = ledger.get_transaction(other, pending.id)
            assert ledger.mark_completed(other, racer, tx_hash="0xwinner") is True
        finally:
            other.close()

        assert ledger.mark_failed(db, pending, "timeout") is False
        assert pending.status == TransactionStatus.COMPLETED.value

    def test_failed_with_reconciliation_flag(self, db, pending):
        """Should set the flag atomically with the failure."""
        ledger.mark_failed(db, pending, "compensation_failed", needs_reconciliation=True)

        assert pending.needs_reconciliation is True
        assert ledger.list_needing_reconciliation(db) == [pending]


class TestProgressUpdates:
    """Tests for metadata updates while pending."""

    def test_record_stage_accumulates(self, db, pending):
        """Should keep every completed stage."""
        ledger.record_stage(db, pending, "burn", {"tx_hash": "0x1"})
        ledger.record_stage(db, pending, "payout", {"provider_tx_id": "kp-1"})

        assert pending.meta["stages"] == {
            "burn": {"tx_hash": "0x1"},
            "payout": {"provider_tx_id": "kp-1"},
        }
        assert pending.status == TransactionStatus.PENDING.value

    def test_flag_keeps_status(self, db, pending):
        """Should flag without finalizing."""
        ledger.flag_for_reconciliation(db, pending, "outcome_unknown")

        assert pending.status == TransactionStatus.PENDING.value
        assert pending.needs_reconciliation is True
        assert pending.meta["reconciliation_reason"] == "outcome_unknown"


class TestLookups:
    """Tests for ledger queries."""

    def test_find_by_external_ref_filters_provider(self, db, pending):
        """Should only match the owning provider's ids."""
        pending.provider = "kotanipay"
        ledger.set_external_ref(db, pending, "abc-1")

        assert ledger.find_by_external_ref(db, "abc-1", provider="kotanipay").id == pending.id
        assert ledger.find_by_external_ref(db, "abc-1", provider="yellowcard") is None

    def test_history_is_paginated(self, db):
        """Should return the newest entries first."""
        for amount in ("1", "2", "3"):
            ledger.create_pending(
                db,
                phone_number=PHONE,
                tx_type=TransactionType.DEPOSIT.value,
                amount=Decimal(amount),
                currency="KES",
            )

        first_page = ledger.get_history(db, PHONE, limit=2)
        second_page = ledger.get_history(db, PHONE, limit=2, offset=2)

        assert [t.amount for t in first_page] == [Decimal("3"), Decimal("2")]
        assert [t.amount for t in second_page] == [Decimal("1")]

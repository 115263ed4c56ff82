"""
SMS notifications.

Message templates for OTP delivery and transaction receipts. Delivery
failures are logged and reported as False, never raised: a missed receipt
must not fail a money movement that already settled.
"""

from decimal import Decimal

from ussd_wallet.integrations.sms.twilio_client import TwilioSmsClient
from ussd_wallet.logging_config import get_logger, mask_phone
from ussd_wallet.models import Transaction, TransactionStatus, TransactionType

logger = get_logger(__name__)


TYPE_LABELS = {
    TransactionType.TRANSFER.value: "Transfer",
    TransactionType.RECEIVE.value: "Money Received",
    TransactionType.DEPOSIT.value: "Deposit",
    TransactionType.WITHDRAWAL.value: "Withdrawal",
    TransactionType.INVESTMENT.value: "Investment",
    TransactionType.REDEMPTION.value: "Investment Withdrawal",
}


def format_amount(amount: Decimal, currency: str) -> str:
    """Two decimals with thousands separators, e.g. '1,000.00 KES'."""
    return f"{Decimal(amount):,.2f} {currency}"


def short_ref(transaction: Transaction) -> str:
    return str(transaction.id).split("-")[0].upper()


class Notifier:
    """Sends user-facing SMS through the configured SMS client."""

    def __init__(self, sms_client: TwilioSmsClient, app_name: str = "Wallet"):
        self.sms = sms_client
        self.app_name = app_name

    def _send(self, to: str, body: str, kind: str) -> bool:
        result = self.sms.send_message(to=to, body=body)
        if not result.get("success"):
            logger.error(
                "notification_failed",
                kind=kind,
                to=mask_phone(to),
                error=result.get("error"),
            )
            return False
        logger.info("notification_sent", kind=kind, to=mask_phone(to))
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Authentication
    # ─────────────────────────────────────────────────────────────────────────

    def send_otp(self, phone_number: str, code: str, ttl_minutes: int) -> bool:
        body = (
            f"Your {self.app_name} verification code is {code}. "
            f"It expires in {ttl_minutes} minutes. Never share this code."
        )
        return self._send(phone_number, body, kind="otp")

    def send_welcome(self, phone_number: str) -> bool:
        body = (
            f"Welcome to {self.app_name}! Your wallet is ready. "
            "Dial the service code any time to check your balance, "
            "send money, deposit or invest."
        )
        return self._send(phone_number, body, kind="welcome")

    def send_reply(self, phone_number: str, body: str, kind: str = "sms_reply") -> bool:
        """Answer an inbound SMS command."""
        return self._send(phone_number, body, kind=kind)

    # ─────────────────────────────────────────────────────────────────────────
    # Transactions
    # ─────────────────────────────────────────────────────────────────────────

    def transaction_message(self, transaction: Transaction) -> str:
        label = TYPE_LABELS.get(transaction.type, transaction.type.title())
        amount = format_amount(transaction.amount, transaction.currency)
        ref = short_ref(transaction)

        if transaction.status == TransactionStatus.COMPLETED.value:
            lines = [f"{label} successful.", f"Amount: {amount}"]
            recipient = (transaction.meta or {}).get("recipient")
            if transaction.type == TransactionType.TRANSFER.value and recipient:
                lines.append(f"To: +{recipient}")
            sender = (transaction.meta or {}).get("sender")
            if transaction.type == TransactionType.RECEIVE.value and sender:
                lines.append(f"From: +{sender}")
            lines.append(f"Ref: {ref}")
            return "\n".join(lines)

        if transaction.status == TransactionStatus.FAILED.value:
            reason = (transaction.meta or {}).get("failure_reason", "unknown error")
            body = f"{label} of {amount} failed: {reason}.\nRef: {ref}"
            if (transaction.meta or {}).get("compensated"):
                body += "\nYour funds have been returned to your wallet."
            return body

        if transaction.status == TransactionStatus.CANCELLED.value:
            return f"{label} of {amount} was cancelled.\nRef: {ref}"

        return f"{label} of {amount} is being processed. We will notify you once complete.\nRef: {ref}"

    def notify_transaction(self, transaction: Transaction) -> bool:
        """Send the receipt matching the transaction's current status."""
        return self._send(
            transaction.phone_number,
            self.transaction_message(transaction),
            kind=f"transaction_{transaction.status}",
        )

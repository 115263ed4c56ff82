"""
Inbound SMS commands.

Users can text the service number instead of dialling the USSD code:
BAL for the balance, HELP for the command list, STOP to opt out of
promotional messages, or the digits of a login code they were sent.
Every command is answered by SMS through the Notifier.
"""

import re
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.orm import Session

from ussd_wallet.auth import AuthorizationGate, PhoneNumber, validate_phone_number
from ussd_wallet.config import Settings
from ussd_wallet.errors import InvalidOtp, OtpNotFound, TooManyAttempts
from ussd_wallet.integrations.custody import CustodyClient
from ussd_wallet.integrations.sms import Notifier
from ussd_wallet.integrations.sms.notifications import format_amount
from ussd_wallet.logging_config import get_logger, mask_phone
from ussd_wallet.services.balance import balance_snapshot
from ussd_wallet.services.fx import CurrencyConverter
from ussd_wallet.storage.accounts import get_account_by_phone

logger = get_logger(__name__)

# Login codes are verified against the USSD session purpose
OTP_REPLY_PURPOSE = "ussd"

_OTP_REPLY = re.compile(r"[0-9]{4,6}")


class SmsCommand(str, Enum):
    BALANCE = "balance"
    HELP = "help"
    STOP = "stop"
    OTP = "otp"
    UNKNOWN = "unknown"


_KEYWORDS = {
    "BAL": SmsCommand.BALANCE,
    "BALANCE": SmsCommand.BALANCE,
    "HELP": SmsCommand.HELP,
    "STOP": SmsCommand.STOP,
}


def parse_command(body: str) -> SmsCommand:
    """Classify an inbound message; keywords are case-insensitive."""
    text = (body or "").strip()
    if _OTP_REPLY.fullmatch(text):
        return SmsCommand.OTP
    return _KEYWORDS.get(text.upper(), SmsCommand.UNKNOWN)


@dataclass
class SmsReply:
    phone_number: str
    command: SmsCommand
    body: str
    delivered: bool


class SmsCommandService:
    """Answers inbound SMS commands for one request."""

    def __init__(
        self,
        db: Session,
        gate: AuthorizationGate,
        custody: CustodyClient,
        converter: CurrencyConverter,
        notifier: Notifier,
        settings: Settings,
    ):
        self.db = db
        self.gate = gate
        self.custody = custody
        self.converter = converter
        self.notifier = notifier
        self.settings = settings

    def handle(self, from_number: str, body: str) -> SmsReply:
        """
        Run one command and send the answer.

        Raises:
            InvalidPhoneFormat: Sender is not a supported number
        """
        phone = validate_phone_number(from_number)
        command = parse_command(body)
        handlers = {
            SmsCommand.BALANCE: self._balance,
            SmsCommand.HELP: self._help,
            SmsCommand.STOP: self._stop,
            SmsCommand.OTP: self._verify,
            SmsCommand.UNKNOWN: self._unknown,
        }
        text = handlers[command](phone, body.strip())

        delivered = self.notifier.send_reply(phone.normalized, text, kind=f"sms_{command.value}")
        logger.info(
            "sms_command_handled",
            phone=mask_phone(phone.normalized),
            command=command.value,
            delivered=delivered,
        )
        return SmsReply(
            phone_number=phone.normalized,
            command=command,
            body=text,
            delivered=delivered,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    def _balance(self, phone: PhoneNumber, body: str) -> str:
        account = get_account_by_phone(self.db, phone.normalized)
        if account is None or not account.is_active:
            return (
                "Account not found. "
                f"Dial {self.settings.ussd_service_code} to create an account."
            )

        snapshot = balance_snapshot(
            self.db,
            account,
            self.custody,
            self.converter,
            self.settings.token_symbol,
            phone.currency,
        )
        lines = [f"{self.settings.app_name} balance: {format_amount(snapshot.balance, snapshot.currency)}"]
        if snapshot.local_amount is not None:
            lines.append(f"~{format_amount(snapshot.local_amount, snapshot.local_currency)}")
        for position in snapshot.positions:
            lines.append(f"{position.vault_name}: {format_amount(position.assets, snapshot.currency)}")
        if snapshot.stale:
            lines.append("(last known balance)")
        return "\n".join(lines)

    def _help(self, phone: PhoneNumber, body: str) -> str:
        return (
            f"{self.settings.app_name} commands:\n"
            "BAL - check your balance\n"
            "HELP - show this list\n"
            "STOP - opt out of promotional messages\n"
            f"Dial {self.settings.ussd_service_code} for the full menu."
        )

    def _stop(self, phone: PhoneNumber, body: str) -> str:
        return (
            f"You will no longer receive promotional messages from {self.settings.app_name}. "
            "Transaction receipts and verification codes are still sent."
        )

    def _verify(self, phone: PhoneNumber, body: str) -> str:
        try:
            self.gate.verify_otp(phone.normalized, body, OTP_REPLY_PURPOSE)
        except TooManyAttempts:
            return "Too many failed attempts. Request a new code."
        except (InvalidOtp, OtpNotFound):
            return "Invalid or expired verification code."
        return "Verification successful!"

    def _unknown(self, phone: PhoneNumber, body: str) -> str:
        return "Unknown command. Text HELP for the list of commands."

"""Unit tests for inbound SMS commands."""

from decimal import Decimal

import pytest

from ussd_wallet.errors import ExternalFailure, InvalidPhoneFormat
from ussd_wallet.services.sms_commands import SmsCommand, SmsCommandService, parse_command

SENDER = "254712345678"
STRANGER = "254700000001"


@pytest.fixture
def commands(db, gate, custody, converter, notifier, settings) -> SmsCommandService:
    return SmsCommandService(db, gate, custody, converter, notifier, settings)


class TestParseCommand:
    """Tests for classifying inbound messages."""

    @pytest.mark.parametrize(
        "body,expected",
        [
            ("BAL", SmsCommand.BALANCE),
            (" balance ", SmsCommand.BALANCE),
            ("Help", SmsCommand.HELP),
            ("stop", SmsCommand.STOP),
            ("4829", SmsCommand.OTP),
            ("482913", SmsCommand.OTP),
            ("1234567", SmsCommand.UNKNOWN),
            ("\u0661\u0662\u0663\u0664", SmsCommand.UNKNOWN),
            ("send 10", SmsCommand.UNKNOWN),
            ("", SmsCommand.UNKNOWN),
        ],
    )
    def test_classification(self, body, expected):
        """Should map keywords and four to six ASCII digits."""
        assert parse_command(body) is expected


class TestBalanceCommand:
    """Tests for BAL."""

    def test_reports_balance_and_local_equivalent(self, commands, sms, sender):
        """Should answer with the custody balance and its KES value."""
        reply = commands.handle("+254712345678", "BAL")

        assert reply.command is SmsCommand.BALANCE
        assert reply.delivered is True
        assert "100.00 USDX" in reply.body
        assert "~13,000.00 KES" in reply.body
        assert sms.messages_to(SENDER) == [reply.body]

    def test_lists_vault_positions(self, commands, custody, sender):
        """Should include each vault holding."""
        custody.vault_assets[(sender.custody_address, custody.vaults[0].address)] = Decimal("25")

        reply = commands.handle(SENDER, "bal")

        assert "Stable Yield: 25.00 USDX" in reply.body

    def test_custody_outage_reports_cached_balance(self, commands, custody, sender):
        """Should fall back to the cached balance and say so."""
        custody.balance_failure = ExternalFailure("custody unavailable")

        reply = commands.handle(SENDER, "BALANCE")

        assert "(last known balance)" in reply.body

    def test_unknown_account(self, commands, sms, settings):
        """Should point the sender at the USSD code."""
        reply = commands.handle(STRANGER, "BAL")

        assert reply.body.startswith("Account not found.")
        assert settings.ussd_service_code in reply.body


class TestOtpReply:
    """Tests for verification codes sent back by SMS."""

    def test_correct_code(self, commands, gate, sms, sender):
        """Should verify the login code and stamp recent auth."""
        gate.issue_otp(SENDER, "ussd")

        reply = commands.handle(SENDER, sms.last_code(SENDER))

        assert reply.command is SmsCommand.OTP
        assert reply.body == "Verification successful!"
        assert gate.has_recent_auth(SENDER)

    def test_wrong_code(self, commands, gate, sms, sender):
        """Should reject without revealing anything about the code."""
        gate.issue_otp(SENDER, "ussd")
        code = sms.last_code(SENDER)
        wrong = "111111" if code != "111111" else "222222"

        reply = commands.handle(SENDER, wrong)

        assert reply.body == "Invalid or expired verification code."
        assert not gate.has_recent_auth(SENDER)

    def test_no_code_issued(self, commands, sender):
        """Should treat a stray number as an expired code."""
        assert commands.handle(SENDER, "482913").body == "Invalid or expired verification code."


class TestOtherCommands:
    """Tests for HELP, STOP and unknown text."""

    def test_help_lists_commands(self, commands, settings):
        """Should name every keyword and the USSD code."""
        body = commands.handle(SENDER, "HELP").body

        for keyword in ("BAL", "HELP", "STOP"):
            assert keyword in body
        assert settings.ussd_service_code in body

    def test_stop(self, commands):
        """Should confirm the opt-out."""
        reply = commands.handle(SENDER, "STOP")

        assert reply.command is SmsCommand.STOP
        assert "no longer receive promotional messages" in reply.body

    def test_unknown(self, commands):
        """Should point to HELP."""
        assert "Text HELP" in commands.handle(SENDER, "hello").body

    def test_reply_delivery_failure_is_reported(self, commands, sms):
        """Should report an undelivered reply instead of raising."""
        sms.fail = True

        assert commands.handle(SENDER, "HELP").delivered is False

    def test_unsupported_sender(self, commands):
        """Should raise for numbers outside the supported markets."""
        with pytest.raises(InvalidPhoneFormat):
            commands.handle("+15551234567", "BAL")

"""Unit tests for SMS delivery and notification templates."""

import uuid
from decimal import Decimal

from twilio.base.exceptions import TwilioRestException

from ussd_wallet.integrations.sms import Notifier, TwilioSmsClient
from ussd_wallet.models import Transaction

PHONE = "254712345678"


def make_transaction(**overrides) -> Transaction:
    values = dict(
        id=uuid.UUID("3f2a9c1e-0000-4000-8000-000000000001"),
        phone_number=PHONE,
        type="transfer",
        amount=Decimal("40"),
        currency="USDX",
        status="completed",
        meta={"recipient": "254798765432"},
    )
    values.update(overrides)
    return Transaction(**values)


class TestTwilioSmsClient:
    """Tests for the Twilio wrapper."""

    def test_unconfigured(self):
        """Should report failure without credentials."""
        client = TwilioSmsClient(account_sid="", auth_token="", from_number="Zawadi")

        result = client.send_message(to=PHONE, body="hello")

        assert not client.is_configured
        assert result["success"] is False

    def test_send_formats_number(self, mocker):
        """Should send to the E.164 form of the number."""
        rest = mocker.MagicMock()
        rest.messages.create.return_value = mocker.Mock(sid="SM123", status="queued")
        client = TwilioSmsClient("AC1", "token", from_number="Zawadi", client=rest)

        result = client.send_message(to=PHONE, body="hello")

        rest.messages.create.assert_called_once_with(from_="Zawadi", to=f"+{PHONE}", body="hello")
        assert result["success"] is True
        assert result["message_id"] == "SM123"

    def test_twilio_error(self, mocker):
        """Should return the Twilio error code instead of raising."""
        rest = mocker.MagicMock()
        rest.messages.create.side_effect = TwilioRestException(
            400, "https://api.twilio.com", msg="invalid number", code=21211
        )
        client = TwilioSmsClient("AC1", "token", from_number="Zawadi", client=rest)

        result = client.send_message(to=PHONE, body="hello")

        assert result["success"] is False
        assert result["error_code"] == 21211


class TestNotifier:
    """Tests for message templates."""

    def test_otp_message(self, mocker):
        """Should include the code and its lifetime."""
        sms = mocker.Mock()
        sms.send_message.return_value = {"success": True}

        assert Notifier(sms, app_name="Zawadi Wallet").send_otp(PHONE, "123456", 5)

        body = sms.send_message.call_args.kwargs["body"]
        assert "Zawadi Wallet verification code is 123456" in body
        assert "expires in 5 minutes" in body

    def test_failed_delivery_returns_false(self, mocker):
        """Should report but not raise delivery failures."""
        sms = mocker.Mock()
        sms.send_message.return_value = {"success": False, "error": "undeliverable"}

        assert Notifier(sms).send_welcome(PHONE) is False

    def test_completed_transfer(self, mocker):
        """Should name the recipient and the short reference."""
        message = Notifier(mocker.Mock()).transaction_message(make_transaction())

        assert message == "Transfer successful.\nAmount: 40.00 USDX\nTo: +254798765432\nRef: 3F2A9C1E"

    def test_received(self, mocker):
        """Should name the sender for incoming money."""
        message = Notifier(mocker.Mock()).transaction_message(
            make_transaction(type="receive", meta={"sender": "254712345678"})
        )

        assert message.startswith("Money Received successful.")
        assert "From: +254712345678" in message

    def test_failed_and_compensated(self, mocker):
        """Should tell the user their funds came back."""
        message = Notifier(mocker.Mock()).transaction_message(make_transaction(
            type="withdrawal",
            amount=Decimal("50"),
            status="failed",
            meta={"failure_reason": "payout rejected", "compensated": True},
        ))

        assert message.startswith("Withdrawal of 50.00 USDX failed: payout rejected.")
        assert message.endswith("Your funds have been returned to your wallet.")

    def test_pending(self, mocker):
        """Should say the movement is being processed."""
        message = Notifier(mocker.Mock()).transaction_message(make_transaction(
            type="deposit", amount=Decimal("1000"), currency="KES", status="pending", meta={}
        ))

        assert message.startswith("Deposit of 1,000.00 KES is being processed.")

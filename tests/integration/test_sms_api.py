"""HTTP tests for the inbound SMS endpoint."""

import pytest
from twilio.request_validator import RequestValidator

pytestmark = pytest.mark.integration

SENDER = "254712345678"
URL = "/api/v1/sms/inbound"


def signed(settings, form: dict[str, str]) -> dict[str, str]:
    signature = RequestValidator(settings.twilio_auth_token).compute_signature(
        f"http://testserver{URL}", form
    )
    return {"X-Twilio-Signature": signature}


class TestInboundSms:
    """Tests for SMS commands in development mode."""

    def test_balance_reply(self, client, sms, sender):
        """Should answer with empty TwiML and send the balance by SMS."""
        response = client.post(URL, data={"From": "+254712345678", "Body": "BAL"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "<Response" in response.text
        assert "100.00 USDX" in sms.messages_to(SENDER)[-1]

    def test_unsupported_sender_is_acknowledged(self, client, sms):
        """Should answer 200 without sending anything."""
        response = client.post(URL, data={"From": "+15551234567", "Body": "BAL"})

        assert response.status_code == 200
        assert sms.sent == []

    def test_missing_sender(self, client):
        """Should answer 400."""
        assert client.post(URL, data={"Body": "BAL"}).status_code == 400


class TestInboundSmsSignature:
    """Tests for Twilio signature validation."""

    @pytest.fixture
    def settings(self, settings):
        return settings.model_copy(update={"twilio_auth_token": "twilio-token"})

    def test_valid_signature(self, client, settings, sms):
        """Should run the command."""
        form = {"From": "+254712345678", "Body": "HELP"}

        response = client.post(URL, data=form, headers=signed(settings, form))

        assert response.status_code == 200
        assert "BAL" in sms.messages_to(SENDER)[-1]

    def test_invalid_signature(self, client, sms):
        """Should answer 401 and send nothing."""
        response = client.post(
            URL,
            data={"From": "+254712345678", "Body": "HELP"},
            headers={"X-Twilio-Signature": "forged"},
        )

        assert response.status_code == 401
        assert sms.sent == []

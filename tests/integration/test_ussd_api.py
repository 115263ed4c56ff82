"""HTTP tests for the USSD gateway callback."""

from decimal import Decimal

import pytest

pytestmark = pytest.mark.integration

SENDER = "+254712345678"


def post_turn(client, text: str, session_id: str = "ATUid_http") -> str:
    response = client.post(
        "/api/v1/ussd",
        data={
            "sessionId": session_id,
            "serviceCode": "*384*7#",
            "phoneNumber": SENDER,
            "text": text,
        },
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    return response.text


class TestUssdCallback:
    """Tests for the gateway callback endpoint."""

    def test_first_turn(self, client, sender):
        """Should answer with the main menu."""
        assert post_turn(client, "").startswith("CON Welcome to Zawadi Wallet")

    def test_send_money_end_to_end(self, client, sms, custody, sender, recipient):
        """Should walk the full send flow across HTTP turns."""
        post_turn(client, "")
        post_turn(client, "2")
        post_turn(client, "2*0798765432")
        post_turn(client, "2*0798765432*25")
        otp_prompt = post_turn(client, "2*0798765432*25*1")
        assert otp_prompt.startswith("CON Enter the 6-digit code")

        code = sms.last_code("254712345678")
        result = post_turn(client, f"2*0798765432*25*1*{code}")

        assert result.startswith("END Transfer successful.\n25.00 USDX")
        assert custody.balances[recipient.custody_address] == Decimal("25")

    def test_invalid_phone(self, client):
        """Should end the session with a generic message."""
        response = client.post(
            "/api/v1/ussd",
            data={"sessionId": "s1", "phoneNumber": "12", "text": ""},
        )

        assert response.text == "END Service temporarily unavailable. Please try again later."

    def test_missing_fields(self, client):
        """Should reject callbacks without a session id."""
        response = client.post("/api/v1/ussd", data={"phoneNumber": SENDER})

        assert response.status_code == 422

    def test_timeout_notification(self, client, sender):
        """Should drop the session when the gateway reports a hang-up."""
        post_turn(client, "", session_id="ATUid_gone")

        response = client.post("/api/v1/ussd/timeout", data={"sessionId": "ATUid_gone"})

        assert response.text == "OK"
        assert post_turn(client, "1", session_id="ATUid_gone").startswith("CON Welcome")

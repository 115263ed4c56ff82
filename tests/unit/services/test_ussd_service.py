"""Unit tests for the USSD turn handler."""

import pytest

from ussd_wallet.errors import SessionConflict
from ussd_wallet.services.ussd_service import (
    UNAVAILABLE_RESPONSE,
    UssdRequest,
    current_input,
)

SENDER = "254712345678"
RECIPIENT = "254798765432"


def turn(service, text: str = "", session_id: str = "ATUid_1", phone: str = "+254712345678") -> str:
    return service.handle_turn(
        UssdRequest(session_id=session_id, service_code="*384*7#", phone_number=phone, text=text)
    )


class TestCurrentInput:
    """Tests for extracting the latest input segment."""

    @pytest.mark.parametrize("text,expected", [
        ("", ""),
        ("1", "1"),
        ("2*0712345678*40", "40"),
        ("2*0712345678* 40 ", "40"),
        ("2*", ""),
    ])
    def test_last_segment(self, text, expected):
        """Only the newest segment is the caller's input."""
        assert current_input(text) == expected


class TestHandleTurn:
    """Tests for running turns against the session store."""

    def test_first_turn_creates_session(self, ussd_service, session_store, sender):
        """Should open the main menu and persist the session."""
        response = turn(ussd_service)

        assert response.startswith("CON Welcome to Zawadi Wallet")
        session = session_store.get("ATUid_1")
        assert session.phone_number == SENDER
        assert session.current_state == "main"

    def test_first_turn_ignores_stale_text(self, ussd_service, session_store, sender):
        """A new session always opens on the main menu."""
        response = turn(ussd_service, "1")

        assert response.startswith("CON Welcome")
        assert session_store.get("ATUid_1").current_state == "main"

    def test_later_turns_use_last_segment(self, ussd_service, session_store, sender, recipient):
        """Should advance using the accumulated gateway text."""
        turn(ussd_service)
        turn(ussd_service, "2")
        response = turn(ussd_service, "2*0798765432")

        assert response.startswith("CON Send to +254798765432")
        session = session_store.get("ATUid_1")
        assert session.current_state == "transfer_amount"
        assert session.state_data == {"kind": "transfer", "recipient": RECIPIENT}

    def test_end_deletes_session(self, ussd_service, session_store, sender):
        """Should remove the session once the menu ends it."""
        turn(ussd_service)
        response = turn(ussd_service, "0")

        assert response == "END Thank you for using Zawadi Wallet. Goodbye!"
        assert session_store.get("ATUid_1") is None

    def test_sessions_are_independent(self, ussd_service, session_store, sender):
        """Should keep separate state per gateway session."""
        turn(ussd_service, session_id="ATUid_1")
        turn(ussd_service, "1", session_id="ATUid_1")
        turn(ussd_service, session_id="ATUid_2")

        assert session_store.get("ATUid_1").current_state == "balance"
        assert session_store.get("ATUid_2").current_state == "main"

    def test_phone_mismatch(self, ussd_service, sender, recipient):
        """Should refuse a session id reused by another number."""
        turn(ussd_service)

        assert turn(ussd_service, "1", phone=RECIPIENT) == UNAVAILABLE_RESPONSE

    def test_invalid_phone(self, ussd_service):
        """Should end the session for unsupported numbers."""
        assert turn(ussd_service, phone="12345") == UNAVAILABLE_RESPONSE

    def test_request_throttle(self, ussd_service, sender):
        """Should end the session once the per-phone limit is exceeded."""
        ussd_service.settings.ussd_request_limit = 2
        turn(ussd_service)
        turn(ussd_service, "1")

        assert turn(ussd_service, "1*9") == UNAVAILABLE_RESPONSE

    def test_conflict_is_unavailable(self, mocker, ussd_service, sender):
        """Should not overwrite a session changed by a concurrent turn."""
        turn(ussd_service)
        mocker.patch.object(
            ussd_service.sessions, "save", side_effect=SessionConflict("session changed")
        )

        assert turn(ussd_service, "1") == UNAVAILABLE_RESPONSE

    def test_unexpected_error_is_unavailable(self, mocker, ussd_service, sender):
        """Should never surface internal errors to the caller."""
        turn(ussd_service)
        mocker.patch.object(ussd_service.menu, "transition", side_effect=RuntimeError("boom"))

        assert turn(ussd_service, "1") == UNAVAILABLE_RESPONSE


class TestEndSession:
    """Tests for gateway end-of-session notifications."""

    def test_deletes_session(self, ussd_service, session_store, sender):
        """Should delete an open session once."""
        turn(ussd_service)

        assert ussd_service.end_session("ATUid_1") is True
        assert ussd_service.end_session("ATUid_1") is False
        assert session_store.get("ATUid_1") is None

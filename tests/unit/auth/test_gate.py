"""Unit tests for the authorization gate (OTP, sessions, throttling, policy)."""

import pytest

from ussd_wallet.auth import AuthorizationGate
from ussd_wallet.auth.gate import AuthStatus
from ussd_wallet.errors import (
    AuthSessionExpired,
    AuthSessionNotFound,
    InvalidOtp,
    OtpNotFound,
    RateLimited,
    SmsDeliveryError,
    TooManyAttempts,
)

SENDER_PHONE = "254712345678"
RECIPIENT_PHONE = "254798765432"


def wrong_code(code: str) -> str:
    return "111111" if code != "111111" else "222222"


class TestIssueOtp:
    """Tests for OTP issuance."""

    def test_sends_code_by_sms(self, gate, sms):
        """Should deliver a six-digit code to the normalized number."""
        issue = gate.issue_otp("+254 712 345 678", "transfer")

        assert issue.phone_number == SENDER_PHONE
        assert issue.purpose == "transfer"
        code = sms.last_code(SENDER_PHONE)
        assert len(code) == 6 and code.isdigit()

    def test_stores_only_the_hash(self, gate, sms, fake_redis):
        """Should never keep the plaintext code in Redis."""
        gate.issue_otp(SENDER_PHONE, "transfer")
        code = sms.last_code(SENDER_PHONE)

        record = fake_redis.hgetall(f"otp:{SENDER_PHONE}:transfer")
        assert record["code_hash"] != code
        assert code not in record.values()
        assert record["attempts"] == "0"

    def test_rate_limits_issuance(self, gate):
        """Should reject the fourth request within the window."""
        for _ in range(3):
            gate.issue_otp(SENDER_PHONE, "ussd")

        with pytest.raises(RateLimited) as exc_info:
            gate.issue_otp(SENDER_PHONE, "ussd")
        assert exc_info.value.retry_after > 0

    def test_rate_limit_window_resets(self, gate, fake_redis):
        """Should allow issuance again once the window passes."""
        for _ in range(3):
            gate.issue_otp(SENDER_PHONE, "ussd")

        fake_redis.advance(901)

        gate.issue_otp(SENDER_PHONE, "ussd")

    def test_delivery_failure_discards_code(self, gate, sms, fake_redis):
        """Should raise and leave no verifiable code when SMS fails."""
        sms.fail = True

        with pytest.raises(SmsDeliveryError):
            gate.issue_otp(SENDER_PHONE, "ussd")
        assert not fake_redis.exists(f"otp:{SENDER_PHONE}:ussd")


class TestVerifyOtp:
    """Tests for OTP verification and lockout."""

    def test_correct_code(self, gate, sms):
        """Should verify once and stamp recent auth."""
        gate.issue_otp(SENDER_PHONE, "transfer")

        assert gate.verify_otp(SENDER_PHONE, sms.last_code(SENDER_PHONE), "transfer") is True
        assert gate.has_recent_auth(SENDER_PHONE)

    def test_code_is_single_use(self, gate, sms):
        """Should reject a code that was already accepted."""
        gate.issue_otp(SENDER_PHONE, "transfer")
        code = sms.last_code(SENDER_PHONE)
        gate.verify_otp(SENDER_PHONE, code, "transfer")

        with pytest.raises(OtpNotFound):
            gate.verify_otp(SENDER_PHONE, code, "transfer")

    def test_purpose_must_match(self, gate, sms):
        """Should not accept a transfer code for a withdrawal."""
        gate.issue_otp(SENDER_PHONE, "transfer")

        with pytest.raises(OtpNotFound):
            gate.verify_otp(SENDER_PHONE, sms.last_code(SENDER_PHONE), "withdraw")

    def test_wrong_code_reports_remaining_attempts(self, gate, sms):
        """Should count down the attempt budget."""
        gate.issue_otp(SENDER_PHONE, "transfer")
        code = sms.last_code(SENDER_PHONE)

        with pytest.raises(InvalidOtp) as exc_info:
            gate.verify_otp(SENDER_PHONE, wrong_code(code), "transfer")
        assert exc_info.value.remaining_attempts == 2

    def test_lockout_rejects_correct_code(self, gate, sms):
        """Should refuse even the right code after three wrong ones."""
        gate.issue_otp(SENDER_PHONE, "transfer")
        code = sms.last_code(SENDER_PHONE)

        for _ in range(2):
            with pytest.raises(InvalidOtp):
                gate.verify_otp(SENDER_PHONE, wrong_code(code), "transfer")
        with pytest.raises(TooManyAttempts):
            gate.verify_otp(SENDER_PHONE, wrong_code(code), "transfer")

        with pytest.raises(TooManyAttempts):
            gate.verify_otp(SENDER_PHONE, code, "transfer")
        assert not gate.has_recent_auth(SENDER_PHONE)

    def test_new_code_clears_lockout(self, gate, sms):
        """Should accept a freshly issued code after a lockout."""
        gate.issue_otp(SENDER_PHONE, "transfer")
        code = sms.last_code(SENDER_PHONE)
        for _ in range(3):
            with pytest.raises((InvalidOtp, TooManyAttempts)):
                gate.verify_otp(SENDER_PHONE, wrong_code(code), "transfer")

        gate.issue_otp(SENDER_PHONE, "transfer")

        assert gate.verify_otp(SENDER_PHONE, sms.last_code(SENDER_PHONE), "transfer")

    def test_wrong_code_after_concurrent_success(self, mocker, gate, sms, fake_redis):
        """Should not recreate a code consumed while a wrong attempt was checked."""
        gate.issue_otp(SENDER_PHONE, "transfer")
        code = sms.last_code(SENDER_PHONE)
        key = f"otp:{SENDER_PHONE}:transfer"
        read = fake_redis.hgetall

        def read_then_consume(name):
            record = read(name)
            fake_redis.delete(name)
            return record

        mocker.patch.object(fake_redis, "hgetall", side_effect=read_then_consume)

        with pytest.raises(OtpNotFound):
            gate.verify_otp(SENDER_PHONE, wrong_code(code), "transfer")
        assert not fake_redis.exists(key)
        assert fake_redis.ttl(key) == -2

    def test_expired_code(self, gate, sms, fake_redis):
        """Should reject a code past its five-minute expiry."""
        gate.issue_otp(SENDER_PHONE, "transfer")
        code = sms.last_code(SENDER_PHONE)

        fake_redis.advance(5 * 60 + 1)

        with pytest.raises(OtpNotFound):
            gate.verify_otp(SENDER_PHONE, code, "transfer")


class TestAuthSessions:
    """Tests for auth session lifecycle."""

    def test_create_and_validate(self, gate):
        """Should resolve a token back to its session."""
        session = gate.create_auth_session(SENDER_PHONE)

        found = gate.validate_auth_session(session.token)

        assert found.phone_number == SENDER_PHONE
        assert found.purpose == "ussd"
        assert len(session.token) == 64

    def test_new_session_replaces_previous(self, gate):
        """Should invalidate the earlier token for the same purpose."""
        first = gate.create_auth_session(SENDER_PHONE)
        second = gate.create_auth_session(SENDER_PHONE)

        with pytest.raises(AuthSessionNotFound):
            gate.validate_auth_session(first.token)
        assert gate.get_active_session(SENDER_PHONE).token == second.token

    def test_logout(self, gate):
        """Should remove the session and its phone pointer."""
        session = gate.create_auth_session(SENDER_PHONE)

        assert gate.invalidate_auth_session(session.token) is True
        assert gate.get_active_session(SENDER_PHONE) is None
        assert gate.invalidate_auth_session(session.token) is False

    def test_expired_session(self, gate):
        """Should reject a session whose expiry has passed."""
        session = gate.create_auth_session(SENDER_PHONE, ttl_minutes=30)
        raw = gate.redis.get(f"auth_session:{session.token}")
        gate.redis.set(
            f"auth_session:{session.token}",
            raw.replace(session.expires_at, "2000-01-01T00:00:00"),
        )

        with pytest.raises(AuthSessionExpired):
            gate.validate_auth_session(session.token)

    def test_unknown_token(self, gate):
        """Should raise for tokens never issued."""
        with pytest.raises(AuthSessionNotFound):
            gate.validate_auth_session("deadbeef")


class TestRequestRate:
    """Tests for the per-phone request throttle."""

    def test_counts_within_window(self, gate):
        """Should return increasing counts."""
        assert gate.check_request_rate(SENDER_PHONE, "ussd", 5, 60) == 1
        assert gate.check_request_rate(SENDER_PHONE, "ussd", 5, 60) == 2

    def test_limit_is_per_phone(self, gate):
        """Should not share counters between numbers."""
        gate.check_request_rate(SENDER_PHONE, "ussd", 1, 60)

        assert gate.check_request_rate(RECIPIENT_PHONE, "ussd", 1, 60) == 1
        with pytest.raises(RateLimited):
            gate.check_request_rate(SENDER_PHONE, "ussd", 1, 60)


class TestAuthorize:
    """Tests for the authorize policy."""

    def test_unknown_account_is_forbidden(self, db, gate):
        """Should forbid numbers without an account."""
        result = gate.authorize(db, SENDER_PHONE, "balance")

        assert result.status is AuthStatus.FORBIDDEN
        assert result.reason == "account_not_found"

    def test_invalid_phone_is_forbidden(self, db, gate):
        """Should forbid malformed numbers."""
        assert gate.authorize(db, "123", "balance").status is AuthStatus.FORBIDDEN

    def test_requires_session(self, db, gate, sender):
        """Should ask for authentication without a USSD session."""
        result = gate.authorize(db, SENDER_PHONE, "balance")

        assert result.status is AuthStatus.REQUIRES_AUTH
        assert result.account.id == sender.id

    def test_non_sensitive_with_session(self, db, gate, sender):
        """Should authorize balance checks with just a session."""
        gate.create_auth_session(SENDER_PHONE)

        assert gate.authorize(db, SENDER_PHONE, "balance").authorized

    def test_sensitive_requires_recent_auth(self, db, gate, sender):
        """Should demand a fresh OTP for transfer, invest and withdraw."""
        gate.create_auth_session(SENDER_PHONE)

        for operation in ["transfer", "invest", "withdraw"]:
            result = gate.authorize(db, SENDER_PHONE, operation)
            assert result.status is AuthStatus.REQUIRES_RECENT_AUTH, operation

    def test_recent_auth_expires(self, db, authenticated: AuthorizationGate, fake_redis):
        """Should fall back to requiring recent auth after ten minutes."""
        assert authenticated.authorize(db, SENDER_PHONE, "transfer").authorized

        fake_redis.advance(601)

        result = authenticated.authorize(db, SENDER_PHONE, "transfer")
        assert result.status is AuthStatus.REQUIRES_RECENT_AUTH

"""
Authorization gate.

Two-tier freshness model for balance-affecting operations:
- an AuthSession (30 minutes) proves who is dialing
- a RecentAuth marker (10 minutes), stamped by every successful OTP
  verification, proves intent for transfer, invest and withdraw

All state lives in Redis with TTLs; counters use atomic INCR so
concurrent requests cannot slip past a cap.
"""

import hashlib
import hmac
import json
import secrets
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum

import redis
from sqlalchemy.orm import Session

from ussd_wallet.auth.phone import validate_phone_number
from ussd_wallet.config import Settings
from ussd_wallet.errors import (
    AuthSessionExpired,
    AuthSessionNotFound,
    InvalidOtp,
    InvalidPhoneFormat,
    OtpNotFound,
    RateLimited,
    SmsDeliveryError,
    TooManyAttempts,
)
from ussd_wallet.integrations.sms import Notifier
from ussd_wallet.logging_config import get_logger, mask_phone
from ussd_wallet.models import Account
from ussd_wallet.storage.accounts import get_account_by_phone

logger = get_logger(__name__)

USSD_PURPOSE = "ussd"
SENSITIVE_OPERATIONS = frozenset({"transfer", "invest", "withdraw"})


class AuthStatus(str, Enum):
    AUTHORIZED = "authorized"
    REQUIRES_AUTH = "requires_auth"
    REQUIRES_RECENT_AUTH = "requires_recent_auth"
    FORBIDDEN = "forbidden"


@dataclass
class AuthSession:
    token: str
    phone_number: str
    purpose: str
    created_at: str
    expires_at: str
    is_active: bool = True

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AuthSession":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def is_expired(self, now: datetime | None = None) -> bool:
        try:
            return (now or datetime.utcnow()) >= datetime.fromisoformat(self.expires_at)
        except ValueError:
            return True


@dataclass
class OtpIssue:
    phone_number: str
    purpose: str
    expires_at: datetime


@dataclass
class AuthorizationResult:
    """Outcome of `authorize`; `account` is set when the caller is known."""
    status: AuthStatus
    phone_number: str
    account: Account | None = None
    session: AuthSession | None = None
    reason: str | None = None

    @property
    def authorized(self) -> bool:
        return self.status is AuthStatus.AUTHORIZED


class AuthorizationGate:
    """
    Phone validation, OTP, auth sessions and the `authorize` policy.

    Example:
        gate = AuthorizationGate.from_settings(redis_client, notifier, settings)
        result = gate.authorize(db, "254712345678", "transfer")
        if result.status is AuthStatus.REQUIRES_RECENT_AUTH:
            gate.issue_otp("254712345678", "transfer")
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        notifier: Notifier,
        otp_secret: str,
        otp_length: int = 6,
        otp_ttl_minutes: int = 5,
        otp_max_attempts: int = 3,
        otp_rate_limit: int = 3,
        otp_rate_window_seconds: int = 900,
        session_ttl_minutes: int = 30,
        recent_auth_ttl_seconds: int = 600,
    ):
        self.redis = redis_client
        self.notifier = notifier
        self.otp_secret = otp_secret
        self.otp_length = otp_length
        self.otp_ttl_minutes = otp_ttl_minutes
        self.otp_max_attempts = otp_max_attempts
        self.otp_rate_limit = otp_rate_limit
        self.otp_rate_window_seconds = otp_rate_window_seconds
        self.session_ttl_minutes = session_ttl_minutes
        self.recent_auth_ttl_seconds = recent_auth_ttl_seconds

    @classmethod
    def from_settings(
        cls,
        redis_client: redis.Redis,
        notifier: Notifier,
        settings: Settings,
    ) -> "AuthorizationGate":
        return cls(
            redis_client,
            notifier,
            otp_secret=settings.otp_secret,
            otp_length=settings.otp_length,
            otp_ttl_minutes=settings.otp_ttl_minutes,
            otp_max_attempts=settings.otp_max_attempts,
            otp_rate_limit=settings.otp_rate_limit,
            otp_rate_window_seconds=settings.otp_rate_window_seconds,
            session_ttl_minutes=settings.auth_session_ttl_minutes,
            recent_auth_ttl_seconds=settings.recent_auth_ttl_seconds,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Keys
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _otp_key(phone: str, purpose: str) -> str:
        return f"otp:{phone}:{purpose}"

    @staticmethod
    def _otp_lock_key(phone: str, purpose: str) -> str:
        return f"otp_locked:{phone}:{purpose}"

    @staticmethod
    def _session_key(token: str) -> str:
        return f"auth_session:{token}"

    @staticmethod
    def _phone_session_key(phone: str, purpose: str) -> str:
        return f"phone_session:{phone}:{purpose}"

    @staticmethod
    def _recent_auth_key(phone: str) -> str:
        return f"recent_auth:{phone}"

    # ─────────────────────────────────────────────────────────────────────────
    # Phone numbers and throttling
    # ─────────────────────────────────────────────────────────────────────────

    def validate_phone_number(self, raw: str):
        """See auth.phone.validate_phone_number."""
        return validate_phone_number(raw)

    def check_request_rate(self, phone_number: str, scope: str, limit: int, window_seconds: int) -> int:
        """
        Count a request against a per-phone window.

        The increment happens before the comparison, so concurrent requests
        each see a distinct count and cannot jointly exceed the cap.

        Returns:
            The count within the current window

        Raises:
            RateLimited: When the count exceeds `limit`
        """
        key = f"{scope}_rate:{phone_number}"
        pipe = self.redis.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, window_seconds, nx=True)
        count, _ = pipe.execute()

        if count > limit:
            retry_after = self.redis.ttl(key)
            logger.warning(
                "rate_limit_exceeded",
                scope=scope,
                phone=mask_phone(phone_number),
                count=count,
                limit=limit,
            )
            raise RateLimited(
                f"Too many {scope} requests. Try again later.",
                retry_after=retry_after if retry_after and retry_after > 0 else window_seconds,
            )
        return count

    # ─────────────────────────────────────────────────────────────────────────
    # OTP
    # ─────────────────────────────────────────────────────────────────────────

    def _hash_code(self, code: str) -> str:
        return hashlib.sha256(f"{code}{self.otp_secret}".encode("utf-8")).hexdigest()

    def _generate_code(self) -> str:
        low = 10 ** (self.otp_length - 1)
        return str(low + secrets.randbelow(9 * low))

    def issue_otp(self, phone_number: str, purpose: str, ttl_minutes: int | None = None) -> OtpIssue:
        """
        Generate an OTP, store its hash and send it by SMS.

        Args:
            phone_number: Raw or normalized phone number
            purpose: What the code authorizes ("transfer", "ussd", ...)
            ttl_minutes: Override the configured expiry

        Returns:
            OtpIssue with the expiry time

        Raises:
            InvalidPhoneFormat: Unsupported number
            RateLimited: More than the allowed issuances in the window
            SmsDeliveryError: The code could not be delivered
        """
        phone = validate_phone_number(phone_number).normalized
        self.check_request_rate(
            phone, "otp", self.otp_rate_limit, self.otp_rate_window_seconds
        )

        ttl = ttl_minutes or self.otp_ttl_minutes
        code = self._generate_code()
        now = datetime.utcnow()
        key = self._otp_key(phone, purpose)

        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(key, self._otp_lock_key(phone, purpose))
        pipe.hset(
            key,
            mapping={
                "code_hash": self._hash_code(code),
                "purpose": purpose,
                "attempts": 0,
                "created_at": now.isoformat(),
            },
        )
        pipe.expire(key, ttl * 60)
        pipe.execute()

        if not self.notifier.send_otp(phone, code, ttl):
            self.redis.delete(key)
            raise SmsDeliveryError("Verification code could not be delivered")

        logger.info("otp_issued", phone=mask_phone(phone), purpose=purpose, ttl_minutes=ttl)
        return OtpIssue(phone_number=phone, purpose=purpose, expires_at=now + timedelta(minutes=ttl))

    def _lock_otp(self, phone: str, purpose: str) -> None:
        key = self._otp_key(phone, purpose)
        remaining_ttl = self.redis.ttl(key)
        if not remaining_ttl or remaining_ttl <= 0:
            remaining_ttl = self.otp_ttl_minutes * 60
        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(key)
        pipe.set(self._otp_lock_key(phone, purpose), "1", ex=remaining_ttl)
        pipe.execute()

    def _spend_attempt(self, key: str) -> int | None:
        """Count a wrong code; None when the code vanished meanwhile."""
        with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    pipe.watch(key)
                    if not pipe.exists(key):
                        return None
                    pipe.multi()
                    pipe.hincrby(key, "attempts", 1)
                    return pipe.execute()[0]
                except redis.WatchError:
                    continue

    def verify_otp(self, phone_number: str, code: str, purpose: str) -> bool:
        """
        Verify a code against the stored hash.

        Each wrong code spends one attempt. When the budget is spent the code
        is destroyed and every later attempt (correct or not) fails with
        TooManyAttempts until a new code is issued. Success destroys the
        code and stamps the recent-auth marker.

        Returns:
            True on success

        Raises:
            OtpNotFound: No code issued, or it expired
            InvalidOtp: Wrong code; `remaining_attempts` tells how many are left
            TooManyAttempts: Attempt budget exhausted
        """
        phone = validate_phone_number(phone_number).normalized
        key = self._otp_key(phone, purpose)

        if self.redis.exists(self._otp_lock_key(phone, purpose)):
            raise TooManyAttempts("Too many failed attempts. Request a new code.")

        record = self.redis.hgetall(key)
        if not record:
            raise OtpNotFound("Verification code expired or not found")

        if int(record.get("attempts", 0)) >= self.otp_max_attempts:
            self._lock_otp(phone, purpose)
            raise TooManyAttempts("Too many failed attempts. Request a new code.")

        if hmac.compare_digest(self._hash_code(code.strip()), record.get("code_hash", "")):
            if not self.redis.delete(key):
                # Consumed by a concurrent verification
                raise OtpNotFound("Verification code already used")
            self.mark_recent_auth(phone)
            logger.info("otp_verified", phone=mask_phone(phone), purpose=purpose)
            return True

        attempts = self._spend_attempt(key)
        if attempts is None:
            raise OtpNotFound("Verification code already used")
        remaining = self.otp_max_attempts - attempts
        logger.warning(
            "otp_verification_failed",
            phone=mask_phone(phone),
            purpose=purpose,
            remaining_attempts=max(remaining, 0),
        )
        if remaining <= 0:
            self._lock_otp(phone, purpose)
            raise TooManyAttempts("Too many failed attempts. Request a new code.")
        raise InvalidOtp(f"Invalid code. {remaining} attempts remaining.", remaining_attempts=remaining)

    # ─────────────────────────────────────────────────────────────────────────
    # Auth sessions
    # ─────────────────────────────────────────────────────────────────────────

    def create_auth_session(
        self,
        phone_number: str,
        purpose: str = USSD_PURPOSE,
        ttl_minutes: int | None = None,
    ) -> AuthSession:
        """
        Create an auth session, replacing any previous one for the same purpose.

        Returns:
            AuthSession whose token is 256 bits of randomness
        """
        phone = validate_phone_number(phone_number).normalized
        ttl = ttl_minutes or self.session_ttl_minutes
        now = datetime.utcnow()

        previous = self.redis.get(self._phone_session_key(phone, purpose))
        if previous:
            self.redis.delete(self._session_key(previous))

        session = AuthSession(
            token=secrets.token_hex(32),
            phone_number=phone,
            purpose=purpose,
            created_at=now.isoformat(),
            expires_at=(now + timedelta(minutes=ttl)).isoformat(),
        )
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(self._session_key(session.token), json.dumps(session.to_dict()), ex=ttl * 60)
        pipe.set(self._phone_session_key(phone, purpose), session.token, ex=ttl * 60)
        pipe.execute()

        logger.info("auth_session_created", phone=mask_phone(phone), purpose=purpose)
        return session

    def validate_auth_session(self, token: str) -> AuthSession:
        """
        Look up a session by token.

        Raises:
            AuthSessionNotFound: Unknown or invalidated token
            AuthSessionExpired: Past its expiry
        """
        raw = self.redis.get(self._session_key(token)) if token else None
        if raw is None:
            raise AuthSessionNotFound("Session not found")

        session = AuthSession.from_dict(json.loads(raw))
        if not session.is_active:
            raise AuthSessionNotFound("Session not found")
        if session.is_expired():
            self.invalidate_auth_session(token)
            raise AuthSessionExpired("Session expired")
        return session

    def get_active_session(self, phone_number: str, purpose: str = USSD_PURPOSE) -> AuthSession | None:
        """Implicit lookup by (phone, purpose) during a USSD conversation."""
        token = self.redis.get(self._phone_session_key(phone_number, purpose))
        if not token:
            return None
        try:
            return self.validate_auth_session(token)
        except (AuthSessionNotFound, AuthSessionExpired):
            self.redis.delete(self._phone_session_key(phone_number, purpose))
            return None

    def invalidate_auth_session(self, token: str) -> bool:
        """Logout. Returns True if a session was removed."""
        raw = self.redis.get(self._session_key(token))
        if raw is None:
            return False
        session = AuthSession.from_dict(json.loads(raw))
        pointer_key = self._phone_session_key(session.phone_number, session.purpose)

        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(self._session_key(token))
        pipe.execute()
        if self.redis.get(pointer_key) == token:
            self.redis.delete(pointer_key)

        logger.info("auth_session_invalidated", phone=mask_phone(session.phone_number))
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Recent authentication
    # ─────────────────────────────────────────────────────────────────────────

    def mark_recent_auth(self, phone_number: str) -> None:
        self.redis.set(
            self._recent_auth_key(phone_number),
            datetime.utcnow().isoformat(),
            ex=self.recent_auth_ttl_seconds,
        )

    def has_recent_auth(self, phone_number: str) -> bool:
        return bool(self.redis.exists(self._recent_auth_key(phone_number)))

    # ─────────────────────────────────────────────────────────────────────────
    # Policy
    # ─────────────────────────────────────────────────────────────────────────

    def authorize(self, db: Session, phone_number: str, operation: str) -> AuthorizationResult:
        """
        Decide whether `operation` may run now.

        Requires an existing account and an active USSD auth session; the
        sensitive operations additionally require a recent-auth marker.

        Args:
            db: Database session for the account lookup
            phone_number: Caller
            operation: "transfer", "invest", "withdraw", "deposit", ...

        Returns:
            AuthorizationResult
        """
        try:
            phone = validate_phone_number(phone_number).normalized
        except InvalidPhoneFormat:
            return AuthorizationResult(
                status=AuthStatus.FORBIDDEN, phone_number=phone_number, reason="invalid_phone"
            )

        account = get_account_by_phone(db, phone)
        if account is None or not account.is_active:
            logger.warning("authorize_forbidden", phone=mask_phone(phone), operation=operation)
            return AuthorizationResult(
                status=AuthStatus.FORBIDDEN, phone_number=phone, reason="account_not_found"
            )

        session = self.get_active_session(phone, USSD_PURPOSE)
        if session is None:
            return AuthorizationResult(
                status=AuthStatus.REQUIRES_AUTH, phone_number=phone, account=account
            )

        if operation in SENSITIVE_OPERATIONS and not self.has_recent_auth(phone):
            return AuthorizationResult(
                status=AuthStatus.REQUIRES_RECENT_AUTH,
                phone_number=phone,
                account=account,
                session=session,
            )

        return AuthorizationResult(
            status=AuthStatus.AUTHORIZED, phone_number=phone, account=account, session=session
        )

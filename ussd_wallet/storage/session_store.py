"""
USSD session store backed by Redis.

Each gateway conversation is one JSON value keyed by its session id:
- TTL-bounded, refreshed on every write (inactivity timeout)
- compare-and-set on a version counter, so two workers handling turns of
  the same session cannot silently overwrite each other
- no in-process memory: consecutive turns may land on different workers
"""

import json
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any

import redis

from ussd_wallet.errors import SessionConflict
from ussd_wallet.logging_config import get_logger, mask_phone

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "ussd_session:"


@dataclass
class UssdSession:
    """
    Persisted conversation state.

    `state_data` is the encoded flow draft (see flows.drafts). It is kept
    as the plain dict that was stored so it round-trips unchanged.
    """
    session_id: str
    phone_number: str
    current_state: str = "main"
    state_data: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""
    version: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "UssdSession":
        """Create from dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class SessionStore:
    """
    Redis-based USSD session store.

    Example:
        store = SessionStore(redis_client, ttl_seconds=3600)
        session = store.create("ATUid_123", "254712345678")
        session = store.save(replace(session, current_state="transfer_amount"))
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 3600):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    @staticmethod
    def _encode(session: UssdSession) -> str:
        return json.dumps(session.to_dict(), ensure_ascii=False)

    @staticmethod
    def _decode(raw: str) -> UssdSession:
        return UssdSession.from_dict(json.loads(raw))

    def get(self, session_id: str) -> UssdSession | None:
        """
        Load a session.

        Args:
            session_id: Gateway-issued session id

        Returns:
            UssdSession or None if absent or expired
        """
        raw = self.redis.get(self._key(session_id))
        if raw is None:
            return None
        return self._decode(raw)

    def create(
        self,
        session_id: str,
        phone_number: str,
        state: str = "main",
    ) -> UssdSession:
        """
        Create a session if absent.

        Uses SET NX so two workers racing on the first turn agree on one
        session; the loser gets the winner's copy back.

        Returns:
            The stored UssdSession
        """
        now = datetime.utcnow().isoformat()
        session = UssdSession(
            session_id=session_id,
            phone_number=phone_number,
            current_state=state,
            state_data={},
            created_at=now,
            updated_at=now,
            version=1,
        )

        created = self.redis.set(
            self._key(session_id),
            self._encode(session),
            ex=self.ttl_seconds,
            nx=True,
        )
        if created:
            logger.info(
                "ussd_session_created",
                session_id=session_id,
                phone=mask_phone(phone_number),
            )
            return session

        existing = self.get(session_id)
        if existing is None:
            # Expired between SET NX and GET
            return self.create(session_id, phone_number, state)
        return existing

    def save(self, session: UssdSession) -> UssdSession:
        """
        Persist a session with compare-and-set on its version.

        Args:
            session: Session carrying the version it was read at

        Returns:
            The stored session with its version incremented

        Raises:
            SessionConflict: If the stored version moved or the key vanished
        """
        key = self._key(session.session_id)
        updated = replace(
            session,
            updated_at=datetime.utcnow().isoformat(),
            version=session.version + 1,
        )

        with self.redis.pipeline() as pipe:
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                if raw is None:
                    raise SessionConflict(f"Session {session.session_id} no longer exists")

                stored_version = json.loads(raw).get("version", 0)
                if stored_version != session.version:
                    raise SessionConflict(
                        f"Session {session.session_id} is at version {stored_version}, "
                        f"expected {session.version}"
                    )

                pipe.multi()
                pipe.set(key, self._encode(updated), ex=self.ttl_seconds)
                pipe.execute()
            except redis.WatchError as e:
                logger.warning("ussd_session_conflict", session_id=session.session_id)
                raise SessionConflict(
                    f"Session {session.session_id} was modified concurrently"
                ) from e

        logger.debug(
            "ussd_session_saved",
            session_id=session.session_id,
            state=updated.current_state,
            version=updated.version,
        )
        return updated

    def delete(self, session_id: str) -> bool:
        """
        Delete a session.

        Returns:
            True if a session was deleted
        """
        deleted = bool(self.redis.delete(self._key(session_id)))
        if deleted:
            logger.info("ussd_session_deleted", session_id=session_id)
        return deleted

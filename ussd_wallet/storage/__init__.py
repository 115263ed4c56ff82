"""Persistence: Redis-backed session store and the SQL transaction ledger."""

from ussd_wallet.storage.session_store import SessionStore, UssdSession

__all__ = ["SessionStore", "UssdSession"]

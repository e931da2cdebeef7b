"""Durable session storage."""
from vigil.memory.session_store import SessionStore, safe_session_name

__all__ = ["SessionStore", "safe_session_name"]

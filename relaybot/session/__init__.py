"""Session persistence and resolution."""

from relaybot.session.keys import resolve_session_key
from relaybot.session.store import SessionRecord, SessionStore

__all__ = ["SessionRecord", "SessionStore", "resolve_session_key"]

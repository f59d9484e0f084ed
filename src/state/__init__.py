"""
In-memory chat session state.

Sessions and lookup counters live for the lifetime of the process only;
nothing here is persisted.
"""

from .models import AuthResult, Session, StatsSnapshot
from .session_store import SessionStateError, SessionStore

__all__ = ["AuthResult", "Session", "StatsSnapshot", "SessionStateError", "SessionStore"]

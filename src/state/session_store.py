from __future__ import annotations

import hmac
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .models import AuthResult, ChatId, Session, StatsSnapshot


class SessionStateError(RuntimeError):
    """A store operation was called without its precondition holding."""


class SessionStore:
    """
    Process-local store of chat sessions plus the global lookup counter.

    - All mutations happen under one store lock, so a session's counter and
      the global counter always move together.
    - `chat_lock(chat_id)` hands out a per-chat lock that callers hold for a
      whole message flow; different chats never contend on it.
    - Returned `Session` objects are copies; mutate through the store only.
    """

    def __init__(self) -> None:
        self._sessions: Dict[ChatId, Session] = {}
        self._total_lookups = 0
        self._lock = threading.Lock()
        self._chat_locks: Dict[ChatId, threading.Lock] = {}

    @contextmanager
    def chat_lock(self, chat_id: ChatId) -> Iterator[None]:
        with self._lock:
            lock = self._chat_locks.setdefault(chat_id, threading.Lock())
        with lock:
            yield

    def _upsert(self, chat_id: ChatId) -> Session:
        # Caller holds self._lock
        session = self._sessions.get(chat_id)
        if session is None:
            session = Session(chat_id=chat_id)
            self._sessions[chat_id] = session
        return session

    def ensure_session(self, chat_id: ChatId) -> Session:
        """Return the session for `chat_id`, creating an unauthorized one if unseen."""
        with self._lock:
            return self._upsert(chat_id).model_copy()

    def get_session(self, chat_id: ChatId) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(chat_id)
            return session.model_copy() if session is not None else None

    def check_access(self, chat_id: ChatId, submitted_code: str, expected_code: str) -> AuthResult:
        """
        Try to authorize `chat_id` with `submitted_code`.

        Already-authorized sessions short-circuit without comparing. A mismatch
        leaves the session untouched.
        """
        with self._lock:
            session = self._upsert(chat_id)
            if session.authorized:
                return AuthResult.ALREADY_AUTHORIZED
            if hmac.compare_digest(submitted_code.encode("utf-8"), expected_code.encode("utf-8")):
                session.authorized = True
                return AuthResult.GRANTED
            return AuthResult.DENIED

    def is_authorized(self, chat_id: ChatId) -> bool:
        with self._lock:
            session = self._sessions.get(chat_id)
            return session is not None and session.authorized

    def record_lookup(self, chat_id: ChatId) -> None:
        """Count one successful lookup for `chat_id` and globally.

        Raises SessionStateError if the chat has no authorized session.
        """
        with self._lock:
            session = self._sessions.get(chat_id)
            if session is None or not session.authorized:
                raise SessionStateError(f"record_lookup on unauthorized chat {chat_id!r}")
            session.query_count += 1
            self._total_lookups += 1

    def stats(self, chat_id: ChatId) -> StatsSnapshot:
        with self._lock:
            session = self._sessions.get(chat_id)
            yours = session.query_count if session is not None and session.authorized else 0
            return StatsSnapshot(
                total_users=len(self._sessions),
                authorized_users=sum(1 for s in self._sessions.values() if s.authorized),
                your_queries=yours,
                total_lookups=self._total_lookups,
            )

    @property
    def total_lookups(self) -> int:
        with self._lock:
            return self._total_lookups


__all__ = ["SessionStore", "SessionStateError"]

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Protocol, Union

from common import formatting as fmt
from common.family_lookup import FamilyLookupError, FamilyRecord, RecordNotFoundError
from common.telegram import TelegramError
from state.models import AuthResult
from state.session_store import SessionStore


logger = logging.getLogger(__name__)

ChatId = Union[int, str]

FAMILY_ID_RE = re.compile(r"^\d{6,15}$", re.ASCII)
_COMMAND_RE = re.compile(r"^/([A-Za-z0-9_]+)(?:@\S+)?(?:\s|$)")

PARSE_MODE = "HTML"


class MessageSender(Protocol):
    def send_message(self, chat_id: ChatId, text: str, **kwargs: Any) -> Dict[str, Any]: ...


class FamilyLookup(Protocol):
    def fetch_family_record(self, identifier: str) -> FamilyRecord: ...


def is_valid_family_id(text: str) -> bool:
    return FAMILY_ID_RE.fullmatch(text or "") is not None


def _parse_command(text: str) -> Optional[str]:
    m = _COMMAND_RE.match(text or "")
    return m.group(1).lower() if m else None


class MessageRouter:
    """
    Routes inbound chat messages through the access gate and the lookup flow.

    Per message, under the chat's lock:
    - commands (/start, /help, /stats) are answered and nothing else happens;
    - unauthorized chats have their text checked as an access code;
    - authorized chats have their text validated as a family id, looked up,
      counted and rendered.

    Errors never escape `handle_message`: lookup failures become user notices
    and anything unexpected is logged and answered with a generic notice.
    """

    def __init__(
        self,
        *,
        sender: MessageSender,
        lookup: FamilyLookup,
        store: SessionStore,
        access_code: str,
        show_sensitive: bool = False,
    ) -> None:
        if not access_code:
            raise ValueError("access_code is required")
        self._sender = sender
        self._lookup = lookup
        self._store = store
        self._access_code = access_code
        self._show_sensitive = show_sensitive

    @property
    def store(self) -> SessionStore:
        return self._store

    # --------------- Entry points ---------------
    def handle_update(self, update: Dict[str, Any]) -> bool:
        """Handle one Telegram Update; returns False if it carried no usable message."""
        msg = update.get("message") if isinstance(update, dict) else None
        if not isinstance(msg, dict):
            return False
        chat = msg.get("chat") if isinstance(msg.get("chat"), dict) else None
        chat_id = chat.get("id") if isinstance(chat, dict) else None
        if chat_id is None:
            return False
        text = msg.get("text") if isinstance(msg.get("text"), str) else ""
        first_name = chat.get("first_name") or (msg.get("from") or {}).get("first_name")
        self.handle_message(chat_id, text, first_name=first_name)
        return True

    def handle_message(self, chat_id: ChatId, text: Optional[str], *, first_name: Optional[str] = None) -> None:
        text = (text or "").strip()
        with self._store.chat_lock(chat_id):
            try:
                self._route(chat_id, text, first_name)
            except Exception:
                logger.exception("Unhandled error while processing message for chat %s", chat_id)
                self._reply(chat_id, fmt.GENERIC_FAILURE)

    # --------------- Flow ---------------
    def _route(self, chat_id: ChatId, text: str, first_name: Optional[str]) -> None:
        self._store.ensure_session(chat_id)

        if not text or text.startswith("/"):
            self._handle_command(chat_id, text, first_name)
            return

        if not self._store.is_authorized(chat_id):
            result = self._store.check_access(chat_id, text, self._access_code)
            if result is AuthResult.GRANTED:
                logger.info("Chat %s authorized", chat_id)
                self._reply(chat_id, fmt.ACCESS_GRANTED)
            elif result is AuthResult.DENIED:
                logger.info("Chat %s denied: wrong access code", chat_id)
                self._reply(chat_id, fmt.ACCESS_DENIED)
            return

        if not is_valid_family_id(text):
            self._reply(chat_id, fmt.INVALID_ID)
            return

        self._lookup_and_reply(chat_id, text)

    def _handle_command(self, chat_id: ChatId, text: str, first_name: Optional[str]) -> None:
        if not text:
            # Stickers, photos and other non-text messages
            return
        command = _parse_command(text)
        if command == "start":
            self._reply(chat_id, fmt.format_greeting(first_name), parse_mode=PARSE_MODE)
        elif command == "help":
            self._reply(chat_id, fmt.format_help(), parse_mode=PARSE_MODE)
        elif command == "stats":
            if not self._store.is_authorized(chat_id):
                self._reply(chat_id, fmt.STATS_DENIED)
                return
            snap = self._store.stats(chat_id)
            self._reply(
                chat_id,
                fmt.format_stats(
                    total_users=snap.total_users,
                    authorized_users=snap.authorized_users,
                    your_queries=snap.your_queries,
                    total_lookups=snap.total_lookups,
                ),
                parse_mode=PARSE_MODE,
            )
        else:
            self._reply(chat_id, fmt.UNKNOWN_COMMAND)

    def _lookup_and_reply(self, chat_id: ChatId, family_id: str) -> None:
        self._reply(chat_id, fmt.FETCHING)

        try:
            record = self._lookup.fetch_family_record(family_id)
        except RecordNotFoundError as exc:
            logger.info("Lookup for chat %s found nothing: %s", chat_id, exc)
            self._reply(chat_id, fmt.NOT_FOUND)
            return
        except FamilyLookupError as exc:
            logger.warning("Lookup for chat %s failed: %s", chat_id, exc)
            self._reply(chat_id, fmt.format_lookup_failure(exc.user_message), parse_mode=PARSE_MODE)
            return

        message = fmt.format_family_record(record, show_sensitive=self._show_sensitive)
        # Count only once the record parsed and rendered
        self._store.record_lookup(chat_id)
        self._reply(chat_id, message, parse_mode=PARSE_MODE)

    def _reply(self, chat_id: ChatId, text: str, *, parse_mode: Optional[str] = None) -> bool:
        """Best-effort send; a failed send is logged and never fails the flow."""
        try:
            if parse_mode is None:
                self._sender.send_message(chat_id=chat_id, text=text)
            else:
                self._sender.send_message(chat_id=chat_id, text=text, parse_mode=parse_mode)
        except TelegramError as exc:
            logger.warning("Failed to send message to chat %s: %s", chat_id, exc)
            return False
        return True


__all__ = [
    "MessageRouter",
    "FAMILY_ID_RE",
    "is_valid_family_id",
]

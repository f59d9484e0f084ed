from __future__ import annotations

import logging
import sys
import threading
import time
from collections import OrderedDict, deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Deque, Dict, List, Optional

from common.config import ConfigMissingError, Settings, load_dotenv_file, load_settings
from common.family_lookup import FamilyLookupClient
from common.telegram import TelegramClient, TelegramError
from state.session_store import SessionStore

from .router import MessageRouter


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
ALLOWED_UPDATES = ["message"]
ERROR_BACKOFF_MAX = 60.0


def _update_id(upd: Dict[str, Any]) -> Optional[int]:
    try:
        return int(upd.get("update_id"))
    except (TypeError, ValueError):
        return None


def _chat_key(upd: Dict[str, Any]) -> Optional[Any]:
    msg = upd.get("message")
    if not isinstance(msg, dict):
        return None
    chat = msg.get("chat")
    return chat.get("id") if isinstance(chat, dict) else None


def group_by_chat(updates: List[Dict[str, Any]]) -> "OrderedDict[Any, List[Dict[str, Any]]]":
    """Group message updates per chat, preserving arrival order within each chat."""
    grouped: "OrderedDict[Any, List[Dict[str, Any]]]" = OrderedDict()
    for upd in updates:
        key = _chat_key(upd)
        if key is None:
            continue
        grouped.setdefault(key, []).append(upd)
    return grouped


class UpdatePoller:
    """
    Long-polls Telegram `getUpdates` and fans messages out to the router.

    - The offset advances to `last update_id + 1` as soon as a batch is
      received, so a failing message is never redelivered.
    - Each chat has at most one worker task at a time, draining that chat's
      queue in arrival order. Later batches append to the queue instead of
      submitting a second task, so a slow lookup holds one worker and only
      delays its own chat.
    """

    def __init__(
        self,
        tg: TelegramClient,
        router: MessageRouter,
        *,
        workers: int = 4,
        poll_timeout: int = 30,
        limit: int = 100,
    ) -> None:
        self._tg = tg
        self._router = router
        self._poll_timeout = poll_timeout
        self._limit = limit
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chat")
        self._lock = threading.Lock()
        self._queues: Dict[Any, Deque[Dict[str, Any]]] = {}
        self._running: Dict[Any, Future] = {}
        self.last_update_id: Optional[int] = None

    def close(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "UpdatePoller":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def next_offset(self) -> Optional[int]:
        return self.last_update_id + 1 if self.last_update_id is not None else None

    def _drain_chat(self, chat_id: Any) -> None:
        while True:
            with self._lock:
                queue = self._queues.get(chat_id)
                if not queue:
                    # Queue and running entry are cleared together under the lock
                    self._queues.pop(chat_id, None)
                    self._running.pop(chat_id, None)
                    return
                upd = queue.popleft()
            try:
                self._router.handle_update(upd)
            except Exception:
                # Router already converts errors to notices; this guards the worker
                logger.exception("Failed to process update %s", upd.get("update_id"))

    def dispatch(self, updates: List[Dict[str, Any]]) -> List[Future]:
        """Queue updates per chat; returns the task draining each chat in this batch."""
        futures: List[Future] = []
        for chat_id, chat_updates in group_by_chat(updates).items():
            with self._lock:
                self._queues.setdefault(chat_id, deque()).extend(chat_updates)
                fut = self._running.get(chat_id)
                if fut is None:
                    fut = self._executor.submit(self._drain_chat, chat_id)
                    self._running[chat_id] = fut
            futures.append(fut)
        return futures

    def poll_once(self, *, wait: bool = False) -> Dict[str, Any]:
        """
        Fetch one batch of updates and dispatch it.

        Returns: {"received": N, "dispatched": chats, "last_update_id": int|None}.
        With `wait=True`, blocks until every dispatched chat task finished.
        Raises TelegramError if getUpdates fails.
        """
        updates = self._tg.get_updates(
            offset=self.next_offset(),
            limit=self._limit,
            timeout=self._poll_timeout,
            allowed_updates=ALLOWED_UPDATES,
        )
        ids = [uid for uid in (_update_id(u) for u in updates) if uid is not None]
        if ids:
            newest = max(ids)
            if self.last_update_id is None or newest > self.last_update_id:
                self.last_update_id = newest

        futures = self.dispatch(updates)
        if wait:
            for fut in futures:
                fut.result()
        return {"received": len(updates), "dispatched": len(futures), "last_update_id": self.last_update_id}

    def run_forever(self, *, sleep=time.sleep) -> None:
        backoff = 1.0
        while True:
            try:
                out = self.poll_once()
            except TelegramError as exc:
                logger.error("getUpdates failed: %s; retrying in %.0fs", exc, backoff)
                sleep(backoff)
                backoff = min(backoff * 2, ERROR_BACKOFF_MAX)
                continue
            backoff = 1.0
            if out["received"]:
                logger.debug("Received %d updates across %d chats", out["received"], out["dispatched"])


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # httpx logs request URLs at INFO, and Telegram URLs embed the bot token
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_router(settings: Settings, tg: TelegramClient, lookup: FamilyLookupClient) -> MessageRouter:
    return MessageRouter(
        sender=tg,
        lookup=lookup,
        store=SessionStore(),
        access_code=settings.access_code,
        show_sensitive=settings.show_sensitive,
    )


def run(settings: Settings) -> None:
    with TelegramClient(settings.telegram_token) as tg, FamilyLookupClient(
        settings.lookup_base_url, timeout=settings.lookup_timeout
    ) as lookup:
        router = build_router(settings, tg, lookup)
        with UpdatePoller(
            tg, router, workers=settings.poll_workers, poll_timeout=settings.poll_timeout
        ) as poller:
            logger.info("Family lookup bot started. SHOW_SENSITIVE=%s", settings.show_sensitive)
            poller.run_forever()


def main() -> int:
    """Console entry point: load config, then long-poll until interrupted."""
    load_dotenv_file()
    try:
        settings = load_settings()
    except ConfigMissingError as exc:
        configure_logging()
        logger.error("%s. Check TELEGRAM_TOKEN, LOOKUP_API_BASE, ACCESS_CODE.", exc)
        sys.exit(1)

    configure_logging(settings.log_level)
    try:
        run(settings)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())

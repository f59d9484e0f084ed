from __future__ import annotations

import threading
import time
from typing import Any, Dict, List

import pytest

from common.telegram import TelegramError
from poller import handler as poller
from poller.router import MessageRouter
from state.session_store import SessionStore


class _FakeTG:
    def __init__(self) -> None:
        self._batches: List[List[Dict[str, Any]]] = []
        self.offsets: List[Any] = []
        self.sent: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def plan_updates(self, *batches: List[Dict[str, Any]]) -> None:
        self._batches = list(batches)

    def get_updates(self, *, offset=None, limit=None, timeout=None, allowed_updates=None):  # noqa: ARG002
        self.offsets.append(offset)
        if not self._batches:
            return []
        return self._batches.pop(0)

    def send_message(self, *, chat_id, text: str, **_kwargs):
        with self._lock:
            self.sent.append({"chat_id": chat_id, "text": text})
        return {"message_id": 1}


class _RecordingRouter:
    def __init__(self, delay_for: Dict[int, float] | None = None) -> None:
        self.seen: List[Any] = []
        self.delay_for = delay_for or {}
        self._lock = threading.Lock()

    def handle_update(self, update: Dict[str, Any]) -> bool:
        chat_id = update["message"]["chat"]["id"]
        time.sleep(self.delay_for.get(chat_id, 0.0))
        with self._lock:
            self.seen.append((chat_id, update["message"]["text"]))
        return True


def _mk_update(update_id: int, chat_id: int, text: str) -> Dict[str, Any]:
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id * 10,
            "date": 0,
            "chat": {"id": chat_id, "type": "private"},
            "text": text,
        },
    }


def test_poll_advances_offset_and_dispatches():
    tg = _FakeTG()
    router = _RecordingRouter()
    tg.plan_updates(
        [_mk_update(41, 1, "a"), _mk_update(42, 2, "b"), _mk_update(43, 1, "c")],
        [_mk_update(44, 2, "d")],
    )

    with poller.UpdatePoller(tg, router, workers=2, poll_timeout=0) as p:
        out = p.poll_once(wait=True)
        assert out == {"received": 3, "dispatched": 2, "last_update_id": 43}
        out2 = p.poll_once(wait=True)
        assert out2["last_update_id"] == 44
        out3 = p.poll_once(wait=True)
        assert out3["received"] == 0

    assert tg.offsets == [None, 44, 45]
    # Per-chat order preserved
    chat1 = [t for c, t in router.seen if c == 1]
    assert chat1 == ["a", "c"]
    assert len(router.seen) == 4


def test_non_message_updates_advance_offset_only():
    tg = _FakeTG()
    router = _RecordingRouter()
    tg.plan_updates([{"update_id": 10, "edited_message": {"message_id": 100}}, _mk_update(11, 9, "x")])

    with poller.UpdatePoller(tg, router, workers=1, poll_timeout=0) as p:
        out = p.poll_once(wait=True)

    assert out["received"] == 2
    assert out["dispatched"] == 1
    assert out["last_update_id"] == 11
    assert router.seen == [(9, "x")]


def test_slow_chat_does_not_block_other_chats():
    tg = _FakeTG()
    router = _RecordingRouter(delay_for={1: 0.5})
    tg.plan_updates([_mk_update(1, 1, "slow"), _mk_update(2, 2, "fast")])

    with poller.UpdatePoller(tg, router, workers=2, poll_timeout=0) as p:
        p.poll_once(wait=True)

    assert router.seen[0] == (2, "fast")


class _TrackingRouter(_RecordingRouter):
    """Records when each chat is handled and how many of its messages overlap."""

    def __init__(self, delay_for: Dict[int, float]) -> None:
        super().__init__(delay_for)
        self.handled_at: Dict[Any, float] = {}
        self.in_flight: Dict[Any, int] = {}
        self.max_in_flight: Dict[Any, int] = {}
        self.fast_done = threading.Event()

    def handle_update(self, update: Dict[str, Any]) -> bool:
        chat_id = update["message"]["chat"]["id"]
        with self._lock:
            self.in_flight[chat_id] = self.in_flight.get(chat_id, 0) + 1
            self.max_in_flight[chat_id] = max(self.max_in_flight.get(chat_id, 0), self.in_flight[chat_id])
        try:
            super().handle_update(update)
        finally:
            with self._lock:
                self.in_flight[chat_id] -= 1
                self.handled_at[chat_id] = time.monotonic()
        if chat_id == 2:
            self.fast_done.set()
        return True


def test_slow_chat_across_batches_does_not_take_every_worker():
    tg = _FakeTG()
    router = _TrackingRouter(delay_for={1: 0.6})
    tg.plan_updates(
        [_mk_update(1, 1, "116440054586")],
        [_mk_update(2, 1, "116440054587")],
        [_mk_update(3, 2, "/help")],
    )

    with poller.UpdatePoller(tg, router, workers=2, poll_timeout=0) as p:
        p.poll_once()
        p.poll_once()
        started = time.monotonic()
        p.poll_once()
        # Chat 2 gets the second worker while chat 1 is still busy
        assert router.fast_done.wait(timeout=0.4)
        assert router.handled_at[2] - started < 0.4

    assert [t for c, t in router.seen if c == 1] == ["116440054586", "116440054587"]
    assert router.max_in_flight[1] == 1


def test_later_batches_reuse_the_running_chat_task():
    tg = _FakeTG()
    router = _RecordingRouter(delay_for={1: 0.3})
    tg.plan_updates([_mk_update(1, 1, "a")], [_mk_update(2, 1, "b")])

    with poller.UpdatePoller(tg, router, workers=2, poll_timeout=0) as p:
        first = p.dispatch(tg.get_updates())
        second = p.dispatch(tg.get_updates())
        assert first[0] is second[0]
        second[0].result()

    assert router.seen == [(1, "a"), (1, "b")]


def test_group_by_chat_preserves_order():
    grouped = poller.group_by_chat(
        [_mk_update(1, 5, "a"), _mk_update(2, 6, "b"), _mk_update(3, 5, "c"), {"update_id": 4}]
    )
    assert list(grouped.keys()) == [5, 6]
    assert [u["update_id"] for u in grouped[5]] == [1, 3]


def test_end_to_end_with_real_router():
    tg = _FakeTG()

    class _Lookup:
        def fetch_family_record(self, identifier):  # noqa: ARG002
            raise AssertionError("not reached")

    router = MessageRouter(sender=tg, lookup=_Lookup(), store=SessionStore(), access_code="1234")
    tg.plan_updates([_mk_update(1, 7, "wrong"), _mk_update(2, 7, "1234"), _mk_update(3, 7, "abc")])

    with poller.UpdatePoller(tg, router, workers=2, poll_timeout=0) as p:
        p.poll_once(wait=True)

    texts = [m["text"] for m in tg.sent]
    assert texts[0].startswith("🔒 Access Restricted")
    assert texts[1].startswith("✅ Access Granted")
    assert texts[2].startswith("⚠️ Please send a valid family ID")


def test_run_forever_backs_off_on_telegram_errors():
    calls = {"n": 0}
    sleeps: List[float] = []

    class _FailingTG(_FakeTG):
        def get_updates(self, **_kwargs):
            calls["n"] += 1
            if calls["n"] > 3:
                raise KeyboardInterrupt
            raise TelegramError("down")

    with poller.UpdatePoller(_FailingTG(), _RecordingRouter(), workers=1) as p:
        with pytest.raises(KeyboardInterrupt):
            p.run_forever(sleep=sleeps.append)

    assert sleeps == [1.0, 2.0, 4.0]


def test_main_exits_nonzero_without_config(monkeypatch: pytest.MonkeyPatch):
    for name in ("TELEGRAM_TOKEN", "TELEGRAM_BOT_TOKEN", "LOOKUP_API_BASE", "AADHAR_API_BASE", "ACCESS_CODE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(poller, "load_dotenv_file", lambda: False)

    def _no_client(*_a, **_k):
        raise AssertionError("Telegram client must not be created")

    monkeypatch.setattr(poller, "TelegramClient", _no_client)

    with pytest.raises(SystemExit) as ei:
        poller.main()
    assert ei.value.code == 1


def test_main_runs_with_config(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(poller, "load_dotenv_file", lambda: False)
    monkeypatch.setenv("TELEGRAM_TOKEN", "DUMMY-TG")
    monkeypatch.setenv("LOOKUP_API_BASE", "https://lookup.example/?id=")
    monkeypatch.setenv("ACCESS_CODE", "1234")
    seen = {}

    def fake_run(settings):
        seen["settings"] = settings
        raise KeyboardInterrupt

    monkeypatch.setattr(poller, "run", fake_run)

    assert poller.main() == 0
    assert seen["settings"].access_code == "1234"
    assert seen["settings"].show_sensitive is False

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import httpx
import pytest
from structlog.testing import capture_logs

from ala_archa.config import TelegramConfig
from ala_archa.notifications.telegram import TELEGRAM_MAX_MESSAGE_LEN, TelegramNotifier, queued_footer
from ala_archa.state.persistent_state import PersistentState, PersistentStateStore, QueuedNotification, utcnow


FOOTER_PREFIX = "\n\nЭто сообщение было отправлено в "


def test_queued_footer_carries_first_send_time() -> None:
    message = QueuedNotification(chat_id="1", text="Низкий остаток")
    footer = queued_footer(message)
    assert footer.startswith(FOOTER_PREFIX)
    assert footer.endswith(message.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S") + ".")


class _FakeTelegram:
    """MockTransport handler recording sendMessage calls."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail_texts: set[str] = set()
        self.down = False
        self.on_request = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/botTOKEN/sendMessage"
        payload = json.loads(request.content)
        if self.on_request is not None:
            self.on_request(payload)
        if self.down or any(t in payload["text"] for t in self.fail_texts):
            return httpx.Response(502, json={"ok": False, "description": "Bad Gateway"})
        self.sent.append(payload)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": len(self.sent)}})


def _notifier(tmp_path: Path, fake: _FakeTelegram, **config) -> TelegramNotifier:
    store = PersistentStateStore.load(tmp_path / "state.yaml")
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    cfg = TelegramConfig(bot_token="TOKEN", api_base_url="https://telegram.test", **config)
    return TelegramNotifier(cfg, store, client=client)


def _queue(notifier: TelegramNotifier) -> list[QueuedNotification]:
    return notifier.store.get().notification_queue


@pytest.mark.asyncio
async def test_send_message_delivers_once_per_chat(tmp_path: Path) -> None:
    fake = _FakeTelegram()
    notifier = _notifier(tmp_path, fake)

    await notifier.send_message(["1", 2, "1"], "hello")

    assert [p["chat_id"] for p in fake.sent] == ["1", "2"]
    assert _queue(notifier) == []


@pytest.mark.asyncio
async def test_failed_send_is_queued(tmp_path: Path) -> None:
    fake = _FakeTelegram()
    fake.down = True
    notifier = _notifier(tmp_path, fake)

    assert await notifier.try_send_message("1", "hello") is False
    await notifier.send_message(["1"], "hello")

    queue = _queue(notifier)
    assert len(queue) == 1
    assert queue[0].chat_id == "1"
    assert queue[0].text == "hello"


@pytest.mark.asyncio
async def test_process_queue_delivers_and_drops_expired(tmp_path: Path) -> None:
    fake = _FakeTelegram()
    notifier = _notifier(tmp_path, fake, message_timeout=timedelta(hours=1))

    def _seed(state: PersistentState) -> None:
        state.notification_queue.append(
            QueuedNotification(chat_id="1", text="stale", timestamp=utcnow() - timedelta(hours=2))
        )
        state.notification_queue.append(QueuedNotification(chat_id="1", text="fresh"))

    notifier.store.update(_seed)

    summary = await notifier.process_queue()

    assert summary == {"delivered": 1, "dropped": 1, "requeued": 0}
    assert len(fake.sent) == 1
    assert fake.sent[0]["text"].startswith("fresh" + FOOTER_PREFIX)
    assert _queue(notifier) == []


@pytest.mark.asyncio
async def test_process_queue_requeues_failures_in_order(tmp_path: Path) -> None:
    fake = _FakeTelegram()
    fake.fail_texts = {"first", "third"}
    notifier = _notifier(tmp_path, fake)

    def _seed(state: PersistentState) -> None:
        for text in ("first", "second", "third"):
            state.notification_queue.append(QueuedNotification(chat_id="1", text=text))

    notifier.store.update(_seed)

    summary = await notifier.process_queue()

    assert summary == {"delivered": 1, "dropped": 0, "requeued": 2}
    assert [m.text for m in _queue(notifier)] == ["first", "third"]


@pytest.mark.asyncio
async def test_messages_queued_during_processing_are_kept(tmp_path: Path) -> None:
    fake = _FakeTelegram()
    fake.down = True
    notifier = _notifier(tmp_path, fake)

    notifier.store.update(
        lambda s: s.notification_queue.append(QueuedNotification(chat_id="1", text="old"))
    )

    arrived: list[str] = []

    def _concurrent_failure(payload: dict) -> None:
        # Another component fails to send while the queue is being retried.
        if not arrived:
            arrived.append("new")
            notifier.store.update(
                lambda s: s.notification_queue.append(QueuedNotification(chat_id="2", text="new"))
            )

    fake.on_request = _concurrent_failure

    summary = await notifier.process_queue()

    assert summary["requeued"] == 1
    assert [m.text for m in _queue(notifier)] == ["old", "new"]


@pytest.mark.asyncio
async def test_transport_error_counts_as_failure(tmp_path: Path) -> None:
    def _boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network unreachable", request=request)

    store = PersistentStateStore.load(tmp_path / "state.yaml")
    client = httpx.AsyncClient(transport=httpx.MockTransport(_boom))
    notifier = TelegramNotifier(TelegramConfig(bot_token="TOKEN"), store, client=client)

    await notifier.send_message(["1"], "hello")

    assert [m.text for m in store.get().notification_queue] == ["hello"]


def _long_text() -> str:
    # Two chunks: the newline sits past 60% of the limit, so it is the break point.
    head = "A" * (TELEGRAM_MAX_MESSAGE_LEN - 100)
    return head + "\n" + "B" * 3000


@pytest.mark.asyncio
async def test_long_message_is_sent_in_chunks(tmp_path: Path) -> None:
    fake = _FakeTelegram()
    notifier = _notifier(tmp_path, fake)

    await notifier.send_message(["1"], _long_text())

    assert [p["text"][0] for p in fake.sent] == ["A", "B"]
    assert all(len(p["text"]) <= TELEGRAM_MAX_MESSAGE_LEN for p in fake.sent)
    assert "".join(p["text"] for p in fake.sent) == _long_text().replace("\n", "")
    assert _queue(notifier) == []


@pytest.mark.asyncio
async def test_partially_delivered_message_queues_only_the_rest(tmp_path: Path) -> None:
    fake = _FakeTelegram()
    fake.fail_texts = {"BBB"}
    notifier = _notifier(tmp_path, fake)

    await notifier.send_message(["1"], _long_text())

    assert [p["text"][0] for p in fake.sent] == ["A"]
    assert [m.text for m in _queue(notifier)] == ["B" * 3000]

    fake.fail_texts = set()
    summary = await notifier.process_queue()

    assert summary == {"delivered": 1, "dropped": 0, "requeued": 0}
    assert [p["text"][0] for p in fake.sent] == ["A", "B"]
    assert fake.sent[1]["text"].startswith("B" * 3000 + FOOTER_PREFIX)


@pytest.mark.asyncio
async def test_partially_retried_message_keeps_its_timestamp(tmp_path: Path) -> None:
    fake = _FakeTelegram()
    fake.fail_texts = {"BBB"}
    notifier = _notifier(tmp_path, fake)
    first_enqueued = utcnow() - timedelta(minutes=30)

    notifier.store.update(
        lambda s: s.notification_queue.append(
            QueuedNotification(chat_id="1", text=_long_text(), timestamp=first_enqueued)
        )
    )

    summary = await notifier.process_queue()

    assert summary["requeued"] == 1
    queue = _queue(notifier)
    assert [m.text for m in queue] == ["B" * 3000]
    assert queue[0].timestamp == first_enqueued


def _fail_writes(monkeypatch: pytest.MonkeyPatch) -> None:
    def _disk_full(path: Path, content: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr("ala_archa.state.persistent_state._write_state_atomic", _disk_full)


@pytest.mark.asyncio
async def test_unpersisted_drain_does_not_lose_messages(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeTelegram()
    fake.down = True
    notifier = _notifier(tmp_path, fake)

    def _seed(state: PersistentState) -> None:
        for text in ("a", "b"):
            state.notification_queue.append(QueuedNotification(chat_id="1", text=text))

    notifier.store.update(_seed)
    _fail_writes(monkeypatch)

    summary = await notifier.process_queue()

    assert summary == {"delivered": 0, "dropped": 0, "requeued": 2}
    assert [m.text for m in _queue(notifier)] == ["a", "b"]


@pytest.mark.asyncio
async def test_enqueue_write_failure_is_logged_not_raised(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeTelegram()
    fake.down = True
    notifier = _notifier(tmp_path, fake)
    _fail_writes(monkeypatch)

    with capture_logs() as logs:
        await notifier.send_message(["1"], "hello")

    assert any(e["event"] == "Failed to persist queued notification" for e in logs)
    assert [m.text for m in _queue(notifier)] == ["hello"]

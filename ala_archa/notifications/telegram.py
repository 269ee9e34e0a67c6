"""Telegram alerts with a durable retry queue."""

from __future__ import annotations

from typing import Any, Iterable, Iterator, Optional

import httpx
import structlog

from ..config import TelegramConfig
from ..errors import IOFailure
from ..state.persistent_state import PersistentState, PersistentStateStore, QueuedNotification, utcnow


logger = structlog.get_logger(__name__)

# Below the Bot API's 4096 limit, leaving room for the queued-message footer.
TELEGRAM_MAX_MESSAGE_LEN = 3900
TELEGRAM_REQUEST_TIMEOUT = 15.0


def iter_message_chunks(text: str, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> Iterator[tuple[str, str]]:
    """Yield ``(chunk, remainder)`` pairs covering ``text``.

    ``remainder`` is the text still to be sent after ``chunk``; it is empty
    for the last chunk. A chunk ends at the last newline that fits, unless
    that newline would leave the chunk shorter than 60% of ``max_len``.
    """
    limit = max(1, int(max_len))
    remainder = (text or "").strip()
    if not remainder:
        yield "", ""
        return

    while remainder:
        if len(remainder) <= limit:
            yield remainder, ""
            return
        cut = remainder.rfind("\n", 0, limit + 1)
        if cut < limit * 0.6:
            cut = limit
        chunk = remainder[:cut].rstrip()
        remainder = remainder[cut:].lstrip()
        yield chunk, remainder


def queued_footer(message: QueuedNotification) -> str:
    sent_at = message.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
    return f"\n\nЭто сообщение было отправлено в {sent_at}."


def _unique(chat_ids: Iterable[Any]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for chat_id in chat_ids:
        s = str(chat_id).strip()
        if s and s not in seen:
            seen.add(s)
            out.append(s)
    return out


class TelegramNotifier:
    """Best-effort delivery of short alerts to Telegram chats.

    Failed sends are appended to ``PersistentState.notification_queue`` and
    retried by ``process_queue``, which the scheduler runs on its own cadence.
    """

    def __init__(
        self,
        config: TelegramConfig,
        store: PersistentStateStore,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.store = store
        self._client = client

    def _redact(self, text: str) -> str:
        if self.config.bot_token:
            return text.replace(self.config.bot_token, "<redacted>")
        return text

    async def _post(self, client: httpx.AsyncClient, chat_id: str, text: str) -> tuple[bool, dict]:
        url = f"{self.config.api_base_url.rstrip('/')}/bot{self.config.bot_token}/sendMessage"
        try:
            resp = await client.post(url, json={"chat_id": chat_id, "text": text}, timeout=TELEGRAM_REQUEST_TIMEOUT)
        except httpx.HTTPError as e:
            return False, {"ok": False, "error": self._redact(f"{type(e).__name__}: {e}")}

        try:
            data = resp.json()
        except ValueError:
            data = {"ok": False, "error": self._redact(resp.text[:500])}
        if not isinstance(data, dict):
            data = {"ok": False, "error": "unexpected response"}
        ok = resp.is_success and bool(data.get("ok"))
        return ok, data

    async def try_send_message(self, chat_id: str, text: str) -> bool:
        """Send one message (split into chunks when long). Returns True on success."""
        return await self._deliver(chat_id, text) is None

    async def _deliver(self, chat_id: str, text: str, footer: str = "") -> Optional[str]:
        """Send ``text`` chunk by chunk, ``footer`` appended to the last one.

        Returns None when every chunk went through, otherwise the part of
        ``text`` not delivered yet (without the footer).
        """
        logger.info("Sending telegram message", chat_id=chat_id, text=text)
        if self._client is not None:
            return await self._send_chunks(self._client, chat_id, text, footer)
        async with httpx.AsyncClient() as client:
            return await self._send_chunks(client, chat_id, text, footer)

    async def _send_chunks(self, client: httpx.AsyncClient, chat_id: str, text: str, footer: str) -> Optional[str]:
        pending = text
        for chunk, remainder in iter_message_chunks(text):
            if not remainder:
                chunk += footer
            ok, data = await self._post(client, chat_id, chunk)
            if not ok:
                logger.error(
                    "Failed to send message to telegram",
                    chat_id=chat_id,
                    error=data.get("error") or data.get("description"),
                )
                return pending
            pending = remainder
        return None

    def _enqueue(self, chat_id: str, text: str) -> None:
        message = QueuedNotification(chat_id=chat_id, text=text, timestamp=utcnow())

        def _append(state: PersistentState) -> None:
            state.notification_queue.append(message)

        try:
            self.store.update(_append)
        except IOFailure as e:
            logger.error("Failed to persist queued notification", chat_id=chat_id, error=str(e))
        else:
            logger.info("Queued notification for retry", chat_id=chat_id)

    async def send_message(self, chat_ids: Iterable[Any], text: str) -> None:
        """Deliver ``text`` to every chat once; queue the failures. Never raises.

        Only the undelivered part of a long message is queued, so chunks that
        already went through are not sent twice.
        """
        for chat_id in _unique(chat_ids):
            undelivered = await self._deliver(chat_id, text)
            if undelivered is not None:
                self._enqueue(chat_id, undelivered)

    async def process_queue(self) -> dict[str, int]:
        """Retry queued notifications, oldest first.

        The queue is drained in one ``update``. Messages that still fail are
        put back in front of whatever was enqueued meanwhile, so concurrent
        ``send_message`` failures are kept and the order stays oldest first.
        """
        logger.info("Processing notification queue")

        def _drain(state: PersistentState) -> list[QueuedNotification]:
            drained = list(state.notification_queue)
            state.notification_queue.clear()
            return drained

        try:
            queue = self.store.update(_drain)
        except IOFailure as e:
            logger.error("Failed to persist drained notification queue", error=str(e))
            queue = e.result or []

        now = utcnow()
        timeout = self.config.message_timeout
        still_failing: list[QueuedNotification] = []
        delivered = 0
        dropped = 0

        for message in queue:
            if now - message.timestamp > timeout:
                logger.info("Dropping message due to timeout", chat_id=message.chat_id, text=message.text)
                dropped += 1
                continue

            undelivered = await self._deliver(message.chat_id, message.text, queued_footer(message))
            if undelivered is None:
                delivered += 1
            else:
                # Keeps the first enqueue time, so expiry and the footer stay unchanged.
                still_failing.append(message.model_copy(update={"text": undelivered}))

        if still_failing:
            def _requeue(state: PersistentState) -> None:
                state.notification_queue[:0] = still_failing

            try:
                self.store.update(_requeue)
            except IOFailure as e:
                logger.error("Failed to persist notification queue", error=str(e))

        summary = {"delivered": delivered, "dropped": dropped, "requeued": len(still_failing)}
        logger.info("Notification queue processed", **summary)
        return summary

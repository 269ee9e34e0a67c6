"""Prepaid mobile uplink: balance tracking and tariff switching."""

from __future__ import annotations

import asyncio
import re
from datetime import datetime
from typing import Callable, Optional

import structlog

from .config import MobileProviderConfig
from .errors import BalanceUnavailable, ConfigurationMissing, DecodeFailure, IOFailure, ParseFailure
from .notifications.telegram import TelegramNotifier
from .shell import run_shell
from .state.persistent_state import PersistentState, PersistentStateStore, utcnow


logger = structlog.get_logger(__name__)

_QUOTED_PAYLOAD_RE = re.compile(r'"([^"]*)"')


def decode_ucs2_hex(payload: str) -> str:
    return bytes.fromhex(payload).decode("utf-16-be")


def decode_utf8_hex(payload: str) -> str:
    return bytes.fromhex(payload).decode("utf-8")


# Firmware/carrier combinations disagree on the reply encoding, and a decode
# that succeeds can still be garbage, so every decoder is tried.
BALANCE_DECODERS: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("ucs2-hex", decode_ucs2_hex),
    ("utf8-hex", decode_utf8_hex),
)

# (reply prefix, index of the whitespace-delimited token holding the amount)
BALANCE_PREFIXES: tuple[tuple[str, int], ...] = (
    ("Баланс ", 1),
    ("You have ", 2),
)


def extract_ussd_payload(output: str, marker: str) -> str:
    """Return the quoted payload of the first line carrying ``marker``."""
    for line in (output or "").splitlines():
        if marker not in line:
            continue
        m = _QUOTED_PAYLOAD_RE.search(line[line.index(marker):])
        if m is None:
            raise ParseFailure(f"No quoted payload in modem reply line: {line.strip()!r}")
        return m.group(1).strip()
    raise ParseFailure(f"Modem reply has no {marker!r} line")


def decode_candidates(payload: str) -> list[str]:
    candidates: list[str] = []
    for name, decoder in BALANCE_DECODERS:
        try:
            candidates.append(decoder(payload))
        except ValueError as e:
            logger.debug("Balance payload decoder failed", decoder=name, error=str(e))
    return candidates


def parse_balance_text(text: str) -> Optional[float]:
    s = (text or "").lstrip()
    for prefix, token_index in BALANCE_PREFIXES:
        if not s.startswith(prefix):
            continue
        tokens = s.split()
        if len(tokens) <= token_index:
            return None
        try:
            return float(tokens[token_index])
        except ValueError:
            return None
    return None


def parse_balance_output(output: str, marker: str = "+CUSD:") -> float:
    """Extract the balance from raw modem output.

    Raises:
        ParseFailure: no marker line or no quoted payload
        DecodeFailure: no decoded candidate yields a number
    """
    payload = extract_ussd_payload(output, marker)
    candidates = decode_candidates(payload)
    for text in candidates:
        balance = parse_balance_text(text)
        if balance is not None:
            return balance
    raise DecodeFailure(f"Unable to parse balance from {len(candidates)} decoded candidate(s) of {payload[:64]!r}")


class MobileProvider:
    """Balance queries, low balance alerts and tariff updates for the modem uplink."""

    def __init__(
        self,
        config: MobileProviderConfig,
        store: PersistentStateStore,
        notifier: Optional[TelegramNotifier] = None,
        command_timeout: Optional[float] = None,
    ):
        self.config = config
        self.store = store
        self.notifier = notifier
        self.command_timeout = command_timeout

    async def _query_balance_once(self) -> float:
        result = await run_shell(self.config.get_balance_command, timeout=self.command_timeout)
        if not result.ok:
            raise IOFailure(f"Balance command exited with {result.returncode}: {result.stderr.strip()[:200]}")
        return parse_balance_output(result.stdout, self.config.ussd_response_marker)

    async def restart_modem(self) -> None:
        logger.info("Restarting modem")
        try:
            result = await run_shell(self.config.restart_modem_command, timeout=self.command_timeout)
        except IOFailure as e:
            logger.error("Failed to restart modem", error=str(e))
            return
        if not result.ok:
            logger.error("Modem restart command failed", returncode=result.returncode, stderr=result.stderr.strip()[:200])

    async def get_balance(self) -> float:
        """Query the balance with retries, then always restart the modem.

        Raises:
            BalanceUnavailable: every attempt failed
        """
        attempts = self.config.balance_retry_count
        delay = self.config.balance_retry_delay.total_seconds()
        last_error: Optional[Exception] = None

        try:
            for attempt in range(1, attempts + 1):
                try:
                    balance = await self._query_balance_once()
                except (IOFailure, ParseFailure, DecodeFailure) as e:
                    last_error = e
                    logger.warning("Balance query attempt failed", attempt=attempt, attempts=attempts, error=str(e))
                    if attempt < attempts:
                        await asyncio.sleep(delay)
                    continue
                logger.info("Got balance", balance=balance, attempt=attempt)
                return balance
        finally:
            # The modem degrades after repeated USSD queries.
            await self.restart_modem()

        raise BalanceUnavailable(f"Balance unavailable after {attempts} attempt(s)") from last_error

    async def alert_balance(self, balance: float) -> None:
        message = f"Низкий остаток: {balance} сом. Необходимо пополнить номер {self.config.phone_number}"
        await self._notify(message)

    async def get_and_alert_balance(self) -> float:
        balance = await self.get_balance()
        if balance < self.config.low_balance_threshold:
            logger.warning("Balance below threshold", balance=balance, threshold=self.config.low_balance_threshold)
            await self.alert_balance(balance)
        return balance

    async def update_tariff(self, now: Optional[datetime] = None) -> bool:
        """Switch the tariff when the last benchmark is slow and the cooldown passed.

        Returns True when the tariff command ran successfully.
        """
        now = now or utcnow()
        snapshot = self.store.get()

        speedtest = snapshot.speedtest
        if speedtest is None:
            logger.info("No speedtest data available, skipping tariff update")
            return False

        if speedtest.download > self.config.low_download_speed_threshold:
            logger.info("Download speed is good, skipping tariff update", download=speedtest.download)
            return False

        last_update = snapshot.last_tariff_update
        if last_update is not None and now - last_update < self.config.min_update_tariff_interval:
            logger.info("Last tariff update was too recent, skipping", last_tariff_update=last_update.isoformat())
            return False

        try:
            result = await run_shell(self.config.update_tariff_command, timeout=self.command_timeout)
        except IOFailure as e:
            logger.error("Failed to update tariff", error=str(e))
            return False
        if not result.ok:
            logger.error("Tariff update command failed", returncode=result.returncode, stderr=result.stderr.strip()[:200])
            return False

        def _mark(state: PersistentState) -> None:
            state.last_tariff_update = now

        try:
            self.store.update(_mark)
        except IOFailure as e:
            logger.error("Failed to update persistent state", error=str(e))

        logger.info("Tariff updated", download=speedtest.download)
        await self._notify(
            f"Скорость загрузки {speedtest.download} ниже порога "
            f"{self.config.low_download_speed_threshold}, тариф номера {self.config.phone_number} обновлён"
        )
        return True

    async def _notify(self, message: str) -> None:
        if self.notifier is None:
            missing = ConfigurationMissing("telegram section is not configured")
            logger.error("Alert not sent", error_type=type(missing).__name__, error=str(missing), text=message)
            return
        await self.notifier.send_message(self.config.telegram_chat_ids, message)

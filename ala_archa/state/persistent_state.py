"""Durable daemon state mirrored to a single YAML file."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, TypeVar

import structlog
import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from ..errors import IOFailure


logger = structlog.get_logger(__name__)

R = TypeVar("R")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive timestamps in hand-edited files are taken as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SpeedTestResult(BaseModel):
    """Last uplink benchmark as reported by speedtest-cli."""
    download: float
    upload: float
    ping: float


class QueuedNotification(BaseModel):
    """A notification whose delivery failed and waits for a retry."""
    chat_id: str
    text: str
    timestamp: datetime = Field(default_factory=utcnow, description="When the message was first enqueued")

    normalize_timestamp = field_validator("timestamp")(as_utc)


class PersistentState(BaseModel):
    """The single durable record shared by jobs and HTTP handlers."""
    is_wide_network_available: Optional[bool] = None
    speedtest: Optional[SpeedTestResult] = None
    last_speedtest_check: Optional[datetime] = None
    last_tariff_update: Optional[datetime] = None
    balance: Optional[float] = None
    # Older releases wrote the queue under "telegram_queue".
    notification_queue: list[QueuedNotification] = Field(
        default_factory=list,
        validation_alias=AliasChoices("notification_queue", "telegram_queue"),
    )

    normalize_timestamps = field_validator("last_speedtest_check", "last_tariff_update")(as_utc)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(mode="json"), allow_unicode=True, sort_keys=False)

    @classmethod
    def from_yaml(cls, content: str) -> "PersistentState":
        data = yaml.safe_load(content)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("Persistent state YAML must be a mapping")
        return cls.model_validate(data)


def _file_mtime_ns(path: Path) -> Optional[int]:
    try:
        return path.stat().st_mtime_ns
    except (FileNotFoundError, NotADirectoryError):
        return None


def load_persistent_state(path: Path) -> tuple[PersistentState, Optional[int]]:
    """
    Read the state file. Returns (state, mtime_ns_seen_before_reading).
    A missing or malformed file degrades to the default record.
    """
    mtime_ns = _file_mtime_ns(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("Unable to read persistent state", path=str(path), error=str(e))
        return PersistentState(), mtime_ns

    try:
        return PersistentState.from_yaml(content), mtime_ns
    except (yaml.YAMLError, ValidationError, ValueError) as e:
        logger.error("Unable to parse persistent state", path=str(path), error=str(e))
        return PersistentState(), mtime_ns


def _write_state_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(content, encoding="utf-8")
    tmp.replace(path)


class PersistentStateStore:
    """In-memory cache of PersistentState with a file on disk as backing.

    ``update`` runs mutate, serialize and write as one exclusive section.
    ``get`` and ``update`` both reload the file first when it was modified
    behind the daemon's back (last writer wins). Nothing inside the locked
    section awaits, so callers on the event loop and in worker threads share
    the same lock safely.
    """

    def __init__(self, path: str | Path, state: Optional[PersistentState] = None, loaded_mtime_ns: Optional[int] = None):
        self.path = Path(path)
        self._state = state if state is not None else PersistentState()
        self._loaded_mtime_ns = loaded_mtime_ns
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: str | Path) -> "PersistentStateStore":
        path = Path(path)
        state, mtime_ns = load_persistent_state(path)
        logger.info("Loaded persistent state", path=str(path), queued_notifications=len(state.notification_queue))
        return cls(path, state, mtime_ns)

    def get(self) -> PersistentState:
        """Return a deep copy of the current snapshot."""
        with self._lock:
            self._reload_if_stale()
            return self._state.model_copy(deep=True)

    def update(self, mutator: Callable[[PersistentState], R]) -> R:
        """Apply ``mutator`` and persist the full record.

        Raises:
            IOFailure: the file could not be written. The mutation is kept in
                memory and the mutator's return value is in ``result``.
        """
        with self._lock:
            self._reload_if_stale()

            working = self._state.model_copy(deep=True)
            result = mutator(working)
            self._state = working

            try:
                _write_state_atomic(self.path, working.to_yaml())
            except OSError as e:
                raise IOFailure(f"Unable to write persistent state {str(self.path)!r}: {e}", result=result) from e

            self._loaded_mtime_ns = _file_mtime_ns(self.path)
            return result

    def _reload_if_stale(self) -> None:
        try:
            mtime_ns = _file_mtime_ns(self.path)
        except OSError as e:
            logger.warning("Unable to stat persistent state", path=str(self.path), error=str(e))
            return

        if mtime_ns is None:
            if self._loaded_mtime_ns is not None:
                logger.warning("Persistent state file disappeared, using defaults", path=str(self.path))
                self._state = PersistentState()
                self._loaded_mtime_ns = None
            return

        if self._loaded_mtime_ns is not None and mtime_ns <= self._loaded_mtime_ns:
            return

        logger.info("Persistent state changed on disk, reloading", path=str(self.path))
        self._state, self._loaded_mtime_ns = load_persistent_state(self.path)

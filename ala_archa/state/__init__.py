"""Durable state shared by scheduled jobs and HTTP handlers."""

from .persistent_state import (
    PersistentState,
    PersistentStateStore,
    QueuedNotification,
    SpeedTestResult,
)

__all__ = ["PersistentState", "PersistentStateStore", "QueuedNotification", "SpeedTestResult"]

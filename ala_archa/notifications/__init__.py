"""Notification delivery for operational alerts."""

from .telegram import TelegramNotifier

__all__ = ["TelegramNotifier"]

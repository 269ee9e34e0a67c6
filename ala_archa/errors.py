"""Error taxonomy shared by the daemon's components."""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for every error raised by the daemon."""


class IOFailure(GatewayError):
    """Disk or external process I/O did not complete.

    When raised by ``PersistentStateStore.update`` the mutation has already
    been applied in memory; ``result`` holds the mutator's return value.
    """

    def __init__(self, message: str, *, result: Any = None) -> None:
        super().__init__(message)
        self.result = result


class ParseFailure(GatewayError):
    """External command output did not have the expected shape."""


class DecodeFailure(GatewayError):
    """No candidate text decoding produced a parseable balance."""


class BalanceUnavailable(GatewayError):
    """Every balance query attempt failed."""


class ProbeTimeout(GatewayError):
    """A probe sequence exceeded its overall deadline."""


class ConfigurationMissing(GatewayError):
    """An optional subsystem (notifications, mobile provider) is not configured."""


class LeaseNotFound(GatewayError):
    """No DHCP lease matches the requested address."""

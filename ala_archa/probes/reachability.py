"""Wide-area network reachability probe."""

from __future__ import annotations

import asyncio

import structlog

from ..errors import IOFailure, ProbeTimeout
from ..shell import run_command


logger = structlog.get_logger(__name__)

PROBE_ATTEMPTS = 3
PROBE_DELAY_SECONDS = 1.0
PROBE_TIMEOUT_SECONDS = 10.0
PING_WAIT_SECONDS = 2


async def ping_once(address: str, *, wait_seconds: int = PING_WAIT_SECONDS) -> bool:
    result = await run_command("ping", "-n", "-q", "-c", "1", "-W", str(int(wait_seconds)), address)
    return result.ok


async def probe_sequence(
    address: str,
    *,
    attempts: int = PROBE_ATTEMPTS,
    delay: float = PROBE_DELAY_SECONDS,
    timeout: float = PROBE_TIMEOUT_SECONDS,
) -> bool:
    """Ping ``address`` up to ``attempts`` times; True as soon as one answers.

    Raises:
        ProbeTimeout: the whole sequence did not finish within ``timeout``
    """

    async def _attempts() -> bool:
        for attempt in range(1, attempts + 1):
            try:
                if await ping_once(address):
                    return True
            except IOFailure as e:
                logger.warning("Ping attempt failed", address=address, attempt=attempt, error=str(e))
            if attempt < attempts:
                await asyncio.sleep(delay)
        return False

    try:
        return await asyncio.wait_for(_attempts(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ProbeTimeout(f"Probing {address} took longer than {timeout}s") from e


async def probe_wide_network(address: str, **kwargs) -> bool:
    """Reachability verdict for ``address``; a timed out sequence counts as down."""
    try:
        available = await probe_sequence(address, **kwargs)
    except ProbeTimeout as e:
        logger.warning("Reachability probe timed out", address=address, error=str(e))
        available = False
    logger.info("Reachability probe finished", address=address, is_wide_network_available=available)
    return available

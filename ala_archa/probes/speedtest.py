"""Uplink benchmark through speedtest-cli."""

from __future__ import annotations

import structlog
from pydantic import ValidationError

from ..config import SpeedTestConfig
from ..errors import IOFailure, ParseFailure
from ..shell import run_command
from ..state.persistent_state import SpeedTestResult


logger = structlog.get_logger(__name__)


def build_speedtest_argv(config: SpeedTestConfig) -> list[str]:
    argv = [config.speedtest_cli_path, "--json"]
    if config.server:
        argv += ["--server", config.server]
    return argv


def parse_speedtest_output(stdout: str) -> SpeedTestResult:
    try:
        return SpeedTestResult.model_validate_json((stdout or "").strip())
    except ValidationError as e:
        raise ParseFailure(f"Unexpected speedtest output: {e}") from e


async def run_speedtest(config: SpeedTestConfig, timeout: float | None = None) -> SpeedTestResult:
    result = await run_command(*build_speedtest_argv(config), timeout=timeout)
    if not result.ok:
        raise IOFailure(f"speedtest exited with {result.returncode}: {result.stderr.strip()[:200]}")

    speedtest = parse_speedtest_output(result.stdout)
    logger.info("Speed test results", download=speedtest.download, upload=speedtest.upload, ping=speedtest.ping)
    return speedtest

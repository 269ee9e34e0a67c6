from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from .errors import IOFailure


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(*argv: str, timeout: float | None = None) -> CommandResult:
    """
    Run an external program and capture its output.

    Raises IOFailure when the program cannot be started or exceeds ``timeout``.
    A non-zero exit status is not an error here; callers inspect ``ok``.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise IOFailure(f"Unable to start {argv[0]!r}: {e}") from e

    try:
        out_b, err_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        raise IOFailure(f"{argv[0]!r} timed out after {timeout}s") from e
    except BaseException:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        raise

    result = CommandResult(
        returncode=int(proc.returncode or 0),
        stdout=(out_b or b"").decode("utf-8", errors="replace"),
        stderr=(err_b or b"").decode("utf-8", errors="replace"),
    )
    logger.debug("External command finished", program=argv[0], returncode=result.returncode)
    return result


async def run_shell(command: str, timeout: float | None = None) -> CommandResult:
    """Run a configured shell snippet through ``bash -c``."""
    return await run_command("bash", "-c", command, timeout=timeout)

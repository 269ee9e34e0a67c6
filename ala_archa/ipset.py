"""ACL and shaper membership through the ipset command."""

from __future__ import annotations

import subprocess
from collections import deque
from dataclasses import dataclass
from datetime import timedelta

import structlog

from .errors import IOFailure, ParseFailure


logger = structlog.get_logger(__name__)

IPSET_COMMAND_TIMEOUT = 10.0


@dataclass(frozen=True)
class IPSetEntry:
    ip: str
    timeout: timedelta | None = None
    bytes: int | None = None

    def to_dict(self) -> dict:
        return {
            "ip": self.ip,
            "timeout_secs": int(self.timeout.total_seconds()) if self.timeout is not None else None,
            "bytes": self.bytes,
        }


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_ipset_save(output: str) -> list[IPSetEntry]:
    """
    Parse ``ipset save <set>`` output.

    ``create`` headers and blank lines are skipped; ``add <set> <ip> [k v]...``
    becomes an entry. Any other line raises ParseFailure.
    """
    entries: list[IPSetEntry] = []
    for line in (output or "").split("\n"):
        elts = line.split(" ")
        if elts == [""]:
            continue
        if elts[0] == "create":
            continue
        if elts[0] != "add" or len(elts) < 3:
            raise ParseFailure(f"Unexpected line in ipset output: {line!r}")

        ip = elts[2]
        tail = deque(elts[3:])
        timeout = None
        nbytes = None
        while len(tail) > 1:
            name = tail.popleft()
            if name == "timeout":
                secs = _parse_int(tail.popleft())
                timeout = timedelta(seconds=secs) if secs is not None else None
            elif name == "bytes":
                nbytes = _parse_int(tail.popleft())

        entries.append(IPSetEntry(ip=ip, timeout=timeout, bytes=nbytes))
    return entries


def find_entry(entries: list[IPSetEntry], ip: str) -> IPSetEntry | None:
    for entry in entries:
        if entry.ip == ip:
            return entry
    return None


class IPSet:
    """One named ipset."""

    def __init__(self, name: str):
        self.name = name

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["ipset", *args],
                capture_output=True,
                text=True,
                timeout=IPSET_COMMAND_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise IOFailure(f"ipset {' '.join(args)} failed: {e}") from e

    def entries(self) -> list[IPSetEntry]:
        r = self._run("save", self.name)
        if r.returncode != 0:
            raise IOFailure(f"ipset save {self.name} exited with {r.returncode}: {r.stderr.strip()}")
        return parse_ipset_save(r.stdout)

    def add(self, ip: str, timeout: timedelta | None = None) -> None:
        """Add ``ip``; without ``timeout`` the set's default timeout applies."""
        args = ["add", self.name, ip]
        if timeout is not None:
            args += ["timeout", str(int(timeout.total_seconds()))]
        r = self._run(*args)
        if r.returncode != 0:
            raise IOFailure(f"ipset add {self.name} {ip} exited with {r.returncode}: {r.stderr.strip()}")
        logger.info("Added entry to ipset", ipset=self.name, ip=ip)

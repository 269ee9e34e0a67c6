"""Read-only access to an ISC dhcpd leases file."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import IOFailure, LeaseNotFound, ParseFailure


@dataclass
class DhcpLease:
    ip: str
    mac: str | None = None
    hostname: str | None = None
    starts: datetime | None = None
    ends: datetime | None = None
    binding_state: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "mac": self.mac,
            "hostname": self.hostname,
            "starts": self.starts.isoformat() if self.starts else None,
            "ends": self.ends.isoformat() if self.ends else None,
            "binding_state": self.binding_state,
        }


def _parse_lease_time(value: str) -> datetime | None:
    # "4 2024/01/04 10:00:00" (weekday, date, time in UTC) or "never"
    parts = value.split()
    if len(parts) != 3:
        return None
    try:
        return datetime.strptime(f"{parts[1]} {parts[2]}", "%Y/%m/%d %H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _unquote(value: str) -> str:
    s = value.strip()
    if len(s) >= 2 and s[0] == s[-1] == '"':
        return s[1:-1]
    return s


def _apply_statement(lease: DhcpLease, statement: str) -> None:
    words = statement.split(None, 1)
    if not words:
        return
    key = words[0]
    rest = words[1] if len(words) > 1 else ""

    if key == "starts":
        lease.starts = _parse_lease_time(rest)
    elif key == "ends":
        lease.ends = _parse_lease_time(rest)
    elif key == "hardware":
        hw = rest.split()
        if len(hw) == 2:
            lease.mac = hw[1].lower()
    elif key == "client-hostname":
        lease.hostname = _unquote(rest)
    elif key == "binding" and rest.startswith("state "):
        lease.binding_state = rest[len("state "):].strip()


def parse_leases(text: str) -> list[DhcpLease]:
    """
    Parse dhcpd.leases content. dhcpd appends updated leases to the end of
    the file, so a later block for the same IP replaces the earlier one.
    """
    by_ip: dict[str, DhcpLease] = {}
    current: DhcpLease | None = None

    for lineno, raw in enumerate((text or "").splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        if current is None:
            if line.startswith("lease "):
                head = line[len("lease "):].split()
                if len(head) < 2 or head[1] != "{":
                    raise ParseFailure(f"Malformed lease header at line {lineno}: {raw!r}")
                current = DhcpLease(ip=head[0])
            # Other top-level statements (server-duid, authoring-byte-order, ...) are ignored.
            continue

        if line == "}":
            by_ip[current.ip] = current
            current = None
            continue

        _apply_statement(current, line.rstrip(";").strip())

    if current is not None:
        raise ParseFailure(f"Unterminated lease block for {current.ip}")

    return list(by_ip.values())


def read_leases(path: str | Path) -> list[DhcpLease]:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise IOFailure(f"Failed to read {str(path)!r}: {e}") from e
    return parse_leases(text)


def lease_for_ip(path: str | Path, ip: str) -> DhcpLease:
    for lease in read_leases(path):
        if lease.ip == ip:
            return lease
    raise LeaseNotFound(f"DHCP lease not found for {ip}")

"""External probes whose results feed the persistent state."""

from .reachability import probe_wide_network
from .speedtest import run_speedtest

__all__ = ["probe_wide_network", "run_speedtest"]

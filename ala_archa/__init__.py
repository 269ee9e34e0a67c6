"""Home-gateway control daemon: access gating, uplink monitoring and alerts."""

__version__ = "0.2.0"

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Gauge, generate_latest

from ala_archa import __version__
from ala_archa.config import Config
from ala_archa.dhcp import lease_for_ip, read_leases
from ala_archa.errors import GatewayError, LeaseNotFound
from ala_archa.ipset import IPSet, IPSetEntry, find_entry
from ala_archa.scheduler.task_coordinator import TaskCoordinator
from ala_archa.state.persistent_state import PersistentState, PersistentStateStore


logger = structlog.get_logger(__name__)


def _client_ip(request: Request) -> str | None:
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if request.client is not None:
        return request.client.host
    return None


def _internal_error() -> HTTPException:
    return HTTPException(status_code=500, detail="internal error")


def _secs(entry: IPSetEntry | None) -> int:
    if entry is None or entry.timeout is None:
        return 0
    return int(entry.timeout.total_seconds())


def _connection_status(
    config: Config,
    acl_info: IPSetEntry | None,
    shaper_info: IPSetEntry | None,
    blacklisted: bool,
) -> Any:
    # A bare string or a one-key object, as the captive portal expects.
    if blacklisted:
        return "ClientBlacklisted"
    if acl_info is None:
        return "Inactive"
    return {
        "Connected": {
            "bytes_sent": (shaper_info.bytes if shaper_info and shaper_info.bytes is not None else 0),
            "bytes_unlimited_limit": config.bytes_unlimited_limit,
            "shaper_reset_secs": _secs(shaper_info),
            "connection_forget_secs": _secs(acl_info),
        }
    }


def build_metrics(snapshot: PersistentState, *, acl_entries: int | None, shaper_entries: int | None) -> bytes:
    registry = CollectorRegistry()

    def _gauge(name: str, doc: str, value: float | None) -> None:
        if value is None:
            return
        Gauge(name, doc, registry=registry).set(float(value))

    available = snapshot.is_wide_network_available
    _gauge("ala_archa_wide_network_available", "Last WAN reachability result", None if available is None else int(available))
    if snapshot.speedtest is not None:
        _gauge("ala_archa_speedtest_download", "Last measured download speed", snapshot.speedtest.download)
        _gauge("ala_archa_speedtest_upload", "Last measured upload speed", snapshot.speedtest.upload)
        _gauge("ala_archa_speedtest_ping", "Last measured ping", snapshot.speedtest.ping)
    if snapshot.last_speedtest_check is not None:
        _gauge("ala_archa_speedtest_timestamp_seconds", "When the last speed test finished", snapshot.last_speedtest_check.timestamp())
    _gauge("ala_archa_balance", "Last known prepaid balance", snapshot.balance)
    _gauge("ala_archa_notification_queue_length", "Notifications waiting for a retry", len(snapshot.notification_queue))
    _gauge("ala_archa_acl_entries", "Clients in the ACL ipset", acl_entries)
    _gauge("ala_archa_shaper_entries", "Clients in the shaper ipset", shaper_entries)

    return generate_latest(registry)


def create_app(
    config: Config,
    store: PersistentStateStore,
    coordinator: TaskCoordinator | None = None,
) -> FastAPI:
    app = FastAPI(title="Ala-Archa HTTP backend", version=__version__)
    app.state.config = config
    app.state.store = store
    app.state.coordinator = coordinator
    app.state.acl = IPSet(config.ipset_acl_name)
    app.state.shaper = IPSet(config.ipset_shaper_name)

    @app.on_event("startup")
    async def _startup() -> None:
        if app.state.coordinator is not None:
            await app.state.coordinator.start()
        logger.info("HTTP backend started")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if app.state.coordinator is not None:
            await app.state.coordinator.stop()
        logger.info("HTTP backend stopped")

    async def _entries(ipset: IPSet) -> list[IPSetEntry]:
        try:
            return await asyncio.to_thread(ipset.entries)
        except GatewayError as e:
            logger.error("Unable to get ipset list", ipset=ipset.name, error=str(e))
            raise _internal_error() from e

    async def _is_blacklisted(ip: str) -> bool:
        cfg: Config = app.state.config
        if not cfg.blacklisted_macs:
            return False
        try:
            lease = await asyncio.to_thread(lease_for_ip, cfg.dhcp_leases_path, ip)
        except LeaseNotFound:
            return False
        except GatewayError as e:
            logger.warning("Unable to look up DHCP lease", ip=ip, error=str(e))
            return False
        return bool(lease.mac and lease.mac in cfg.blacklisted_macs)

    def _require_client_ip(request: Request) -> str:
        ip = _client_ip(request)
        if ip is None:
            logger.error("Unable to get client IP")
            raise _internal_error()
        logger.info("Request from client", ip=ip, path=request.url.path)
        return ip

    @app.get("/api/v1/client")
    async def client_get(request: Request) -> dict[str, Any]:
        ip = _require_client_ip(request)
        acl_entries = await _entries(app.state.acl)
        shaper_entries = await _entries(app.state.shaper)
        blacklisted = await _is_blacklisted(ip)
        snapshot = app.state.store.get()

        return {
            "internet_connection_status": _connection_status(
                app.state.config,
                find_entry(acl_entries, ip),
                find_entry(shaper_entries, ip),
                blacklisted,
            ),
            "internet_clients_connected": len(shaper_entries),
            "is_wide_network_available": snapshot.is_wide_network_available,
        }

    @app.post("/api/v1/client")
    async def client_register(request: Request) -> Response:
        ip = _require_client_ip(request)
        if await _is_blacklisted(ip):
            logger.warning("Refusing to register blacklisted client", ip=ip)
            raise HTTPException(status_code=403, detail="client blacklisted")

        try:
            await asyncio.to_thread(app.state.acl.add, ip)
        except GatewayError as e:
            logger.error("Unable to add client to ACL ipset", ip=ip, error=str(e))
            raise _internal_error() from e
        return Response(status_code=200)

    @app.get("/api/v1/dhcp_leases")
    async def dhcp_leases() -> list[dict[str, Any]]:
        try:
            leases = await asyncio.to_thread(read_leases, app.state.config.dhcp_leases_path)
        except GatewayError as e:
            logger.error("Unable to read DHCP leases", error=str(e))
            raise _internal_error() from e

        acl_entries = await _entries(app.state.acl)
        shaper_entries = await _entries(app.state.shaper)

        out = []
        for lease in leases:
            acl_info = find_entry(acl_entries, lease.ip)
            shaper_info = find_entry(shaper_entries, lease.ip)
            out.append({
                **lease.to_dict(),
                "acl": acl_info.to_dict() if acl_info else None,
                "shaper": shaper_info.to_dict() if shaper_info else None,
            })
        return out

    @app.get("/api/v1/status")
    async def status() -> dict[str, Any]:
        snapshot = app.state.store.get()
        coordinator = app.state.coordinator
        return {
            "state": snapshot.model_dump(mode="json", exclude={"notification_queue"}),
            "notification_queue_length": len(snapshot.notification_queue),
            "scheduler": coordinator.get_system_status() if coordinator is not None else None,
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        snapshot = app.state.store.get()
        counts: dict[str, int | None] = {}
        for key, ipset in (("acl", app.state.acl), ("shaper", app.state.shaper)):
            try:
                counts[key] = len(await asyncio.to_thread(ipset.entries))
            except GatewayError as e:
                logger.warning("Unable to count ipset entries", ipset=ipset.name, error=str(e))
                counts[key] = None

        body = build_metrics(snapshot, acl_entries=counts["acl"], shaper_entries=counts["shaper"])
        return Response(content=body, media_type=CONTENT_TYPE_LATEST)

    return app

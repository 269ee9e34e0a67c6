"""Command line entry point for the gateway daemon."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

import structlog
import uvicorn

from ala_archa.app import create_app
from ala_archa.config import CONFIG_DEFAULT_PATH, Config, dump_config, load_config
from ala_archa.log import configure_logging
from ala_archa.scheduler.task_coordinator import TaskCoordinator
from ala_archa.state.persistent_state import PersistentStateStore


logger = structlog.get_logger(__name__)


def _split_listen(listen: str) -> tuple[str, int]:
    host, sep, port = str(listen).rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"http_listen must be host:port, got {listen!r}")
    return host.strip("[]") or "0.0.0.0", int(port)


def _run_server(config: Config) -> int:
    store = PersistentStateStore.load(config.persistent_state_path)
    coordinator = TaskCoordinator.from_config(config, store)
    app = create_app(config, store, coordinator)

    host, port = _split_listen(config.http_listen)
    logger.info("Starting HTTP backend", host=host, port=port)
    uvicorn.run(app, host=host, port=port, log_config=None, access_log=False)
    return 0


async def _run_job(config: Config, job_id: str) -> int:
    store = PersistentStateStore.load(config.persistent_state_path)
    coordinator = TaskCoordinator.from_config(config, store)
    coordinator.setup_jobs()

    if job_id not in coordinator.scheduler.jobs:
        known = ", ".join(sorted(coordinator.scheduler.jobs)) or "none"
        print(f"Unknown or disabled job {job_id!r} (enabled: {known})", file=sys.stderr)
        return 2

    await coordinator.scheduler.run_job_once(job_id)
    last_run = coordinator.last_runs.get(job_id) or {}
    return 0 if last_run.get("ok") else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="ala-archa", description="Ala-Archa HTTP backend")
    parser.add_argument(
        "-c",
        "--config",
        default=os.getenv("ALA_ARCHA_CONFIG", CONFIG_DEFAULT_PATH),
        help="Path to configuration file",
    )
    parser.add_argument("--stderr", action="store_true", help="Log to stderr instead of syslog")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("dump-config", help="Dump parsed config file. Helps to find typos")
    sub.add_parser("run", help="Run HTTP server and scheduled jobs")
    run_job = sub.add_parser("run-job", help="Run one scheduled job now and exit")
    run_job.add_argument("job_id", help="Job id, e.g. balance_check")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2

    if args.command == "dump-config":
        print(dump_config(config))
        return 0

    use_syslog = not (args.stderr or os.getenv("LOG_LEVEL"))
    configure_logging(config.log_level, syslog=use_syslog)

    try:
        if args.command == "run":
            return _run_server(config)
        return asyncio.run(_run_job(config, args.job_id))
    except Exception:
        logger.exception("Failed with error")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

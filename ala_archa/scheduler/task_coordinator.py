"""Task coordination: the daemon's scheduled jobs and their shared state."""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from ..config import Config
from ..errors import GatewayError, IOFailure
from ..mobile_provider import MobileProvider
from ..notifications.telegram import TelegramNotifier
from ..probes.reachability import probe_wide_network
from ..probes.speedtest import run_speedtest
from ..state.persistent_state import PersistentState, PersistentStateStore, utcnow
from .job_scheduler import JobScheduler


logger = structlog.get_logger(__name__)

JOB_IDLE = "idle"
JOB_RUNNING = "running"

WIDE_NETWORK_PROBE_JOB = "wide_network_probe"
SPEEDTEST_JOB = "speedtest"
BALANCE_CHECK_JOB = "balance_check"
NOTIFICATION_QUEUE_JOB = "notification_queue_retry"


class TaskCoordinator:
    """Owns the scheduler and the jobs that commit results to persistent state.

    External work (pings, speedtest, modem commands, Telegram calls) happens
    outside the store's lock; each job only enters it for its final commit.
    """

    def __init__(
        self,
        config: Config,
        store: PersistentStateStore,
        notifier: Optional[TelegramNotifier] = None,
        mobile_provider: Optional[MobileProvider] = None,
        scheduler: Optional[JobScheduler] = None,
    ):
        self.config = config
        self.store = store
        self.notifier = notifier
        self.mobile_provider = mobile_provider
        self.scheduler = scheduler or JobScheduler()

        self.job_states: Dict[str, str] = {}
        self.last_runs: Dict[str, Dict[str, Any]] = {}

    @classmethod
    def from_config(cls, config: Config, store: PersistentStateStore) -> "TaskCoordinator":
        notifier = TelegramNotifier(config.telegram, store) if config.telegram else None
        mobile_provider = None
        if config.mobile_provider:
            mobile_provider = MobileProvider(
                config.mobile_provider,
                store,
                notifier=notifier,
                command_timeout=config.command_timeout_seconds(),
            )
        return cls(config, store, notifier=notifier, mobile_provider=mobile_provider)

    async def start(self):
        """Register jobs and start the scheduler."""
        self.setup_jobs()
        await self.scheduler.start()
        logger.info("Task coordinator started")

    async def stop(self):
        """Stop the scheduler."""
        await self.scheduler.stop()
        logger.info("Task coordinator stopped")

    def setup_jobs(self):
        """Register the jobs enabled by the configuration."""
        self.scheduler.add_cron_job(
            job_id=WIDE_NETWORK_PROBE_JOB,
            func=self.probe_wide_network,
            cron_expression=self.config.wide_network_crontab,
            description="Probe wide network reachability",
        )
        self.scheduler.add_cron_job(
            job_id=SPEEDTEST_JOB,
            func=self.run_speedtest,
            cron_expression=self.config.speedtest.crontab,
            description="Benchmark the uplink",
        )

        provider = self.config.mobile_provider
        if provider and provider.get_balance_crontab:
            self.scheduler.add_cron_job(
                job_id=BALANCE_CHECK_JOB,
                func=self.check_balance,
                cron_expression=provider.get_balance_crontab,
                description="Check prepaid balance",
            )
        else:
            logger.info("Balance check disabled", reason="no mobile provider or get_balance_crontab")

        if self.config.telegram:
            self.scheduler.add_cron_job(
                job_id=NOTIFICATION_QUEUE_JOB,
                func=self.retry_notifications,
                cron_expression=self.config.telegram.retry_crontab,
                description="Retry queued notifications",
            )
        else:
            logger.info("Notification queue retry disabled", reason="telegram not configured")

    async def _run_job(self, job_id: str, work: Callable[[], Awaitable[Any]]) -> bool:
        """Run ``work`` as job ``job_id``: idle -> running -> idle.

        A fire that arrives while the job is running is skipped. Failures are
        logged and recorded; they never reach the scheduler.
        """
        if self.job_states.get(job_id) == JOB_RUNNING:
            logger.warning("Job still running, skipping this run", job_id=job_id)
            return False

        self.job_states[job_id] = JOB_RUNNING
        started_at = datetime.now(timezone.utc)
        ok = False
        error = None
        try:
            await work()
            ok = True
        except GatewayError as e:
            error = f"{type(e).__name__}: {e}"
            logger.error("Job failed", job_id=job_id, error=error)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.exception("Job crashed", job_id=job_id)
        finally:
            self.job_states[job_id] = JOB_IDLE
            self.last_runs[job_id] = {
                "started_at": started_at.isoformat(),
                "finished_at": datetime.now(timezone.utc).isoformat(),
                "ok": ok,
                "error": error,
            }
        return ok

    def _commit(self, mutator: Callable[[PersistentState], Any]) -> None:
        try:
            self.store.update(mutator)
        except IOFailure as e:
            # The new value stays in memory; the next successful write persists it.
            logger.error("Failed to update persistent state", error=str(e))

    async def probe_wide_network(self) -> bool:
        return await self._run_job(WIDE_NETWORK_PROBE_JOB, self._probe_wide_network)

    async def _probe_wide_network(self) -> None:
        available = await probe_wide_network(self.config.wide_network_ip)

        def _set(state: PersistentState) -> None:
            state.is_wide_network_available = available

        self._commit(_set)

    async def run_speedtest(self) -> bool:
        return await self._run_job(SPEEDTEST_JOB, self._run_speedtest)

    async def _run_speedtest(self) -> None:
        result = await run_speedtest(self.config.speedtest, timeout=self.config.command_timeout_seconds())
        finished_at = utcnow()

        def _set(state: PersistentState) -> None:
            state.speedtest = result
            state.last_speedtest_check = finished_at

        self._commit(_set)

        if self.mobile_provider is not None:
            await self.mobile_provider.update_tariff()

    async def check_balance(self) -> bool:
        return await self._run_job(BALANCE_CHECK_JOB, self._check_balance)

    async def _check_balance(self) -> None:
        provider = self.mobile_provider
        if provider is None:
            self.config.require_mobile_provider()
            return

        balance = await provider.get_and_alert_balance()

        def _set(state: PersistentState) -> None:
            state.balance = balance

        self._commit(_set)

    async def retry_notifications(self) -> bool:
        return await self._run_job(NOTIFICATION_QUEUE_JOB, self._retry_notifications)

    async def _retry_notifications(self) -> None:
        if self.notifier is None:
            self.config.require_telegram()
            return
        await self.notifier.process_queue()

    def get_system_status(self) -> Dict[str, Any]:
        """Scheduler and per-job status for the HTTP status endpoint."""
        jobs = []
        for status in self.scheduler.list_jobs():
            job_id = status["job_id"]
            jobs.append({
                **status,
                "state": self.job_states.get(job_id, JOB_IDLE),
                "last_run": self.last_runs.get(job_id),
            })
        return {"running": self.scheduler.running, "jobs": jobs}

from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path

import pytest

from ala_archa.config import Config, MobileProviderConfig, TelegramConfig
from ala_archa.errors import IOFailure
from ala_archa.scheduler.job_scheduler import JobScheduler
from ala_archa.scheduler.task_coordinator import (
    BALANCE_CHECK_JOB,
    NOTIFICATION_QUEUE_JOB,
    SPEEDTEST_JOB,
    WIDE_NETWORK_PROBE_JOB,
    TaskCoordinator,
)
from ala_archa.state.persistent_state import PersistentState, PersistentStateStore, SpeedTestResult, utcnow


def _config(tmp_path: Path, **overrides) -> Config:
    data = dict(
        ipset_acl_name="acl",
        ipset_shaper_name="shaper",
        persistent_state_path=str(tmp_path / "state.yaml"),
    )
    data.update(overrides)
    return Config(**data)


def _provider_config(**overrides) -> MobileProviderConfig:
    data = dict(
        get_balance_command="get-balance",
        update_tariff_command="update-tariff",
        restart_modem_command="restart-modem",
        low_balance_threshold=100.0,
        low_download_speed_threshold=5_000_000.0,
        min_update_tariff_interval=43200,
        get_balance_crontab="0 9 * * *",
    )
    data.update(overrides)
    return MobileProviderConfig(**data)


class _FakeProvider:
    def __init__(self, balance: float = 398.08) -> None:
        self.balance = balance
        self.tariff_checks = 0
        self.gate: asyncio.Event | None = None

    async def get_and_alert_balance(self) -> float:
        if self.gate is not None:
            await self.gate.wait()
        return self.balance

    async def update_tariff(self) -> bool:
        self.tariff_checks += 1
        return False


def test_setup_jobs_registers_enabled_jobs(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        telegram=TelegramConfig(bot_token="TOKEN"),
        mobile_provider=_provider_config(),
    )
    coordinator = TaskCoordinator.from_config(config, PersistentStateStore.load(config.persistent_state_path))
    coordinator.setup_jobs()

    assert set(coordinator.scheduler.jobs) == {
        WIDE_NETWORK_PROBE_JOB,
        SPEEDTEST_JOB,
        BALANCE_CHECK_JOB,
        NOTIFICATION_QUEUE_JOB,
    }
    assert coordinator.scheduler.jobs[BALANCE_CHECK_JOB]["expression"] == "0 9 * * *"


def test_setup_jobs_skips_unconfigured_jobs(tmp_path: Path) -> None:
    config = _config(tmp_path, mobile_provider=_provider_config(get_balance_crontab=None))
    coordinator = TaskCoordinator.from_config(config, PersistentStateStore.load(config.persistent_state_path))
    coordinator.setup_jobs()

    assert set(coordinator.scheduler.jobs) == {WIDE_NETWORK_PROBE_JOB, SPEEDTEST_JOB}


def test_add_cron_job_rejects_bad_expression() -> None:
    scheduler = JobScheduler()

    async def _noop() -> None:
        return None

    with pytest.raises(ValueError):
        scheduler.add_cron_job("bad", _noop, "*/5 * * *")
    assert scheduler.jobs == {}


@pytest.mark.asyncio
async def test_probe_job_commits_result(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _probe(address: str) -> bool:
        assert address == "1.1.1.1"
        return True

    monkeypatch.setattr("ala_archa.scheduler.task_coordinator.probe_wide_network", _probe)
    config = _config(tmp_path, wide_network_ip="1.1.1.1")
    store = PersistentStateStore.load(config.persistent_state_path)
    coordinator = TaskCoordinator(config, store)

    assert await coordinator.probe_wide_network() is True
    assert store.get().is_wide_network_available is True
    assert coordinator.last_runs[WIDE_NETWORK_PROBE_JOB]["ok"] is True


@pytest.mark.asyncio
async def test_speedtest_job_commits_and_checks_tariff(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _speedtest(config, timeout=None) -> SpeedTestResult:
        return SpeedTestResult(download=1_000_000.0, upload=500_000.0, ping=30.0)

    monkeypatch.setattr("ala_archa.scheduler.task_coordinator.run_speedtest", _speedtest)
    config = _config(tmp_path)
    store = PersistentStateStore.load(config.persistent_state_path)
    provider = _FakeProvider()
    coordinator = TaskCoordinator(config, store, mobile_provider=provider)

    assert await coordinator.run_speedtest() is True

    state = store.get()
    assert state.speedtest == SpeedTestResult(download=1_000_000.0, upload=500_000.0, ping=30.0)
    assert state.last_speedtest_check is not None
    assert provider.tariff_checks == 1


@pytest.mark.asyncio
async def test_failed_speedtest_leaves_state_alone(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _speedtest(config, timeout=None) -> SpeedTestResult:
        raise IOFailure("speedtest exited with 1")

    monkeypatch.setattr("ala_archa.scheduler.task_coordinator.run_speedtest", _speedtest)
    config = _config(tmp_path)
    store = PersistentStateStore.load(config.persistent_state_path)
    provider = _FakeProvider()
    coordinator = TaskCoordinator(config, store, mobile_provider=provider)

    assert await coordinator.run_speedtest() is False

    state = store.get()
    assert state.speedtest is None
    assert state.last_speedtest_check is None
    assert provider.tariff_checks == 0
    assert "IOFailure" in coordinator.last_runs[SPEEDTEST_JOB]["error"]


@pytest.mark.asyncio
async def test_job_fire_while_running_is_skipped(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = PersistentStateStore.load(config.persistent_state_path)
    provider = _FakeProvider(balance=250.0)
    provider.gate = asyncio.Event()
    coordinator = TaskCoordinator(config, store, mobile_provider=provider)

    first = asyncio.create_task(coordinator.check_balance())
    await asyncio.sleep(0)

    assert await coordinator.check_balance() is False

    provider.gate.set()
    assert await first is True
    assert store.get().balance == 250.0


@pytest.mark.asyncio
async def test_concurrent_commits_are_serialized(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _unreachable(address: str) -> bool:
        await asyncio.sleep(0.01)
        return False

    monkeypatch.setattr("ala_archa.scheduler.task_coordinator.probe_wide_network", _unreachable)
    config = _config(tmp_path)
    store = PersistentStateStore.load(config.persistent_state_path)
    coordinator = TaskCoordinator(config, store, mobile_provider=_FakeProvider(balance=12.0))

    guard = threading.Lock()
    active: list[int] = []
    overlaps: list[int] = []
    store_update = store.update

    def _tracked_update(mutator):
        def _mutate(state: PersistentState):
            with guard:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(len(active))
            time.sleep(0.001)
            with guard:
                active.pop()
            return mutator(state)

        return store_update(_mutate)

    monkeypatch.setattr(store, "update", _tracked_update)

    def _handler_writes() -> None:
        # HTTP handlers share the store from worker threads.
        for _ in range(20):
            store.update(lambda s: setattr(s, "last_tariff_update", utcnow()))

    results = await asyncio.gather(
        coordinator.probe_wide_network(),
        coordinator.check_balance(),
        asyncio.to_thread(_handler_writes),
    )

    assert results[:2] == [True, True]
    assert overlaps == []
    state = PersistentStateStore.load(config.persistent_state_path).get()
    assert state.is_wide_network_available is False
    assert state.balance == 12.0
    assert state.last_tariff_update is not None


@pytest.mark.asyncio
async def test_balance_job_without_provider_fails(tmp_path: Path) -> None:
    config = _config(tmp_path)
    coordinator = TaskCoordinator(config, PersistentStateStore.load(config.persistent_state_path))

    assert await coordinator.check_balance() is False
    assert "ConfigurationMissing" in coordinator.last_runs[BALANCE_CHECK_JOB]["error"]


@pytest.mark.asyncio
async def test_run_job_once_executes_registered_job(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _probe(address: str) -> bool:
        return True

    monkeypatch.setattr("ala_archa.scheduler.task_coordinator.probe_wide_network", _probe)
    config = _config(tmp_path)
    store = PersistentStateStore.load(config.persistent_state_path)
    coordinator = TaskCoordinator(config, store)
    coordinator.setup_jobs()

    assert await coordinator.scheduler.run_job_once(WIDE_NETWORK_PROBE_JOB) is True
    assert store.get().is_wide_network_available is True
    assert await coordinator.scheduler.run_job_once("missing") is False

    status = coordinator.get_system_status()
    assert status["running"] is False
    assert {job["job_id"] for job in status["jobs"]} == {WIDE_NETWORK_PROBE_JOB, SPEEDTEST_JOB}

"""Shared fakes for pulsedash tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from pulsedash.collectors import CollectorSet, LocalMetricsCollector
from pulsedash.config import DashboardConfig, ImageConfig
from pulsedash.core import Dashboard
from pulsedash.errors import SignalError
from pulsedash.models import ProcessRecord
from pulsedash.monitor import SignalKind, SystemSnapshot


class FakeClock:
    """Manually advanced clock usable as both monotonic and wall time."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_record(pid: int, ppid: int = 0, name: str | None = None, cpu: float = 0.0, **kwargs) -> ProcessRecord:
    fields = dict(
        pid=pid,
        ppid=ppid,
        name=name or f"proc{pid}",
        username="user",
        status="S",
        cpu_percent=cpu,
        memory_rss=1024 * pid,
        memory_percent=0.1,
        threads=1,
        command_line=f"/usr/bin/{name or f'proc{pid}'} --flag",
    )
    fields.update(kwargs)
    return ProcessRecord(**fields)


def make_snapshot(processes: list[ProcessRecord] | None = None, cores: int = 2) -> SystemSnapshot:
    return SystemSnapshot(
        cpu_percent_per_core=[10.0 * (i + 1) for i in range(cores)],
        memory_total=16 * 1024**3,
        memory_used=8 * 1024**3,
        memory_percent=50.0,
        swap_total=4 * 1024**3,
        swap_used=0,
        swap_percent=0.0,
        load_avg=(1.0, 0.5, 0.25),
        uptime_seconds=3600.0,
        processes=processes or [],
        hostname="testhost",
    )


class FakeProbe:
    """Stands in for SystemProbe: canned snapshots and recorded signals."""

    def __init__(self, processes: list[ProcessRecord] | None = None) -> None:
        self.processes = processes if processes is not None else [make_record(1), make_record(2, 1)]
        self.collect_calls = 0
        self.signals: list[tuple[int, SignalKind]] = []
        self.fail_signals = False

    def collect(self) -> SystemSnapshot:
        self.collect_calls += 1
        return make_snapshot(self.list_processes())

    def list_processes(self) -> list[ProcessRecord]:
        return list(self.processes)

    def send_signal(self, pid: int, kind: SignalKind) -> None:
        if self.fail_signals:
            raise SignalError(pid, kind.value, "permission denied")
        self.signals.append((pid, kind))


def make_config(tmp_path: Path, **kwargs) -> DashboardConfig:
    image = kwargs.pop("image", ImageConfig())
    return DashboardConfig(cache_dir=tmp_path, image=image, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def dashboard(tmp_path: Path, probe: FakeProbe, clock: FakeClock) -> Dashboard:
    collectors = CollectorSet([LocalMetricsCollector(probe)], clock=clock, wall=clock)
    return Dashboard(make_config(tmp_path), collectors, probe, clock=clock)

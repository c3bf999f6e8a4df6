"""Data collectors and their per-source snapshots.

The set of collectors is closed: one local-metrics collector that runs every
tick, and one cache-file collector per daemon-written JSON document, each of
which re-reads its file at most every ``CACHE_INTERVAL`` seconds.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

import psutil
from pydantic import BaseModel, ValidationError

from pulsedash.errors import CollectorError
from pulsedash.models import (
    BillingReport,
    ClusterStatus,
    MeshStatus,
    PersonalUsageReport,
    PersonalUsageState,
    UsageReport,
    compute_personal_report,
)
from pulsedash.monitor import SystemProbe, SystemSnapshot

logger = logging.getLogger(__name__)

CACHE_INTERVAL = 5.0  # seconds between cache file re-reads
MAX_CACHE_AGE = 300.0  # cache files older than this are considered dead

# Collector names, also used as snapshot keys.
SYSMETRICS = "sysmetrics"
MESH = "mesh"
CLUSTER = "cluster"
BILLING = "billing"
USAGE = "usage"
PERSONAL = "personal"

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


@dataclass
class CachedSnapshot(Generic[T]):
    """
    Last known state of one collector.

    A failed read never clears ``data``: stale-but-present beats absent.
    """

    data: T | None = None
    updated_at: float | None = None  # wall clock of last success
    last_error: str | None = None
    last_error_at: float | None = None  # wall clock of last failure
    attempted_at: float | None = None  # monotonic clock of last attempt

    @property
    def healthy(self) -> bool:
        return self.last_error is None

    @property
    def has_data(self) -> bool:
        return self.data is not None

    def succeed(self, data: T, wall: float) -> None:
        self.data = data
        self.updated_at = wall
        self.last_error = None
        self.last_error_at = None

    def fail(self, cause: str, wall: float) -> None:
        self.last_error = cause
        self.last_error_at = wall


class Collector(Protocol):
    """Capability shared by every collector: a name, a cadence and ``poll``."""

    name: str
    interval: float | None  # None = every tick

    def poll(self) -> Any: ...


class LocalMetricsCollector:
    """Real-time local metrics. Runs on every tick."""

    interval: float | None = None

    def __init__(self, probe: SystemProbe, name: str = SYSMETRICS) -> None:
        self.name = name
        self._probe = probe

    def poll(self) -> SystemSnapshot:
        try:
            return self._probe.collect()
        except (OSError, psutil.Error) as e:
            raise CollectorError(self.name, str(e)) from e


class CacheFileCollector(Generic[M]):
    """Reads one JSON document written by the companion daemon."""

    def __init__(
        self,
        name: str,
        path: Path,
        model: type[M],
        *,
        interval: float = CACHE_INTERVAL,
        max_age: float | None = MAX_CACHE_AGE,
        wall: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.path = path
        self.model = model
        self.interval: float | None = interval
        self.max_age = max_age
        self._wall = wall

    def read_model(self) -> M:
        try:
            stat = self.path.stat()
        except FileNotFoundError as e:
            raise CollectorError(self.name, f"missing {self.path.name}") from e
        except OSError as e:
            raise CollectorError(self.name, str(e)) from e

        if self.max_age is not None and self._wall() - stat.st_mtime > self.max_age:
            raise CollectorError(self.name, f"stale cache ({self.path.name})")

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise CollectorError(self.name, str(e)) from e
        except json.JSONDecodeError as e:
            raise CollectorError(self.name, f"invalid JSON: {e.msg}") from e

        try:
            return self.model.model_validate(raw)
        except ValidationError as e:
            raise CollectorError(self.name, f"unexpected data: {e.error_count()} error(s)") from e

    def poll(self) -> Any:
        return self.read_model()


class PersonalUsageCollector(CacheFileCollector[PersonalUsageState]):
    """Rolling-window message log; reported as counts against the limit.

    The daemon only rewrites this file on new messages, so it has no max age.
    """

    def __init__(self, path: Path, *, wall: Callable[[], float] = time.time, **kwargs: Any) -> None:
        super().__init__(PERSONAL, path, PersonalUsageState, max_age=None, wall=wall, **kwargs)

    def poll(self) -> PersonalUsageReport:
        state = self.read_model()
        return compute_personal_report(state, datetime.fromtimestamp(self._wall(), timezone.utc))


class CollectorSet:
    """
    Runs each collector on its own cadence and keeps its snapshot.

    Failures are caught here and recorded on the failing collector's
    snapshot; they never reach the caller or touch another collector.
    """

    def __init__(
        self,
        collectors: Iterable[Collector],
        clock: Callable[[], float] = time.monotonic,
        wall: Callable[[], float] = time.time,
    ) -> None:
        self.collectors: list[Collector] = list(collectors)
        self.snapshots: dict[str, CachedSnapshot[Any]] = {
            c.name: CachedSnapshot() for c in self.collectors
        }
        self.poll_count = 0
        self._clock = clock
        self._wall = wall

    def __contains__(self, name: object) -> bool:
        return name in self.snapshots

    def snapshot(self, name: str) -> CachedSnapshot[Any]:
        """Snapshot for ``name``; an empty one if that collector is disabled."""
        return self.snapshots.get(name) or CachedSnapshot()

    def is_due(self, collector: Collector, now: float) -> bool:
        attempted = self.snapshots[collector.name].attempted_at
        if collector.interval is None or attempted is None:
            return True
        return now - attempted >= collector.interval

    def run_due(self) -> list[str]:
        """Poll every collector whose interval has elapsed.

        Returns:
            Names of the collectors that produced new data this round.
        """
        now = self._clock()
        updated: list[str] = []
        for collector in self.collectors:
            if not self.is_due(collector, now):
                continue
            snap = self.snapshots[collector.name]
            snap.attempted_at = now
            self.poll_count += 1
            try:
                data = collector.poll()
            except CollectorError as e:
                level = logging.DEBUG if snap.last_error == e.cause else logging.WARNING
                logger.log(level, "collector %s failed: %s", collector.name, e.cause)
                snap.fail(e.cause, self._wall())
                continue
            except Exception as e:
                # A collector bug must not take the dashboard down.
                logger.exception("collector %s crashed", collector.name)
                snap.fail(f"{type(e).__name__}: {e}", self._wall())
                continue
            snap.succeed(data, self._wall())
            updated.append(collector.name)
        return updated


def cache_collectors(
    cache_dir: Path,
    enabled: Callable[[str], bool] = lambda name: True,
    wall: Callable[[], float] = time.time,
) -> list[Collector]:
    """The daemon-backed collectors for ``cache_dir``, honouring config toggles."""
    specs: list[tuple[str, str, str, type[BaseModel]]] = [
        ("tailscale", MESH, "tailscale.json", MeshStatus),
        ("kubernetes", CLUSTER, "k8s.json", ClusterStatus),
        ("billing", BILLING, "billing.json", BillingReport),
        ("claude", USAGE, "claude.json", UsageReport),
    ]
    collectors: list[Collector] = [
        CacheFileCollector(name, cache_dir / filename, model, wall=wall)
        for toggle, name, filename, model in specs
        if enabled(toggle)
    ]
    if enabled("personal"):
        collectors.append(PersonalUsageCollector(cache_dir / "claude-personal.json", wall=wall))
    return collectors

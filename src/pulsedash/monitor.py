"""System probing for pulsedash, backed by psutil."""

from __future__ import annotations

import logging
import platform
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

import psutil

from pulsedash.errors import SignalError
from pulsedash.models import ProcessRecord

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    psutil.STATUS_RUNNING: "R",
    psutil.STATUS_SLEEPING: "S",
    psutil.STATUS_IDLE: "I",
    psutil.STATUS_ZOMBIE: "Z",
    psutil.STATUS_DISK_SLEEP: "D",
    psutil.STATUS_STOPPED: "T",
}

_MEANINGFUL_MOUNTS = ("/home", "/Users", "/Volumes")


class NetKind(Enum):
    WIFI = "W"
    ETHERNET = "E"
    VIRTUAL = "V"
    UNKNOWN = "?"


def classify_interface(name: str) -> NetKind:
    """Guess the interface kind from its name."""
    n = name.lower()
    if n.startswith(("wlan", "wlp")) or n == "en0":
        return NetKind.WIFI
    if n.startswith(("veth", "docker", "br-", "cali")):
        return NetKind.VIRTUAL
    if n.startswith(("eth", "enp", "en")):
        return NetKind.ETHERNET
    return NetKind.UNKNOWN


class SignalKind(Enum):
    TERMINATE = "terminate"
    KILL = "kill"


@dataclass(slots=True)
class DiskInfo:
    mount: str
    fs_type: str
    total: int
    used: int
    percent: float


@dataclass(slots=True)
class NetInfo:
    name: str
    kind: NetKind
    rx_bytes: int
    tx_bytes: int
    rx_rate: float  # bytes/sec since the previous probe
    tx_rate: float


@dataclass(slots=True)
class TempInfo:
    label: str
    current: float
    high: float | None


@dataclass(slots=True)
class BatteryInfo:
    percent: float
    charging: bool
    secs_left: int | None


@dataclass(slots=True)
class SystemSnapshot:
    """Snapshot of overall system state."""

    cpu_percent_per_core: list[float]
    memory_total: int
    memory_used: int
    memory_percent: float
    swap_total: int
    swap_used: int
    swap_percent: float
    load_avg: tuple[float, float, float]
    uptime_seconds: float
    processes: list[ProcessRecord]
    memory_available: int = 0
    hostname: str = ""
    os_name: str = ""
    kernel: str = ""
    arch: str = ""
    cpu_brand: str = ""
    cpu_freq_mhz: float = 0.0
    disks: list[DiskInfo] = field(default_factory=list)
    networks: list[NetInfo] = field(default_factory=list)
    temperatures: list[TempInfo] = field(default_factory=list)
    battery: BatteryInfo | None = None

    @property
    def cpu_total(self) -> float:
        cores = self.cpu_percent_per_core
        return sum(cores) / len(cores) if cores else 0.0

    @property
    def max_temperature(self) -> float:
        return max((t.current for t in self.temperatures), default=0.0)

    @property
    def net_rx_rate(self) -> float:
        return sum(n.rx_rate for n in self.networks)

    @property
    def net_tx_rate(self) -> float:
        return sum(n.tx_rate for n in self.networks)


def _cpu_brand() -> str:
    try:
        with open("/proc/cpuinfo") as f:
            for line in f:
                if line.startswith("model name"):
                    return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return platform.processor()


class SystemProbe:
    """
    Collects system and process data using psutil.

    Every call is a fast in-memory OS query, run synchronously on the event
    loop. Handles AccessDenied and ZombieProcess errors per process.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._prev_net: dict[str, tuple[int, int]] = {}
        self._prev_net_at: float | None = None
        self._cpu_brand = _cpu_brand()
        uname = platform.uname()
        self._hostname = socket.gethostname()
        self._os_name = f"{uname.system} {uname.release}".strip()
        self._kernel = uname.version
        self._arch = uname.machine
        # Initialize CPU percent (first call returns 0.0)
        psutil.cpu_percent(percpu=True)

    def collect(self) -> SystemSnapshot:
        """Collect a snapshot of the current system state."""
        # Non-blocking, uses previous call's data
        cpu_percents = psutil.cpu_percent(percpu=True)
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        freq = psutil.cpu_freq()

        return SystemSnapshot(
            cpu_percent_per_core=cpu_percents,
            memory_total=mem.total,
            memory_used=mem.used,
            memory_available=mem.available,
            memory_percent=mem.percent,
            swap_total=swap.total,
            swap_used=swap.used,
            swap_percent=swap.percent,
            load_avg=psutil.getloadavg(),
            uptime_seconds=time.time() - psutil.boot_time(),
            processes=self.list_processes(),
            hostname=self._hostname,
            os_name=self._os_name,
            kernel=self._kernel,
            arch=self._arch,
            cpu_brand=self._cpu_brand,
            cpu_freq_mhz=freq.current if freq else 0.0,
            disks=self._collect_disks(),
            networks=self._collect_networks(),
            temperatures=self._collect_temperatures(),
            battery=self._collect_battery(),
        )

    def list_processes(self) -> list[ProcessRecord]:
        """
        Collect records of all visible processes.

        Processes that die mid-listing or deny access are skipped.
        """
        processes: list[ProcessRecord] = []

        attrs = [
            "pid",
            "ppid",
            "name",
            "username",
            "status",
            "cpu_percent",
            "memory_info",
            "memory_percent",
            "num_threads",
            "cmdline",
            "create_time",
        ]

        for proc in psutil.process_iter(attrs=attrs):
            try:
                with proc.oneshot():
                    info = proc.info

                    cmdline = info.get("cmdline") or []
                    command_line = " ".join(cmdline) if cmdline else info.get("name") or ""

                    mem_info = info.get("memory_info")
                    memory_rss = mem_info.rss if mem_info else 0

                    processes.append(
                        ProcessRecord(
                            pid=info.get("pid", 0),
                            ppid=info.get("ppid") or 0,
                            name=info.get("name") or "",
                            username=info.get("username") or "",
                            status=_STATUS_CODES.get(info.get("status"), "?"),
                            cpu_percent=info.get("cpu_percent") or 0.0,
                            memory_rss=memory_rss,
                            memory_percent=info.get("memory_percent") or 0.0,
                            threads=info.get("num_threads") or 0,
                            command_line=command_line,
                            create_time=info.get("create_time") or 0.0,
                        )
                    )

            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        return processes

    def send_signal(self, pid: int, kind: SignalKind) -> None:
        """Terminate (graceful) or kill (forced) a process.

        Raises:
            SignalError: If the process is gone or access is denied.
        """
        try:
            proc = psutil.Process(pid)
            if kind is SignalKind.KILL:
                proc.kill()
            else:
                proc.terminate()
        except psutil.NoSuchProcess as e:
            raise SignalError(pid, kind.value, "no such process") from e
        except psutil.AccessDenied as e:
            raise SignalError(pid, kind.value, "permission denied") from e
        except OSError as e:
            raise SignalError(pid, kind.value, str(e)) from e
        logger.info("sent %s to pid %d", kind.value, pid)

    def _collect_disks(self) -> list[DiskInfo]:
        disks: list[DiskInfo] = []
        for part in psutil.disk_partitions(all=False):
            mount = part.mountpoint
            if not (
                mount == "/"
                or mount == "/System/Volumes/Data"
                or mount.startswith(_MEANINGFUL_MOUNTS)
            ):
                continue
            try:
                usage = psutil.disk_usage(mount)
            except OSError:
                continue
            disks.append(DiskInfo(mount, part.fstype, usage.total, usage.used, usage.percent))
        return disks

    def _collect_networks(self) -> list[NetInfo]:
        now = self._clock()
        counters = psutil.net_io_counters(pernic=True)
        elapsed = (now - self._prev_net_at) if self._prev_net_at is not None else 0.0

        nets: list[NetInfo] = []
        for name, c in sorted(counters.items()):
            if name == "lo" or name.startswith("lo0"):
                continue
            prev_rx, prev_tx = self._prev_net.get(name, (c.bytes_recv, c.bytes_sent))
            if elapsed > 0:
                rx_rate = max(0, c.bytes_recv - prev_rx) / elapsed
                tx_rate = max(0, c.bytes_sent - prev_tx) / elapsed
            else:
                rx_rate = tx_rate = 0.0
            nets.append(
                NetInfo(name, classify_interface(name), c.bytes_recv, c.bytes_sent, rx_rate, tx_rate)
            )

        self._prev_net = {name: (c.bytes_recv, c.bytes_sent) for name, c in counters.items()}
        self._prev_net_at = now
        return nets

    def _collect_temperatures(self) -> list[TempInfo]:
        sensors = getattr(psutil, "sensors_temperatures", None)
        if sensors is None:
            return []
        try:
            readings = sensors()
        except (OSError, RuntimeError):
            return []
        temps: list[TempInfo] = []
        for chip, entries in readings.items():
            for entry in entries:
                label = entry.label or chip
                temps.append(TempInfo(label, entry.current, entry.high))
        return temps

    def _collect_battery(self) -> BatteryInfo | None:
        sensors = getattr(psutil, "sensors_battery", None)
        if sensors is None:
            return None
        try:
            battery = sensors()
        except (OSError, RuntimeError):
            return None
        if battery is None:
            return None
        secs = battery.secsleft if isinstance(battery.secsleft, int) and battery.secsleft >= 0 else None
        return BatteryInfo(battery.percent, bool(battery.power_plugged), secs)

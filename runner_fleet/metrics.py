"""Host resource sampling for the lifetime of a scenario.

Each metric family runs in its own thread and appends one CSV row per tick to
``<family>.log`` in the scenario directory. All loops share one stop event.
"""

from __future__ import annotations

import csv
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Sequence

import psutil

LOGGER = logging.getLogger("runner_fleet.metrics")

BUSY_FIELDS = ("user", "nice", "system", "iowait", "irq", "softirq", "steal")


@dataclass(frozen=True)
class CpuCounters:
    total: float
    idle: float


def cpu_counters(times) -> CpuCounters:
    """Collapse a psutil cpu_times entry into total/idle counters."""
    idle = float(getattr(times, "idle", 0.0))
    busy = sum(float(getattr(times, name, 0.0)) for name in BUSY_FIELDS)
    return CpuCounters(total=busy + idle, idle=idle)


def core_usage_percent(prev: CpuCounters, cur: CpuCounters) -> float:
    total_delta = cur.total - prev.total
    if total_delta <= 0:
        return 0.0
    idle_delta = cur.idle - prev.idle
    usage = (1.0 - idle_delta / total_delta) * 100.0
    return min(max(usage, 0.0), 100.0)


class MetricFamily:
    """One time series; subclasses fill in ``columns`` and ``sample``."""

    name: str = ""
    columns: tuple[str, ...] = ()

    @property
    def filename(self) -> str:
        return f"{self.name}.log"

    @property
    def header(self) -> list[str]:
        return ["timestamp", *self.columns]

    def prime(self) -> None:
        """Take the reference reading for delta-based columns."""

    def sample(self) -> Sequence[float | int]:
        raise NotImplementedError


class ResourceUsage(MetricFamily):
    """Aggregate snapshot; CPU, disk and network columns are per-interval deltas."""

    name = "resource_usage"
    columns = (
        "cpu_percent",
        "memory_kb",
        "disk_io_read_kb",
        "disk_io_write_kb",
        "network_rx_bytes",
        "network_tx_bytes",
        "load_avg",
    )

    def __init__(self) -> None:
        self._cpu: CpuCounters | None = None
        self._disk: tuple[int, int] = (0, 0)
        self._net: tuple[int, int] = (0, 0)

    def prime(self) -> None:
        self._cpu = cpu_counters(psutil.cpu_times())
        self._disk = _disk_bytes()
        self._net = _net_bytes()

    def sample(self) -> Sequence[float | int]:
        cpu = cpu_counters(psutil.cpu_times())
        cpu_percent = core_usage_percent(self._cpu or cpu, cpu)
        self._cpu = cpu

        memory = psutil.virtual_memory()
        memory_kb = (memory.total - memory.available) // 1024

        disk = _disk_bytes()
        disk_read_kb = max(disk[0] - self._disk[0], 0) // 1024
        disk_write_kb = max(disk[1] - self._disk[1], 0) // 1024
        self._disk = disk

        net = _net_bytes()
        rx = max(net[0] - self._net[0], 0)
        tx = max(net[1] - self._net[1], 0)
        self._net = net

        load_avg = psutil.getloadavg()[0]
        return [cpu_percent, memory_kb, disk_read_kb, disk_write_kb, rx, tx, load_avg]


class CpuDetailed(MetricFamily):
    name = "cpu_detailed"
    columns = ("user", "nice", "system", "idle", "iowait", "irq", "softirq", "steal", "guest")

    def sample(self) -> Sequence[float | int]:
        times = psutil.cpu_times()
        return [float(getattr(times, column, 0.0)) for column in self.columns]


class CpuCores(MetricFamily):
    """Per-core usage computed from successive counter deltas."""

    name = "cpu_cores"

    def __init__(self, read_times: Callable[[], list] | None = None) -> None:
        self._read_times = read_times or (lambda: psutil.cpu_times(percpu=True))
        self._prev: list[CpuCounters] = []
        self.columns = tuple(f"core{index}" for index in range(len(self._read_times())))

    def prime(self) -> None:
        self._prev = [cpu_counters(times) for times in self._read_times()]

    def sample(self) -> Sequence[float | int]:
        current = [cpu_counters(times) for times in self._read_times()]
        if len(self._prev) != len(current):
            self._prev = current
        usage = [core_usage_percent(prev, cur) for prev, cur in zip(self._prev, current)]
        self._prev = current
        return usage


class MemoryDetailed(MetricFamily):
    name = "memory_detailed"
    columns = (
        "total_kb",
        "free_kb",
        "used_kb",
        "buffers_kb",
        "cached_kb",
        "available_kb",
        "swap_total_kb",
        "swap_free_kb",
    )

    def sample(self) -> Sequence[float | int]:
        memory = psutil.virtual_memory()
        swap = psutil.swap_memory()
        buffers = getattr(memory, "buffers", 0)
        cached = getattr(memory, "cached", 0)
        used = max(memory.total - memory.free - buffers - cached, 0)
        return [
            memory.total // 1024,
            memory.free // 1024,
            used // 1024,
            buffers // 1024,
            cached // 1024,
            memory.available // 1024,
            swap.total // 1024,
            swap.free // 1024,
        ]


class NetworkConnections(MetricFamily):
    name = "network_connections"
    columns = ("total_connections", "established", "time_wait", "close_wait")

    def sample(self) -> Sequence[float | int]:
        connections = psutil.net_connections(kind="tcp")
        statuses = [conn.status for conn in connections]
        return [
            len(statuses),
            statuses.count(psutil.CONN_ESTABLISHED),
            statuses.count(psutil.CONN_TIME_WAIT),
            statuses.count(psutil.CONN_CLOSE_WAIT),
        ]


def default_families() -> list[MetricFamily]:
    return [ResourceUsage(), CpuDetailed(), CpuCores(), MemoryDetailed(), NetworkConnections()]


class MetricsCollector:
    """Runs every metric family in its own thread until the stop event is set."""

    def __init__(
        self,
        directory: Path,
        families: Iterable[MetricFamily] | None = None,
        interval: float = 1.0,
        grace: float = 2.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.directory = directory
        self._families = list(families) if families is not None else default_families()
        self._interval = interval
        self._grace = grace
        self._stop_event = stop_event or threading.Event()
        self._threads: list[threading.Thread] = []
        self.stragglers: list[str] = []

    def __enter__(self) -> "MetricsCollector":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def paths(self) -> dict[str, Path]:
        return {family.name: self.directory / family.filename for family in self._families}

    def start(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._stop_event.clear()
        for family in self._families:
            path = self.directory / family.filename
            with open(path, "w", newline="", encoding="utf-8") as handle:
                csv.writer(handle).writerow(family.header)
            thread = threading.Thread(
                target=self._loop,
                args=(family, path),
                name=f"metrics-{family.name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        LOGGER.info("Started %d metric sampler(s) in %s", len(self._threads), self.directory)

    def stop(self) -> None:
        self._stop_event.set()
        deadline = time.monotonic() + self._grace
        for thread in self._threads:
            thread.join(timeout=max(deadline - time.monotonic(), 0.0))
            if thread.is_alive():
                self.stragglers.append(thread.name)
        if self.stragglers:
            LOGGER.warning("Abandoning metric sampler(s) still running: %s", ", ".join(self.stragglers))
        self._threads.clear()

    def _loop(self, family: MetricFamily, path: Path) -> None:
        try:
            family.prime()
        except (psutil.Error, OSError) as exc:
            LOGGER.warning("Priming %s failed: %s", family.name, exc)

        last_ts = 0.0
        with open(path, "a", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            while not self._stop_event.wait(self._interval):
                try:
                    values = family.sample()
                except (psutil.Error, OSError) as exc:
                    LOGGER.warning("Sampling %s failed: %s", family.name, exc)
                    continue
                timestamp = round(time.time(), 3)
                if timestamp <= last_ts:
                    timestamp = round(last_ts + 0.001, 3)
                last_ts = timestamp
                writer.writerow([f"{timestamp:.3f}", *(_format(value) for value in values)])
                handle.flush()


def _format(value: float | int) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def _disk_bytes() -> tuple[int, int]:
    counters = psutil.disk_io_counters()
    if counters is None:
        return (0, 0)
    return (counters.read_bytes, counters.write_bytes)


def _net_bytes() -> tuple[int, int]:
    counters = psutil.net_io_counters()
    if counters is None:
        return (0, 0)
    return (counters.bytes_recv, counters.bytes_sent)


__all__ = [
    "CpuCounters",
    "MetricFamily",
    "MetricsCollector",
    "core_usage_percent",
    "cpu_counters",
    "default_families",
]

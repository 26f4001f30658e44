"""Host metrics sources.

A source exposes ``sample_all()`` returning one optional float per series id.
``None`` means the value could not be read this round; the sampler skips
that series and carries on with the rest.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from typing import Any, Protocol

import psutil

from sysgraph.errors import MetricsUnavailable
from sysgraph.history import ProcessInfo

logger = logging.getLogger(__name__)

_NPROC: int = os.cpu_count() or 1


class MetricsSource(Protocol):
    def series_ids(self) -> tuple[str, ...]: ...

    def sample_all(self) -> dict[str, float | None]: ...

    def top_processes(self, n: int) -> list[ProcessInfo]: ...


class PsutilSource:
    """Reads CPU, memory, swap, network and disk I/O through psutil.

    CPU percentages are computed by psutil between consecutive calls, and
    byte rates from counter deltas over monotonic time, so the first call
    returns 0% CPU and no rates.
    """

    def __init__(
        self,
        cpu_count: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cpu_count = cpu_count or _NPROC
        self._clock = clock
        # counter key -> (value, monotonic time it was read)
        self._prev_counters: dict[str, tuple[float, float]] = {}

        # Warm-up psutil internal deltas
        psutil.cpu_percent(interval=None, percpu=True)
        psutil.cpu_percent(interval=None)

    def series_ids(self) -> tuple[str, ...]:
        cores = tuple(f"cpu-core-{i}" for i in range(self.cpu_count))
        return (
            "cpu",
            *cores,
            "memory-used",
            "swap-used",
            "net-rx",
            "net-tx",
            "disk-read",
            "disk-write",
        )

    def _rates(self, counters: dict[str, float], now: float) -> dict[str, float | None]:
        rates: dict[str, float | None] = {}
        for key, value in counters.items():
            prev = self._prev_counters.get(key)
            if prev is None or now <= prev[1]:
                rates[key] = None
            else:
                # Counters can reset (interface down/up); clamp to zero
                rates[key] = max(0.0, (value - prev[0]) / (now - prev[1]))
            self._prev_counters[key] = (value, now)
        return rates

    def _read_cpu(self, values: dict[str, float | None]) -> None:
        try:
            values["cpu"] = float(psutil.cpu_percent(interval=None))
            per_core = psutil.cpu_percent(interval=None, percpu=True)
        except (OSError, RuntimeError) as e:
            logger.debug("cpu read failed: %s", e)
            return
        for i, pct in enumerate(per_core[: self.cpu_count]):
            values[f"cpu-core-{i}"] = float(pct)

    def _read_memory(self, values: dict[str, float | None]) -> None:
        try:
            values["memory-used"] = float(psutil.virtual_memory().percent)
        except (OSError, RuntimeError) as e:
            logger.debug("memory read failed: %s", e)
        try:
            values["swap-used"] = float(psutil.swap_memory().percent)
        except (OSError, RuntimeError) as e:
            logger.debug("swap read failed: %s", e)

    def _read_io_counters(self) -> dict[str, float]:
        counters: dict[str, float] = {}
        try:
            net_io = psutil.net_io_counters()
        except (OSError, RuntimeError) as e:
            logger.debug("network counters unavailable: %s", e)
            net_io = None
        # net_io_counters can return None in rare cases
        if net_io is not None:
            counters["net-rx"] = float(net_io.bytes_recv)
            counters["net-tx"] = float(net_io.bytes_sent)
        try:
            disk_io = psutil.disk_io_counters()
        except (OSError, RuntimeError) as e:
            logger.debug("disk counters unavailable: %s", e)
            disk_io = None
        if disk_io is not None:
            counters["disk-read"] = float(disk_io.read_bytes)
            counters["disk-write"] = float(disk_io.write_bytes)
        return counters

    def sample_all(self) -> dict[str, float | None]:
        """Read every series once.

        Raises:
            MetricsUnavailable: psutil failed for every series at once.
        """
        values: dict[str, float | None] = dict.fromkeys(self.series_ids())
        now = self._clock()

        self._read_cpu(values)
        self._read_memory(values)
        counters = self._read_io_counters()
        values.update(self._rates(counters, now))

        if not counters and all(v is None for v in values.values()):
            raise MetricsUnavailable("psutil returned no metrics")
        return values

    def top_processes(self, n: int = 12) -> list[ProcessInfo]:
        """The *n* busiest processes by CPU, busiest first.

        psutil reports 0% for a process the first time it is seen, so a
        freshly started process only appears from its second scan.
        """
        procs: list[ProcessInfo] = []
        for proc in psutil.process_iter(
            ["pid", "name", "cpu_percent", "memory_percent", "memory_info"],
        ):
            try:
                info: dict[str, Any] = proc.info
                cpu: float = info.get("cpu_percent") or 0.0
                if cpu > 0:
                    mem_info = info.get("memory_info")
                    procs.append(
                        ProcessInfo(
                            pid=int(info.get("pid") or 0),
                            name=info.get("name") or "?",
                            cpu_percent=float(cpu),
                            memory_percent=float(info.get("memory_percent") or 0.0),
                            rss=int(mem_info.rss) if mem_info else 0,
                        )
                    )
            except (psutil.NoSuchProcess, psutil.AccessDenied, AttributeError):
                continue
        procs.sort(key=lambda p: p.cpu_percent, reverse=True)
        return procs[:n]

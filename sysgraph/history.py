"""Bounded per-series history shared between the sampler and the renderer.

Each series owns a fixed-capacity ``deque`` guarded by its own reader/writer
lock, so the sampler thread appending to one series never waits on the UI
thread copying another.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from types import MappingProxyType

from sysgraph.errors import ConfigurationError, LockContentionTimeout, OutOfOrderSample


@dataclass(frozen=True, slots=True)
class Sample:
    """One measurement of one series."""

    timestamp: float
    value: float


@dataclass(frozen=True, slots=True)
class ProcessInfo:
    """One row of the top-process table."""

    pid: int
    name: str
    cpu_percent: float
    memory_percent: float
    rss: int


class ReadWriteLock:
    """Many concurrent readers or a single writer, with bounded waits."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self, timeout: float | None = None) -> Iterator[None]:
        with self._cond:
            if not self._cond.wait_for(lambda: not self._writing, timeout):
                raise LockContentionTimeout(f"read lock not acquired within {timeout}s")
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self, timeout: float | None = None) -> Iterator[None]:
        with self._cond:
            if not self._cond.wait_for(
                lambda: not self._writing and self._readers == 0, timeout
            ):
                raise LockContentionTimeout(f"write lock not acquired within {timeout}s")
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class HistoryBuffer:
    """Fixed-capacity FIFO of samples for one series, oldest first."""

    def __init__(
        self, series: str, capacity: int, lock_timeout: float | None = None
    ) -> None:
        if capacity < 1:
            raise ConfigurationError(f"{series}: capacity must be >= 1, got {capacity}")
        self.series = series
        self.lock_timeout = lock_timeout
        self._samples: deque[Sample] = deque(maxlen=capacity)
        self._lock = ReadWriteLock()

    @property
    def capacity(self) -> int:
        return self._samples.maxlen or 0

    def __len__(self) -> int:
        return len(self._samples)

    def _wait(self, timeout: float | None) -> float | None:
        return self.lock_timeout if timeout is None else timeout

    def push(self, sample: Sample, timeout: float | None = None) -> None:
        """Append *sample*, evicting the oldest one when full.

        Raises:
            OutOfOrderSample: ``sample.timestamp`` is before the newest
                buffered timestamp. The buffer is left unchanged.
            LockContentionTimeout: the write lock was not free in time.
        """
        with self._lock.write(self._wait(timeout)):
            if self._samples and sample.timestamp < self._samples[-1].timestamp:
                raise OutOfOrderSample(
                    self.series, sample.timestamp, self._samples[-1].timestamp
                )
            # deque(maxlen=...) drops the head in the same call
            self._samples.append(sample)

    def snapshot(self, timeout: float | None = None) -> tuple[Sample, ...]:
        """Return an immutable copy of the buffered samples, oldest first."""
        with self._lock.read(self._wait(timeout)):
            return tuple(self._samples)

    def last(self, timeout: float | None = None) -> Sample | None:
        with self._lock.read(self._wait(timeout)):
            return self._samples[-1] if self._samples else None


class MetricsState:
    """History buffers for every tracked series.

    The set of series is fixed at construction; afterwards only buffer
    contents change, so the mapping itself needs no locking.
    """

    def __init__(
        self,
        series_ids: Iterable[str],
        capacity: int,
        lock_timeout: float | None = None,
    ) -> None:
        ids = list(series_ids)
        if not ids:
            raise ConfigurationError("no series to track")
        if len(set(ids)) != len(ids):
            raise ConfigurationError(f"duplicate series ids: {ids}")
        self.capacity = capacity
        self.lock_timeout = lock_timeout
        self._buffers: Mapping[str, HistoryBuffer] = MappingProxyType(
            {sid: HistoryBuffer(sid, capacity, lock_timeout) for sid in ids}
        )
        self._processes: tuple[ProcessInfo, ...] = ()
        self._processes_lock = ReadWriteLock()

    @property
    def buffers(self) -> Mapping[str, HistoryBuffer]:
        return self._buffers

    @property
    def series_ids(self) -> tuple[str, ...]:
        return tuple(self._buffers)

    def __getitem__(self, series: str) -> HistoryBuffer:
        return self._buffers[series]

    def __contains__(self, series: object) -> bool:
        return series in self._buffers

    def __iter__(self) -> Iterator[str]:
        return iter(self._buffers)

    def __len__(self) -> int:
        return len(self._buffers)

    def latest(self, series: str, timeout: float | None = None) -> float | None:
        """Most recent value for *series*, or None if nothing is buffered yet."""
        sample = self._buffers[series].last(timeout)
        return sample.value if sample is not None else None

    def set_processes(
        self, processes: Iterable[ProcessInfo], timeout: float | None = None
    ) -> None:
        """Replace the cached top-process table."""
        rows = tuple(processes)
        wait = self.lock_timeout if timeout is None else timeout
        with self._processes_lock.write(wait):
            self._processes = rows

    def processes(self, timeout: float | None = None) -> tuple[ProcessInfo, ...]:
        wait = self.lock_timeout if timeout is None else timeout
        with self._processes_lock.read(wait):
            return self._processes

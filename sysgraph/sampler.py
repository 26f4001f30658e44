"""Background sampling loop.

The sampler owns the only write path into ``MetricsState``. Each round reads
the metrics source with no lock held, then pushes one sample per series;
every push is its own critical section, so the renderer may see a round
half-applied across series but never a half-applied buffer.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from sysgraph.errors import LockContentionTimeout, MetricsUnavailable, OutOfOrderSample
from sysgraph.history import MetricsState, Sample
from sysgraph.sources import MetricsSource

logger = logging.getLogger(__name__)


class Sampler:
    """Periodically captures metrics into the shared history buffers."""

    def __init__(
        self,
        source: MetricsSource,
        state: MetricsState,
        interval: float,
        lock_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        top_processes: int = 0,
    ) -> None:
        self.source = source
        self.state = state
        self.interval = interval
        self.lock_timeout = lock_timeout
        self.top_processes = top_processes
        self._clock = clock

        self.stop_event = threading.Event()
        self.thread: threading.Thread | None = None
        self.rounds = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def tick(self) -> int:
        """Run one capture-and-append round. Returns the number of series updated."""
        try:
            values = self.source.sample_all()
        except MetricsUnavailable as e:
            logger.warning("Metrics source failed this round: %s", e)
            self.failures += 1
            return 0
        captured_at = self._clock()

        updated = 0
        for series in self.state:
            if self.stop_event.is_set():
                logger.debug("Round abandoned after %d series", updated)
                break
            value = values.get(series)
            if value is None:
                logger.debug("%s: metrics unavailable, skipping", series)
                continue
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.debug("%s: non-numeric value %r, skipping", series, value)
                continue
            try:
                self.state[series].push(Sample(captured_at, value), self.lock_timeout)
            except OutOfOrderSample as e:
                logger.warning("Dropping sample: %s", e)
                continue
            except LockContentionTimeout as e:
                logger.warning("%s: %s, retrying next round", series, e)
                self.failures += 1
                continue
            updated += 1

        if self.top_processes > 0 and not self.stop_event.is_set():
            self._refresh_processes()

        self.rounds += 1
        return updated

    def _refresh_processes(self) -> None:
        try:
            rows = self.source.top_processes(self.top_processes)
        except (OSError, RuntimeError) as e:
            logger.debug("Process scan failed: %s", e)
            return
        try:
            self.state.set_processes(rows, self.lock_timeout)
        except LockContentionTimeout as e:
            logger.warning("process table: %s, retrying next round", e)
            self.failures += 1

    def start(self) -> None:
        if self.running:
            logger.warning("Sampler already running")
            return

        self.stop_event.clear()
        self.thread = threading.Thread(
            target=self._sampling_loop, name="sysgraph-sampler", daemon=True
        )
        self.thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the loop to exit and wait for any in-flight round."""
        self.stop_event.set()
        thread = self.thread
        if thread is None:
            return
        if thread.is_alive():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Sampler did not stop within %.1fs", timeout)
                return
        self.thread = None

    def _sampling_loop(self) -> None:
        logger.info("Sampler started (every %.2fs, %d series)", self.interval, len(self.state))
        while not self.stop_event.is_set():
            started = time.monotonic()
            try:
                self.tick()
            except Exception as e:
                logger.error("Error in sampling round: %s", e, exc_info=True)
                self.failures += 1
            elapsed = time.monotonic() - started
            self.stop_event.wait(max(0.0, self.interval - elapsed))
        logger.info("Sampler stopped after %d rounds", self.rounds)

"""Frame assembly: history snapshots in, chart points out.

The renderer runs on the UI thread. It never mutates history; for each
visible series it copies the buffer under a bounded read lock, maps the
samples onto the chart's unit square and hands them to a chart surface.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import Protocol

from sysgraph.config import DashboardSettings, SeriesSpec
from sysgraph.errors import LockContentionTimeout
from sysgraph.history import MetricsState, ProcessInfo, Sample

logger = logging.getLogger(__name__)

# (x, y), both in [0, 1]; x = 1 is "now", y = 1 is the series ceiling
Point = tuple[float, float]


class ChartSurface(Protocol):
    def begin_frame(self) -> None: ...

    def plot(self, series: SeriesSpec, label: str, points: Sequence[Point]) -> None: ...

    def table(self, rows: Sequence[ProcessInfo]) -> None: ...

    def end_frame(self) -> None: ...


# ── Formatting helpers ─────────────────────────────────────────────────────


def fmt_bytes(n: int | float) -> str:
    """Human-readable byte count (binary prefixes)."""
    v = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(v) < 1024:
            return f"{v:.1f} {unit}"
        v /= 1024
    return f"{v:.1f} TiB"


def fmt_rate(bps: float) -> str:
    """Human-readable transfer rate."""
    if bps < 1024:
        return f"{bps:.0f} B/s"
    if bps < 1024 * 1024:
        return f"{bps / 1024:.1f} KB/s"
    if bps < 1024**3:
        return f"{bps / 1024 ** 2:.1f} MB/s"
    return f"{bps / 1024 ** 3:.1f} GB/s"


def format_value(value: float | None, unit: str) -> str:
    if value is None:
        return "n/a"
    if unit == "%":
        return f"{value:.1f}%"
    if unit == "B":
        return fmt_bytes(value)
    if unit == "B/s":
        return fmt_rate(value)
    return f"{value:.2f}"


# ── Point conversion ───────────────────────────────────────────────────────


def to_points(
    samples: Sequence[Sample],
    now: float,
    window: float,
    ceiling: float | None = None,
) -> list[Point]:
    """Map samples onto the unit square.

    x is the sample's age relative to *window* seconds ending at *now*;
    samples older than the window are dropped. y is ``value / ceiling``
    clamped to [0, 1]. Without a ceiling the largest value in the window
    is used.
    """
    kept = [
        (min(1.0, 1.0 - (now - s.timestamp) / window), s.value)
        for s in samples
        if now - s.timestamp <= window
    ]
    if not kept:
        return []
    if ceiling is None:
        ceiling = max(v for _, v in kept)
    if ceiling <= 0:
        return [(x, 0.0) for x, _ in kept]
    return [(x, min(1.0, max(0.0, v / ceiling))) for x, v in kept]


def series_label(spec: SeriesSpec, samples: Sequence[Sample]) -> str:
    latest = samples[-1].value if samples else None
    label = f"{spec.label} {format_value(latest, spec.unit)}"
    if spec.max is None and samples:
        peak = max(s.value for s in samples)
        label += f" (peak {format_value(peak, spec.unit)})"
    return label


# ── Renderer ───────────────────────────────────────────────────────────────


class Renderer:
    """Draws one frame per call from the current history snapshots."""

    def __init__(
        self,
        state: MetricsState,
        settings: DashboardSettings,
        surface: ChartSurface,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state = state
        self.settings = settings
        self.surface = surface
        self._clock = clock
        self._visible: dict[str, bool] = {s.id: s.visible for s in settings.series}
        self._frame_lock = threading.Lock()

        # Previous frame, reused when a snapshot times out
        self._last_points: dict[str, list[Point]] = {}
        self._last_labels: dict[str, str] = {}
        self._last_processes: tuple[ProcessInfo, ...] = ()

        self.frames = 0
        self.skipped = 0
        self.failed = 0
        self.stale_series = 0

    def visible_series(self) -> list[SeriesSpec]:
        return [s for s in self.settings.series if self._visible.get(s.id, False)]

    def toggle(self, series_id: str) -> bool:
        """Flip visibility of *series_id*. Returns the new state."""
        self._visible[series_id] = not self._visible.get(series_id, False)
        return self._visible[series_id]

    def _series_frame(self, spec: SeriesSpec, now: float) -> tuple[str, list[Point]] | None:
        try:
            samples = self.state[spec.id].snapshot(self.settings.lock_timeout)
        except LockContentionTimeout:
            logger.debug("%s: snapshot timed out, reusing previous frame", spec.id)
            return None
        points = to_points(samples, now, self.settings.window_seconds, spec.max)
        label = series_label(spec, samples)
        self._last_points[spec.id] = points
        self._last_labels[spec.id] = label
        return label, points

    def _draw_processes(self) -> None:
        try:
            rows = self.state.processes(self.settings.lock_timeout)
            self._last_processes = rows
        except LockContentionTimeout:
            logger.debug("process table timed out, reusing previous frame")
            rows = self._last_processes
        try:
            self.surface.table(rows)
        except Exception as e:
            logger.error("Failed to draw process table: %s", e, exc_info=True)

    def draw_frame(self, now: float | None = None) -> bool:
        """Draw the latest data for every visible series.

        Returns False without drawing if another frame is still in progress;
        frames are dropped, never queued. Also returns False if the surface
        fails to start or finish the frame; the error is logged and the next
        frame starts clean.
        """
        if not self._frame_lock.acquire(blocking=False):
            self.skipped += 1
            return False
        try:
            now = self._clock() if now is None else now
            stale = 0
            try:
                self.surface.begin_frame()
            except Exception as e:
                logger.error("Failed to start frame: %s", e, exc_info=True)
                self.failed += 1
                return False
            for spec in self.visible_series():
                frame = self._series_frame(spec, now)
                if frame is None:
                    stale += 1
                    label = self._last_labels.get(spec.id, spec.label)
                    points = self._last_points.get(spec.id, [])
                else:
                    label, points = frame
                try:
                    self.surface.plot(spec, label, points)
                except Exception as e:
                    logger.error("Failed to draw %s: %s", spec.id, e, exc_info=True)
            if self.settings.top_processes > 0:
                self._draw_processes()
            try:
                self.surface.end_frame()
            except Exception as e:
                logger.error("Failed to finish frame: %s", e, exc_info=True)
                self.failed += 1
                return False
            self.stale_series = stale
            self.frames += 1
            return True
        finally:
            self._frame_lock.release()

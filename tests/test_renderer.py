"""Tests for sysgraph.renderer."""

from __future__ import annotations

import threading
from collections.abc import Sequence

import pytest

from sysgraph.config import DashboardSettings, SeriesSpec
from sysgraph.history import MetricsState, ProcessInfo, Sample
from sysgraph.renderer import (
    Point,
    Renderer,
    fmt_bytes,
    fmt_rate,
    format_value,
    series_label,
    to_points,
)

CPU = SeriesSpec(id="cpu", label="CPU", unit="%", color="green", max=100.0)
MEM = SeriesSpec(id="mem", label="Memory", unit="%", color="cyan", max=100.0)
NET = SeriesSpec(id="net", label="Net RX", unit="B/s", color="yellow", max=None)


class RecordingSurface:
    def __init__(self) -> None:
        self.frames: list[list[tuple[str, str, list[Point]]]] = []
        self._current: list[tuple[str, str, list[Point]]] = []
        self.tables: list[list[ProcessInfo]] = []

    def begin_frame(self) -> None:
        self._current = []

    def plot(self, series: SeriesSpec, label: str, points: Sequence[Point]) -> None:
        self._current.append((series.id, label, list(points)))

    def table(self, rows: Sequence[ProcessInfo]) -> None:
        self.tables.append(list(rows))

    def end_frame(self) -> None:
        self.frames.append(self._current)

    @property
    def last(self) -> dict[str, tuple[str, list[Point]]]:
        return {sid: (label, pts) for sid, label, pts in self.frames[-1]}


def _settings(
    *series: SeriesSpec,
    capacity: int = 10,
    lock_timeout: float = 0.01,
    top_processes: int = 0,
) -> DashboardSettings:
    return DashboardSettings(
        sample_interval=1.0,
        refresh_interval=0.25,
        capacity=capacity,
        lock_timeout=lock_timeout,
        series=series,
        top_processes=top_processes,
    )


def _setup(*series: SeriesSpec, capacity: int = 10) -> tuple[MetricsState, Renderer, RecordingSurface]:
    settings = _settings(*series, capacity=capacity)
    state = MetricsState(settings.series_ids, settings.capacity, settings.lock_timeout)
    surface = RecordingSurface()
    return state, Renderer(state, settings, surface), surface


# ── Formatting ─────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (0, "0.0 B"),
        (512, "512.0 B"),
        (1024, "1.0 KiB"),
        (1024 * 1024, "1.0 MiB"),
        (1024**3, "1.0 GiB"),
        (1024**4, "1.0 TiB"),
        (1536, "1.5 KiB"),
    ],
)
def test_fmt_bytes(value: int | float, expected: str) -> None:
    assert fmt_bytes(value) == expected


@pytest.mark.parametrize(
    ("bps", "expected"),
    [
        (0, "0 B/s"),
        (500, "500 B/s"),
        (1024, "1.0 KB/s"),
        (1024 * 1024, "1.0 MB/s"),
        (1024**3, "1.0 GB/s"),
    ],
)
def test_fmt_rate(bps: float, expected: str) -> None:
    assert fmt_rate(bps) == expected


@pytest.mark.parametrize(
    ("value", "unit", "expected"),
    [
        (None, "%", "n/a"),
        (42.26, "%", "42.3%"),
        (2048, "B", "2.0 KiB"),
        (2048, "B/s", "2.0 KB/s"),
        (3.14159, "", "3.14"),
    ],
)
def test_format_value(value: float | None, unit: str, expected: str) -> None:
    assert format_value(value, unit) == expected


def test_series_label_fixed_ceiling() -> None:
    assert series_label(CPU, (Sample(1.0, 10.0), Sample(2.0, 55.0))) == "CPU 55.0%"


def test_series_label_autoscale_shows_peak() -> None:
    label = series_label(NET, (Sample(1.0, 2048.0), Sample(2.0, 1024.0)))
    assert label == "Net RX 1.0 KB/s (peak 2.0 KB/s)"


def test_series_label_empty() -> None:
    assert series_label(CPU, ()) == "CPU n/a"


# ── to_points ──────────────────────────────────────────────────────────────


class TestToPoints:
    def test_newest_at_right_edge(self) -> None:
        samples = [Sample(8.0, 50.0), Sample(9.0, 25.0), Sample(10.0, 100.0)]
        points = to_points(samples, now=10.0, window=10.0, ceiling=100.0)
        assert points == [
            pytest.approx((0.8, 0.5)),
            pytest.approx((0.9, 0.25)),
            pytest.approx((1.0, 1.0)),
        ]

    def test_drops_samples_older_than_window(self) -> None:
        samples = [Sample(0.0, 1.0), Sample(5.0, 1.0), Sample(10.0, 1.0)]
        points = to_points(samples, now=10.0, window=5.0, ceiling=1.0)
        assert [x for x, _ in points] == pytest.approx([0.0, 1.0])

    def test_future_timestamp_clamped(self) -> None:
        points = to_points([Sample(11.0, 1.0)], now=10.0, window=10.0, ceiling=1.0)
        assert points == [(1.0, 1.0)]

    def test_values_clamped(self) -> None:
        samples = [Sample(9.0, -5.0), Sample(10.0, 150.0)]
        points = to_points(samples, now=10.0, window=10.0, ceiling=100.0)
        assert [y for _, y in points] == [0.0, 1.0]

    def test_autoscale_uses_window_max(self) -> None:
        samples = [Sample(9.0, 200.0), Sample(10.0, 400.0)]
        points = to_points(samples, now=10.0, window=10.0)
        assert [y for _, y in points] == pytest.approx([0.5, 1.0])

    def test_autoscale_all_zero(self) -> None:
        samples = [Sample(9.0, 0.0), Sample(10.0, 0.0)]
        assert [y for _, y in to_points(samples, now=10.0, window=10.0)] == [0.0, 0.0]

    def test_empty(self) -> None:
        assert to_points([], now=10.0, window=10.0) == []

    def test_order_preserved(self) -> None:
        samples = [Sample(float(t), float(t)) for t in range(1, 11)]
        xs = [x for x, _ in to_points(samples, now=10.0, window=10.0, ceiling=10.0)]
        assert xs == sorted(xs)


# ── Renderer.draw_frame ────────────────────────────────────────────────────


class TestDrawFrame:
    def test_plots_every_visible_series(self) -> None:
        state, renderer, surface = _setup(CPU, MEM)
        state["cpu"].push(Sample(9.0, 50.0))
        state["mem"].push(Sample(9.0, 25.0))

        assert renderer.draw_frame(now=10.0) is True
        frame = surface.last
        assert set(frame) == {"cpu", "mem"}
        label, points = frame["cpu"]
        assert label == "CPU 50.0%"
        assert points == [pytest.approx((0.9, 0.5))]
        assert renderer.frames == 1

    def test_hidden_series_not_plotted(self) -> None:
        hidden = SeriesSpec(id="mem", label="Memory", unit="%", max=100.0, visible=False)
        state, renderer, surface = _setup(CPU, hidden)
        renderer.draw_frame(now=1.0)
        assert set(surface.last) == {"cpu"}

    def test_toggle(self) -> None:
        state, renderer, surface = _setup(CPU, MEM)
        assert renderer.toggle("mem") is False
        renderer.draw_frame(now=1.0)
        assert set(surface.last) == {"cpu"}
        assert renderer.toggle("mem") is True
        renderer.draw_frame(now=1.0)
        assert set(surface.last) == {"cpu", "mem"}

    def test_empty_buffers_draw_empty_series(self) -> None:
        state, renderer, surface = _setup(CPU)
        renderer.draw_frame(now=1.0)
        assert surface.last["cpu"] == ("CPU n/a", [])

    def test_does_not_mutate_history(self) -> None:
        state, renderer, surface = _setup(CPU)
        for t in range(1, 6):
            state["cpu"].push(Sample(float(t), float(t)))
        before = state["cpu"].snapshot()
        renderer.draw_frame(now=100.0)
        assert state["cpu"].snapshot() == before

    def test_points_bounded_by_capacity(self) -> None:
        state, renderer, surface = _setup(CPU, capacity=5)
        for t in range(1, 21):
            state["cpu"].push(Sample(float(t), 10.0))
        renderer.draw_frame(now=20.0)
        assert len(surface.last["cpu"][1]) == 5

    def test_contention_reuses_previous_frame(self) -> None:
        state, renderer, surface = _setup(CPU, MEM)
        state["cpu"].push(Sample(9.0, 50.0))
        state["mem"].push(Sample(9.0, 30.0))
        renderer.draw_frame(now=10.0)
        previous_cpu = surface.last["cpu"]

        state["mem"].push(Sample(10.0, 40.0))
        with state["cpu"]._lock.write():
            assert renderer.draw_frame(now=10.0) is True

        frame = surface.last
        assert frame["cpu"] == previous_cpu
        assert frame["mem"][0] == "Memory 40.0%"
        assert renderer.stale_series == 1

    def test_contention_before_first_frame(self) -> None:
        state, renderer, surface = _setup(CPU)
        with state["cpu"]._lock.write():
            renderer.draw_frame(now=1.0)
        assert surface.last["cpu"] == ("CPU", [])

    def test_plot_error_does_not_abort_frame(self, caplog: pytest.LogCaptureFixture) -> None:
        class FlakySurface(RecordingSurface):
            def plot(self, series: SeriesSpec, label: str, points: Sequence[Point]) -> None:
                if series.id == "cpu":
                    raise RuntimeError("draw failed")
                super().plot(series, label, points)

        settings = _settings(CPU, MEM)
        state = MetricsState(settings.series_ids, settings.capacity)
        surface = FlakySurface()
        renderer = Renderer(state, settings, surface)
        with caplog.at_level("ERROR", logger="sysgraph.renderer"):
            assert renderer.draw_frame(now=1.0) is True
        assert set(surface.last) == {"mem"}
        assert "Failed to draw cpu" in caplog.text

    def test_end_frame_error_is_contained(self, caplog: pytest.LogCaptureFixture) -> None:
        class BrokenEndSurface(RecordingSurface):
            def end_frame(self) -> None:
                raise RuntimeError("curses draw failed")

        settings = _settings(CPU)
        state = MetricsState(settings.series_ids, settings.capacity)
        renderer = Renderer(state, settings, BrokenEndSurface())
        with caplog.at_level("ERROR", logger="sysgraph.renderer"):
            assert renderer.draw_frame(now=1.0) is False
        assert "Failed to finish frame" in caplog.text
        assert "curses draw failed" in caplog.text
        assert renderer.failed == 1
        assert renderer.frames == 0
        # Frame lock released: the next frame is attempted, not skipped
        assert renderer.draw_frame(now=2.0) is False
        assert renderer.skipped == 0
        assert renderer.failed == 2

    def test_begin_frame_error_is_contained(self, caplog: pytest.LogCaptureFixture) -> None:
        class BrokenBeginSurface(RecordingSurface):
            def begin_frame(self) -> None:
                raise RuntimeError("terminal gone")

        settings = _settings(CPU)
        state = MetricsState(settings.series_ids, settings.capacity)
        surface = BrokenBeginSurface()
        renderer = Renderer(state, settings, surface)
        with caplog.at_level("ERROR", logger="sysgraph.renderer"):
            assert renderer.draw_frame(now=1.0) is False
        assert "Failed to start frame" in caplog.text
        assert surface.frames == []
        assert renderer.failed == 1

    def test_concurrent_frame_is_skipped(self) -> None:
        entered = threading.Event()
        release = threading.Event()

        class SlowSurface(RecordingSurface):
            def begin_frame(self) -> None:
                super().begin_frame()
                entered.set()
                release.wait(2.0)

        settings = _settings(CPU)
        state = MetricsState(settings.series_ids, settings.capacity)
        surface = SlowSurface()
        renderer = Renderer(state, settings, surface)

        t = threading.Thread(target=renderer.draw_frame, kwargs={"now": 1.0})
        t.start()
        assert entered.wait(2.0)
        try:
            assert renderer.draw_frame(now=1.0) is False
            assert renderer.skipped == 1
        finally:
            release.set()
            t.join(timeout=2.0)
        assert renderer.frames == 1

    def test_uses_clock_when_now_omitted(self) -> None:
        settings = _settings(CPU)
        state = MetricsState(settings.series_ids, settings.capacity)
        state["cpu"].push(Sample(5.0, 100.0))
        surface = RecordingSurface()
        renderer = Renderer(state, settings, surface, clock=lambda: 5.0)
        renderer.draw_frame()
        assert surface.last["cpu"][1] == [(1.0, 1.0)]


# ── Process table ──────────────────────────────────────────────────────────


class TestProcessTable:
    ROWS = (
        ProcessInfo(pid=10, name="python", cpu_percent=80.0, memory_percent=2.5, rss=1024),
        ProcessInfo(pid=20, name="bash", cpu_percent=5.0, memory_percent=0.1, rss=512),
    )

    def _setup(self) -> tuple[MetricsState, Renderer, RecordingSurface]:
        settings = _settings(CPU, top_processes=5)
        state = MetricsState(settings.series_ids, settings.capacity, settings.lock_timeout)
        surface = RecordingSurface()
        return state, Renderer(state, settings, surface), surface

    def test_rows_passed_to_surface(self) -> None:
        state, renderer, surface = self._setup()
        state.set_processes(self.ROWS)
        renderer.draw_frame(now=1.0)
        assert surface.tables == [list(self.ROWS)]

    def test_hidden_when_disabled(self) -> None:
        state, renderer, surface = _setup(CPU)
        state.set_processes(self.ROWS)
        renderer.draw_frame(now=1.0)
        assert surface.tables == []

    def test_contention_reuses_previous_rows(self) -> None:
        state, renderer, surface = self._setup()
        state.set_processes(self.ROWS)
        renderer.draw_frame(now=1.0)
        with state._processes_lock.write():
            assert renderer.draw_frame(now=2.0) is True
        assert surface.tables[-1] == list(self.ROWS)

    def test_table_error_does_not_abort_frame(self, caplog: pytest.LogCaptureFixture) -> None:
        class BrokenTableSurface(RecordingSurface):
            def table(self, rows: Sequence[ProcessInfo]) -> None:
                raise RuntimeError("bad row")

        settings = _settings(CPU, top_processes=5)
        state = MetricsState(settings.series_ids, settings.capacity)
        surface = BrokenTableSurface()
        renderer = Renderer(state, settings, surface)
        with caplog.at_level("ERROR", logger="sysgraph.renderer"):
            assert renderer.draw_frame(now=1.0) is True
        assert set(surface.last) == {"cpu"}
        assert "Failed to draw process table" in caplog.text

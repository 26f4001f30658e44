"""Interactive terminal dashboard: scrolling charts of live host metrics.

A background sampler fills per-series history buffers while the curses loop
redraws them on its own, faster cadence. Each visible series gets a panel
with a filled area chart; the newest sample is at the right edge.

Usage:
    uv run sysgraph
    uv run sysgraph --interval 0.5 --history 240 --config path/to/config.toml
    uv run sysgraph --log-file /tmp/sysgraph.log --debug
"""

from __future__ import annotations

import argparse
import curses
import logging
import sys
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from sysgraph.config import (
    COLORS,
    DashboardSettings,
    SeriesSpec,
    build_settings,
    dump_default_config,
    load_config,
)
from sysgraph.errors import ConfigurationError
from sysgraph.history import MetricsState, ProcessInfo
from sysgraph.renderer import Point, Renderer, fmt_bytes
from sysgraph.sampler import Sampler
from sysgraph.sources import MetricsSource, PsutilSource

logger = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────────────────

BLOCKS = " ▁▂▃▄▅▆▇█"
EIGHTHS = len(BLOCKS) - 1

# Curses colour-pair IDs
C_TITLE = 1
C_DIM = 2
_C_SERIES_BASE = 10  # one pair per entry in config.COLORS

MIN_PANEL_H = 4


# ── Colour helpers ─────────────────────────────────────────────────────────


def _init_colors() -> None:
    curses.start_color()
    curses.use_default_colors()
    curses.init_pair(C_TITLE, curses.COLOR_CYAN, -1)
    curses.init_pair(C_DIM, curses.COLOR_WHITE, -1)
    for i, name in enumerate(COLORS):
        curses.init_pair(_C_SERIES_BASE + i, getattr(curses, f"COLOR_{name.upper()}"), -1)


def series_color(color: str) -> int:
    try:
        return _C_SERIES_BASE + COLORS.index(color)
    except ValueError:
        return C_DIM


# ── Chart geometry ─────────────────────────────────────────────────────────


def column_levels(points: Sequence[Point], width: int, height: int) -> list[int]:
    """Bar height per column, in eighths of a row.

    Points are placed by x; when several land in the same column the later
    (newer) one wins.
    """
    levels = [0] * width
    if width < 1 or height < 1:
        return levels
    for x, y in points:
        col = min(width - 1, max(0, round(x * (width - 1))))
        levels[col] = round(min(1.0, max(0.0, y)) * height * EIGHTHS)
    return levels


def render_rows(levels: Sequence[int], height: int) -> list[str]:
    """Turn column levels into *height* text rows, top row first."""
    rows: list[str] = []
    for r in range(height):
        floor = (height - 1 - r) * EIGHTHS
        rows.append(
            "".join(BLOCKS[max(0, min(EIGHTHS, level - floor))] for level in levels)
        )
    return rows


# ── Curses drawing primitives ──────────────────────────────────────────────


def _safe(win: curses.window, *args: Any) -> None:
    """addstr wrapper that swallows out-of-bounds errors."""
    try:
        win.addstr(*args)
    except curses.error:
        pass


def _draw_box(
    win: curses.window,
    y: int,
    x: int,
    h: int,
    w: int,
    title: str = "",
) -> curses.window | None:
    """Draw a bordered box and return the inner sub-window."""
    max_y, max_x = win.getmaxyx()
    h = min(h, max_y - y)
    w = min(w, max_x - x)
    if h < 3 or w < 4:
        return None
    try:
        sub = win.subwin(h, w, y, x)
        sub.box()
        if title:
            title = title[: w - 6]
            sub.addstr(
                0, 2, f" {title} ", curses.color_pair(C_TITLE) | curses.A_BOLD
            )
        return sub
    except curses.error:
        return None


def _draw_header(win: curses.window, w: int) -> None:
    ts = time.strftime("%H:%M:%S")
    attr = curses.color_pair(C_TITLE) | curses.A_REVERSE
    _safe(win, 0, 0, " " * (w - 1), attr)
    _safe(win, 0, 1, "sysgraph", attr | curses.A_BOLD)
    hint = "1-9: toggle  q: quit"
    _safe(win, 0, max(0, w - len(hint) - 2), hint, attr)
    _safe(win, 0, (w - len(ts)) // 2, ts, attr)


def draw_chart_panel(
    win: curses.window,
    y: int,
    x: int,
    w: int,
    h: int,
    series: SeriesSpec,
    label: str,
    points: Sequence[Point],
) -> None:
    box = _draw_box(win, y, x, h, w, label)
    if not box:
        return
    inner_h, inner_w = h - 2, w - 2
    rows = render_rows(column_levels(points, inner_w, inner_h), inner_h)
    attr = curses.color_pair(series_color(series.color))
    for i, row in enumerate(rows):
        # Last cell of the last row would scroll the sub-window
        _safe(box, 1 + i, 1, row[: inner_w - (1 if i == inner_h - 1 else 0)], attr)


def draw_proc_panel(
    win: curses.window,
    y: int,
    x: int,
    w: int,
    h: int,
    procs: Sequence[ProcessInfo],
) -> None:
    box = _draw_box(win, y, x, h, w, "Processes")
    if not box:
        return
    row = 1

    hdr = f" {'PID':>7s}  {'CPU%':>6s}  {'MEM%':>6s}  {'MEM':>10s}  NAME"
    _safe(box, row, 1, hdr[: w - 3], curses.color_pair(C_TITLE) | curses.A_BOLD)
    row += 1
    _safe(box, row, 1, "─" * min(w - 3, 60), curses.color_pair(C_DIM))
    row += 1

    for p in procs[: max(0, h - 4)]:
        line = (
            f" {p.pid:>7d}  {p.cpu_percent:>5.1f}%  {p.memory_percent:>5.1f}%"
            f"  {fmt_bytes(p.rss):>10s}  {p.name}"
        )
        color = "green"
        if p.cpu_percent >= 50:
            color = "red"
        elif p.cpu_percent >= 20:
            color = "yellow"
        _safe(box, row, 1, line[: w - 3], curses.color_pair(series_color(color)))
        row += 1


# ── Chart surface ──────────────────────────────────────────────────────────


class CursesSurface:
    """Chart surface that lays out one panel per plotted series.

    ``plot`` and ``table`` only collect data; layout needs to know how many
    panels the frame has, so everything is drawn in ``end_frame``. A panel
    that fails to draw is logged and left blank.
    """

    def __init__(
        self, stdscr: curses.window, status: Callable[[], str] | None = None
    ) -> None:
        self.win = stdscr
        self.status = status
        self._panels: list[tuple[SeriesSpec, str, list[Point]]] = []
        self._procs: list[ProcessInfo] | None = None

    def begin_frame(self) -> None:
        self._panels = []
        self._procs = None

    def plot(self, series: SeriesSpec, label: str, points: Sequence[Point]) -> None:
        self._panels.append((series, label, list(points)))

    def table(self, rows: Sequence[ProcessInfo]) -> None:
        self._procs = list(rows)

    def end_frame(self) -> None:
        win = self.win
        max_y, max_x = win.getmaxyx()
        win.erase()

        if max_y < 10 or max_x < 40:
            _safe(win, 0, 0, "Terminal too small (need 40x10+)")
            win.refresh()
            return

        _draw_header(win, max_x)
        body_h = max_y - 2  # header + status line

        if self._procs is not None:
            proc_h = min(len(self._procs) + 4, max(6, body_h // 3))
            if body_h - proc_h >= MIN_PANEL_H:
                body_h -= proc_h
                try:
                    draw_proc_panel(win, 1 + body_h, 0, max_x, proc_h, self._procs)
                except Exception as e:
                    logger.error("Failed to draw process panel: %s", e, exc_info=True)

        if not self._panels:
            _safe(win, 2, 2, "No series visible", curses.color_pair(C_DIM))
        else:
            cols = 2 if max_x >= 82 and len(self._panels) > 1 else 1
            rows = -(-len(self._panels) // cols)
            panel_h = body_h // rows
            if panel_h < MIN_PANEL_H:
                rows = max(1, body_h // MIN_PANEL_H)
                panel_h = body_h // rows
            col_w = max_x // cols
            for i, (series, label, points) in enumerate(self._panels[: rows * cols]):
                r, c = divmod(i, cols)
                try:
                    draw_chart_panel(
                        win, 1 + r * panel_h, c * col_w, col_w, panel_h, series, label, points
                    )
                except Exception as e:
                    logger.error("Failed to draw %s panel: %s", series.id, e, exc_info=True)

        if self.status is not None:
            _safe(win, max_y - 1, 1, self.status()[: max_x - 2], curses.color_pair(C_DIM))
        win.refresh()


def _status_line(sampler: Sampler, renderer: Renderer) -> str:
    line = f"rounds {sampler.rounds}  failures {sampler.failures}  frames {renderer.frames}"
    if renderer.stale_series:
        line += f"  stale {renderer.stale_series}"
    if renderer.failed:
        line += f"  draw errors {renderer.failed}"
    return line


# ── Main loop ──────────────────────────────────────────────────────────────


def _dashboard_loop(
    stdscr: curses.window, settings: DashboardSettings, source: MetricsSource
) -> None:
    _init_colors()
    curses.curs_set(0)
    stdscr.timeout(int(settings.refresh_interval * 1000))

    state = MetricsState(settings.series_ids, settings.capacity, settings.lock_timeout)
    sampler = Sampler(
        source,
        state,
        settings.sample_interval,
        settings.lock_timeout,
        top_processes=settings.top_processes,
    )
    surface = CursesSurface(stdscr)
    renderer = Renderer(state, settings, surface)
    surface.status = lambda: _status_line(sampler, renderer)

    sampler.start()
    try:
        while True:
            renderer.draw_frame()

            key = stdscr.getch()
            if key in (ord("q"), ord("Q")):
                return
            if key == curses.KEY_RESIZE:
                stdscr.clear()
            elif ord("1") <= key <= ord("9"):
                idx = key - ord("1")
                if idx < len(settings.series):
                    renderer.toggle(settings.series[idx].id)
    finally:
        sampler.stop()


# ── CLI entry point ────────────────────────────────────────────────────────


def _configure_logging(log_file: Path | None, debug: bool) -> None:
    """Send logs to *log_file*, or nowhere: curses owns the terminal."""
    if log_file is None:
        logging.getLogger().addHandler(logging.NullHandler())
        return
    logging.basicConfig(
        filename=log_file,
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Terminal dashboard with scrolling charts of host metrics.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between samples (default: 1.0)",
    )
    parser.add_argument(
        "--refresh",
        type=float,
        default=None,
        help="Seconds between redraws (default: 0.25)",
    )
    parser.add_argument(
        "--history",
        type=int,
        default=None,
        help="Samples kept per series (default: 120)",
    )
    parser.add_argument(
        "--per-core",
        action="store_true",
        help="Also chart every CPU core",
    )
    parser.add_argument(
        "--processes",
        type=int,
        default=None,
        metavar="N",
        help="Rows in the process table, 0 to hide it (default: 12)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="Path to TOML config file",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        metavar="PATH",
        help="Write logs to this file",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log at DEBUG level (needs --log-file)",
    )
    parser.add_argument(
        "--dump-config",
        action="store_true",
        help="Print the default config as TOML and exit",
    )
    args = parser.parse_args(argv)

    if args.dump_config:
        print(dump_default_config(), end="")
        return

    _configure_logging(args.log_file, args.debug)

    config = load_config(args.config)
    if args.interval is not None:
        config["sample_interval"] = args.interval
    if args.refresh is not None:
        config["refresh_interval"] = args.refresh
    if args.history is not None:
        config["history"] = args.history
    if args.processes is not None:
        config["processes"] = args.processes
    if args.per_core:
        config["per_core"] = True

    source = PsutilSource()
    try:
        settings = build_settings(config, source.series_ids(), source.cpu_count)
    except ConfigurationError as e:
        print(f"sysgraph: {e}", file=sys.stderr)
        raise SystemExit(1) from e

    logger.info(
        "Starting: %d series, sample every %.2fs, redraw every %.2fs, history %d",
        len(settings.series),
        settings.sample_interval,
        settings.refresh_interval,
        settings.capacity,
    )
    try:
        curses.wrapper(_dashboard_loop, settings, source)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

"""Configuration loading for sysgraph.

Loads settings from TOML config files with sensible defaults.
Search order: explicit --config path → ~/.config/sysgraph/config.toml → defaults only.

Everything here is read once at startup; the sampler and renderer receive a
frozen ``DashboardSettings`` and never see the raw dict.
"""

from __future__ import annotations

import sys
import tomllib
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sysgraph.errors import ConfigurationError

DEFAULT_CONFIG: dict[str, Any] = {
    "sample_interval": 1.0,
    "refresh_interval": 0.25,
    "history": 120,
    "lock_timeout": 0.05,
    "per_core": False,
    "processes": 12,
    "series": {
        "cpu": {"label": "CPU", "unit": "%", "color": "green", "max": 100.0},
        "memory-used": {"label": "Memory", "unit": "%", "color": "cyan", "max": 100.0},
        "swap-used": {"label": "Swap", "unit": "%", "color": "magenta", "max": 100.0},
        "net-rx": {"label": "Net RX", "unit": "B/s", "color": "yellow"},
        "net-tx": {"label": "Net TX", "unit": "B/s", "color": "blue"},
    },
}

UNITS = ("%", "B", "B/s")
COLORS = ("black", "red", "green", "yellow", "blue", "magenta", "cyan", "white")

_DEFAULT_PATH = Path.home() / ".config" / "sysgraph" / "config.toml"


@dataclass(frozen=True)
class SeriesSpec:
    """Display metadata for one tracked series."""

    id: str
    label: str
    unit: str = ""
    color: str = "white"
    max: float | None = None  # None = autoscale to the visible window
    visible: bool = True


@dataclass(frozen=True)
class DashboardSettings:
    sample_interval: float
    refresh_interval: float
    capacity: int
    lock_timeout: float
    series: tuple[SeriesSpec, ...]
    top_processes: int = 0  # rows in the process table, 0 = hidden

    @property
    def series_ids(self) -> tuple[str, ...]:
        return tuple(s.id for s in self.series)

    @property
    def window_seconds(self) -> float:
        """Time span covered by a full history buffer."""
        return self.capacity * self.sample_interval


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base. Nested dicts are merged at the first level only."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            # Merge one level: overlay sub-keys into base sub-keys
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration, merging user TOML over defaults.

    Args:
        path: Explicit config file path (from --config). If None, tries the
              default location ~/.config/sysgraph/config.toml.

    Returns:
        Merged configuration dict.

    Raises:
        SystemExit: If an explicit path doesn't exist or can't be parsed.
    """
    if path is not None:
        if not path.is_file():
            print(f"sysgraph: config file not found: {path}", file=sys.stderr)
            raise SystemExit(1)
        try:
            user_config = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            print(f"sysgraph: invalid TOML in {path}: {e}", file=sys.stderr)
            raise SystemExit(1) from e
        return _deep_merge(DEFAULT_CONFIG, user_config)

    # Try default location silently
    if _DEFAULT_PATH.is_file():
        try:
            user_config = tomllib.loads(_DEFAULT_PATH.read_text(encoding="utf-8"))
            return _deep_merge(DEFAULT_CONFIG, user_config)
        except tomllib.TOMLDecodeError:
            print(
                f"sysgraph: warning: ignoring invalid TOML in {_DEFAULT_PATH}",
                file=sys.stderr,
            )

    return dict(DEFAULT_CONFIG)


def _number(config: dict[str, Any], key: str) -> float:
    value = config.get(key, DEFAULT_CONFIG[key])
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{key} must be a number, got {value!r}")
    return float(value)


def _series_spec(sid: str, raw: Any) -> SeriesSpec:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"series.{sid} must be a table")
    unit = str(raw.get("unit", ""))
    if unit and unit not in UNITS:
        raise ConfigurationError(f"series.{sid}: unknown unit {unit!r}")
    color = str(raw.get("color", "white")).lower()
    if color not in COLORS:
        raise ConfigurationError(f"series.{sid}: unknown color {color!r}")
    ceiling = raw.get("max")
    if ceiling is not None:
        if isinstance(ceiling, bool) or not isinstance(ceiling, (int, float)) or ceiling <= 0:
            raise ConfigurationError(f"series.{sid}: max must be a positive number")
        ceiling = float(ceiling)
    return SeriesSpec(
        id=sid,
        label=str(raw.get("label", sid)),
        unit=unit,
        color=color,
        max=ceiling,
        visible=bool(raw.get("visible", True)),
    )


def build_settings(
    config: dict[str, Any],
    available: Iterable[str] | None = None,
    cpu_count: int = 1,
) -> DashboardSettings:
    """Validate a merged config dict and freeze it into ``DashboardSettings``.

    Args:
        config: Output of ``load_config`` (plus any CLI overrides).
        available: Series ids the metrics source can produce. When given,
            any configured series outside this set is rejected.
        cpu_count: Number of cores to expand ``per_core`` into.

    Raises:
        ConfigurationError: On any value the pipeline cannot start with.
    """
    sample_interval = _number(config, "sample_interval")
    refresh_interval = _number(config, "refresh_interval")
    lock_timeout = _number(config, "lock_timeout")
    history = config.get("history", DEFAULT_CONFIG["history"])

    if sample_interval <= 0:
        raise ConfigurationError(f"sample_interval must be > 0, got {sample_interval}")
    if refresh_interval <= 0:
        raise ConfigurationError(f"refresh_interval must be > 0, got {refresh_interval}")
    if lock_timeout < 0:
        raise ConfigurationError(f"lock_timeout must be >= 0, got {lock_timeout}")
    if isinstance(history, bool) or not isinstance(history, int) or history < 1:
        raise ConfigurationError(f"history must be an integer >= 1, got {history!r}")
    processes = config.get("processes", DEFAULT_CONFIG["processes"])
    if isinstance(processes, bool) or not isinstance(processes, int) or processes < 0:
        raise ConfigurationError(f"processes must be an integer >= 0, got {processes!r}")

    series = config.get("series", {})
    if not isinstance(series, dict):
        raise ConfigurationError(f"series must be a table, got {series!r}")
    raw_series: dict[str, Any] = dict(series)
    if config.get("per_core", False):
        for i in range(cpu_count):
            raw_series.setdefault(
                f"cpu-core-{i}",
                {"label": f"Core {i}", "unit": "%", "color": "green", "max": 100.0},
            )

    specs = tuple(
        _series_spec(sid, raw)
        for sid, raw in raw_series.items()
        if not (isinstance(raw, dict) and raw.get("enabled", True) is False)
    )
    if not specs:
        raise ConfigurationError("no series enabled")

    if available is not None:
        known = set(available)
        unknown = [s.id for s in specs if s.id not in known]
        if unknown:
            raise ConfigurationError(f"unsupported series: {', '.join(unknown)}")

    return DashboardSettings(
        sample_interval=sample_interval,
        refresh_interval=refresh_interval,
        capacity=history,
        lock_timeout=lock_timeout,
        top_processes=processes,
        series=specs,
    )


def dump_default_config() -> str:
    """Return the default configuration as a TOML string."""
    lines = [
        "# sysgraph configuration",
        "# Place this file at ~/.config/sysgraph/config.toml",
        "",
        f"sample_interval = {DEFAULT_CONFIG['sample_interval']}",
        f"refresh_interval = {DEFAULT_CONFIG['refresh_interval']}",
        f"history = {DEFAULT_CONFIG['history']}",
        f"lock_timeout = {DEFAULT_CONFIG['lock_timeout']}",
        f"per_core = {str(DEFAULT_CONFIG['per_core']).lower()}",
        f"processes = {DEFAULT_CONFIG['processes']}",
        "",
    ]

    for sid, cfg in DEFAULT_CONFIG["series"].items():
        lines.append(f"[series.{sid}]")
        lines.append(f'label = "{cfg["label"]}"')
        lines.append(f'unit = "{cfg["unit"]}"')
        lines.append(f'color = "{cfg["color"]}"')
        if "max" in cfg:
            lines.append(f"max = {cfg['max']}")
        lines.append("")

    return "\n".join(lines) + "\n"

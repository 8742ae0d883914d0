"""Interactive terminal dashboard for AMD GPUs.

Shows one utilization sparkline per GPU (titled with live power, temperature,
utilization and VRAM readings) above a sortable list of GPU processes, all
sampled from ``amd-smi`` once per interval using curses.

Keys: q quit, ↑/↓ select, ←/→ sort column, Enter/Space reverse sort.

Usage:
    uv run amdtop
    uv run amdtop --interval 2 --config path/to/config.toml
"""

from __future__ import annotations

import argparse
import curses
import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from amdtop.config import dump_default_config, load_config
from amdtop.history import HistoryRing, data_points_for_width
from amdtop.process_table import (
    NAME_WIDTH,
    PID_WIDTH,
    SortState,
    TableView,
    cycle_column,
    render_table,
    sort_title,
    toggle_sort,
)
from amdtop.smi import (
    DeviceMetricSample,
    ProcessUsageRecord,
    SmiError,
    collect_device_metrics,
    collect_process_usage,
)
from amdtop.version import version_banner

logger = logging.getLogger(__name__)

MetricsCollector = Callable[[list[str] | None, float | None], list[DeviceMetricSample]]
ProcessCollector = Callable[[list[str] | None, float | None], list[ProcessUsageRecord]]

# ── Constants ──────────────────────────────────────────────────────────────

SPARK = " ▁▂▃▄▅▆▇█"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
CHART_SHARE = 0.8  # fraction of the screen given to GPU charts

QUIT_KEYS = (ord("q"), ord("Q"), 3)  # 3 = Ctrl-C in raw mode
TOGGLE_KEYS = (curses.KEY_ENTER, ord("\n"), ord("\r"), ord(" "))

# Curses colour-pair IDs
C_CHART = 1
C_TITLE = 2
C_TEXT = 3
C_SELECTED = 4


# ── State ──────────────────────────────────────────────────────────────────


@dataclass
class GpuChart:
    """History and title of one GPU's sparkline."""

    history: HistoryRing
    title: str


@dataclass
class DashboardState:
    """Everything the event loop mutates. Owned by the loop alone."""

    charts: list[GpuChart]
    width: int
    height: int
    sort: SortState = field(default_factory=SortState)
    records: list[ProcessUsageRecord] = field(
        default_factory=lambda: list[ProcessUsageRecord]()
    )
    table: TableView = field(default_factory=TableView)
    selected_row: int = 0
    running: bool = True
    min_points: int = 50
    max_points: int = 500
    name_width: int = NAME_WIDTH
    pid_width: int = PID_WIDTH


def chart_title(sample: DeviceMetricSample) -> str:
    return (
        f"GPU {sample.device} - {sample.power:.1f}W, {sample.gpu_temp:.1f}°C, "
        f"{sample.gfx_util:.1f}% Util, "
        f"VRAM: {sample.vram_used:.0f}/{sample.vram_total:.0f} MB"
    )


def init_state(
    device_count: int,
    width: int,
    height: int,
    config: dict[str, Any],
) -> DashboardState:
    """Create zeroed charts for ``device_count`` GPUs sized to ``width``."""
    min_points = int(config.get("min_points", 50))
    max_points = int(config.get("max_points", 500))
    table_cfg: dict[str, Any] = config.get("table", {})
    capacity = data_points_for_width(width, min_points, max_points)
    state = DashboardState(
        charts=[GpuChart(HistoryRing(capacity), f"GPU {i}") for i in range(device_count)],
        width=width,
        height=height,
        min_points=min_points,
        max_points=max_points,
        name_width=int(table_cfg.get("name_width", NAME_WIDTH)),
        pid_width=int(table_cfg.get("pid_width", PID_WIDTH)),
    )
    refresh_table(state)
    return state


# ── State transitions ──────────────────────────────────────────────────────


def refresh_table(state: DashboardState) -> None:
    state.table = render_table(state.records, state.sort, state.name_width, state.pid_width)
    state.selected_row = min(state.selected_row, len(state.table.lines()) - 1)


def apply_metrics(state: DashboardState, samples: list[DeviceMetricSample]) -> None:
    """Push one tick of device samples into the charts, in reported order."""
    for chart, sample in zip(state.charts, samples):
        chart.history.append(sample.gfx_util)
        chart.title = chart_title(sample)


def apply_processes(state: DashboardState, records: list[ProcessUsageRecord]) -> None:
    state.records = list(records)
    refresh_table(state)


def sample_tick(
    state: DashboardState,
    config: dict[str, Any],
    collect_metrics: MetricsCollector = collect_device_metrics,
    collect_processes: ProcessCollector = collect_process_usage,
) -> None:
    """Run both amd-smi queries once and fold the results into ``state``.

    A failed query leaves its half of the screen as it was.
    """
    commands: dict[str, list[str]] = config.get("commands", {})
    timeout = float(config.get("command_timeout", 0)) or None

    try:
        samples = collect_metrics(commands.get("monitor"), timeout)
    except SmiError as e:
        logger.warning("device metrics unavailable this tick: %s", e)
    else:
        if len(samples) != len(state.charts):
            logger.debug(
                "amd-smi reported %d devices, charting %d",
                len(samples),
                len(state.charts),
            )
        apply_metrics(state, samples)

    try:
        records = collect_processes(commands.get("process"), timeout)
    except SmiError as e:
        logger.warning("process list unavailable this tick: %s", e)
    else:
        apply_processes(state, records)


def apply_resize(state: DashboardState, width: int, height: int) -> None:
    """Rebuild every history for the new width, keeping the newest samples."""
    capacity = data_points_for_width(width, state.min_points, state.max_points)
    for chart in state.charts:
        chart.history = chart.history.resized(capacity)
    state.width = width
    state.height = height
    logger.info("resized to %dx%d, %d points per chart", width, height, capacity)


def handle_key(state: DashboardState, key: int) -> None:
    """Apply a key press. Only touches selection and sort state."""
    if key in QUIT_KEYS:
        state.running = False
    elif key == curses.KEY_UP:
        state.selected_row = max(0, state.selected_row - 1)
    elif key == curses.KEY_DOWN:
        state.selected_row = min(state.selected_row + 1, len(state.table.lines()) - 1)
    elif key == curses.KEY_LEFT:
        cycle_column(state.sort, -1)
        refresh_table(state)
    elif key == curses.KEY_RIGHT:
        cycle_column(state.sort, 1)
        refresh_table(state)
    elif key in TOGGLE_KEYS:
        toggle_sort(state.sort)
        refresh_table(state)


# ── Rendering helpers ──────────────────────────────────────────────────────


def sparkline_rows(values: list[float], width: int, height: int, max_val: float = 100.0) -> list[str]:
    """Render the newest ``width`` values as ``height`` rows of block glyphs, top row first."""
    if width < 1 or height < 1:
        return []
    values = values[-width:]
    steps = len(SPARK) - 1
    levels = [round(min(max(v, 0.0) / max_val, 1.0) * height * steps) for v in values]
    rows: list[str] = []
    for row in range(height - 1, -1, -1):
        base = row * steps
        rows.append("".join(SPARK[max(0, min(level - base, steps))] for level in levels))
    return rows


def visible_window(selected: int, total: int, height: int) -> int:
    """First line to show so that ``selected`` stays inside ``height`` lines."""
    if height < 1 or total <= height:
        return 0
    return max(0, min(selected - height + 1, total - height))


# ── Curses drawing primitives ──────────────────────────────────────────────


def _init_colors() -> None:
    curses.start_color()
    curses.use_default_colors()
    curses.init_pair(C_CHART, curses.COLOR_GREEN, -1)
    curses.init_pair(C_TITLE, curses.COLOR_WHITE, -1)
    curses.init_pair(C_TEXT, curses.COLOR_WHITE, -1)
    curses.init_pair(C_SELECTED, curses.COLOR_BLACK, curses.COLOR_GREEN)


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
            _safe(sub, 0, 2, f" {title} "[: w - 4], curses.color_pair(C_TITLE) | curses.A_BOLD)
        return sub
    except curses.error:
        return None


def draw_chart(win: curses.window, y: int, h: int, w: int, chart: GpuChart) -> None:
    box = _draw_box(win, y, 0, h, w, chart.title)
    if not box:
        return
    inner_h, inner_w = box.getmaxyx()
    rows = sparkline_rows(chart.history.linearize(), inner_w - 2, inner_h - 2)
    for i, line in enumerate(rows):
        _safe(box, 1 + i, 1, line, curses.color_pair(C_CHART))


def draw_process_list(win: curses.window, y: int, h: int, w: int, state: DashboardState) -> None:
    box = _draw_box(win, y, 0, h, w, sort_title(state.sort))
    if not box:
        return
    lines = state.table.lines()
    visible = h - 2
    start = visible_window(state.selected_row, len(lines), visible)
    for i, line in enumerate(lines[start:start + visible]):
        attr = curses.color_pair(C_TEXT)
        if start + i == state.selected_row:
            attr = curses.color_pair(C_SELECTED)
        _safe(box, 1 + i, 1, line[: w - 2], attr)


def draw(stdscr: curses.window, state: DashboardState) -> None:
    """Redraw the whole screen from ``state``."""
    stdscr.erase()
    height, width = state.height, state.width
    count = len(state.charts)

    if height < 3 * count + 3 or width < 20:
        _safe(stdscr, 0, 0, "Terminal too small"[: max(0, width - 1)])
        stdscr.refresh()
        return

    chart_h = max(3, int(height * CHART_SHARE) // count)
    for i, chart in enumerate(state.charts):
        draw_chart(stdscr, i * chart_h, chart_h, width, chart)

    proc_y = chart_h * count
    draw_process_list(stdscr, proc_y, height - proc_y, width, state)
    stdscr.refresh()


# ── Main loop ──────────────────────────────────────────────────────────────


def _dashboard_loop(
    stdscr: curses.window,
    config: dict[str, Any],
    interval: float,
    device_count: int,
) -> None:
    _init_colors()
    curses.curs_set(0)
    stdscr.keypad(True)

    height, width = stdscr.getmaxyx()
    state = init_state(device_count, width, height, config)
    draw(stdscr, state)

    next_tick = time.monotonic() + interval
    while state.running:
        remaining = next_tick - time.monotonic()
        if remaining <= 0:
            sample_tick(state, config)
            next_tick = max(next_tick + interval, time.monotonic())
            draw(stdscr, state)
            continue

        stdscr.timeout(max(1, int(remaining * 1000)))
        key = stdscr.getch()
        if key == -1:
            continue
        if key == curses.KEY_RESIZE:
            height, width = stdscr.getmaxyx()
            apply_resize(state, width, height)
            stdscr.clear()
        else:
            handle_key(state, key)
            if not state.running:
                return
        draw(stdscr, state)


# ── CLI entry point ────────────────────────────────────────────────────────


def _setup_logging(log_file: str) -> None:
    """Send amdtop logs to ``log_file``; the terminal belongs to curses."""
    package_logger = logging.getLogger("amdtop")
    for old in list(package_logger.handlers):
        package_logger.removeHandler(old)
        old.close()
    if not log_file:
        package_logger.addHandler(logging.NullHandler())
        return
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO)


def discover_devices(config: dict[str, Any]) -> int:
    """Count GPUs at startup. Exits with a diagnostic when none can be found."""
    commands: dict[str, list[str]] = config.get("commands", {})
    timeout = float(config.get("command_timeout", 0)) or None
    try:
        samples = collect_device_metrics(commands.get("monitor"), timeout)
    except SmiError as e:
        print(f"amdtop: failed to get GPU metrics: {e}", file=sys.stderr)
        raise SystemExit(1) from e
    if not samples:
        print("amdtop: no GPUs reported by amd-smi", file=sys.stderr)
        raise SystemExit(1)
    return len(samples)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="amdtop",
        description="Terminal dashboard for AMD GPU utilization and processes.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="store_true",
        help="Print version information and exit",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between samples (default: 1.0)",
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
        default=None,
        metavar="PATH",
        help="Write logs to this file",
    )
    parser.add_argument(
        "--dump-config",
        action="store_true",
        help="Print the default configuration as TOML and exit",
    )
    args = parser.parse_args(argv)

    if args.version:
        print(version_banner())
        return
    if args.dump_config:
        print(dump_default_config(), end="")
        return

    config = load_config(args.config)
    _setup_logging(args.log_file if args.log_file is not None else str(config.get("log_file", "")))
    interval = args.interval if args.interval is not None else float(config.get("interval", 1.0))
    if interval <= 0:
        parser.error("--interval must be positive")

    try:
        device_count = discover_devices(config)
        logger.info("starting with %d GPU(s), interval %.1fs", device_count, interval)
        curses.wrapper(_dashboard_loop, config, interval, device_count)
    except KeyboardInterrupt:
        pass
    except curses.error as e:
        print(f"amdtop: failed to initialize terminal: {e}", file=sys.stderr)
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()

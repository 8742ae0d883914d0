"""Sortable, width-aligned text view of GPU processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from amdtop.smi import ProcessUsageRecord

NAME_WIDTH = 20  # minimum; grows to fit the longest name
PID_WIDTH = 8
SEPARATOR = "─"


class SortColumn(Enum):
    """Sortable process table columns, in left-to-right order."""

    GPU = "GPU"
    NAME = "Name"
    PID = "PID"
    USAGE = "Usage"


_COLUMNS = list(SortColumn)


@dataclass
class SortState:
    column: SortColumn = SortColumn.GPU
    reverse: bool = False


@dataclass
class TableView:
    """Formatted process table: header line, separator line, one line per process."""

    header: str = ""
    separator: str = ""
    rows: list[str] = field(default_factory=lambda: list[str]())

    def lines(self) -> list[str]:
        return [self.header, self.separator, *self.rows]


def usage_value(usage: str) -> float:
    """Numeric value of a formatted usage string such as ``"42.5%"``."""
    try:
        return float(usage.strip().rstrip("%"))
    except ValueError:
        return 0.0


def _sort_key(column: SortColumn, rec: ProcessUsageRecord) -> tuple[object, ...]:
    # Trailing fields make the order total so reversing is an exact mirror.
    tiebreak = (rec.device, rec.name, rec.pid)
    if column is SortColumn.GPU:
        return (rec.device, *tiebreak)
    if column is SortColumn.NAME:
        return (rec.name, *tiebreak)
    if column is SortColumn.PID:
        return (rec.pid, *tiebreak)
    return (usage_value(rec.gfx_usage), *tiebreak)


def sort_records(
    records: list[ProcessUsageRecord],
    sort: SortState,
) -> list[ProcessUsageRecord]:
    ordered = sorted(records, key=lambda r: _sort_key(sort.column, r))
    if sort.reverse:
        ordered.reverse()
    return ordered


def cycle_column(sort: SortState, direction: int) -> SortState:
    """Move the sort column left (-1) or right (+1), stopping at either end."""
    index = _COLUMNS.index(sort.column) + direction
    index = max(0, min(index, len(_COLUMNS) - 1))
    sort.column = _COLUMNS[index]
    return sort


def toggle_sort(sort: SortState) -> SortState:
    sort.reverse = not sort.reverse
    return sort


def sort_title(sort: SortState) -> str:
    arrow = " ↓" if sort.reverse else " ↑"
    return f"Process List (Sort: {sort.column.value}{arrow})"


def format_row(rec: ProcessUsageRecord, name_width: int, pid_width: int = PID_WIDTH) -> str:
    return (
        f"[{rec.device:3d}] {rec.name:<{name_width}} │ PID: {rec.pid:<{pid_width}} │ "
        f"MEM: {rec.total_mem:6.1f} MB (VRAM: {rec.vram_mem:6.1f} MB, "
        f"GTT: {rec.gtt_mem:6.1f} MB, CPU: {rec.cpu_mem:6.1f} MB) │ "
        f"GFX: {rec.gfx_usage:>6}"
    )


def format_header(name_width: int, pid_width: int = PID_WIDTH) -> str:
    return (
        f"[GPU] {'NAME':<{name_width}} │ {'PID':<{pid_width + 5}} │ "
        f"{'MEMORY USAGE':<64} │ {'GPU USAGE':<10}"
    )


def render_table(
    records: list[ProcessUsageRecord],
    sort: SortState,
    name_width: int = NAME_WIDTH,
    pid_width: int = PID_WIDTH,
) -> TableView:
    """Build the process table for one tick.

    The name column is as wide as the longest name (at least ``name_width``),
    so alignment holds within a tick but can shift between ticks.
    """
    width = max([name_width, *(len(r.name) for r in records)])
    header = format_header(width, pid_width)
    return TableView(
        header=header,
        separator=SEPARATOR * len(header),
        rows=[format_row(r, width, pid_width) for r in sort_records(records, sort)],
    )

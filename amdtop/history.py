"""Fixed-size utilization history feeding the per-GPU sparklines."""

from __future__ import annotations

MIN_POINTS = 50
MAX_POINTS = 500
_CHART_CHROME = 4  # borders + padding around a sparkline


def data_points_for_width(
    width: int,
    min_points: int = MIN_POINTS,
    max_points: int = MAX_POINTS,
) -> int:
    """Number of history samples a chart of ``width`` columns should hold."""
    usable = width - _CHART_CHROME
    return max(min_points, min(usable, max_points))


class HistoryRing:
    """Circular buffer of utilization samples.

    Slots start at zero so a fresh chart renders as a flat baseline. The
    oldest sample sits at ``cursor``; ``append`` overwrites it and advances.
    """

    __slots__ = ("_values", "_cursor")

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._values: list[float] = [0.0] * capacity
        self._cursor = 0

    @property
    def capacity(self) -> int:
        return len(self._values)

    @property
    def cursor(self) -> int:
        return self._cursor

    def append(self, value: float) -> None:
        self._values[self._cursor] = value
        self._cursor = (self._cursor + 1) % len(self._values)

    def linearize(self) -> list[float]:
        """Return all samples oldest-first. Does not modify the ring."""
        return self._values[self._cursor:] + self._values[:self._cursor]

    def resized(self, capacity: int) -> HistoryRing:
        """Return a new ring of ``capacity`` holding the most recent samples.

        Samples are replayed oldest-first, so shrinking drops the oldest ones
        and growing leaves the new slots as zeros ahead of the old data.
        """
        ring = HistoryRing(capacity)
        for value in self.linearize():
            ring.append(value)
        return ring

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"HistoryRing(capacity={self.capacity}, cursor={self._cursor})"

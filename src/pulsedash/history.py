"""Bounded rolling history for sparkline widgets."""

from __future__ import annotations

from collections import deque
from collections.abc import Sequence

DEFAULT_CAPACITY = 60  # ~60s at the default 1s refresh

Sample = float | tuple[float, ...]


class HistorySeries:
    """
    A fixed-capacity ring of samples for one metric.

    A series has one or more lanes (e.g. one per CPU core, or RX and TX).
    Lanes are independent rings that always hold the same number of samples,
    so index ``i`` in every lane belongs to the same tick.
    """

    def __init__(self, series_id: str, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.series_id = series_id
        self.capacity = capacity
        self._lanes: list[deque[float]] = []
        self._vector = False

    @property
    def lane_count(self) -> int:
        return len(self._lanes)

    def __len__(self) -> int:
        return len(self._lanes[0]) if self._lanes else 0

    def push(self, sample: Sample | Sequence[float]) -> None:
        """Append a sample, evicting the oldest once the ring is full.

        A vector sample whose width differs from the current lane count
        starts the series over (e.g. CPU hot-plug).
        """
        if isinstance(sample, (int, float)):
            values: tuple[float, ...] = (float(sample),)
            vector = False
        else:
            values = tuple(float(v) for v in sample)
            vector = True

        if len(values) != len(self._lanes) or vector != self._vector:
            self._lanes = [deque(maxlen=self.capacity) for _ in values]
            self._vector = vector

        for lane, value in zip(self._lanes, values):
            lane.append(value)

    def snapshot(self) -> list[Sample]:
        """Samples oldest→newest. Scalars for single series, tuples for vectors."""
        if not self._lanes:
            return []
        if not self._vector:
            return list(self._lanes[0])
        return list(zip(*self._lanes))

    def lane(self, index: int) -> list[float]:
        """One lane of the series, oldest→newest (empty if out of range)."""
        if 0 <= index < len(self._lanes):
            return list(self._lanes[index])
        return []

    def latest(self) -> Sample | None:
        snap = self.snapshot()
        return snap[-1] if snap else None


class HistoryBuffer:
    """Registry of history series keyed by series id.

    Unknown ids are created lazily with the default capacity.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.capacity = capacity
        self._series: dict[str, HistorySeries] = {}

    def series(self, series_id: str) -> HistorySeries:
        found = self._series.get(series_id)
        if found is None:
            found = HistorySeries(series_id, self.capacity)
            self._series[series_id] = found
        return found

    def push(self, series_id: str, sample: Sample | Sequence[float]) -> None:
        self.series(series_id).push(sample)

    def snapshot(self, series_id: str) -> list[Sample]:
        return self.series(series_id).snapshot()

    def lane(self, series_id: str, index: int) -> list[float]:
        return self.series(series_id).lane(index)

    def __contains__(self, series_id: object) -> bool:
        return series_id in self._series

    def __iter__(self):
        return iter(self._series)

    def total_samples(self) -> int:
        """Sum of samples held across every series (all lanes count once)."""
        return sum(len(s) for s in self._series.values())

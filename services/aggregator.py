"""Summary statistics over a window of reconciled rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from models.records import MergedRow


@dataclass
class FieldSummary:
    """Last value, mean and maximum of one measurement."""

    last: Optional[float] = None
    mean: Optional[float] = None
    max: Optional[float] = None


@dataclass
class WindowSummary:
    """Computed statistics for a filtered set of rows."""

    row_count: int = 0
    temperature_c: FieldSummary = field(default_factory=FieldSummary)
    humidity_pct: FieldSummary = field(default_factory=FieldSummary)
    lux: FieldSummary = field(default_factory=FieldSummary)
    rain_ratio: Optional[float] = None


def _summarize(values: List[float]) -> FieldSummary:
    if not values:
        return FieldSummary()
    return FieldSummary(last=values[-1], mean=sum(values) / len(values), max=max(values))


def _present(
    rows: List[MergedRow], extract: Callable[[MergedRow], Optional[float]]
) -> List[float]:
    return [value for value in map(extract, rows) if value is not None]


class Aggregator:
    """Pure aggregation component that can be unit tested in isolation.

    Rows are expected in chronological order; a measurement missing from a
    row (redacted or unverified plaintext) is skipped, never counted as zero.
    """

    def aggregate(self, rows: Iterable[MergedRow]) -> WindowSummary:
        ordered = list(rows)
        temps = _present(ordered, lambda r: r.temp_cx10 / 10 if r.temp_cx10 is not None else None)
        hums = _present(ordered, lambda r: r.hum_pct_x10 / 10 if r.hum_pct_x10 is not None else None)
        luxes = _present(ordered, lambda r: float(r.lux) if r.lux is not None else None)
        rains = _present(ordered, lambda r: float(r.rain) if r.rain is not None else None)

        return WindowSummary(
            row_count=len(ordered),
            temperature_c=_summarize(temps),
            humidity_pct=_summarize(hums),
            lux=_summarize(luxes),
            rain_ratio=sum(rains) / len(rains) if rains else None,
        )

from __future__ import annotations

import math
import statistics
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Optional

from errors import CapacityExceeded

DEFAULT_PERCENTILES = (50.0, 90.0, 95.0, 99.0)


def percentile(values: list[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return float(min(values))
    if pct >= 100:
        return float(max(values))
    ordered = sorted(values)
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


def _percentile_label(pct: float) -> str:
    return f"p{pct:g}"


@dataclass
class MetricSummary:
    name: str
    count: int
    min: Optional[float]
    max: Optional[float]
    mean: Optional[float]
    stdev: Optional[float]
    percentiles: dict[str, Optional[float]] = field(default_factory=dict)
    unit: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MetricSeries:
    """Observations of one metric, at most one per benchmark iteration."""

    def __init__(self, name: str, capacity: int, unit: str = "") -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be > 0, got {capacity}")
        self.name = name
        self.capacity = capacity
        self.unit = unit
        self._values: list[float] = []

    def __len__(self) -> int:
        return len(self._values)

    def add_value(self, value: float) -> None:
        if len(self._values) >= self.capacity:
            raise CapacityExceeded(
                f"{self.name}: cannot add more than {self.capacity} values"
            )
        self._values.append(float(value))

    def summarize(self, percentiles: Iterable[float] = DEFAULT_PERCENTILES) -> MetricSummary:
        values = self._values
        pcts = {_percentile_label(pct): percentile(values, pct) for pct in percentiles}
        if not values:
            return MetricSummary(
                name=self.name,
                count=0,
                min=None,
                max=None,
                mean=None,
                stdev=None,
                percentiles=pcts,
                unit=self.unit,
            )
        # fmean can drift a few ulps outside [min, max] for near-equal values
        low = float(min(values))
        high = float(max(values))
        mean = min(max(float(statistics.fmean(values)), low), high)
        return MetricSummary(
            name=self.name,
            count=len(values),
            min=low,
            max=high,
            mean=mean,
            stdev=float(statistics.pstdev(values)),
            percentiles=pcts,
            unit=self.unit,
        )


class StudyAggregates:
    """The six per-run metric series of the retrieve-study benchmark."""

    def __init__(self, iterations: int) -> None:
        self.iterations = iterations
        self.query_latency = MetricSeries("Querying instances latency", iterations, "ms")
        self.first_response_latency = MetricSeries("First byte received latency", iterations, "ms")
        self.first_frame_latency = MetricSeries("Reading first frame latency", iterations, "ms")
        self.total_latency = MetricSeries("Reading whole study latency", iterations, "ms")
        self.transfer_rate = MetricSeries("Transfer rate", iterations, "MB/s")
        self.frame_rate = MetricSeries("Frame rate", iterations, "frames/s")

    def series(self) -> list[MetricSeries]:
        return [
            self.query_latency,
            self.first_response_latency,
            self.first_frame_latency,
            self.total_latency,
            self.transfer_rate,
            self.frame_rate,
        ]

    def summarize(self, percentiles: Iterable[float] = DEFAULT_PERCENTILES) -> list[MetricSummary]:
        pcts = tuple(percentiles)
        return [item.summarize(pcts) for item in self.series()]

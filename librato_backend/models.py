"""Measurement and metrics-snapshot models."""

from dataclasses import dataclass, field
from typing import Optional, Union


@dataclass
class PlainValue:
    """A single gauge or counter value."""

    name: str
    value: float
    source: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"name": self.name, "value": self.value}
        if self.source is not None:
            data["source"] = self.source
        return data


@dataclass
class Aggregate:
    """Summary statistics for a slice of timer samples."""

    name: str
    count: int
    sum: float
    sum_squares: float
    min: float
    max: float
    source: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "name": self.name,
            "count": self.count,
            "sum": self.sum,
            "sum_squares": self.sum_squares,
            "min": self.min,
            "max": self.max,
        }
        if self.source is not None:
            data["source"] = self.source
        return data


Measurement = Union[PlainValue, Aggregate]


@dataclass
class CounterState:
    """Running total for one monotonic counter."""

    value: float
    last_update: int


@dataclass
class MetricsSnapshot:
    """Aggregated statsd metrics for one flush cycle."""

    counters: dict = field(default_factory=dict)
    gauges: dict = field(default_factory=dict)
    sets: dict = field(default_factory=dict)
    timers: dict = field(default_factory=dict)
    timer_data: dict = field(default_factory=dict)
    pct_threshold: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "MetricsSnapshot":
        """Build a snapshot from the dict shape statsd hands its backends."""
        return cls(
            counters=dict(data.get("counters") or {}),
            gauges=dict(data.get("gauges") or {}),
            sets={k: set(v) for k, v in (data.get("sets") or {}).items()},
            timers={k: list(v) for k, v in (data.get("timers") or {}).items()},
            timer_data=dict(data.get("timer_data") or {}),
            pct_threshold=list(data.get("pctThreshold", data.get("pct_threshold")) or []),
        )

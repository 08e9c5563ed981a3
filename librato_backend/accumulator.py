"""Measure accumulator — collects one cycle's measurements and flushes on batch size."""

import logging
from dataclasses import replace
from typing import Callable

from librato_backend.models import Measurement

logger = logging.getLogger(__name__)

GAUGE = "gauge"
COUNTER = "counter"


class MeasureAccumulator:
    """Builds the gauge and counter lists for a single flush cycle.

    Every measurement has its name split into (name, source) by the
    configured extractor before it is appended. As soon as the combined
    length of both lists reaches *batch_size* the batch is handed to
    *submit* and fresh lists are started, so no submitted batch ever
    exceeds the cap.
    """

    def __init__(
        self,
        batch_size: int,
        measure_time: int,
        extractor,
        submit: Callable[[int, list, list], object],
    ):
        self._batch_size = batch_size
        self._measure_time = measure_time
        self._extractor = extractor
        self._submit = submit

        self._gauges: list[Measurement] = []
        self._counters: list[Measurement] = []
        self._num_stats = 0
        self._batches = 0

    @property
    def num_stats(self) -> int:
        """Countable stats added so far this cycle."""
        return self._num_stats

    @property
    def batches(self) -> int:
        """Batches handed to the transport so far this cycle."""
        return self._batches

    @property
    def pending_count(self) -> int:
        return len(self._gauges) + len(self._counters)

    def add_measure(self, kind: str, measurement: Measurement, countable: bool = True) -> None:
        """Name, append and count one measurement; sub-flush at the batch cap."""
        name, source = self._extractor.extract(measurement.name)
        measurement = replace(measurement, name=name, source=source)

        if kind == COUNTER:
            self._counters.append(measurement)
        elif kind == GAUGE:
            self._gauges.append(measurement)
        else:
            raise ValueError(f"Unknown measurement kind: {kind!r}")

        if countable:
            self._num_stats += 1

        if self.pending_count >= self._batch_size:
            self._flush()

    def flush_remaining(self) -> None:
        """Submit whatever is left once the cycle is complete."""
        if self._gauges or self._counters:
            self._flush()

    def _flush(self) -> None:
        gauges, counters = self._gauges, self._counters
        self._gauges, self._counters = [], []
        self._batches += 1
        logger.debug(
            "Flushing batch #%d (%d gauges, %d counters)",
            self._batches,
            len(gauges),
            len(counters),
        )
        self._submit(self._measure_time, gauges, counters)

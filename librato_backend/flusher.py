"""Flush orchestrator — turns a statsd metrics snapshot into Librato batches."""

import logging
import re
import threading

from librato_backend.accumulator import COUNTER, GAUGE, MeasureAccumulator
from librato_backend.config import LibratoConfig
from librato_backend.models import CounterState, MetricsSnapshot, PlainValue
from librato_backend.percentiles import format_pct_suffix, summarize
from librato_backend.source import build_extractor
from librato_backend.stats import FlushStats
from librato_backend.transport import HttpTransport

logger = logging.getLogger(__name__)

INTERNAL_METRIC_RE = re.compile(r"^statsd\.")
BACKEND_NAME = "librato"


class Flusher:
    """Entry point the host calls once per flush interval.

    Holds the only state that outlives a cycle: the monotonic counter
    totals and (through the transport) the flush stats.
    """

    def __init__(self, config: LibratoConfig, transport=None):
        self._config = config
        self._extractor = build_extractor(config)
        self._transport = transport if transport is not None else HttpTransport(config)
        self._counters: dict[str, CounterState] = {}
        self._lock = threading.Lock()

    @property
    def counters(self) -> dict[str, CounterState]:
        """Monotonic counter totals, keyed by raw statsd name."""
        return self._counters

    @property
    def stats(self) -> FlushStats:
        return self._transport.stats

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def flush(self, ts: int, metrics) -> int:
        """Convert *metrics* into measurements and submit them in batches.

        Accepts a MetricsSnapshot or the plain dict statsd passes to its
        backends. Returns the number of batches submitted; delivery
        outcomes are reported asynchronously through the flush stats.
        """
        if not isinstance(metrics, MetricsSnapshot):
            metrics = MetricsSnapshot.from_dict(metrics)

        with self._lock:
            acc = MeasureAccumulator(
                batch_size=self._config.batch_size,
                measure_time=self._measure_time(ts),
                extractor=self._extractor,
                submit=self._transport.submit,
            )

            for key, value in metrics.counters.items():
                if self._skip(key):
                    continue
                self._add_counter(acc, ts, key, value)

            for key, samples in metrics.timers.items():
                if not samples or self._skip(key):
                    continue
                self._add_timer(acc, key, sorted(samples), metrics)

            for key, value in metrics.gauges.items():
                if self._skip(key):
                    continue
                acc.add_measure(GAUGE, PlainValue(name=key, value=value))

            for key, values in metrics.sets.items():
                if self._skip(key):
                    continue
                acc.add_measure(GAUGE, PlainValue(name=key, value=len(values)))

            if not self._config.skip_internal_metrics:
                self._add_counter(acc, ts, "numStats", acc.num_stats)

            acc.flush_remaining()

        logger.debug(
            "Flushed %d stats in %d batch(es) at %d", acc.num_stats, acc.batches, ts
        )
        return acc.batches

    def status(self) -> dict:
        """Point-in-time copy of the flush stats, including ``last_flush``."""
        return self.stats.snapshot()

    def report_status(self, write) -> None:
        """Feed each stat to a statsd-style ``write(error, backend, name, value)`` callback."""
        for name, value in self.status().items():
            write(None, BACKEND_NAME, name, value)

    def close(self, wait: bool = True) -> None:
        self._transport.close(wait=wait)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _measure_time(self, ts: int) -> int:
        snap = self._config.measure_time_interval
        if snap:
            return (int(ts) // snap) * snap
        return int(ts)

    def _skip(self, key: str) -> bool:
        return self._config.skip_internal_metrics and INTERNAL_METRIC_RE.match(key) is not None

    def _add_counter(self, acc: MeasureAccumulator, ts: int, key: str, value) -> None:
        """Forward a statsd counter delta as a gauge, or fold it into a
        monotonic total and forward that as a counter."""
        if self._config.counters_as_gauges:
            acc.add_measure(GAUGE, PlainValue(name=key, value=value))
            return

        state = self._counters.get(key)
        if state is None:
            state = self._counters[key] = CounterState(value=value, last_update=ts)
        else:
            state.value += value
            state.last_update = ts
        acc.add_measure(COUNTER, PlainValue(name=key, value=state.value))

    def _add_timer(self, acc: MeasureAccumulator, key: str, sorted_values: list, metrics: MetricsSnapshot) -> None:
        suffix = ".100" if self._config.always_suffix_percentile else None
        aggregate = summarize(key, sorted_values, 100, suffix)
        if aggregate is not None:
            acc.add_measure(GAUGE, aggregate)

        # Percentiles and histogram bins are not counted in numStats
        for pct in metrics.pct_threshold:
            aggregate = summarize(key, sorted_values, pct, format_pct_suffix(pct))
            if aggregate is not None:
                acc.add_measure(GAUGE, aggregate, countable=False)

        histogram = (metrics.timer_data.get(key) or {}).get("histogram")
        if histogram:
            for bin_name, count in histogram.items():
                acc.add_measure(
                    GAUGE, PlainValue(name=f"{key}.{bin_name}", value=count), countable=False
                )

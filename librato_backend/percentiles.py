"""Percentile summaries for timer samples."""

import math
from typing import Optional

from librato_backend.models import Aggregate


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def format_pct_suffix(pct) -> str:
    """Render a percentile as a name suffix: 90 -> ".90", 99.9 -> ".99.9"."""
    if float(pct).is_integer():
        return f".{int(pct)}"
    return f".{pct}"


def summarize(
    name: str,
    sorted_values: list,
    pct: float,
    suffix: Optional[str] = None,
) -> Optional[Aggregate]:
    """Summarize the samples that fall inside a percentile cutoff.

    Args:
        name: Timer name the aggregate is reported under.
        sorted_values: Timer samples, sorted ascending.
        pct: Percentile cutoff (0-100).
        suffix: Appended to *name* when given, e.g. ".90".

    Returns:
        An Aggregate over the top ``count`` samples, or None when the
        cutoff leaves no samples.
    """
    n = len(sorted_values)
    threshold_index = _round_half_up(((100 - pct) / 100) * n)
    count = min(n - threshold_index, n)
    if count <= 0:
        return None

    retained = sorted_values[n - count:]
    total = 0
    sum_squares = 0
    for value in retained:
        total += value
        sum_squares += value * value

    return Aggregate(
        name=name + suffix if suffix else name,
        count=count,
        sum=total,
        sum_squares=sum_squares,
        min=retained[0],
        max=retained[-1],
    )

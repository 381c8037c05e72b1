"""Staleness-driven entry selection.

Pure functions over a Dataset and the fixed (item × partition) universe.
Pairs are enumerated item-major (every partition of one item before the next
item), which keeps consecutive picks on the same item whenever ages tie.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Sequence
from datetime import datetime, timedelta

from .models import Dataset, StalenessReport


def entry_age_seconds(dataset: Dataset, item: str, partition: str, now: datetime) -> float:
    """Age of the pair's entry in seconds; ``inf`` when missing or never fetched."""
    entry = dataset.get_entry(partition, item)
    if entry is None or entry.last_fetched_at is None:
        return math.inf
    return (now - entry.last_fetched_at).total_seconds()


def iter_pair_ages(
    dataset: Dataset,
    items: Sequence[str],
    partitions: Sequence[str],
    now: datetime,
) -> Iterator[tuple[str, str, float]]:
    for item in items:
        for partition in partitions:
            yield item, partition, entry_age_seconds(dataset, item, partition, now)


def next_stale_entry(
    dataset: Dataset,
    items: Sequence[str],
    partitions: Sequence[str],
    stale_threshold: timedelta,
    now: datetime,
) -> StalenessReport:
    """Pick the globally oldest pair whose age exceeds *stale_threshold*.

    Ties on age go to the pair enumerated first. ``pair`` is None when every
    pair is fresh, which marks a completed cycle.
    """
    threshold = stale_threshold.total_seconds()
    total = 0
    fresh = 0
    best: tuple[str, str] | None = None
    best_age = -math.inf

    for item, partition, age in iter_pair_ages(dataset, items, partitions, now):
        total += 1
        if age <= threshold:
            fresh += 1
            continue
        if best is None or age > best_age:
            best = (item, partition)
            best_age = age

    return StalenessReport(
        pair=best,
        progress_percent=_percent(fresh, total),
        stale_pairs=total - fresh,
        total_pairs=total,
    )


def cycle_progress_percent(
    dataset: Dataset,
    items: Sequence[str],
    partitions: Sequence[str],
    stale_threshold: timedelta,
    now: datetime,
) -> int:
    """Percentage of pairs whose age is within *stale_threshold*."""
    return next_stale_entry(dataset, items, partitions, stale_threshold, now).progress_percent


def _percent(fresh: int, total: int) -> int:
    if total == 0:
        return 100
    # round half up
    return int(math.floor(100.0 * fresh / total + 0.5))

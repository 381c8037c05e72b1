"""Ports (abstract interfaces) for the refresh domain.

These define WHAT the scheduler needs from the outside world without
specifying HOW it's provided.  Concrete implementations live in
``trendkeeper.infra``.
"""

from __future__ import annotations

import abc
from collections.abc import Mapping, Sequence
from typing import Any

from .models import Dataset, Entry


class TrendsFetcher(abc.ABC):
    """Fetch one pair's fresh value from the upstream source."""

    @abc.abstractmethod
    async def fetch_one(self, item: str, partition: str) -> Mapping[str, Any] | str | bytes:
        """Return the upstream payload for *item* in *partition*.

        Implementations enforce their own per-request timeout and may retry
        transient errors internally.  Any exception raised here is handed to
        the blocking detector for classification.
        """
        ...

    def forget(self, item: str, partition: str) -> None:
        """Drop any locally cached result for the pair so the next fetch goes upstream."""


class ItemUniverse(abc.ABC):
    """Source of the fixed item key space."""

    @abc.abstractmethod
    async def load_items(self) -> Sequence[str]:
        """Return item keys in enumeration order (empty list when unavailable)."""
        ...


class DatasetStore(abc.ABC):
    """Durable storage for the keyed dataset."""

    @abc.abstractmethod
    def load(self) -> Dataset:
        """Load the dataset; never raises, returns an empty dataset on failure."""
        ...

    @abc.abstractmethod
    def save(self, dataset: Dataset) -> bool:
        """Persist *dataset* atomically; never raises, returns False on failure."""
        ...

    @abc.abstractmethod
    def record_entry(self, dataset: Dataset, partition: str, item: str, entry: Entry) -> None:
        """Upsert one entry in memory without persisting."""
        ...

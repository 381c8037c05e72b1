"""
JSON-file implementation of the DatasetStore port.

Layout on disk::

    {
      "partitions": {"<partition>": {"<item>": {<entry>}}},
      "metadata": {"lastUpdate": ..., "totalItems": ..., "successRatePercent": ...}
    }

The store is the only writer of the file. Loading never raises: a missing or
corrupt document starts a fresh dataset. Saving never raises either: the
in-memory dataset stays authoritative and the next save retries.
"""
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ...domain.common.errors import PersistenceError
from ...domain.refresh.models import Dataset, Entry, format_timestamp, parse_timestamp
from ...domain.refresh.ports import DatasetStore
from ...utils.atomic_write import write_json_atomic
from ...utils.clock import system_clock

logger = logging.getLogger(__name__)


class JsonDatasetStore(DatasetStore):
    """Persist the keyed dataset as a single JSON document."""

    def __init__(self, path: Path, now: Optional[Callable[[], datetime]] = None):
        """
        Args:
            path: Location of the durable document.
            now: Wall-clock source used to stamp ``lastUpdate`` (UTC).
        """
        self.path = Path(path)
        self._now = now or system_clock.now

    def load(self) -> Dataset:
        if not self.path.exists():
            logger.info(f"No dataset at {self.path}, starting fresh")
            return Dataset()

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Dataset at {self.path} is unreadable ({e}), starting fresh")
            return Dataset()

        if not isinstance(raw, dict) or not isinstance(raw.get("partitions", {}), dict):
            logger.warning(f"Dataset at {self.path} has an unexpected shape, starting fresh")
            return Dataset()

        dataset = self._from_document(raw)
        logger.info(
            f"Loaded dataset: {dataset.entry_count()} entries across "
            f"{len(dataset.partitions)} partitions "
            f"(success rate {dataset.success_rate_percent}%)"
        )
        return dataset

    def save(self, dataset: Dataset) -> bool:
        dataset.last_update = self._now()
        dataset.success_rate_percent = dataset.compute_success_rate()
        try:
            write_json_atomic(self.path, self._to_document(dataset))
        except PersistenceError as e:
            logger.error(f"Failed to save dataset: {e}")
            return False
        logger.debug(f"Saved dataset ({dataset.entry_count()} entries) to {self.path}")
        return True

    def record_entry(self, dataset: Dataset, partition: str, item: str, entry: Entry) -> None:
        dataset.set_entry(partition, item, entry)

    # ------------------------------------------------------------------
    # Document mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_document(dataset: Dataset) -> Dict[str, Any]:
        return {
            "partitions": {
                partition: {item: entry.to_document() for item, entry in bucket.items()}
                for partition, bucket in dataset.partitions.items()
            },
            "metadata": {
                "lastUpdate": format_timestamp(dataset.last_update),
                "totalItems": dataset.total_items,
                "successRatePercent": dataset.success_rate_percent,
            },
        }

    def _from_document(self, raw: Dict[str, Any]) -> Dataset:
        dataset = Dataset()
        skipped = 0

        for partition, bucket in raw.get("partitions", {}).items():
            if not isinstance(bucket, dict):
                logger.warning(f"Skipping partition {partition!r}: not an object")
                continue
            for item, doc in bucket.items():
                try:
                    dataset.set_entry(partition, item, Entry.from_document(doc))
                except ValueError as e:
                    skipped += 1
                    logger.debug(f"Skipping entry {item!r} in {partition!r}: {e}")

        if skipped:
            logger.warning(f"Skipped {skipped} malformed entries while loading {self.path}")

        metadata = raw.get("metadata") or {}
        if isinstance(metadata, dict):
            try:
                dataset.last_update = parse_timestamp(metadata.get("lastUpdate"))
            except ValueError:
                dataset.last_update = None
            try:
                dataset.total_items = int(metadata.get("totalItems") or 0)
                dataset.success_rate_percent = float(metadata.get("successRatePercent") or 0.0)
            except (TypeError, ValueError):
                logger.debug("Ignoring malformed dataset metadata counters")

        return dataset

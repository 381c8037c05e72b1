"""Domain models for the continuous refresh bounded context.

Value objects and enums for the keyed trends dataset, the scheduler's run
state and the classified fetch outcomes, independently of any
infrastructure (files, HTTP, event loop).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RefreshPhase(str, Enum):
    """Lifecycle phases of the refresh scheduler."""

    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


class PauseReason(str, Enum):
    """Why the scheduler is paused."""

    MANUAL = "manual"  # operator pause, no auto-resume
    BLOCKED = "blocked"  # upstream block detected, resumes at paused_until


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def parse_timestamp(raw: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from the dataset document.

    Naive values are taken as UTC. Returns None for empty values.

    Raises:
        ValueError: If *raw* is not a parseable timestamp.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, str):
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp value: {raw!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _optional_float(raw: Any) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Dataset
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Entry:
    """The fetched fact for one (item, partition) pair.

    ``last_fetched_at`` is None only for entries that were never fetched (or
    were invalidated); fallback entries always carry a timestamp so their
    staleness clock advances.
    """

    value: float
    last_fetched_at: datetime | None
    is_fallback: bool = False
    avg_value: float | None = None
    peak_value: float | None = None
    recent_value: float | None = None
    estimated_searches: float | None = None
    estimated_label: str | None = None
    source: str | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if self.is_fallback and self.last_fetched_at is None:
            raise ValueError("fallback entries must carry last_fetched_at")

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "value": self.value,
            "avgValue": self.avg_value,
            "peakValue": self.peak_value,
            "recentValue": self.recent_value,
            "estimatedSearches": self.estimated_searches,
            "estimatedLabel": self.estimated_label,
            "source": self.source,
            "lastFetchedAt": format_timestamp(self.last_fetched_at),
            "isFallback": self.is_fallback,
        }
        if self.error:
            doc["error"] = self.error
        return doc

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Entry":
        """Build an Entry from its document form.

        Raises:
            ValueError: If the value or timestamp cannot be parsed.
        """
        if not isinstance(doc, Mapping):
            raise ValueError(f"Entry must be an object, got {type(doc).__name__}")
        value = _optional_float(doc.get("value"))
        if value is None:
            raise ValueError(f"Entry has no numeric value: {doc.get('value')!r}")
        label = doc.get("estimatedLabel")
        return cls(
            value=value,
            last_fetched_at=parse_timestamp(doc.get("lastFetchedAt")),
            is_fallback=bool(doc.get("isFallback", False)),
            avg_value=_optional_float(doc.get("avgValue")),
            peak_value=_optional_float(doc.get("peakValue")),
            recent_value=_optional_float(doc.get("recentValue")),
            estimated_searches=_optional_float(doc.get("estimatedSearches")),
            estimated_label=str(label) if label is not None else None,
            source=doc.get("source"),
            error=doc.get("error"),
        )

    @classmethod
    def from_success(cls, success: "Success", fetched_at: datetime) -> "Entry":
        metrics = success.metrics
        label = metrics.get("estimated_label")
        return cls(
            value=success.value,
            last_fetched_at=fetched_at,
            is_fallback=False,
            avg_value=_optional_float(metrics.get("avg_value")),
            peak_value=_optional_float(metrics.get("peak_value")),
            recent_value=_optional_float(metrics.get("recent_value")),
            estimated_searches=_optional_float(metrics.get("estimated_searches")),
            estimated_label=str(label) if label is not None else None,
            source=metrics.get("source") or "upstream",
        )

    @classmethod
    def fallback(cls, value: float, fetched_at: datetime, reason: str | None = None) -> "Entry":
        return cls(
            value=value,
            last_fetched_at=fetched_at,
            is_fallback=True,
            source="fallback",
            error=reason,
        )


@dataclass
class Dataset:
    """partition key → item key → Entry, plus aggregate metadata."""

    partitions: dict[str, dict[str, Entry]] = field(default_factory=dict)
    last_update: datetime | None = None
    total_items: int = 0
    success_rate_percent: float = 0.0

    def get_entry(self, partition: str, item: str) -> Entry | None:
        return self.partitions.get(partition, {}).get(item)

    def set_entry(self, partition: str, item: str, entry: Entry) -> None:
        self.partitions.setdefault(partition, {})[item] = entry

    def remove_entry(self, partition: str, item: str) -> bool:
        bucket = self.partitions.get(partition)
        if bucket is None or item not in bucket:
            return False
        del bucket[item]
        return True

    def snapshot(self) -> Dataset:
        """Copy the key structure; entries are immutable and shared."""
        return Dataset(
            partitions={partition: dict(bucket) for partition, bucket in self.partitions.items()},
            last_update=self.last_update,
            total_items=self.total_items,
            success_rate_percent=self.success_rate_percent,
        )

    def entry_count(self) -> int:
        return sum(len(bucket) for bucket in self.partitions.values())

    def fallback_count(self) -> int:
        return sum(
            1 for bucket in self.partitions.values() for entry in bucket.values() if entry.is_fallback
        )

    def compute_success_rate(self) -> float:
        """Share of stored entries that hold real (non-fallback) values, in percent."""
        total = self.entry_count()
        if total == 0:
            return 0.0
        return round(100.0 * (total - self.fallback_count()) / total, 1)


# ---------------------------------------------------------------------------
# Fetch outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FetchOutcome:
    """Raw result of one fetch capability invocation.

    Exactly one of ``payload`` / ``error`` is normally set. ``status_code``
    is filled when the transport knows it.
    """

    payload: Any = None
    error: BaseException | None = None
    status_code: int | None = None


@dataclass(frozen=True)
class Success:
    value: float
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SoftFailure:
    reason: str


@dataclass(frozen=True)
class HardBlock:
    reason: str


Classification = Success | SoftFailure | HardBlock


# ---------------------------------------------------------------------------
# Scheduler state
# ---------------------------------------------------------------------------


@dataclass
class RunState:
    """Mutable state owned by the refresh scheduler."""

    phase: RefreshPhase = RefreshPhase.STOPPED
    current_item: str | None = None
    success_count: int = 0
    failure_count: int = 0
    blocked_count: int = 0
    error_count: int = 0
    cycles_completed: int = 0
    cycle_progress_percent: int = 0
    total_pairs: int = 0
    last_run_at: datetime | None = None
    pause_reason: PauseReason | None = None
    paused_until: datetime | None = None

    def counters(self) -> dict[str, int]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "blocked_count": self.blocked_count,
            "error_count": self.error_count,
            "cycles_completed": self.cycles_completed,
        }


@dataclass(frozen=True)
class RateBudget:
    """Point-in-time view of the fetch gate's token-bucket state."""

    tokens_available: float
    reservoir: int
    refill_amount: int
    refill_interval_s: float
    min_interval_s: float
    active_count: int
    max_concurrent: int


@dataclass(frozen=True)
class StalenessReport:
    """Result of one staleness scan over the universe."""

    pair: tuple[str, str] | None
    progress_percent: int
    stale_pairs: int
    total_pairs: int

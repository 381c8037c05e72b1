"""Domain-level error types shared across bounded contexts."""

from __future__ import annotations


class TrendkeeperError(Exception):
    """Base class for errors raised by trendkeeper code."""


class PersistenceError(TrendkeeperError):
    """Durable storage could not be read or written."""


class InvalidPartitionError(TrendkeeperError, ValueError):
    """A partition key outside the configured partition universe was used."""

    def __init__(self, partition: str, known: list[str] | tuple[str, ...]) -> None:
        self.partition = partition
        self.known = tuple(known)
        super().__init__(
            f"Unknown partition '{partition}' (expected one of: {', '.join(self.known)})"
        )

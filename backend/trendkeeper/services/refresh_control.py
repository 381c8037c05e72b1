"""
Status and control facade over the refresh scheduler.

Commands never raise for lifecycle misuse (starting twice, pausing while
stopped); they report what happened in a CommandResult instead.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..domain.refresh.models import PauseReason, RefreshPhase, format_timestamp
from .refresh_scheduler import RefreshScheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    success: bool
    message: str


class RefreshControlService:
    """Operator-facing commands for the continuous refresh loop."""

    def __init__(self, scheduler: RefreshScheduler, unavailable_reason: Optional[str] = None):
        """
        Args:
            scheduler: The process-wide refresh scheduler.
            unavailable_reason: When set, start() refuses to run and reports it.
        """
        self.scheduler = scheduler
        self.unavailable_reason = unavailable_reason

    async def start(self) -> CommandResult:
        if self.unavailable_reason:
            logger.error(f"Refusing to start continuous refresh: {self.unavailable_reason}")
            return CommandResult(False, f"Continuous refresh unavailable: {self.unavailable_reason}")
        if await self.scheduler.start():
            return CommandResult(True, "Continuous refresh started")
        return CommandResult(False, "Continuous refresh is already running")

    async def stop(self) -> CommandResult:
        if await self.scheduler.stop():
            return CommandResult(True, "Continuous refresh stopped")
        return CommandResult(False, "Continuous refresh is not running")

    def pause(self) -> CommandResult:
        state = self.scheduler.state
        if state.phase is RefreshPhase.STOPPED:
            return CommandResult(False, "Continuous refresh is not running")
        if state.phase is RefreshPhase.PAUSED and state.pause_reason is PauseReason.MANUAL:
            return CommandResult(True, "Continuous refresh is already paused")
        self.scheduler.pause()
        return CommandResult(True, "Continuous refresh paused")

    def resume(self) -> CommandResult:
        phase = self.scheduler.state.phase
        if phase is RefreshPhase.STOPPED:
            return CommandResult(False, "Continuous refresh is not running; start it first")
        if phase is RefreshPhase.RUNNING:
            return CommandResult(True, "Continuous refresh is already running")
        self.scheduler.resume()
        return CommandResult(True, "Continuous refresh resumed")

    def invalidate(self, item: str, partition: Optional[str] = None) -> CommandResult:
        """Force *item* to be refetched. Raises InvalidPartitionError for unknown partitions."""
        count = self.scheduler.invalidate(item, partition)
        scope = partition or "all partitions"
        if count == 0:
            return CommandResult(False, f"No entries for {item} in {scope}")
        return CommandResult(True, f"Invalidated {count} entries for {item} in {scope}")

    def get_status(self) -> Dict[str, Any]:
        return self.scheduler.status()

    def get_dataset_document(self) -> Dict[str, Any]:
        """Read-only JSON view of the in-memory dataset."""
        dataset = self.scheduler.get_dataset()
        return {
            "partitions": {
                partition: {item: entry.to_document() for item, entry in bucket.items()}
                for partition, bucket in dataset.partitions.items()
            },
            "metadata": {
                "lastUpdate": format_timestamp(dataset.last_update),
                "totalItems": dataset.total_items,
                "successRatePercent": dataset.compute_success_rate(),
                "entryCount": dataset.entry_count(),
            },
        }

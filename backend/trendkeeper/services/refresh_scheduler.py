"""
Continuous refresh scheduler.

Keeps the (item × partition) dataset fresh by repeatedly refreshing the
globally stalest pair, one upstream request at a time, under the fetch gate's
budget. Runs as a single asyncio background task per process.

Phases:
- stopped: initial and terminal; start() spawns the loop after a quiet period.
- running: one refresh per iteration (select → pace → admit → fetch → classify → record).
- paused: no new fetches; the loop polls. A manual pause waits for resume();
  a pause caused by a detected block resumes on its own once ``paused_until``
  is reached.

Every wait (startup delay, pacing pause, gate admission, cycle break, pause
poll, error cooldown) is interrupted promptly by stop(). An in-flight fetch
is never interrupted, so the dataset is never left half-updated.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Awaitable, Dict, List, Optional, Sequence, TypeVar

from ..domain.common.errors import InvalidPartitionError
from ..domain.refresh.blocking import BlockingDetector
from ..domain.refresh.fallback import fallback_value
from ..domain.refresh.models import (
    Classification,
    Dataset,
    Entry,
    FetchOutcome,
    HardBlock,
    PauseReason,
    RefreshPhase,
    RunState,
    Success,
    format_timestamp,
)
from ..domain.refresh.ports import DatasetStore, ItemUniverse, TrendsFetcher
from ..domain.refresh.selection import cycle_progress_percent, next_stale_entry
from ..utils.clock import Clock, system_clock
from .rate_limiter import FetchGate

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _StopRequested(Exception):
    """A suspension point was interrupted by stop()."""


@dataclass(frozen=True)
class SchedulerOptions:
    """Timing and persistence parameters of the refresh loop (seconds)."""

    stale_threshold_s: float = 7 * 24 * 3600
    startup_delay_s: float = 300
    cycle_break_s: float = 300
    pause_poll_s: float = 60
    block_cooldown_s: float = 24 * 3600
    error_cooldown_s: float = 60
    item_pause_min_s: float = 120
    item_pause_max_s: float = 300
    save_every: int = 20

    def __post_init__(self) -> None:
        if self.item_pause_min_s > self.item_pause_max_s:
            raise ValueError(
                f"item_pause_min_s ({self.item_pause_min_s}) exceeds "
                f"item_pause_max_s ({self.item_pause_max_s})"
            )
        if self.save_every < 1:
            raise ValueError(f"save_every must be >= 1, got {self.save_every}")
        if self.pause_poll_s <= 0:
            raise ValueError(f"pause_poll_s must be > 0, got {self.pause_poll_s}")


class RefreshScheduler:
    """
    Background refresh loop with auto-pause on upstream blocking.

    The scheduler is the only writer of its Dataset and the only owner of
    its RunState.
    """

    def __init__(
        self,
        store: DatasetStore,
        fetcher: TrendsFetcher,
        universe: ItemUniverse,
        partitions: Sequence[str],
        gate: FetchGate,
        detector: Optional[BlockingDetector] = None,
        options: Optional[SchedulerOptions] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        if not partitions:
            raise ValueError("At least one partition is required")

        self.store = store
        self.fetcher = fetcher
        self.universe = universe
        self.partitions: List[str] = list(dict.fromkeys(partitions))
        self.gate = gate
        self.detector = detector or BlockingDetector()
        self.options = options or SchedulerOptions()
        self.clock = clock or system_clock
        self.rng = rng or random.Random()

        self.state = RunState()
        self.dataset: Optional[Dataset] = None
        self._items: Optional[List[str]] = None
        self._updates_since_save = 0
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def phase(self) -> RefreshPhase:
        return self.state.phase

    @property
    def stale_threshold(self) -> timedelta:
        return timedelta(seconds=self.options.stale_threshold_s)

    def get_dataset(self) -> Dataset:
        """The in-memory dataset, loaded from the store on first access."""
        return self._ensure_dataset()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Enter the running phase and spawn the background loop.

        Returns False (no-op) when the scheduler is already running or paused.
        """
        if self.state.phase is not RefreshPhase.STOPPED or self._task is not None:
            logger.warning("Refresh scheduler already running")
            return False

        self._ensure_dataset()
        self._stop_event = asyncio.Event()
        self.state.phase = RefreshPhase.RUNNING
        self.state.pause_reason = None
        self.state.paused_until = None

        logger.info(f"Starting continuous refresh in {self.options.startup_delay_s:.0f}s...")
        self._task = asyncio.create_task(self._run(), name="refresh-scheduler")
        return True

    async def stop(self) -> bool:
        """Stop the loop at its next safe point and persist the dataset.

        Safe to call at any time; an in-flight fetch is allowed to finish.
        Returns False when already stopped.
        """
        task = self._task
        if self.state.phase is RefreshPhase.STOPPED and task is None:
            return False

        logger.info("Stopping refresh scheduler...")
        self.state.phase = RefreshPhase.STOPPED
        self.state.pause_reason = None
        self.state.paused_until = None
        if self._stop_event is not None:
            self._stop_event.set()

        self._task = None
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

        await self._persist(force=True)
        logger.info("Refresh scheduler stopped")
        return True

    def pause(self) -> bool:
        """Manually pause. Overrides a pending block auto-resume.

        Returns False when the scheduler is stopped.
        """
        if self.state.phase is RefreshPhase.STOPPED:
            return False
        if self.state.phase is RefreshPhase.PAUSED and self.state.pause_reason is PauseReason.MANUAL:
            return True

        logger.info("Pausing refresh scheduler")
        self.state.phase = RefreshPhase.PAUSED
        self.state.pause_reason = PauseReason.MANUAL
        self.state.paused_until = None
        return True

    def resume(self) -> bool:
        """Resume issuing fetches. Returns False when the scheduler is stopped."""
        if self.state.phase is RefreshPhase.STOPPED:
            return False
        if self.state.phase is RefreshPhase.RUNNING:
            return True

        logger.info("Resuming refresh scheduler")
        self.state.phase = RefreshPhase.RUNNING
        self.state.pause_reason = None
        self.state.paused_until = None
        return True

    def invalidate(self, item: str, partition: Optional[str] = None) -> int:
        """
        Mark pairs of *item* as never fetched so selection picks them up again.

        The fetcher also drops its cached result, so the refresh reaches upstream.

        Args:
            item: Item key.
            partition: Limit to one partition; all partitions when None.

        Returns:
            Number of entries invalidated.

        Raises:
            InvalidPartitionError: If *partition* is not in the partition universe.
        """
        if partition is not None and partition not in self.partitions:
            raise InvalidPartitionError(partition, self.partitions)

        dataset = self._ensure_dataset()
        targets = [partition] if partition is not None else self.partitions
        invalidated = 0
        for key in targets:
            self.fetcher.forget(item, key)
            entry = dataset.get_entry(key, item)
            if entry is None:
                continue
            if entry.is_fallback:
                dataset.remove_entry(key, item)
            else:
                dataset.set_entry(key, item, replace(entry, last_fetched_at=None))
            invalidated += 1

        if invalidated:
            self._updates_since_save += invalidated
            logger.info(f"Invalidated {invalidated} entries for {item}")
        return invalidated

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            await self._pause_for(self.options.startup_delay_s)
            logger.info("Beginning refresh loop")
            while not self._stopping():
                try:
                    await self.run_once()
                except _StopRequested:
                    break
                except Exception as e:
                    self.state.error_count += 1
                    logger.error(f"Error in refresh loop: {e}", exc_info=True)
                    await self._pause_for(self.options.error_cooldown_s)
        except _StopRequested:
            pass
        finally:
            logger.info("Refresh loop exited")

    async def run_once(self) -> None:
        """Execute one iteration of the refresh loop.

        While paused this is a single pause-poll step; otherwise it refreshes
        at most one pair.
        """
        dataset = self._ensure_dataset()

        if self.state.phase is RefreshPhase.PAUSED:
            await self._poll_pause()
            return

        items = await self._get_items()
        report = next_stale_entry(dataset, items, self.partitions, self.stale_threshold, self.clock.now())
        self.state.total_pairs = report.total_pairs
        self.state.cycle_progress_percent = report.progress_percent

        if report.pair is None:
            await self._complete_cycle(report.total_pairs)
            await self._pause_for(self.options.cycle_break_s)
            return

        item, partition = report.pair

        # Spread load across items instead of walking one item's partitions back-to-back
        if self.state.current_item is not None and self.state.current_item != item:
            pause_s = self.rng.uniform(self.options.item_pause_min_s, self.options.item_pause_max_s)
            logger.info(f"Switching to {item}, pausing {pause_s:.0f}s...")
            await self._pause_for(pause_s)
            if self.state.phase is not RefreshPhase.RUNNING:
                return

        self.state.current_item = item

        ticket = await self._interruptible(self.gate.admit())
        try:
            if self.state.phase is not RefreshPhase.RUNNING:
                return
            outcome = await self._fetch(item, partition)
        finally:
            ticket.release()

        await self._apply(item, partition, self.detector.classify(outcome))

        now = self.clock.now()
        self.state.last_run_at = now
        self.state.cycle_progress_percent = cycle_progress_percent(
            dataset, items, self.partitions, self.stale_threshold, now
        )

    async def _poll_pause(self) -> None:
        now = self.clock.now()
        until = self.state.paused_until
        if until is not None and now >= until:
            logger.info("Block cooldown elapsed, resuming refresh")
            self.resume()
            return

        wait_s = self.options.pause_poll_s
        if until is not None:
            wait_s = min(wait_s, (until - now).total_seconds())
        await self._pause_for(wait_s)

    async def _fetch(self, item: str, partition: str) -> FetchOutcome:
        try:
            payload = await self.fetcher.fetch_one(item, partition)
        except Exception as e:
            status_code = getattr(e, "status_code", None)
            return FetchOutcome(error=e, status_code=status_code if isinstance(status_code, int) else None)
        return FetchOutcome(payload=payload)

    async def _apply(self, item: str, partition: str, verdict: Classification) -> None:
        now = self.clock.now()

        if isinstance(verdict, HardBlock):
            self.state.blocked_count += 1
            phase, reason = self.state.phase, self.state.pause_reason
            # stop() or a manual pause issued during the fetch wins over the block pause
            if phase is RefreshPhase.STOPPED or (
                phase is RefreshPhase.PAUSED and reason is PauseReason.MANUAL
            ):
                logger.error(
                    f"BLOCKING DETECTED on {item} ({partition}): {verdict.reason}. "
                    f"Keeping the {phase.value} state"
                )
            else:
                self.state.phase = RefreshPhase.PAUSED
                self.state.pause_reason = PauseReason.BLOCKED
                self.state.paused_until = now + timedelta(seconds=self.options.block_cooldown_s)
                logger.error(
                    f"BLOCKING DETECTED on {item} ({partition}): {verdict.reason}. "
                    f"Pausing until {format_timestamp(self.state.paused_until)}"
                )
            await self._persist()
            return

        if isinstance(verdict, Success):
            self.state.success_count += 1
            self.store.record_entry(self.dataset, partition, item, Entry.from_success(verdict, now))
            logger.info(
                f"Updated {item} ({partition}) = {verdict.value:g} "
                f"({self.state.cycle_progress_percent}% complete)"
            )
        else:
            self.state.failure_count += 1
            entry = Entry.fallback(fallback_value(item), now, reason=verdict.reason)
            self.store.record_entry(self.dataset, partition, item, entry)
            logger.warning(
                f"Failed to update {item} ({partition}): {verdict.reason}; "
                f"stored fallback {entry.value:g}"
            )

        self._updates_since_save += 1
        if self._updates_since_save >= self.options.save_every:
            await self._persist()

    async def _complete_cycle(self, total_pairs: int) -> None:
        if total_pairs == 0:
            logger.warning("Item universe is empty; retrying after the cycle break")
        else:
            self.state.cycles_completed += 1
            logger.info(f"Full refresh cycle complete ({total_pairs} pairs). Starting new cycle...")
            await self._persist()
        self.state.cycle_progress_percent = 0
        # Pick up universe changes on the next cycle
        self._items = None

    async def _get_items(self) -> List[str]:
        if self._items is None:
            loaded = await self._interruptible(self.universe.load_items())
            self._items = list(dict.fromkeys(loaded))
            if self._items:
                logger.info(f"Tracking {len(self._items)} items x {len(self.partitions)} partitions")
        return self._items

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def estimate_completion(self) -> Optional[Dict[str, Any]]:
        """
        Optimistic ETA for the current cycle.

        Uses the gate's minimum interval as the only throughput limit and
        ignores jitter and pacing pauses. None while stopped or before any
        progress has been measured.
        """
        progress = self.state.cycle_progress_percent
        if (
            self.state.phase is RefreshPhase.STOPPED
            or progress == 0
            or self.state.total_pairs == 0
            or self.gate.min_interval_s <= 0
        ):
            return None

        remaining = self.state.total_pairs * (1 - progress / 100)
        per_hour = 3600 / self.gate.min_interval_s
        hours = remaining / per_hour
        return {
            "hours_remaining": round(hours, 1),
            "days_remaining": round(hours / 24, 1),
            "completion_date": format_timestamp(self.clock.now() + timedelta(hours=hours)),
        }

    def status(self) -> Dict[str, Any]:
        budget = self.gate.snapshot()
        return {
            "phase": self.state.phase.value,
            "is_running": self.state.phase is not RefreshPhase.STOPPED,
            "is_paused": self.state.phase is RefreshPhase.PAUSED,
            "pause_reason": self.state.pause_reason.value if self.state.pause_reason else None,
            "paused_until": format_timestamp(self.state.paused_until),
            "current_item": self.state.current_item,
            "counters": self.state.counters(),
            "cycle_progress_percent": self.state.cycle_progress_percent,
            "total_pairs": self.state.total_pairs,
            "last_run_at": format_timestamp(self.state.last_run_at),
            "estimated_completion": self.estimate_completion(),
            "rate_budget": {
                "tokens_available": budget.tokens_available,
                "reservoir": budget.reservoir,
                "refill_amount": budget.refill_amount,
                "refill_interval_s": budget.refill_interval_s,
                "min_interval_s": budget.min_interval_s,
                "active_count": budget.active_count,
                "max_concurrent": budget.max_concurrent,
            },
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_dataset(self) -> Dataset:
        if self.dataset is None:
            self.dataset = self.store.load()
        return self.dataset

    async def _persist(self, force: bool = False) -> None:
        """Save a copy of the dataset in a worker thread, off the event loop."""
        if self.dataset is None:
            return
        if not force and self._updates_since_save == 0:
            return
        if self._items:
            self.dataset.total_items = len(self._items)

        # invalidate() may mutate the live dataset while the copy is written
        pending = self._updates_since_save
        snapshot = self.dataset.snapshot()
        saved = await asyncio.to_thread(self.store.save, snapshot)
        self.dataset.last_update = snapshot.last_update
        self.dataset.success_rate_percent = snapshot.success_rate_percent
        if saved:
            self._updates_since_save = max(0, self._updates_since_save - pending)

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def _pause_for(self, seconds: float) -> None:
        await self._interruptible(self.clock.sleep(max(0.0, seconds)))

    async def _interruptible(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless stop() fires first (then raise _StopRequested)."""
        if self._stop_event is None:
            return await awaitable
        if self._stop_event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _StopRequested()

        work = asyncio.ensure_future(awaitable)
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            stopper.cancel()
            raise

        if work in done:
            stopper.cancel()
            return work.result()

        work.cancel()
        result = (await asyncio.gather(work, return_exceptions=True))[0]
        # Admission may have completed just before the cancel landed
        release = getattr(result, "release", None)
        if callable(release):
            release()
        raise _StopRequested()

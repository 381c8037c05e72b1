"""Tests for the continuous refresh scheduler."""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import httpx
import pytest

from trendkeeper.domain.common.errors import InvalidPartitionError
from trendkeeper.domain.refresh.fallback import fallback_value
from trendkeeper.domain.refresh.models import Entry, PauseReason, RefreshPhase
from trendkeeper.domain.refresh.selection import next_stale_entry
from trendkeeper.infra.providers.trends_fetcher import HttpTrendsFetcher
from trendkeeper.services.refresh_scheduler import SchedulerOptions
from trendkeeper.services.ttl_cache import TTLCache

from tests.unit.refresh_fakes import (
    ITEMS,
    PARTITIONS,
    T0,
    FixedUniverse,
    InMemoryDatasetStore,
    ManualClock,
    dataset_with,
    real_entry,
)

WEEK = timedelta(days=7)
HTML = "<!DOCTYPE html><html><body>Our systems have detected unusual traffic</body></html>"


def _running(scheduler):
    """Put a scheduler in the running phase without spawning the loop."""
    scheduler.state.phase = RefreshPhase.RUNNING
    return scheduler


async def _spin_until(predicate, max_iterations: int = 2000) -> None:
    for _ in range(max_iterations):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class _FlakyUniverse(FixedUniverse):
    def __init__(self, items, failures: int) -> None:
        super().__init__(items)
        self.failures = failures

    async def load_items(self):
        if self.failures:
            self.failures -= 1
            self.load_calls += 1
            raise RuntimeError("item list unavailable")
        return await super().load_items()


class TestOptions:
    def test_rejects_inverted_pause_range(self):
        with pytest.raises(ValueError):
            SchedulerOptions(item_pause_min_s=300, item_pause_max_s=120)

    def test_rejects_zero_save_cadence(self):
        with pytest.raises(ValueError):
            SchedulerOptions(save_every=0)

    def test_requires_partitions(self, make_scheduler):
        with pytest.raises(ValueError):
            make_scheduler(partitions=[])


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_success_records_entry(self, make_scheduler, fetcher, store, clock):
        fetcher.default = {"value": 72.5, "avgValue": 70, "source": "trends"}
        scheduler = _running(make_scheduler())

        await scheduler.run_once()

        assert fetcher.calls == [("abra", "US")]
        entry = store.dataset.get_entry("US", "abra")
        assert entry.value == 72.5
        assert entry.avg_value == 70
        assert entry.is_fallback is False
        assert entry.last_fetched_at == clock.now()
        assert scheduler.state.success_count == 1
        assert scheduler.state.current_item == "abra"
        assert scheduler.state.last_run_at == clock.now()
        assert scheduler.state.cycle_progress_percent == 17

    @pytest.mark.asyncio
    async def test_soft_failure_stores_fallback_and_advances_clock(self, make_scheduler, fetcher, store, clock):
        fetcher.script = [TimeoutError("timed out")]
        scheduler = _running(make_scheduler())

        await scheduler.run_once()

        entry = store.dataset.get_entry("US", "abra")
        assert entry.is_fallback is True
        assert entry.value == fallback_value("abra")
        assert 30 <= entry.value <= 60
        assert entry.last_fetched_at == clock.now()
        assert entry.error == "timed out"
        assert scheduler.state.failure_count == 1
        assert scheduler.state.phase is RefreshPhase.RUNNING

        report = next_stale_entry(store.dataset, ITEMS, PARTITIONS, WEEK, clock.now())
        assert report.pair == ("abra", "JP")

    @pytest.mark.asyncio
    async def test_refreshes_pairs_oldest_first(self, make_scheduler, fetcher):
        scheduler = _running(make_scheduler())
        for _ in range(6):
            await scheduler.run_once()

        assert fetcher.calls == [(i, p) for i in ITEMS for p in PARTITIONS]
        assert scheduler.state.cycle_progress_percent == 100

    @pytest.mark.asyncio
    async def test_pacing_pause_only_when_switching_items(self, make_scheduler, clock):
        scheduler = _running(make_scheduler())
        for _ in range(3):
            await scheduler.run_once()

        pacing = [s for s in clock.sleeps if 120 <= s <= 300]
        assert len(pacing) == 1
        assert scheduler.state.current_item == "bulbasaur"

    @pytest.mark.asyncio
    async def test_consecutive_dispatches_respect_gate_interval(self, make_scheduler, fetcher, clock):
        dispatch_times = []

        def _record(item, partition):
            dispatch_times.append(clock.monotonic())
            return {"value": 10}

        fetcher.default = _record
        scheduler = _running(make_scheduler())
        for _ in range(4):
            await scheduler.run_once()

        assert all(b - a >= 45 for a, b in zip(dispatch_times, dispatch_times[1:]))

    @pytest.mark.asyncio
    async def test_items_are_deduplicated(self, make_scheduler):
        scheduler = _running(make_scheduler(universe=FixedUniverse(["abra", "abra", "eevee"])))
        await scheduler.run_once()
        assert scheduler.state.total_pairs == 4


class TestBlocking:
    @pytest.mark.asyncio
    async def test_markup_payload_pauses_instead_of_crashing(self, make_scheduler, fetcher, clock):
        fetcher.default = HTML
        scheduler = _running(make_scheduler())

        await scheduler.run_once()

        assert scheduler.phase is RefreshPhase.PAUSED
        assert scheduler.state.pause_reason is PauseReason.BLOCKED
        assert scheduler.state.blocked_count == 1
        assert scheduler.state.paused_until == clock.now() + timedelta(hours=24)

        status = scheduler.status()
        assert status["phase"] == "paused"
        assert status["pause_reason"] == "blocked"
        assert status["counters"]["blocked_count"] == 1

    @pytest.mark.asyncio
    async def test_rate_limit_errors_pause_after_first_occurrence(self, make_scheduler, fetcher):
        fetcher.script = [RuntimeError("Request failed with status code 429") for _ in range(3)]
        scheduler = _running(make_scheduler())

        for _ in range(3):
            await scheduler.run_once()

        assert fetcher.calls == [("abra", "US")]
        assert scheduler.state.blocked_count == 1
        assert scheduler.phase is RefreshPhase.PAUSED
        assert len(fetcher.script) == 2

    @pytest.mark.asyncio
    async def test_block_leaves_pair_unrecorded(self, make_scheduler, fetcher, store):
        fetcher.default = HTML
        scheduler = _running(make_scheduler())
        await scheduler.run_once()
        assert store.dataset.get_entry("US", "abra") is None

    @pytest.mark.asyncio
    async def test_auto_resume_after_cooldown(self, make_scheduler, fetcher, clock):
        fetcher.script = [HTML]
        scheduler = _running(make_scheduler())
        await scheduler.run_once()
        assert scheduler.phase is RefreshPhase.PAUSED

        await scheduler.run_once()
        assert scheduler.phase is RefreshPhase.PAUSED
        assert clock.sleeps[-1] == 60

        clock.advance(24 * 3600)
        await scheduler.run_once()
        assert scheduler.phase is RefreshPhase.RUNNING
        assert scheduler.state.paused_until is None

        await scheduler.run_once()
        assert fetcher.calls == [("abra", "US"), ("abra", "US")]
        assert scheduler.state.success_count == 1

    @pytest.mark.asyncio
    async def test_manual_pause_overrides_auto_resume(self, make_scheduler, fetcher, clock):
        fetcher.script = [HTML]
        scheduler = _running(make_scheduler())
        await scheduler.run_once()

        assert scheduler.pause() is True
        assert scheduler.state.pause_reason is PauseReason.MANUAL
        assert scheduler.state.paused_until is None

        clock.advance(48 * 3600)
        await scheduler.run_once()
        assert scheduler.phase is RefreshPhase.PAUSED

        assert scheduler.resume() is True
        assert scheduler.phase is RefreshPhase.RUNNING
        assert scheduler.state.pause_reason is None


    @pytest.mark.asyncio
    async def test_manual_pause_during_fetch_survives_a_block(self, make_scheduler, fetcher, clock):
        scheduler = _running(make_scheduler())

        def pause_then_block(item, partition):
            scheduler.pause()
            return HTML

        fetcher.script = [pause_then_block]
        await scheduler.run_once()

        assert scheduler.phase is RefreshPhase.PAUSED
        assert scheduler.state.pause_reason is PauseReason.MANUAL
        assert scheduler.state.paused_until is None
        assert scheduler.state.blocked_count == 1

        clock.advance(48 * 3600)
        await scheduler.run_once()
        assert scheduler.phase is RefreshPhase.PAUSED
        assert fetcher.calls == [("abra", "US")]


class TestCycles:
    @pytest.mark.asyncio
    async def test_cycle_completion_persists_and_takes_a_break(self, make_scheduler, store, universe, clock):
        fresh = T0 - timedelta(days=1)
        pairs = [(p, i) for i in ITEMS for p in PARTITIONS]
        for partition, item in pairs[:-1]:
            store.dataset.set_entry(partition, item, real_entry(50, fresh))
        scheduler = _running(make_scheduler())

        await scheduler.run_once()
        assert store.save_calls == 0

        await scheduler.run_once()
        assert scheduler.state.cycles_completed == 1
        assert scheduler.state.cycle_progress_percent == 0
        assert store.save_calls == 1
        assert store.dataset.total_items == 3
        assert clock.sleeps[-1] == 300

        await scheduler.run_once()
        assert universe.load_calls == 2

    @pytest.mark.asyncio
    async def test_empty_universe_idles_without_counting_a_cycle(self, make_scheduler, fetcher, clock):
        scheduler = _running(make_scheduler(universe=FixedUniverse([])))
        await scheduler.run_once()

        assert fetcher.calls == []
        assert scheduler.state.cycles_completed == 0
        assert clock.sleeps == [300]

    @pytest.mark.asyncio
    async def test_saves_every_n_updates(self, make_scheduler, fetcher, store):
        fetcher.script = [{"value": 1}, TimeoutError("slow"), {"value": 3}, {"value": 4}]
        scheduler = _running(make_scheduler(options=SchedulerOptions(save_every=2)))
        for _ in range(4):
            await scheduler.run_once()

        assert store.save_calls == 2
        assert store.saved_entry_counts == [2, 4]

    @pytest.mark.asyncio
    async def test_saves_run_off_the_event_loop(self, make_scheduler, store):
        scheduler = _running(make_scheduler(options=SchedulerOptions(save_every=1)))
        await scheduler.run_once()

        assert store.save_calls == 1
        assert store.save_threads[0] != threading.get_ident()
        assert scheduler.get_dataset().get_entry("US", "abra") is not None

    @pytest.mark.asyncio
    async def test_failed_save_keeps_counting_toward_next_save(self, make_scheduler):
        store = InMemoryDatasetStore(fail_saves=True)
        scheduler = _running(make_scheduler(store=store, options=SchedulerOptions(save_every=1)))
        await scheduler.run_once()
        await scheduler.run_once()

        assert store.save_calls == 2
        assert scheduler.get_dataset().entry_count() == 2


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_commands_on_stopped_scheduler(self, make_scheduler):
        scheduler = make_scheduler()
        assert scheduler.pause() is False
        assert scheduler.resume() is False
        assert await scheduler.stop() is False
        assert scheduler.phase is RefreshPhase.STOPPED

    @pytest.mark.asyncio
    async def test_stop_interrupts_startup_delay(self, make_scheduler, fetcher, store):
        clock = ManualClock()
        scheduler = make_scheduler(clock=clock)

        assert await scheduler.start() is True
        assert await scheduler.start() is False
        await _spin_until(lambda: clock.pending_sleeps == 1)
        assert scheduler.phase is RefreshPhase.RUNNING

        assert await asyncio.wait_for(scheduler.stop(), timeout=1) is True
        assert scheduler.phase is RefreshPhase.STOPPED
        assert fetcher.calls == []
        assert store.save_calls == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_admission(self, make_scheduler, fetcher, store):
        clock = ManualClock()
        scheduler = make_scheduler(clock=clock, options=SchedulerOptions(startup_delay_s=0))

        await scheduler.start()
        await _spin_until(lambda: fetcher.calls and clock.pending_sleeps == 1)
        assert fetcher.calls == [("abra", "US")]

        await asyncio.wait_for(scheduler.stop(), timeout=1)

        clock.advance(3600)
        await asyncio.sleep(0)
        assert fetcher.calls == [("abra", "US")]
        assert scheduler.gate.active_count == 0
        assert store.save_calls == 1
        assert store.saved_entry_counts == [1]

    @pytest.mark.asyncio
    async def test_pause_and_resume_while_running(self, make_scheduler):
        clock = ManualClock()
        scheduler = make_scheduler(clock=clock)
        await scheduler.start()

        assert scheduler.pause() is True
        assert scheduler.status()["is_paused"] is True
        assert scheduler.resume() is True
        assert scheduler.resume() is True
        assert scheduler.phase is RefreshPhase.RUNNING

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_unexpected_error_enters_cooldown_and_continues(self, make_scheduler, fetcher, clock):
        scheduler = make_scheduler(universe=_FlakyUniverse(ITEMS, failures=1))

        await scheduler.start()
        await _spin_until(lambda: len(fetcher.calls) >= 1)
        await scheduler.stop()

        assert scheduler.state.error_count == 1
        assert 60 in clock.sleeps
        assert fetcher.calls[0] == ("abra", "US")
        assert scheduler.phase is RefreshPhase.STOPPED


class TestInvalidate:
    def test_clears_timestamps_and_drops_fallbacks(self, make_scheduler, store):
        store.dataset = dataset_with(
            {
                ("US", "abra"): real_entry(80, T0),
                ("JP", "abra"): Entry.fallback(40, T0, reason="timed out"),
                ("US", "bulbasaur"): real_entry(60, T0),
            }
        )
        scheduler = make_scheduler()

        assert scheduler.invalidate("abra") == 2

        us = store.dataset.get_entry("US", "abra")
        assert us.value == 80
        assert us.last_fetched_at is None
        assert store.dataset.get_entry("JP", "abra") is None
        assert store.dataset.get_entry("US", "bulbasaur").last_fetched_at == T0

        report = next_stale_entry(store.dataset, ITEMS, PARTITIONS, WEEK, T0)
        assert report.pair == ("abra", "US")

    def test_single_partition(self, make_scheduler, store):
        store.dataset = dataset_with({("US", "abra"): real_entry(80, T0), ("JP", "abra"): real_entry(70, T0)})
        scheduler = make_scheduler()
        assert scheduler.invalidate("abra", "JP") == 1
        assert store.dataset.get_entry("US", "abra").last_fetched_at == T0

    def test_unknown_partition_is_rejected(self, make_scheduler):
        with pytest.raises(InvalidPartitionError):
            make_scheduler().invalidate("abra", "BR")

    def test_unknown_item_invalidates_nothing(self, make_scheduler):
        assert make_scheduler().invalidate("missingno") == 0


    def test_drops_cached_fetch_results(self, make_scheduler, fetcher):
        make_scheduler().invalidate("abra")
        assert fetcher.forgotten == [("abra", "US"), ("abra", "JP")]

    @pytest.mark.asyncio
    async def test_refetches_from_upstream_after_invalidate(self, make_scheduler, store, clock):
        values = iter([10, 20])
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"value": next(values), "source": "trends"})

        http_fetcher = HttpTrendsFetcher(
            base_url="http://trends.test",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            cache=TTLCache(clock=clock),
            clock=clock,
        )
        scheduler = _running(make_scheduler(fetcher=http_fetcher))

        await scheduler.run_once()
        assert store.dataset.get_entry("US", "abra").value == 10

        assert scheduler.invalidate("abra", "US") == 1
        await scheduler.run_once()

        assert len(requests) == 2
        entry = store.dataset.get_entry("US", "abra")
        assert entry.value == 20
        assert entry.last_fetched_at == clock.now()
        await http_fetcher.aclose()


class TestStatus:
    def test_eta_is_none_when_stopped_or_without_progress(self, make_scheduler):
        scheduler = make_scheduler()
        scheduler.state.total_pairs = 9600
        scheduler.state.cycle_progress_percent = 50
        assert scheduler.estimate_completion() is None

        _running(scheduler).state.cycle_progress_percent = 0
        assert scheduler.estimate_completion() is None

    def test_eta_uses_minimum_interval(self, make_scheduler, clock):
        scheduler = _running(make_scheduler())
        scheduler.state.total_pairs = 9600
        scheduler.state.cycle_progress_percent = 50

        eta = scheduler.estimate_completion()
        assert eta == {
            "hours_remaining": 60.0,
            "days_remaining": 2.5,
            "completion_date": (clock.now() + timedelta(hours=60)).isoformat(),
        }

    def test_status_shape(self, make_scheduler):
        status = make_scheduler().status()
        assert status["phase"] == "stopped"
        assert status["is_running"] is False
        assert status["counters"] == {
            "success_count": 0,
            "failure_count": 0,
            "blocked_count": 0,
            "error_count": 0,
            "cycles_completed": 0,
        }
        assert status["estimated_completion"] is None
        assert status["rate_budget"]["tokens_available"] == 1
        assert status["rate_budget"]["min_interval_s"] == 45

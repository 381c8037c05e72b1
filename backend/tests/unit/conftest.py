import random

import pytest

from trendkeeper.services.rate_limiter import FetchGate
from trendkeeper.services.refresh_scheduler import RefreshScheduler, SchedulerOptions

from tests.unit.refresh_fakes import (
    ITEMS,
    PARTITIONS,
    FakeClock,
    FixedUniverse,
    InMemoryDatasetStore,
    ScriptedFetcher,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryDatasetStore()


@pytest.fixture
def fetcher():
    return ScriptedFetcher()


@pytest.fixture
def universe():
    return FixedUniverse(ITEMS)


@pytest.fixture
def options():
    return SchedulerOptions(
        stale_threshold_s=7 * 24 * 3600,
        startup_delay_s=300,
        cycle_break_s=300,
        pause_poll_s=60,
        block_cooldown_s=24 * 3600,
        error_cooldown_s=60,
        item_pause_min_s=120,
        item_pause_max_s=300,
        save_every=20,
    )


@pytest.fixture
def make_scheduler(clock, store, fetcher, universe, options):
    """Factory for a scheduler wired to fakes; keyword overrides replace any collaborator."""

    def _make(**overrides) -> RefreshScheduler:
        sched_clock = overrides.pop("clock", clock)
        gate = overrides.pop(
            "gate",
            FetchGate(min_interval_s=45, max_jitter_s=0, clock=sched_clock, rng=random.Random(1)),
        )
        kwargs = dict(
            store=store,
            fetcher=fetcher,
            universe=universe,
            partitions=PARTITIONS,
            gate=gate,
            options=options,
            clock=sched_clock,
            rng=random.Random(7),
        )
        kwargs.update(overrides)
        return RefreshScheduler(**kwargs)

    return _make

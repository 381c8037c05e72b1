"""Dependency injection bootstrap: the single place that binds ports to adapters.

Every factory function here can be used as a FastAPI ``Depends()`` target.
Routers never import concrete implementations directly; they depend on the
control service returned by these factories.

Example usage in a router::

    from trendkeeper.wiring.bootstrap import get_refresh_control

    @router.get("/admin/refresh/status")
    async def status(control: RefreshControlService = Depends(get_refresh_control)):
        return control.get_status()

Only this module reads ``settings``; every component below takes plain
constructor arguments.
"""

from __future__ import annotations

from pathlib import Path

from trendkeeper.config import settings
from trendkeeper.domain.refresh.blocking import BlockingDetector
from trendkeeper.domain.refresh.ports import DatasetStore, ItemUniverse, TrendsFetcher
from trendkeeper.infra.providers.item_universe import CachedItemUniverse
from trendkeeper.infra.providers.trends_fetcher import HttpTrendsFetcher
from trendkeeper.infra.storage.dataset_store import JsonDatasetStore
from trendkeeper.services.rate_limiter import FetchGate
from trendkeeper.services.refresh_control import RefreshControlService
from trendkeeper.services.refresh_scheduler import RefreshScheduler, SchedulerOptions
from trendkeeper.services.ttl_cache import TTLCache


# ── Storage ──────────────────────────────────────────────────────────────

_dataset_store: JsonDatasetStore | None = None


def get_dataset_store() -> DatasetStore:
    """Return a singleton JsonDatasetStore at ``settings.data_path``."""
    global _dataset_store
    if _dataset_store is None:
        _dataset_store = JsonDatasetStore(Path(settings.data_path))
    return _dataset_store


# ── Providers ────────────────────────────────────────────────────────────

_trends_fetcher: HttpTrendsFetcher | None = None
_item_universe: CachedItemUniverse | None = None


def get_trends_fetcher() -> TrendsFetcher:
    """Return a singleton HttpTrendsFetcher with its TTL cache."""
    global _trends_fetcher
    if _trends_fetcher is None:
        mirror = Path(settings.trends_cache_path) if settings.trends_cache_path else None
        _trends_fetcher = HttpTrendsFetcher(
            base_url=settings.trends_api_url,
            timeout=settings.trends_request_timeout,
            max_retries=settings.trends_max_retries,
            retry_base_delay=settings.trends_retry_base_delay,
            cache=TTLCache(mirror_path=mirror),
            cache_ttl=settings.trends_cache_ttl_seconds,
            weights=(
                settings.score_weight_avg,
                settings.score_weight_peak,
                settings.score_weight_recent,
            ),
            recent_window=settings.score_recent_window,
        )
    return _trends_fetcher


def get_item_universe() -> ItemUniverse:
    """Return a singleton CachedItemUniverse."""
    global _item_universe
    if _item_universe is None:
        _item_universe = CachedItemUniverse(
            cache_path=Path(settings.item_cache_path),
            list_url=settings.item_list_url,
            limit=settings.item_list_limit,
            timeout=settings.trends_request_timeout,
        )
    return _item_universe


# ── Refresh services ─────────────────────────────────────────────────────

_fetch_gate: FetchGate | None = None
_refresh_scheduler: RefreshScheduler | None = None
_refresh_control: RefreshControlService | None = None


def get_fetch_gate() -> FetchGate:
    global _fetch_gate
    if _fetch_gate is None:
        _fetch_gate = FetchGate(
            min_interval_s=settings.refresh_min_interval_seconds,
            max_concurrent=settings.refresh_max_concurrent,
            reservoir=settings.refresh_reservoir,
            refill_amount=settings.refresh_reservoir_refill_amount,
            refill_interval_s=settings.refresh_reservoir_refill_seconds,
            max_jitter_s=settings.refresh_jitter_max_seconds,
        )
    return _fetch_gate


def build_scheduler_options() -> SchedulerOptions:
    return SchedulerOptions(
        stale_threshold_s=settings.refresh_stale_threshold_days * 24 * 3600,
        startup_delay_s=settings.refresh_startup_delay_seconds,
        cycle_break_s=settings.refresh_cycle_break_seconds,
        pause_poll_s=settings.refresh_pause_poll_seconds,
        block_cooldown_s=settings.refresh_block_cooldown_seconds,
        error_cooldown_s=settings.refresh_error_cooldown_seconds,
        item_pause_min_s=settings.refresh_item_pause_min_seconds,
        item_pause_max_s=settings.refresh_item_pause_max_seconds,
        save_every=settings.refresh_save_every,
    )


def get_refresh_scheduler() -> RefreshScheduler:
    """Return the process-wide RefreshScheduler."""
    global _refresh_scheduler
    if _refresh_scheduler is None:
        _refresh_scheduler = RefreshScheduler(
            store=get_dataset_store(),
            fetcher=get_trends_fetcher(),
            universe=get_item_universe(),
            partitions=settings.refresh_partitions_list,
            gate=get_fetch_gate(),
            detector=BlockingDetector(markers=settings.blocking_markers_list),
            options=build_scheduler_options(),
        )
    return _refresh_scheduler


def refresh_unavailable_reason() -> str | None:
    """Explain why the refresh loop must not run with the current settings."""
    if not settings.trends_api_url.strip():
        return "TRENDS_API_URL is not configured"
    return None


def get_refresh_control() -> RefreshControlService:
    """Return a singleton RefreshControlService.

    Designed for FastAPI Depends()::

        control: RefreshControlService = Depends(get_refresh_control)
    """
    global _refresh_control
    if _refresh_control is None:
        _refresh_control = RefreshControlService(
            get_refresh_scheduler(),
            unavailable_reason=refresh_unavailable_reason(),
        )
    return _refresh_control


async def shutdown() -> None:
    """Stop the scheduler and close HTTP clients; singletons are rebuilt on next use."""
    global _dataset_store, _trends_fetcher, _item_universe
    global _fetch_gate, _refresh_scheduler, _refresh_control
    if _refresh_scheduler is not None:
        await _refresh_scheduler.stop()
    if _trends_fetcher is not None:
        await _trends_fetcher.aclose()
    _dataset_store = None
    _trends_fetcher = None
    _item_universe = None
    _fetch_gate = None
    _refresh_scheduler = None
    _refresh_control = None

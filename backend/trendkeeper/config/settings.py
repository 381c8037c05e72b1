"""
Configuration settings for the trendkeeper service.
Loads environment variables and provides application settings.
"""
from pathlib import Path
from pydantic_settings import BaseSettings
from typing import List

# settings.py is at backend/trendkeeper/config/settings.py → 4 levels up
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    data_path: str = str(_PROJECT_ROOT / "data" / "trends.json")
    item_cache_path: str = str(_PROJECT_ROOT / "data" / "item_names.json")

    # Item / partition universe
    item_list_url: str = "https://pokeapi.co/api/v2/pokemon?limit=1025"
    item_list_limit: int = 1025  # Upper bound on tracked items
    refresh_partitions: str = "US,JP,GB,ES,FR,DE"  # Comma-separated partition keys

    # Server
    api_host: str = "0.0.0.0"
    api_port: int = 3002
    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    log_level: str = "INFO"

    # Continuous refresh scheduler
    refresh_autostart: bool = False  # Start the refresh loop with the API process
    refresh_stale_threshold_days: float = 7  # Entries older than this get refreshed
    refresh_startup_delay_seconds: float = 300  # Quiet period after boot
    refresh_cycle_break_seconds: float = 300  # Break after a full cycle completes
    refresh_pause_poll_seconds: float = 60  # Poll interval while paused
    refresh_block_cooldown_seconds: float = 86400  # Auto-resume 24h after a block
    refresh_error_cooldown_seconds: float = 60  # Cooldown after an unexpected loop error
    refresh_item_pause_min_seconds: float = 120  # Human pacing when switching items
    refresh_item_pause_max_seconds: float = 300
    refresh_save_every: int = 20  # Persist the dataset every N updates

    # Fetch gate (ultra-conservative by default)
    refresh_min_interval_seconds: float = 45  # Hard floor between two dispatches
    refresh_max_concurrent: int = 1
    refresh_reservoir: int = 1  # Token reservoir size
    refresh_reservoir_refill_amount: int = 1
    refresh_reservoir_refill_seconds: float = 60
    refresh_jitter_max_seconds: float = 10  # Random delay before each dispatch

    # Blocking detection
    blocking_markers: str = (
        "captcha,unusual traffic,verify you are human,are you a robot,"
        "automated queries,/sorry/index"
    )

    # Upstream trends endpoint
    trends_api_url: str = ""  # Required to start the refresh loop
    trends_request_timeout: float = 30  # Seconds per request
    trends_max_retries: int = 3  # Transient errors only, never on blocks
    trends_retry_base_delay: float = 2.0  # Seconds, doubled per attempt
    trends_cache_ttl_seconds: float = 86400  # 24 hours
    trends_cache_path: str = ""  # Optional disk mirror for the fetch cache
    score_weight_avg: float = 0.85
    score_weight_peak: float = 0.10
    score_weight_recent: float = 0.05
    score_recent_window: int = 4  # Trailing timeline points counted as "recent"

    @property
    def cors_origins_list(self) -> List[str]:
        """Convert CORS origins string to list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def refresh_partitions_list(self) -> List[str]:
        """Parse comma-separated partition keys, preserving order."""
        return [p.strip() for p in self.refresh_partitions.split(",") if p.strip()]

    @property
    def blocking_markers_list(self) -> List[str]:
        """Parse comma-separated anti-automation markers."""
        return [m.strip().lower() for m in self.blocking_markers.split(",") if m.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()

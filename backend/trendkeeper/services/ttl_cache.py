"""
TTL cache for fetched upstream values.

In-memory map with per-entry expiry and an optional JSON disk mirror, so a
restarted process does not re-request values it fetched minutes ago. The
mirror is written atomically and is best-effort: failures are logged and the
memory copy stays authoritative.
"""
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from ..domain.common.errors import PersistenceError
from ..utils.atomic_write import write_json_atomic
from ..utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float  # wall-clock epoch seconds


class TTLCache:
    """Key/value cache with explicit per-entry TTL."""

    def __init__(
        self,
        mirror_path: Optional[Path] = None,
        clock: Optional[Clock] = None,
        max_entries: int = 20000,
    ):
        """
        Args:
            mirror_path: Optional JSON file mirroring the cache contents.
            clock: Wall-clock source for expiry.
            max_entries: Soft size bound; expired entries are purged first, then
                         the entries closest to expiry.
        """
        self._clock = clock or system_clock
        self._entries: Dict[str, CacheEntry] = {}
        self._mirror_path = Path(mirror_path) if mirror_path else None
        self._max_entries = max_entries
        self.hits = 0
        self.misses = 0

        if self._mirror_path is not None:
            self._load_mirror()

    def __len__(self) -> int:
        return len(self._entries)

    def _now(self) -> float:
        return self._clock.now().timestamp()

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at <= self._now():
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def put(self, key: str, value: Any, ttl: float) -> None:
        """Store *value* under *key* for *ttl* seconds (non-positive TTL evicts)."""
        if ttl <= 0:
            self._entries.pop(key, None)
        else:
            self._entries[key] = CacheEntry(value=value, expires_at=self._now() + ttl)
            if len(self._entries) > self._max_entries:
                self._evict()
        self._write_mirror()

    def invalidate(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        if removed:
            self._write_mirror()
        return removed

    def clear(self) -> None:
        self._entries.clear()
        self._write_mirror()

    def purge_expired(self) -> int:
        now = self._now()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self) -> Dict[str, int]:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _evict(self) -> None:
        self.purge_expired()
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return
        for key, _ in sorted(self._entries.items(), key=lambda kv: kv[1].expires_at)[:overflow]:
            del self._entries[key]

    def _load_mirror(self) -> None:
        if not self._mirror_path.exists():
            return
        try:
            raw = json.loads(self._mirror_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable cache mirror {self._mirror_path}: {e}")
            return
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring cache mirror {self._mirror_path}: unexpected shape")
            return

        now = self._now()
        for key, doc in raw.items():
            if not isinstance(doc, dict):
                continue
            expires_at = doc.get("expiresAt")
            if isinstance(expires_at, (int, float)) and expires_at > now:
                self._entries[key] = CacheEntry(value=doc.get("value"), expires_at=float(expires_at))
        logger.info(f"Loaded {len(self._entries)} cached values from {self._mirror_path}")

    def _write_mirror(self) -> None:
        if self._mirror_path is None:
            return
        payload = {
            key: {"value": entry.value, "expiresAt": entry.expires_at}
            for key, entry in self._entries.items()
        }
        try:
            write_json_atomic(self._mirror_path, payload, indent=None)
        except PersistenceError as e:
            logger.warning(f"Failed to write cache mirror: {e}")

"""
ItemUniverse implementations.

``CachedItemUniverse`` reads the item list from a local JSON cache and falls
back to a JSON list endpoint (``{"results": [{"name": ...}, ...]}``), writing
the cache best-effort. ``StaticItemUniverse`` serves a fixed list.
"""
import json
import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence

import httpx

from ...domain.common.errors import PersistenceError
from ...domain.refresh.ports import ItemUniverse
from ...utils.atomic_write import write_json_atomic

logger = logging.getLogger(__name__)


def _names_from_entries(entries: Any) -> List[str]:
    """Item names from ``[{"name": ...}]`` or plain string lists, order kept."""
    if not isinstance(entries, list):
        return []
    names: List[str] = []
    for entry in entries:
        if isinstance(entry, dict):
            entry = entry.get("name")
        if isinstance(entry, str) and entry.strip():
            names.append(entry.strip())
    return names


class StaticItemUniverse(ItemUniverse):
    def __init__(self, items: Sequence[str]):
        self.items = list(items)

    async def load_items(self) -> List[str]:
        return list(self.items)


class CachedItemUniverse(ItemUniverse):
    """Item list from a local cache file, else from a JSON list endpoint."""

    def __init__(
        self,
        cache_path: Path,
        list_url: str,
        limit: Optional[int] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.cache_path = Path(cache_path)
        self.list_url = list_url
        self.limit = limit
        self.timeout = timeout
        self._client = client

    async def load_items(self) -> List[str]:
        items = self._read_cache()
        if not items:
            items = await self._fetch_remote()
        if self.limit is not None:
            items = items[: self.limit]
        return items

    def _read_cache(self) -> List[str]:
        if not self.cache_path.exists():
            return []
        try:
            raw = json.loads(self.cache_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable item cache {self.cache_path}: {e}")
            return []
        items = _names_from_entries(raw)
        if items:
            logger.info(f"Loaded {len(items)} items from cache")
        return items

    async def _fetch_remote(self) -> List[str]:
        logger.info(f"Fetching item list from {self.list_url}...")
        try:
            if self._client is not None:
                response = await self._client.get(self.list_url)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.list_url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Failed to fetch item list: {e}")
            return []

        items = _names_from_entries(data.get("results") if isinstance(data, dict) else data)
        if not items:
            logger.warning("Item list endpoint returned no items")
            return []

        try:
            write_json_atomic(
                self.cache_path,
                [{"id": idx + 1, "name": name} for idx, name in enumerate(items)],
            )
        except PersistenceError as e:
            logger.warning(f"Failed to write item cache: {e}")

        logger.info(f"Fetched {len(items)} items")
        return items

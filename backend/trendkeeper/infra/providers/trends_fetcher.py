"""
HTTP implementation of the TrendsFetcher port.

Calls a JSON trends endpoint (``GET {base_url}/trends?itemName=..&partition=..``)
with httpx. Features:
- Per-request timeout
- Retry with exponential backoff for transient failures (5xx, network errors)
- TTL cache in front of the endpoint
- Score blending when the endpoint returns a raw interest timeline

Redirects and 429s are never retried or followed: they are the clearest
blocking signals and must reach the blocking detector unchanged. Non-JSON
bodies are returned as text for the detector to sniff.
"""
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import httpx

from ...domain.refresh.ports import TrendsFetcher
from ...services.ttl_cache import TTLCache
from ...utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES = frozenset({500, 502, 503, 504})


class TrendsFetchError(Exception):
    """Non-retryable (or retries exhausted) HTTP failure from the trends endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[httpx.Response] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


def timeline_values(raw: Any) -> List[float]:
    """
    Extract numeric points from the supported timeline shapes.

    Accepts a list of numbers, a list of ``{"value": n}`` / ``{"value": [n]}``
    points, or a Google-style ``{"default": {"timelineData": [...]}}`` document.
    Points that carry no number are skipped.
    """
    if isinstance(raw, Mapping):
        raw = (raw.get("default") or {}).get("timelineData", [])
    if not isinstance(raw, list):
        return []

    values: List[float] = []
    for point in raw:
        if isinstance(point, Mapping):
            point = point.get("value")
        if isinstance(point, list):
            point = point[0] if point else None
        if isinstance(point, bool) or not isinstance(point, (int, float)):
            continue
        values.append(float(point))
    return values


def blend_score(
    values: Sequence[float],
    weight_avg: float = 0.85,
    weight_peak: float = 0.10,
    weight_recent: float = 0.05,
    recent_window: int = 4,
) -> Optional[Dict[str, float]]:
    """Weighted popularity score from a timeline; None for an empty timeline."""
    if not values:
        return None
    avg = sum(values) / len(values)
    peak = max(values)
    window = list(values[-recent_window:]) if recent_window > 0 else list(values)
    recent = sum(window) / len(window)
    score = weight_avg * avg + weight_peak * peak + weight_recent * recent
    return {
        "value": round(score, 1),
        "avgValue": round(avg, 1),
        "peakValue": round(peak, 1),
        "recentValue": round(recent, 1),
    }


class HttpTrendsFetcher(TrendsFetcher):
    """Fetch per-(item, partition) popularity from a JSON trends endpoint."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 2.0,
        cache: Optional[TTLCache] = None,
        cache_ttl: float = 86400,
        weights: Sequence[float] = (0.85, 0.10, 0.05),
        recent_window: int = 4,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            base_url: Root URL of the trends endpoint.
            timeout: Per-request timeout in seconds.
            max_retries: Extra attempts for transient failures.
            retry_base_delay: First backoff delay; doubled on each retry.
            cache: TTL cache for successful payloads (memory-only one when None).
            cache_ttl: Seconds a successful payload stays cached.
            weights: (average, peak, recent) blend weights.
            recent_window: Trailing timeline points averaged as "recent".
            client: Preconfigured httpx client (tests inject a MockTransport).
            clock: Sleep source for backoff.
        """
        if len(weights) != 3:
            raise ValueError(f"weights must be (avg, peak, recent), got {weights!r}")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self.retry_base_delay = retry_base_delay
        self.cache = cache if cache is not None else TTLCache()
        self.cache_ttl = cache_ttl
        self.weights = tuple(weights)
        self.recent_window = recent_window
        self._clock = clock or system_clock
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _cache_key(item: str, partition: str) -> str:
        return f"{item}:{partition}"

    def forget(self, item: str, partition: str) -> None:
        if self.cache.invalidate(self._cache_key(item, partition)):
            logger.debug(f"Dropped cached trends for {item} ({partition})")

    async def fetch_one(self, item: str, partition: str) -> Union[Dict[str, Any], str]:
        cache_key = self._cache_key(item, partition)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Cache hit: {item} ({partition})")
            return cached

        response = await self._request_with_retry(item, partition)
        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            # Challenge pages arrive as 200 text/html; let the detector sniff them
            return response.text

        if not isinstance(payload, dict):
            return payload

        payload = self._normalize(payload)
        if self._is_usable(payload):
            self.cache.put(cache_key, payload, self.cache_ttl)
        return payload

    async def _request_with_retry(self, item: str, partition: str) -> httpx.Response:
        client = await self._get_client()
        url = f"{self.base_url}/trends"
        params = {"itemName": item, "partition": partition}

        attempt = 0
        while True:
            try:
                response = await client.get(url, params=params)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    logger.warning(f"Trends request for {item} ({partition}) failed after {attempt + 1} attempts: {e!r}")
                    raise
                await self._backoff(attempt, item, partition, repr(e))
                attempt += 1
                continue

            status = response.status_code
            if status in _RETRYABLE_STATUSES and attempt < self.max_retries:
                await self._backoff(attempt, item, partition, f"HTTP {status}")
                attempt += 1
                continue

            if status >= 300:
                raise TrendsFetchError(
                    f"Trends endpoint returned HTTP {status} for {item} ({partition})",
                    status_code=status,
                    response=response,
                )
            return response

    async def _backoff(self, attempt: int, item: str, partition: str, reason: str) -> None:
        delay = self.retry_base_delay * (2 ** attempt)
        logger.info(
            f"Transient trends error for {item} ({partition}): {reason}; "
            f"retry {attempt + 1}/{self.max_retries} in {delay:.1f}s"
        )
        await self._clock.sleep(delay)

    def _normalize(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Blend a raw timeline into a value unless the endpoint already scored it."""
        if payload.get("value") is not None or payload.get("score") is not None:
            return payload
        if payload.get("fallback") or payload.get("isFallback"):
            return payload

        raw = payload.get("timeline", payload.get("rawData"))
        if raw is None:
            return payload

        blended = blend_score(
            timeline_values(raw),
            weight_avg=self.weights[0],
            weight_peak=self.weights[1],
            weight_recent=self.weights[2],
            recent_window=self.recent_window,
        )
        if blended is None:
            return {**payload, "timeline": []}
        return {**payload, **blended, "source": payload.get("source") or "trends"}

    @staticmethod
    def _is_usable(payload: Mapping[str, Any]) -> bool:
        if payload.get("fallback") or payload.get("isFallback") or payload.get("error"):
            return False
        value = payload.get("value", payload.get("score"))
        return isinstance(value, (int, float)) and not isinstance(value, bool)

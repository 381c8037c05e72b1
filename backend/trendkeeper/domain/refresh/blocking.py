"""
Blocking detection for upstream fetch outcomes.

Classifies every fetch into one of three outcomes:

- HardBlock: the provider is actively refusing or challenging automated
  traffic (markup instead of JSON, challenge redirects, rate-limit errors).
  The scheduler answers with a long auto-pause.
- SoftFailure: this one attempt failed (network error, timeout, malformed
  but non-markup payload, no usable data). Recorded with a fallback value.
- Success: a usable value plus auxiliary metrics.

The marker and signature lists are provider-specific heuristics and are
passed in as configuration.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from typing import Any

from .models import Classification, FetchOutcome, HardBlock, SoftFailure, Success

DEFAULT_MARKERS: tuple[str, ...] = (
    "captcha",
    "unusual traffic",
    "verify you are human",
    "are you a robot",
    "automated queries",
    "/sorry/index",
)

DEFAULT_RATE_LIMIT_SIGNATURES: tuple[str, ...] = (
    "429",
    "too many requests",
    "rate limit",
    "ratelimit",
    "quota exceeded",
)

# Error text produced when a markup page reaches a JSON decoder or a
# redirect is surfaced as an error.
DEFAULT_BLOCK_SIGNATURES: tuple[str, ...] = (
    "unexpected token <",
    "unexpected token '<'",
    "<!doctype",
    "302 moved",
    "302 found",
)

DEFAULT_CHALLENGE_STATUSES: frozenset[int] = frozenset({301, 302, 303, 307, 308, 429})

# Payload fields copied into Success.metrics, keyed by the Entry attribute.
_METRIC_FIELDS: dict[str, tuple[str, ...]] = {
    "avg_value": ("avgValue", "avgScore", "avg_value"),
    "peak_value": ("peakValue", "maxScore", "peak_value"),
    "recent_value": ("recentValue", "recentScore", "recent_value"),
    "estimated_searches": ("estimatedSearches", "estimated_searches"),
    "estimated_label": ("estimatedLabel", "estimated_label"),
    "source": ("source",),
}

_HEAD_SNIFF_CHARS = 2048


class BlockingDetector:
    """Classify fetch outcomes as Success, SoftFailure or HardBlock."""

    def __init__(
        self,
        markers: Iterable[str] = DEFAULT_MARKERS,
        rate_limit_signatures: Iterable[str] = DEFAULT_RATE_LIMIT_SIGNATURES,
        block_signatures: Iterable[str] = DEFAULT_BLOCK_SIGNATURES,
        challenge_statuses: Iterable[int] = DEFAULT_CHALLENGE_STATUSES,
    ):
        self.markers = tuple(m.lower() for m in markers if m)
        self.rate_limit_signatures = tuple(s.lower() for s in rate_limit_signatures if s)
        self.block_signatures = tuple(s.lower() for s in block_signatures if s)
        self.challenge_statuses = frozenset(challenge_statuses)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def classify(self, outcome: FetchOutcome) -> Classification:
        if outcome.status_code is not None and outcome.status_code in self.challenge_statuses:
            return HardBlock(f"challenge status {outcome.status_code}")

        if outcome.error is not None:
            return self._classify_error(outcome.error)

        payload = outcome.payload
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")

        if isinstance(payload, str):
            if self.looks_like_markup(payload):
                return HardBlock("markup payload instead of JSON")
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                return SoftFailure(f"malformed payload: {exc.msg}")

        if not isinstance(payload, Mapping):
            return SoftFailure(f"unexpected payload type: {type(payload).__name__}")

        return self._classify_mapping(payload)

    def looks_like_markup(self, text: str) -> bool:
        """Heuristic HTML/challenge-page sniffing."""
        if not text:
            return False
        head = text.lstrip()[:_HEAD_SNIFF_CHARS].lower()
        if head.startswith("<"):
            return True
        if "<!doctype" in head or "<html" in head:
            return True
        if "<meta" in head and "<head" in head:
            return True
        lowered = text.lower()
        return any(marker in lowered for marker in self.markers)

    def is_block_message(self, message: str) -> bool:
        lowered = message.lower()
        if any(sig in lowered for sig in self.rate_limit_signatures):
            return True
        if any(sig in lowered for sig in self.block_signatures):
            return True
        return any(marker in lowered for marker in self.markers)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _classify_error(self, error: BaseException) -> Classification:
        # httpx.HTTPStatusError and friends expose the failed response
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            if status in self.challenge_statuses:
                return HardBlock(f"challenge status {status}")
            try:
                body = response.text
            except Exception:
                body = ""
            if isinstance(body, str) and self.looks_like_markup(body):
                return HardBlock(f"markup error page (status {status})")

        status_code = getattr(error, "status_code", None)
        if isinstance(status_code, int) and status_code in self.challenge_statuses:
            return HardBlock(f"challenge status {status_code}")

        if isinstance(error, json.JSONDecodeError) and self.looks_like_markup(error.doc):
            return HardBlock("markup payload failed JSON parsing")

        message = str(error) or type(error).__name__
        if self.is_block_message(message):
            return HardBlock(message)

        return SoftFailure(message)

    def _classify_mapping(self, payload: Mapping[str, Any]) -> Classification:
        error = payload.get("error")
        if isinstance(error, str) and error and self.is_block_message(error):
            return HardBlock(error)

        if payload.get("fallback") is True or payload.get("isFallback") is True:
            return SoftFailure(f"upstream fallback: {error}" if error else "upstream fallback")

        raw_value = payload.get("value", payload.get("score"))
        if raw_value is None or isinstance(raw_value, bool):
            timeline = payload.get("timeline")
            if isinstance(timeline, list) and not timeline:
                return SoftFailure("no usable data: empty timeline")
            if isinstance(error, str) and error:
                return SoftFailure(error)
            return SoftFailure("no usable data: missing value")

        try:
            value = float(raw_value)
        except (TypeError, ValueError):
            return SoftFailure(f"non-numeric value: {raw_value!r}")

        return Success(value=value, metrics=_extract_metrics(payload))


def _extract_metrics(payload: Mapping[str, Any]) -> dict[str, Any]:
    metrics: dict[str, Any] = {}
    for attr, keys in _METRIC_FIELDS.items():
        for key in keys:
            if payload.get(key) is not None:
                metrics[attr] = payload[key]
                break
    return metrics

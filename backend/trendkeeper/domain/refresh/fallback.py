"""Synthetic placeholder values for pairs whose fetch failed."""

from __future__ import annotations

FALLBACK_FLOOR = 30
FALLBACK_CEILING = 60


def fallback_value(item: str) -> float:
    """Deterministic conservative score for *item*.

    Derived from the character codes of the key so repeated failures store the
    same value, and clamped to [FALLBACK_FLOOR, FALLBACK_CEILING] so
    placeholders never outrank real data.
    """
    seed = sum(ord(ch) for ch in item)
    return float(min(FALLBACK_CEILING, FALLBACK_FLOOR + seed % 50))

"""Continuous, rate-governed refresh of a keyed trends dataset."""

__version__ = "0.1.0"

"""Recurring job entrypoints referenced by the TOML schedule."""

__all__ = [
    "aggregation",
    "engagement",
]

"""Size bounds for archived agent output and diffs."""

from __future__ import annotations

import math

DEFAULT_THRESHOLD = 100 * 1024
MIN_THRESHOLD = 1024
TRUNCATION_SUFFIX = "\n\n... [truncated]"


def percentile_threshold(sizes: list[int], percentile: float = 0.95) -> int:
    """The *percentile* of *sizes*, floored at ``MIN_THRESHOLD``; ``DEFAULT_THRESHOLD`` when empty."""
    if not sizes:
        return DEFAULT_THRESHOLD
    ordered = sorted(sizes)
    index = max(0, math.ceil(percentile * len(ordered)) - 1)
    return max(ordered[index], MIN_THRESHOLD)


def truncate_to_threshold(text: str, threshold: int) -> str:
    if len(text) <= threshold:
        return text
    return text[:threshold] + TRUNCATION_SUFFIX

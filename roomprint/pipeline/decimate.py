"""Stride decimation of point clouds."""

from __future__ import annotations

import numpy as np

from roomprint.core.config import TARGET_POINT_COUNT


def decimate(points: np.ndarray, target_count: int = TARGET_POINT_COUNT) -> np.ndarray:
    """Keep every ``step``-th point so roughly *target_count* remain.

    ``step = max(1, N // target_count)`` and relative order is preserved.
    Clouds already within budget are returned as-is.

    This is not a spatial reduction: dense and sparse regions are thinned
    alike, and because the step is an integer division the result can exceed
    *target_count* (up to ``2 * target_count - 1`` points).  The output only
    depends on input order, which keeps room signatures reproducible.
    """
    if target_count < 1:
        raise ValueError("target_count must be positive")
    if len(points) <= target_count:
        return points
    step = max(1, len(points) // target_count)
    return points[::step]

"""End-to-end reconstruction: depth frames → decimated world-space cloud."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable

import numpy as np

from roomprint.core.config import (
    MAX_DEPTH,
    MIN_DEPTH,
    SAMPLE_STRIDE,
    TARGET_POINT_COUNT,
    ScanConfig,
)
from roomprint.core.types import BBox, DepthFrame, Vec3
from roomprint.pipeline.backproject import project
from roomprint.pipeline.decimate import decimate
from roomprint.pipeline.loader import load_recording

logger = logging.getLogger(__name__)


def reconstruct_cloud(
    frames: Iterable[DepthFrame],
    *,
    stride: int = SAMPLE_STRIDE,
    min_depth: float = MIN_DEPTH,
    max_depth: float = MAX_DEPTH,
    target_count: int = TARGET_POINT_COUNT,
) -> np.ndarray:
    """Back-project every frame, concatenate in frame order, then decimate."""
    chunks = [
        project(frame, stride=stride, min_depth=min_depth, max_depth=max_depth)
        for frame in frames
    ]
    if not chunks:
        return np.empty((0, 3), dtype=np.float64)

    points = np.vstack(chunks)
    logger.info("Back-projected %d points from %d frames", len(points), len(chunks))
    reduced = decimate(points, target_count)
    logger.info("Decimated to %d points (target %d)", len(reduced), target_count)
    return reduced


def reconstruct_with_config(frames: Iterable[DepthFrame], config: ScanConfig) -> np.ndarray:
    return reconstruct_cloud(
        frames,
        stride=config.sample_stride,
        min_depth=config.min_depth,
        max_depth=config.max_depth,
        target_count=config.target_point_count,
    )


# ── payload encoding ─────────────────────────────────────────────────
def encode_points(points: np.ndarray) -> bytes:
    """Serialise a cloud as a compact JSON array of ``{"x", "y", "z"}`` objects.

    Coordinates are rounded to float32 first so that a cloud and its
    re-loaded copy encode to identical bytes.  Point order is kept.
    """
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 3)
    records = [{"x": x, "y": y, "z": z} for x, y, z in pts.tolist()]
    return json.dumps(records, separators=(",", ":")).encode("utf-8")


def decode_points(payload: bytes) -> np.ndarray:
    """Inverse of :func:`encode_points`; returns an (N, 3) float32 array."""
    if not payload:
        return np.empty((0, 3), dtype=np.float32)
    records = json.loads(payload)
    return np.array(
        [[r["x"], r["y"], r["z"]] for r in records], dtype=np.float32
    ).reshape(-1, 3)


def compute_bounds(points: np.ndarray) -> BBox | None:
    """Return the axis-aligned bounding box of an (N, 3) point array."""
    if len(points) == 0:
        return None
    mins = points.min(axis=0)
    maxs = points.max(axis=0)
    return BBox(
        min=Vec3(x=float(mins[0]), y=float(mins[1]), z=float(mins[2])),
        max=Vec3(x=float(maxs[0]), y=float(maxs[1]), z=float(maxs[2])),
    )


def process_recording(input_path: str | Path, config: ScanConfig | None = None) -> np.ndarray:
    """Load a recorded capture (``.npz``) and reconstruct its point cloud."""
    config = config or ScanConfig()
    input_path = Path(input_path)
    logger.info("Loading recording %s …", input_path.name)
    frames = load_recording(input_path)
    logger.info("Loaded %d frames", len(frames))
    return reconstruct_with_config(frames, config)

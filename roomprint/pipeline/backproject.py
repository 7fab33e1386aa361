"""Back-project depth buffers into world-space points."""

from __future__ import annotations

import numpy as np
from scipy.spatial.transform import Rotation

from roomprint.core.config import MAX_DEPTH, MIN_DEPTH, SAMPLE_STRIDE
from roomprint.core.types import CameraPose, DepthFrame


def pose_matrix(pose: CameraPose) -> np.ndarray:
    """Return the 4×4 camera-to-world matrix for *pose*.

    Quaternions that are not exactly unit length are normalised by scipy.
    """
    matrix = np.eye(4)
    matrix[:3, :3] = Rotation.from_quat(pose.orientation.as_array()).as_matrix()
    matrix[:3, 3] = pose.position.as_array()
    return matrix


def camera_points(
    depth: np.ndarray,
    fx: float,
    fy: float,
    cx: float,
    cy: float,
    *,
    stride: int = SAMPLE_STRIDE,
    min_depth: float = MIN_DEPTH,
    max_depth: float = MAX_DEPTH,
) -> np.ndarray:
    """Back-project sampled pixels of *depth* into camera space.

    Only every *stride*-th row and column is visited, starting at pixel 0.
    Samples outside the open interval ``(min_depth, max_depth)`` are dropped,
    as are NaNs.  Points come out in row-major pixel order.
    """
    if stride < 1:
        raise ValueError("stride must be >= 1")

    rows = np.arange(0, depth.shape[0], stride)
    cols = np.arange(0, depth.shape[1], stride)
    ys, xs = np.meshgrid(rows, cols, indexing="ij")
    sample = depth[ys, xs]

    # Bounds are compared at the buffer's precision so that a float32 0.1
    # counts as "at" the limit.  NaN compares False and falls out here too.
    lo = np.asarray(min_depth, dtype=sample.dtype)
    hi = np.asarray(max_depth, dtype=sample.dtype)
    valid = (sample > lo) & (sample < hi)
    d = sample[valid].astype(np.float64)
    u = xs[valid].astype(np.float64)
    v = ys[valid].astype(np.float64)

    x = (u - cx) * d / fx
    y = (v - cy) * d / fy
    return np.column_stack((x, y, d))


def to_world(points: np.ndarray, transform: np.ndarray) -> np.ndarray:
    """Apply a homogeneous 4×4 *transform* to (N, 3) *points*.

    The result is divided by the transformed ``w`` component.
    """
    if len(points) == 0:
        return np.empty((0, 3), dtype=np.float64)
    homogeneous = np.hstack((points, np.ones((len(points), 1))))
    transformed = homogeneous @ transform.T
    return transformed[:, :3] / transformed[:, 3:4]


def project(
    frame: DepthFrame,
    *,
    stride: int = SAMPLE_STRIDE,
    min_depth: float = MIN_DEPTH,
    max_depth: float = MAX_DEPTH,
) -> np.ndarray:
    """Convert one depth frame into an (N, 3) array of world-space points."""
    k = frame.intrinsics
    cam = camera_points(
        frame.depth,
        k.fx,
        k.fy,
        k.cx,
        k.cy,
        stride=stride,
        min_depth=min_depth,
        max_depth=max_depth,
    )
    return to_world(cam, pose_matrix(frame.pose))

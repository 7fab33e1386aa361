"""Shared test fixtures – synthetic depth frames of a simple room."""

from __future__ import annotations

import numpy as np
import pytest

from roomprint.core.config import ScanConfig
from roomprint.core.types import CameraPose, DepthFrame, Intrinsics, Quaternion, Vec3
from roomprint.pipeline.storage import ScanStore


def make_frame(
    depth: np.ndarray,
    *,
    fx: float = 100.0,
    fy: float = 100.0,
    cx: float | None = None,
    cy: float | None = None,
    position: tuple[float, float, float] = (0.0, 0.0, 0.0),
    orientation: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0),
    timestamp: float = 0.0,
) -> DepthFrame:
    """Wrap a depth grid in a DepthFrame; principal point defaults to the centre."""
    h, w = depth.shape
    qx, qy, qz, qw = orientation
    return DepthFrame(
        depth=depth,
        timestamp=timestamp,
        intrinsics=Intrinsics(
            fx=fx,
            fy=fy,
            cx=(w - 1) / 2 if cx is None else cx,
            cy=(h - 1) / 2 if cy is None else cy,
        ),
        pose=CameraPose(
            position=Vec3.from_sequence(position),
            orientation=Quaternion(x=qx, y=qy, z=qz, w=qw),
        ),
    )


def _room_depth(rng: np.random.Generator, h: int = 48, w: int = 64) -> np.ndarray:
    """A wall about 3 m away with a little noise and a few dropouts."""
    depth = 3.0 + rng.normal(scale=0.01, size=(h, w))
    depth[rng.random((h, w)) < 0.05] = 0.0
    return depth.astype(np.float32)


@pytest.fixture()
def make_depth_frame():
    return make_frame


@pytest.fixture()
def room_frames() -> list[DepthFrame]:
    """Twelve frames of a camera panning slowly around the room origin."""
    rng = np.random.default_rng(7)
    frames = []
    for i in range(12):
        angle = np.deg2rad(i * 10.0)
        # rotation about +Y, scalar-last quaternion
        orientation = (0.0, float(np.sin(angle / 2)), 0.0, float(np.cos(angle / 2)))
        frames.append(
            make_frame(
                _room_depth(rng),
                position=(0.0, 1.5, 0.0),
                orientation=orientation,
                timestamp=i / 30.0,
            )
        )
    return frames


@pytest.fixture()
def store(tmp_path) -> ScanStore:
    return ScanStore(tmp_path / "store")


@pytest.fixture()
def config(tmp_path) -> ScanConfig:
    return ScanConfig(storage_dir=tmp_path / "store", target_point_count=500)

"""Read and write point clouds and recorded capture sessions.

Supported formats
-----------------
* **PLY** – via the ``plyfile`` library (read and write).
* **E57** – via the ``pye57`` library (read only).
* **NPZ recordings** – depth stacks with per-frame intrinsics and poses,
  replayed through a scan session offline.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pye57
from plyfile import PlyData, PlyElement

from roomprint.core.types import CameraPose, DepthFrame, Intrinsics, Quaternion, Vec3

logger = logging.getLogger(__name__)


def load_ply(path: str | Path) -> np.ndarray:
    """Read a binary or ASCII PLY file and return an (N, 3) float64 array."""
    ply = PlyData.read(str(path))
    vertex = ply["vertex"]
    xs = np.asarray(vertex["x"], dtype=np.float64)
    ys = np.asarray(vertex["y"], dtype=np.float64)
    zs = np.asarray(vertex["z"], dtype=np.float64)
    positions = np.column_stack((xs, ys, zs))
    logger.info("PLY file loaded: %d vertices", len(positions))
    return positions


def load_e57(path: str | Path, scan_index: int = 0) -> np.ndarray:
    """Read one scan of an E57 file and return an (N, 3) float64 array.

    Parameters
    ----------
    path : str | Path
        Path to the ``.e57`` file.
    scan_index : int, optional
        Which scan (``Data3D`` entry) to read when the file contains
        multiple scans.  Defaults to ``0`` (the first scan).
    """
    e57 = pye57.E57(str(path))
    try:
        raw = e57.read_scan_raw(scan_index)
        xs = np.asarray(raw["cartesianX"], dtype=np.float64)
        ys = np.asarray(raw["cartesianY"], dtype=np.float64)
        zs = np.asarray(raw["cartesianZ"], dtype=np.float64)
        positions = np.column_stack((xs, ys, zs))
        logger.info("E57 scan %d loaded: %d points", scan_index, len(positions))
        return positions
    finally:
        e57.close()


def load_point_cloud(path: str | Path) -> np.ndarray:
    """Auto-detect format and return an (N, 3) array of positions.

    Raises ``ValueError`` for unsupported extensions.
    """
    p = Path(path)
    ext = p.suffix.lower()
    if ext == ".ply":
        return load_ply(p)
    if ext == ".e57":
        return load_e57(p)
    raise ValueError(
        f"Unsupported point-cloud format '{ext}'. Supported: .ply, .e57"
    )


def write_ply(path: str | Path, points: np.ndarray) -> None:
    """Write an (N, 3) array as a binary little-endian PLY file."""
    pts = np.asarray(points).reshape(-1, 3)
    dtype = [("x", "f4"), ("y", "f4"), ("z", "f4")]
    structured = np.empty(len(pts), dtype=dtype)
    structured["x"] = pts[:, 0]
    structured["y"] = pts[:, 1]
    structured["z"] = pts[:, 2]
    el = PlyElement.describe(structured, "vertex")
    PlyData([el], text=False).write(str(path))
    logger.info("Wrote %d points → %s", len(pts), path)


# ── recordings ───────────────────────────────────────────────────────
RECORDING_KEYS = ("depth", "intrinsics", "positions", "orientations")


def load_recording(path: str | Path) -> list[DepthFrame]:
    """Load a recorded capture session from an ``.npz`` archive.

    Expected arrays:

    * ``depth`` – (F, H, W) depth in metres
    * ``intrinsics`` – (F, 4) rows of ``fx, fy, cx, cy``
    * ``positions`` – (F, 3) camera positions
    * ``orientations`` – (F, 4) quaternions ``x, y, z, w``
    * ``timestamps`` – optional (F,) seconds
    """
    with np.load(str(path)) as data:
        missing = [k for k in RECORDING_KEYS if k not in data.files]
        if missing:
            raise ValueError(f"Recording {Path(path).name} is missing arrays: {missing}")
        depth = data["depth"]
        intrinsics = data["intrinsics"]
        positions = data["positions"]
        orientations = data["orientations"]
        timestamps = (
            data["timestamps"] if "timestamps" in data.files else np.arange(len(depth), dtype=float)
        )

    count = len(depth)
    for name, arr in (
        ("intrinsics", intrinsics),
        ("positions", positions),
        ("orientations", orientations),
        ("timestamps", timestamps),
    ):
        if len(arr) != count:
            raise ValueError(f"'{name}' has {len(arr)} rows, expected {count}")

    frames = []
    for i in range(count):
        fx, fy, cx, cy = (float(v) for v in intrinsics[i])
        qx, qy, qz, qw = (float(v) for v in orientations[i])
        frames.append(
            DepthFrame(
                depth=depth[i],
                timestamp=float(timestamps[i]),
                intrinsics=Intrinsics(fx=fx, fy=fy, cx=cx, cy=cy),
                pose=CameraPose(
                    position=Vec3.from_sequence(positions[i]),
                    orientation=Quaternion(x=qx, y=qy, z=qz, w=qw),
                ),
            )
        )
    return frames


def save_recording(path: str | Path, frames: list[DepthFrame]) -> None:
    """Write *frames* as an ``.npz`` recording readable by :func:`load_recording`.

    All frames must share the same depth resolution.
    """
    if not frames:
        raise ValueError("Cannot save an empty recording")
    np.savez_compressed(
        str(path),
        depth=np.stack([f.depth for f in frames]),
        intrinsics=np.array(
            [[f.intrinsics.fx, f.intrinsics.fy, f.intrinsics.cx, f.intrinsics.cy] for f in frames]
        ),
        positions=np.array([f.pose.position.as_array() for f in frames]),
        orientations=np.array([f.pose.orientation.as_array() for f in frames]),
        timestamps=np.array([f.timestamp for f in frames]),
    )
    logger.info("Wrote recording with %d frames → %s", len(frames), path)

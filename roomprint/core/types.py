"""Pydantic models for scan sessions, room scans and their artefacts.

A room scan is the persisted output of a scanning session: the decimated
point cloud (serialised as a byte payload), the user-placed annotation
anchors, and a signature derived from the payload that is used for room
recognition.
"""

from __future__ import annotations

import base64
import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import numpy as np
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

from roomprint.core.signature import derive_signature


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── tiny helpers ──────────────────────────────────────────────────────
class Vec3(BaseModel):
    """A 3-component vector (x, y, z) in metres."""

    x: float
    y: float
    z: float

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    @classmethod
    def from_sequence(cls, values) -> "Vec3":
        x, y, z = (float(v) for v in values)
        return cls(x=x, y=y, z=z)


class BBox(BaseModel):
    """Axis-aligned bounding box."""

    min: Vec3
    max: Vec3


class Quaternion(BaseModel):
    """Rotation as a unit quaternion, scalar-last (x, y, z, w)."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 1.0

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z, self.w], dtype=np.float64)

    @model_validator(mode="after")
    def _check_norm(self) -> "Quaternion":
        norm = math.hypot(self.x, self.y, self.z, self.w)
        if not math.isfinite(norm) or norm == 0.0:
            raise ValueError(f"Quaternion must have a finite, non-zero norm, got {norm}")
        return self


# ── capture ──────────────────────────────────────────────────────────
class CameraPose(BaseModel):
    """Camera-to-world pose captured alongside a depth frame."""

    model_config = ConfigDict(frozen=True)

    position: Vec3
    orientation: Quaternion = Field(default_factory=Quaternion)


class Intrinsics(BaseModel):
    """Pinhole intrinsics: focal lengths and principal point, in pixels."""

    model_config = ConfigDict(frozen=True)

    fx: float = Field(gt=0)
    fy: float = Field(gt=0)
    cx: float
    cy: float

    @classmethod
    def from_matrix(cls, matrix) -> "Intrinsics":
        """Build from a 3×3 camera matrix ``[[fx, 0, cx], [0, fy, cy], [0, 0, 1]]``."""
        k = np.asarray(matrix, dtype=np.float64)
        if k.shape != (3, 3):
            raise ValueError(f"Expected a 3x3 camera matrix, got shape {k.shape}")
        return cls(fx=k[0, 0], fy=k[1, 1], cx=k[0, 2], cy=k[1, 2])


class DepthFrame(BaseModel):
    """One depth sample pushed by the sensor layer.

    ``depth`` is an (H, W) grid of distances in metres.  Zero, negative and
    NaN entries are invalid samples and are dropped during back-projection.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    depth: np.ndarray
    timestamp: float = 0.0
    intrinsics: Intrinsics
    pose: CameraPose

    @field_validator("depth", mode="before")
    @classmethod
    def _as_2d_array(cls, value: Any) -> np.ndarray:
        arr = np.asarray(value)
        if not np.issubdtype(arr.dtype, np.floating):
            arr = arr.astype(np.float64)
        if arr.ndim != 2:
            raise ValueError(f"Depth buffer must be 2-D, got {arr.ndim} dimensions")
        return arr


# ── annotations ──────────────────────────────────────────────────────
class AnchorType(str, Enum):
    PAINTING = "painting"
    SCULPTURE = "sculpture"
    FURNITURE = "furniture"
    DECORATION = "decoration"
    CUSTOM = "custom"


class AnnotationAnchor(BaseModel):
    """A user-placed point of interest inside a scanned room."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    type: AnchorType
    position: Vec3
    rotation: Quaternion = Field(default_factory=Quaternion)
    scale: Vec3 = Field(default_factory=lambda: Vec3(x=1.0, y=1.0, z=1.0))
    model_path: str = ""
    name: str = "Object"
    created_at: datetime = Field(default_factory=_utcnow)


# ── plane / surface types ────────────────────────────────────────────
class PlaneAlignment(str, Enum):
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"


class DetectedPlane(BaseModel):
    """A live plane reported by the AR session; never persisted."""

    id: str = Field(default_factory=_new_id)
    extent: tuple[float, float] = Field(description="Width and length in metres")
    center: Vec3
    alignment: PlaneAlignment
    transform: list[list[float]] = Field(
        default_factory=lambda: np.eye(4).tolist(),
        description="4x4 plane-to-world matrix, row-major",
    )

    @field_validator("transform")
    @classmethod
    def _is_4x4(cls, value: list[list[float]]) -> list[list[float]]:
        if len(value) != 4 or any(len(row) != 4 for row in value):
            raise ValueError("transform must be a 4x4 matrix")
        return value


# ── room scan ────────────────────────────────────────────────────────
class RoomScan(BaseModel):
    """A named, persisted room scan.

    ``signature`` is always recomputed from ``payload``; a value supplied by
    the caller (or read back from disk) is discarded.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    name: str
    timestamp: datetime = Field(default_factory=_utcnow)
    payload: bytes = b""
    anchors: list[AnnotationAnchor] = Field(default_factory=list)
    signature: str = ""

    @field_validator("payload", mode="before")
    @classmethod
    def _decode_payload(cls, value: Any) -> Any:
        # JSON records carry the payload base64-encoded.
        if isinstance(value, str):
            return base64.b64decode(value.encode("ascii"), validate=True)
        return value

    @field_serializer("payload", when_used="json")
    def _encode_payload(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    @model_validator(mode="after")
    def _derive_signature(self) -> "RoomScan":
        # frozen model: the validator is the only writer
        object.__setattr__(self, "signature", derive_signature(self.payload))
        return self


# ── session ──────────────────────────────────────────────────────────
class SessionState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PROCESSING = "processing"


class SaveResult(BaseModel):
    """Outcome of saving a session.

    ``persisted`` is False when writing to the store failed.  The scan is
    still part of the session's known scans in that case, so retrying the
    store write is the caller's decision.
    """

    scan: RoomScan
    persisted: bool
    error: Optional[str] = None

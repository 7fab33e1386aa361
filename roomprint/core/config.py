"""Pipeline configuration.

Defaults match the capture behaviour of a hand-held LiDAR scanner.  Every
field can be overridden from the environment with a ``ROOMPRINT_`` prefix,
e.g. ``ROOMPRINT_SAMPLE_STRIDE=2``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "ROOMPRINT_"

# Pipeline defaults.  ScanConfig and the keyword defaults of the pipeline
# functions all read from here.
SAMPLE_STRIDE = 4
MIN_DEPTH = 0.1
MAX_DEPTH = 10.0
TARGET_FRAME_COUNT = 300
TARGET_POINT_COUNT = 50_000
RECOGNITION_THRESHOLD = 0.85
DEFAULT_ROOM_NAME = "Untitled Room"


class ScanConfig(BaseModel):
    """Tunables for reconstruction, recognition and storage."""

    storage_dir: Path = Field(default_factory=lambda: Path.home() / ".roomprint")

    # back-projection
    sample_stride: int = Field(default=SAMPLE_STRIDE, ge=1, description="Sample every Nth pixel per axis")
    min_depth: float = Field(default=MIN_DEPTH, ge=0.0, description="Exclusive lower depth bound (m)")
    max_depth: float = Field(default=MAX_DEPTH, gt=0.0, description="Exclusive upper depth bound (m)")

    # session
    target_frame_count: int = Field(default=TARGET_FRAME_COUNT, ge=1)
    target_point_count: int = Field(default=TARGET_POINT_COUNT, ge=1)
    default_room_name: str = DEFAULT_ROOM_NAME

    # recognition
    recognition_threshold: float = Field(default=RECOGNITION_THRESHOLD, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_depth_range(self) -> "ScanConfig":
        if self.min_depth >= self.max_depth:
            raise ValueError(
                f"min_depth ({self.min_depth}) must be below max_depth ({self.max_depth})"
            )
        return self

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides
    ) -> "ScanConfig":
        """Build a config from ``ROOMPRINT_*`` variables plus explicit overrides.

        Explicit keyword overrides that are ``None`` are ignored, so CLI
        options can be passed straight through.
        """
        environ = os.environ if environ is None else environ
        values: dict = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)

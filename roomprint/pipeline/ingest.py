"""Depth-frame buffering for an active scan.

Appending is the only work done on the capture tick; all geometry is
deferred until the session stops.
"""

from __future__ import annotations

from roomprint.core.config import TARGET_FRAME_COUNT
from roomprint.core.types import DepthFrame


class FrameBuffer:
    """Ordered list of depth frames with a capture-progress estimate."""

    def __init__(self, target_frame_count: int = TARGET_FRAME_COUNT):
        if target_frame_count < 1:
            raise ValueError("target_frame_count must be positive")
        self.target_frame_count = target_frame_count
        self._frames: list[DepthFrame] = []

    def append(self, frame: DepthFrame) -> float:
        """Buffer *frame* and return the updated progress."""
        self._frames.append(frame)
        return self.progress

    @property
    def progress(self) -> float:
        return min(1.0, len(self._frames) / self.target_frame_count)

    def drain(self) -> list[DepthFrame]:
        """Hand over every buffered frame and empty the buffer."""
        frames, self._frames = self._frames, []
        return frames

    def clear(self) -> None:
        self._frames.clear()

    def __len__(self) -> int:
        return len(self._frames)

"""Scan session state machine.

A session moves ``idle → scanning → processing → idle``.  Frames are only
buffered while scanning; stopping converts them into a decimated cloud; a
finished cloud can be saved as a :class:`RoomScan`.  Transitions requested
from the wrong state are ignored, since a hand-held UI will happily send
taps out of order.

UI layers observe the session through :meth:`ScanSession.subscribe`.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Optional

import numpy as np

from roomprint.core import signature
from roomprint.core.config import ScanConfig
from roomprint.core.errors import StorageError
from roomprint.core.types import (
    AnchorType,
    AnnotationAnchor,
    DepthFrame,
    DetectedPlane,
    Quaternion,
    RoomScan,
    SaveResult,
    SessionState,
    Vec3,
)
from roomprint.pipeline.ingest import FrameBuffer
from roomprint.pipeline.process import encode_points, reconstruct_with_config
from roomprint.pipeline.storage import ScanStore

logger = logging.getLogger(__name__)

Listener = Callable[[str, "ScanSession"], None]


class ScanSession:
    """Owns one scanning session plus the list of known rooms."""

    def __init__(self, store: Optional[ScanStore] = None, config: Optional[ScanConfig] = None):
        self.config = config or ScanConfig()
        self.store = store
        self.state = SessionState.IDLE
        self.room_name = ""
        self.progress = 0.0
        self.points = np.empty((0, 3), dtype=np.float64)
        self.planes: list[DetectedPlane] = []
        self.anchors: list[AnnotationAnchor] = []
        self._frames = FrameBuffer(self.config.target_frame_count)
        self._known: list[RoomScan] = []
        self._known_lock = threading.RLock()
        self._listeners: list[Listener] = []

    # ── observation ──────────────────────────────────────────────────
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, self)
            except Exception:
                logger.exception("Session listener failed on %r", event)

    def _set_state(self, state: SessionState) -> None:
        self.state = state
        self._publish("state")

    def _ignored(self, action: str) -> None:
        logger.debug("Ignoring %s while %s", action, self.state.value)

    # ── read-only views ──────────────────────────────────────────────
    @property
    def is_scanning(self) -> bool:
        return self.state is SessionState.SCANNING

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    @property
    def known_scans(self) -> list[RoomScan]:
        with self._known_lock:
            return list(self._known)

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "is_scanning": self.is_scanning,
            "room_name": self.room_name,
            "progress": self.progress,
            "frame_count": self.frame_count,
            "point_count": len(self.points),
            "plane_count": len(self.planes),
            "anchor_count": len(self.anchors),
            "known_scan_count": len(self.known_scans),
        }

    # ── transitions ──────────────────────────────────────────────────
    def start(self, name: str = "") -> bool:
        if self.state is not SessionState.IDLE:
            self._ignored("start")
            return False
        self.room_name = name.strip() or self.config.default_room_name
        self._frames.clear()
        self.points = np.empty((0, 3), dtype=np.float64)
        self.planes = []
        self.anchors = []
        self.progress = 0.0
        logger.info("Started scanning %r", self.room_name)
        self._set_state(SessionState.SCANNING)
        self._publish("progress")
        return True

    def ingest(self, frame: DepthFrame) -> bool:
        """Buffer a frame.  Frames outside a scan are dropped silently."""
        if self.state is not SessionState.SCANNING:
            return False
        self.progress = self._frames.append(frame)
        self._publish("progress")
        return True

    def _begin_processing(self) -> Optional[list[DepthFrame]]:
        if self.state is not SessionState.SCANNING:
            self._ignored("stop")
            return None
        frames = self._frames.drain()
        self._set_state(SessionState.PROCESSING)
        return frames

    def _finish_processing(self, points: np.ndarray) -> np.ndarray:
        self.points = points
        self.progress = 1.0
        logger.info("Scan %r processed: %d points", self.room_name, len(points))
        self._publish("progress")
        self._publish("cloud_ready")
        self._set_state(SessionState.IDLE)
        return points

    def stop(self) -> Optional[np.ndarray]:
        """Stop scanning and build the cloud on the calling thread."""
        frames = self._begin_processing()
        if frames is None:
            return None
        try:
            points = reconstruct_with_config(frames, self.config)
        except Exception:
            self._set_state(SessionState.IDLE)
            raise
        return self._finish_processing(points)

    async def stop_async(self) -> Optional[np.ndarray]:
        """Stop scanning and build the cloud on a worker thread.

        The session reports ``processing`` until the worker is done; the
        cloud is published (``cloud_ready``) only after that.
        """
        frames = self._begin_processing()
        if frames is None:
            return None
        try:
            points = await asyncio.to_thread(reconstruct_with_config, frames, self.config)
        except BaseException:
            # cancelled or failed: the buffered frames are gone either way
            self._set_state(SessionState.IDLE)
            raise
        return self._finish_processing(points)

    def _build_scan(self) -> Optional[RoomScan]:
        if self.state is not SessionState.IDLE or len(self.points) == 0:
            self._ignored("save")
            return None
        scan = RoomScan(
            name=self.room_name or self.config.default_room_name,
            payload=encode_points(self.points),
            anchors=list(self.anchors),
        )
        with self._known_lock:
            self._known.append(scan)
        self._publish("scans")
        return scan

    def save(self) -> Optional[SaveResult]:
        """Turn the current cloud into a RoomScan and persist it.

        The scan joins the known scans before the write; a failed write is
        reported in the result and is not rolled back.
        """
        scan = self._build_scan()
        if scan is None:
            return None
        if self.store is None:
            return SaveResult(scan=scan, persisted=False, error="no store configured")
        try:
            self.store.save(scan)
            self.store.save_anchors(scan.anchors, scan.id)
        except StorageError as e:
            logger.error("Saving scan %r failed: %s", scan.name, e)
            return SaveResult(scan=scan, persisted=False, error=str(e))
        return SaveResult(scan=scan, persisted=True)

    async def save_async(self) -> Optional[SaveResult]:
        scan = self._build_scan()
        if scan is None:
            return None
        if self.store is None:
            return SaveResult(scan=scan, persisted=False, error="no store configured")
        try:
            await self.store.asave(scan)
            await self.store.asave_anchors(scan.anchors, scan.id)
        except StorageError as e:
            logger.error("Saving scan %r failed: %s", scan.name, e)
            return SaveResult(scan=scan, persisted=False, error=str(e))
        return SaveResult(scan=scan, persisted=True)

    # ── recognition ──────────────────────────────────────────────────
    def candidate_signature(self, points: np.ndarray) -> str:
        return signature.derive_signature(encode_points(points))

    def recognize(self, points: Optional[np.ndarray] = None) -> Optional[RoomScan]:
        """Match *points* (default: the current cloud) against known scans."""
        if points is None:
            points = self.points
        return signature.recognize(
            self.candidate_signature(points),
            self.known_scans,
            threshold=self.config.recognition_threshold,
        )

    def rank(self, points: Optional[np.ndarray] = None) -> list[tuple[RoomScan, float]]:
        if points is None:
            points = self.points
        return signature.rank(self.candidate_signature(points), self.known_scans)

    # ── known scans ──────────────────────────────────────────────────
    def load_known_scans(self) -> list[RoomScan]:
        """Replace the known scans with the store's, newest first."""
        if self.store is None:
            return self.known_scans
        scans = sorted(self.store.load_all(), key=lambda s: s.timestamp, reverse=True)
        with self._known_lock:
            self._known = scans
        logger.info("Loaded %d known scans", len(scans))
        self._publish("scans")
        return list(scans)

    def delete_scan(self, scan_id: str) -> bool:
        with self._known_lock:
            before = len(self._known)
            self._known = [s for s in self._known if s.id != scan_id]
            removed = len(self._known) != before
        if self.store is not None:
            removed = self.store.delete(scan_id) or removed
        if removed:
            self._publish("scans")
        return removed

    # ── planes & anchors ─────────────────────────────────────────────
    def update_planes(self, planes: list[DetectedPlane]) -> None:
        self.planes = list(planes)
        self._publish("planes")

    def add_anchor(
        self,
        type: AnchorType,
        position: Vec3,
        name: str = "Object",
        model_path: str = "",
    ) -> AnnotationAnchor:
        anchor = AnnotationAnchor(
            type=AnchorType(type), position=position, name=name, model_path=model_path
        )
        self.anchors.append(anchor)
        self._publish("anchors")
        return anchor

    def remove_anchor(self, anchor_id: str) -> bool:
        before = len(self.anchors)
        self.anchors = [a for a in self.anchors if a.id != anchor_id]
        if len(self.anchors) == before:
            return False
        self._publish("anchors")
        return True

    def move_anchor(
        self,
        anchor_id: str,
        position: Optional[Vec3] = None,
        rotation: Optional[Quaternion] = None,
        scale: Optional[Vec3] = None,
    ) -> Optional[AnnotationAnchor]:
        """Update the placement of an anchor; identity and type are fixed."""
        for i, anchor in enumerate(self.anchors):
            if anchor.id != anchor_id:
                continue
            update = {
                k: v
                for k, v in (("position", position), ("rotation", rotation), ("scale", scale))
                if v is not None
            }
            moved = anchor.model_copy(update=update)
            self.anchors[i] = moved
            self._publish("anchors")
            return moved
        return None

"""Tests for the scan session state machine."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest
from pydantic import ValidationError

from roomprint.core.config import ScanConfig
from roomprint.core.types import (
    AnchorType,
    DetectedPlane,
    PlaneAlignment,
    Quaternion,
    RoomScan,
    SessionState,
    Vec3,
)
from roomprint.pipeline.process import encode_points
from roomprint.pipeline.session import ScanSession
from roomprint.pipeline.storage import ScanStore


def _fields(session: ScanSession) -> dict:
    return {
        "state": session.state,
        "room_name": session.room_name,
        "progress": session.progress,
        "frame_count": session.frame_count,
        "points": session.points.copy(),
        "anchors": list(session.anchors),
        "known": session.known_scans,
    }


def _assert_unchanged(before: dict, after: dict) -> None:
    np.testing.assert_array_equal(before.pop("points"), after.pop("points"))
    assert before == after


@pytest.fixture()
def session(store: ScanStore, config: ScanConfig) -> ScanSession:
    return ScanSession(store=store, config=config)


def _scanned(session: ScanSession, frames) -> np.ndarray:
    session.start("office")
    for frame in frames:
        session.ingest(frame)
    return session.stop()


class TestInvalidTransitions:
    def test_stop_while_idle(self, session: ScanSession):
        before = _fields(session)
        assert session.stop() is None
        _assert_unchanged(before, _fields(session))

    def test_ingest_while_idle(self, session: ScanSession, room_frames):
        before = _fields(session)
        assert session.ingest(room_frames[0]) is False
        _assert_unchanged(before, _fields(session))

    def test_start_while_scanning(self, session: ScanSession, room_frames):
        session.start("first")
        session.ingest(room_frames[0])
        assert session.start("second") is False
        assert session.room_name == "first"
        assert session.frame_count == 1

    def test_save_without_cloud(self, session: ScanSession):
        assert session.save() is None
        assert session.known_scans == []

    def test_save_while_scanning(self, session: ScanSession, room_frames):
        _scanned(session, room_frames)
        session.start("again")
        assert session.save() is None

    def test_ingest_after_stop_dropped(self, session: ScanSession, room_frames):
        _scanned(session, room_frames)
        assert session.ingest(room_frames[0]) is False
        assert session.frame_count == 0


class TestScanning:
    def test_start_resets(self, session: ScanSession, room_frames):
        _scanned(session, room_frames)
        session.add_anchor(AnchorType.CUSTOM, Vec3(x=0, y=0, z=0))

        assert session.start("next") is True

        assert session.state is SessionState.SCANNING
        assert session.is_scanning
        assert session.progress == 0.0
        assert len(session.points) == 0
        assert session.anchors == []

    def test_default_name(self, session: ScanSession):
        session.start("   ")
        assert session.room_name == "Untitled Room"

    def test_progress(self, store: ScanStore, room_frames):
        session = ScanSession(store=store, config=ScanConfig(target_frame_count=8))
        session.start("office")
        for frame in room_frames[:4]:
            session.ingest(frame)
        assert session.progress == 0.5
        for frame in room_frames[4:]:
            session.ingest(frame)
        assert session.progress == 1.0

    def test_stop_builds_cloud(self, session: ScanSession, room_frames):
        points = _scanned(session, room_frames)

        assert session.state is SessionState.IDLE
        assert session.progress == 1.0
        assert session.frame_count == 0
        assert points is session.points
        assert 0 < len(points) < 2 * session.config.target_point_count
        assert points.shape[1] == 3

    def test_stop_is_reproducible(self, store: ScanStore, config: ScanConfig, room_frames):
        a = _scanned(ScanSession(store=store, config=config), room_frames)
        b = _scanned(ScanSession(store=store, config=config), room_frames)
        np.testing.assert_array_equal(a, b)

    def test_bad_pose_cannot_reach_the_buffer(self, session: ScanSession, make_depth_frame):
        session.start("hall")
        session.ingest(make_depth_frame(np.full((8, 8), 2.0)))
        with pytest.raises(ValidationError):
            make_depth_frame(np.full((8, 8), 2.0), orientation=(0.0, 0.0, 0.0, 0.0))
        assert session.frame_count == 1

        points = session.stop()

        assert len(points) == 4
        assert session.state is SessionState.IDLE

    def test_stop_without_frames(self, session: ScanSession):
        session.start("empty")
        points = session.stop()
        assert len(points) == 0
        assert session.state is SessionState.IDLE
        assert session.save() is None

    def test_stop_async(self, session: ScanSession, room_frames):
        events = []
        session.subscribe(lambda event, s: events.append((event, s.state)))
        session.start("office")
        for frame in room_frames:
            session.ingest(frame)

        points = asyncio.run(session.stop_async())

        assert len(points) > 0
        assert session.state is SessionState.IDLE
        assert ("state", SessionState.PROCESSING) in events
        ready = events.index(("cloud_ready", SessionState.PROCESSING))
        assert events.index(("state", SessionState.PROCESSING)) < ready
        assert events[-1] == ("state", SessionState.IDLE)


class TestSave:
    def test_save_persists(self, session: ScanSession, room_frames, store: ScanStore):
        points = _scanned(session, room_frames)
        session.add_anchor(AnchorType.SCULPTURE, Vec3(x=1, y=0, z=2), name="bust")

        result = session.save()

        assert result.persisted is True
        assert result.error is None
        scan = result.scan
        assert scan.name == "office"
        assert scan.payload == encode_points(points)
        assert session.known_scans == [scan]
        assert store.load_all() == [scan]
        assert [a.name for a in store.load_anchors(scan.id)] == ["bust"]

    def test_save_failure_keeps_scan(self, tmp_path: Path, room_frames):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        session = ScanSession(
            store=ScanStore(blocker), config=ScanConfig(target_point_count=500)
        )
        _scanned(session, room_frames)

        result = session.save()

        assert result.persisted is False
        assert result.error
        assert session.known_scans == [result.scan]

    def test_save_without_store(self, room_frames):
        session = ScanSession(config=ScanConfig(target_point_count=500))
        _scanned(session, room_frames)
        result = session.save()
        assert result.persisted is False
        assert len(session.known_scans) == 1

    def test_save_async(self, session: ScanSession, room_frames, store: ScanStore):
        _scanned(session, room_frames)
        result = asyncio.run(session.save_async())
        assert result.persisted is True
        assert store.load(result.scan.id) == result.scan


class TestRecognition:
    def test_recognises_same_cloud(self, session: ScanSession, room_frames):
        points = _scanned(session, room_frames)
        saved = session.save().scan

        assert session.recognize(points) is saved
        assert session.recognize() is saved

    def test_recognises_after_reload(self, session: ScanSession, room_frames, store, config):
        points = _scanned(session, room_frames)
        saved = session.save().scan

        fresh = ScanSession(store=store, config=config)
        fresh.load_known_scans()

        assert fresh.recognize(points) == saved

    def test_different_room_not_recognised(self, session: ScanSession, room_frames):
        _scanned(session, room_frames)
        session.save()
        other = np.random.default_rng(3).random((400, 3))
        assert session.recognize(other) is None

    def test_recognize_does_not_mutate(self, session: ScanSession, room_frames):
        _scanned(session, room_frames)
        session.save()
        before = _fields(session)
        session.recognize(np.zeros((4, 3)))
        _assert_unchanged(before, _fields(session))

    def test_recognize_while_scanning(self, session: ScanSession, room_frames):
        points = _scanned(session, room_frames)
        saved = session.save().scan
        session.start("walkthrough")
        assert session.recognize(points) is saved


class TestKnownScans:
    def test_load_sorted_newest_first(self, store: ScanStore, config: ScanConfig):
        now = datetime.now(timezone.utc)
        for i, name in enumerate(["old", "new", "middle"]):
            offset = {"old": -2, "new": 0, "middle": -1}[name]
            store.save(RoomScan(name=name, payload=bytes([i]), timestamp=now + timedelta(days=offset)))

        session = ScanSession(store=store, config=config)
        scans = session.load_known_scans()

        assert [s.name for s in scans] == ["new", "middle", "old"]

    def test_delete_scan(self, session: ScanSession, room_frames, store: ScanStore):
        _scanned(session, room_frames)
        scan = session.save().scan

        assert session.delete_scan(scan.id) is True

        assert session.known_scans == []
        assert store.load_all() == []
        assert session.delete_scan(scan.id) is False


class TestAnchorsAndPlanes:
    def test_add_move_remove(self, session: ScanSession):
        anchor = session.add_anchor(AnchorType.FURNITURE, Vec3(x=0, y=0, z=0), name="sofa")

        moved = session.move_anchor(
            anchor.id,
            position=Vec3(x=1, y=0, z=0),
            rotation=Quaternion(x=0, y=1, z=0, w=0),
        )

        assert moved.id == anchor.id
        assert moved.type is AnchorType.FURNITURE
        assert moved.created_at == anchor.created_at
        assert moved.position == Vec3(x=1, y=0, z=0)
        assert moved.scale == anchor.scale
        assert session.anchors == [moved]

        assert session.remove_anchor(anchor.id) is True
        assert session.anchors == []
        assert session.remove_anchor(anchor.id) is False

    def test_move_unknown(self, session: ScanSession):
        assert session.move_anchor("ghost", position=Vec3(x=0, y=0, z=0)) is None

    def test_planes(self, session: ScanSession):
        events = []
        session.subscribe(lambda event, s: events.append(event))
        plane = DetectedPlane(
            extent=(2.0, 3.0), center=Vec3(x=0, y=0, z=0), alignment=PlaneAlignment.HORIZONTAL
        )
        session.update_planes([plane])
        assert session.planes == [plane]
        assert events == ["planes"]


class TestObservation:
    def test_unsubscribe(self, session: ScanSession):
        events = []
        unsubscribe = session.subscribe(lambda event, s: events.append(event))
        session.start("a")
        unsubscribe()
        session.stop()
        assert events == ["state", "progress"]

    def test_failing_listener_is_isolated(self, session: ScanSession, room_frames):
        def boom(event, s):
            raise RuntimeError("listener bug")

        session.subscribe(boom)
        points = _scanned(session, room_frames)
        assert len(points) > 0
        assert session.state is SessionState.IDLE

    def test_snapshot(self, session: ScanSession, room_frames):
        session.start("hall")
        session.ingest(room_frames[0])
        snap = session.snapshot()
        assert snap["state"] == "scanning"
        assert snap["is_scanning"] is True
        assert snap["frame_count"] == 1
        assert snap["room_name"] == "hall"

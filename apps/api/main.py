"""FastAPI application exposing a scan session to a UI layer.

The AR front-end pushes depth frames, live planes and anchors; it reads back
the session state, the reconstructed cloud and recognition results.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import numpy as np
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel as PydanticBaseModel
from pydantic import ValidationError

from roomprint.core.config import ScanConfig
from roomprint.core.errors import ScanNotFoundError
from roomprint.core.types import (
    AnchorType,
    CameraPose,
    DepthFrame,
    DetectedPlane,
    Intrinsics,
    Quaternion,
    Vec3,
)
from roomprint.pipeline.process import compute_bounds
from roomprint.pipeline.session import ScanSession
from roomprint.pipeline.storage import ScanStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Roomprint API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # permissive for local development; tighten for production
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Single session per process ───────────────────────────────────────
_state: dict = {"session": None}


def configure(config: Optional[ScanConfig] = None) -> ScanSession:
    """(Re)create the process-wide session from *config*."""
    config = config or ScanConfig.from_env()
    session = ScanSession(store=ScanStore(config.storage_dir), config=config)
    session.load_known_scans()
    _state["session"] = session
    return session


def get_session() -> ScanSession:
    if _state["session"] is None:
        configure()
    return _state["session"]


# ── request bodies ───────────────────────────────────────────────────
class StartRequest(PydanticBaseModel):
    name: str = ""


class FrameRequest(PydanticBaseModel):
    """One depth frame; ``depth`` is a row-major list of rows in metres."""

    depth: list[list[Optional[float]]]
    timestamp: float = 0.0
    intrinsics: Intrinsics
    pose: CameraPose


class AnchorRequest(PydanticBaseModel):
    type: AnchorType
    position: Vec3
    name: str = "Object"
    model_path: str = ""


class MoveAnchorRequest(PydanticBaseModel):
    position: Optional[Vec3] = None
    rotation: Optional[Quaternion] = None
    scale: Optional[Vec3] = None


class RecognizeRequest(PydanticBaseModel):
    """Points to recognise as ``[[x, y, z], ...]``; defaults to the current cloud."""

    points: Optional[list[list[float]]] = None


# ── routes ───────────────────────────────────────────────────────────
@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/session")
def session_state():
    return get_session().snapshot()


@app.post("/session/start")
def start_session(req: StartRequest):
    session = get_session()
    started = session.start(req.name)
    logger.info(f"▶️  Start requested ({'accepted' if started else 'ignored'})")
    return {"started": started, **session.snapshot()}


@app.post("/session/frames")
def ingest_frame(req: FrameRequest):
    session = get_session()
    try:
        frame = DepthFrame(
            depth=np.array(req.depth, dtype=np.float64),
            timestamp=req.timestamp,
            intrinsics=req.intrinsics,
            pose=req.pose,
        )
    except (ValidationError, ValueError) as e:
        raise HTTPException(400, f"Invalid depth frame: {e}")
    accepted = session.ingest(frame)
    return {"accepted": accepted, "progress": session.progress}


@app.post("/session/stop")
async def stop_session():
    session = get_session()
    try:
        points = await session.stop_async()
    except Exception as e:
        logger.exception("❌ Reconstruction failed")
        raise HTTPException(500, f"Reconstruction failed: {e}")
    if points is None:
        return {"stopped": False, **session.snapshot()}
    logger.info(f"✅ Reconstruction complete: {len(points):,} points")
    return {"stopped": True, **session.snapshot()}


@app.post("/session/save")
async def save_session():
    session = get_session()
    result = await session.save_async()
    if result is None:
        raise HTTPException(409, "Nothing to save: stop a scan with a non-empty cloud first")
    if not result.persisted:
        logger.error(f"💾 Scan kept in memory but not stored: {result.error}")
    return {
        "id": result.scan.id,
        "name": result.scan.name,
        "signature": result.scan.signature,
        "persisted": result.persisted,
        "error": result.error,
    }


@app.get("/session/points")
def get_points():
    """Return the current cloud as a flat ``[x, y, z, ...]`` float list."""
    session = get_session()
    pts = session.points
    bounds = compute_bounds(pts)
    return {
        "count": len(pts),
        "positions": pts.astype(np.float32).ravel().tolist(),
        "bounds": bounds.model_dump() if bounds else None,
    }


@app.put("/session/planes")
def put_planes(planes: list[DetectedPlane]):
    session = get_session()
    session.update_planes(planes)
    return {"count": len(session.planes)}


@app.get("/session/planes")
def get_planes():
    return JSONResponse(content=[json.loads(p.model_dump_json()) for p in get_session().planes])


@app.get("/session/anchors")
def list_anchors():
    return JSONResponse(content=[json.loads(a.model_dump_json()) for a in get_session().anchors])


@app.post("/session/anchors")
def add_anchor(req: AnchorRequest):
    anchor = get_session().add_anchor(req.type, req.position, req.name, req.model_path)
    logger.info(f"📍 Anchor added: {anchor.name} ({anchor.type.value})")
    return JSONResponse(content=json.loads(anchor.model_dump_json()))


@app.patch("/session/anchors/{anchor_id}")
def move_anchor(anchor_id: str, req: MoveAnchorRequest):
    anchor = get_session().move_anchor(anchor_id, req.position, req.rotation, req.scale)
    if anchor is None:
        raise HTTPException(404, f"No anchor {anchor_id}")
    return JSONResponse(content=json.loads(anchor.model_dump_json()))


@app.delete("/session/anchors/{anchor_id}")
def delete_anchor(anchor_id: str):
    if not get_session().remove_anchor(anchor_id):
        raise HTTPException(404, f"No anchor {anchor_id}")
    return {"deleted": anchor_id}


@app.post("/recognize")
def recognize(req: RecognizeRequest):
    session = get_session()
    points = None
    if req.points is not None:
        try:
            points = np.asarray(req.points, dtype=np.float64).reshape(-1, 3)
        except ValueError as e:
            raise HTTPException(400, f"Points must be [x, y, z] triples: {e}")
    candidates = [
        {"id": scan.id, "name": scan.name, "similarity": score}
        for scan, score in session.rank(points)[:5]
    ]
    match = session.recognize(points)
    return {
        "match": None if match is None else {"id": match.id, "name": match.name},
        "candidates": candidates,
    }


@app.get("/scans")
def list_scans():
    return [
        {
            "id": s.id,
            "name": s.name,
            "timestamp": s.timestamp.isoformat(),
            "signature": s.signature,
            "anchor_count": len(s.anchors),
        }
        for s in get_session().known_scans
    ]


@app.get("/scans/{scan_id}/export")
def export_scan(scan_id: str):
    """Return the key-sorted interchange form of a stored scan."""
    try:
        body = get_session().store.export_text(scan_id)
    except ScanNotFoundError:
        raise HTTPException(404, f"No stored scan {scan_id}")
    return Response(content=body, media_type="application/json")


@app.delete("/scans/{scan_id}")
def delete_scan(scan_id: str):
    if not get_session().delete_scan(scan_id):
        raise HTTPException(404, f"No stored scan {scan_id}")
    logger.info(f"🗑️  Deleted scan {scan_id}")
    return {"deleted": scan_id}

"""Filesystem persistence for room scans and their anchors.

Layout under the store root::

    rooms/<id>.room        one RoomScan per file (pydantic JSON)
    anchors/<id>.anchors   the anchor list of room <id>

Anchors live in their own record so they can be rewritten without touching
the (much larger) room geometry.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from roomprint.core.errors import ScanNotFoundError, StorageError
from roomprint.core.types import AnnotationAnchor, RoomScan

logger = logging.getLogger(__name__)

ROOM_SUFFIX = ".room"
ANCHORS_SUFFIX = ".anchors"

_anchor_list = TypeAdapter(list[AnnotationAnchor])


class ScanStore:
    """Keyed record store, one file per scan and one per anchor list.

    Writes are last-write-wins.  Methods raise :class:`StorageError` on I/O
    problems; absence (unknown id, empty directory) is never an error.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.rooms_dir = self.root / "rooms"
        self.anchors_dir = self.root / "anchors"

    def _room_path(self, scan_id: str) -> Path:
        return self.rooms_dir / f"{scan_id}{ROOM_SUFFIX}"

    def _anchors_path(self, room_id: str) -> Path:
        return self.anchors_dir / f"{room_id}{ANCHORS_SUFFIX}"

    @staticmethod
    def _write(path: Path, data: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            tmp.write_text(data, encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            raise StorageError(f"Could not write {path}: {e}") from e

    # ── rooms ────────────────────────────────────────────────────────
    def save(self, scan: RoomScan) -> Path:
        """Persist *scan*, overwriting any record with the same id."""
        path = self._room_path(scan.id)
        self._write(path, scan.model_dump_json())
        logger.info("Saved scan %r → %s", scan.name, path.name)
        return path

    def load(self, scan_id: str) -> RoomScan | None:
        path = self._room_path(scan_id)
        if not path.exists():
            return None
        try:
            return RoomScan.model_validate_json(path.read_bytes())
        except OSError as e:
            raise StorageError(f"Could not read {path}: {e}") from e
        except ValidationError as e:
            raise StorageError(f"Malformed scan record {path.name}: {e}") from e

    def load_all(self) -> list[RoomScan]:
        """Return every readable scan; malformed files are skipped.

        Order is whatever the directory listing yields.
        """
        if not self.rooms_dir.is_dir():
            return []
        scans: list[RoomScan] = []
        for path in self.rooms_dir.glob(f"*{ROOM_SUFFIX}"):
            try:
                scans.append(RoomScan.model_validate_json(path.read_bytes()))
            except (OSError, ValidationError) as e:
                logger.warning("Skipping unreadable scan record %s: %s", path.name, e)
        return scans

    def delete(self, scan_id: str) -> bool:
        """Remove a scan and its anchors.  Returns False if nothing existed."""
        removed = False
        for path in (self._room_path(scan_id), self._anchors_path(scan_id)):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageError(f"Could not delete {path}: {e}") from e
        if removed:
            logger.info("Deleted scan %s", scan_id)
        return removed

    # ── anchors ──────────────────────────────────────────────────────
    def save_anchors(self, anchors: list[AnnotationAnchor], room_id: str) -> Path:
        path = self._anchors_path(room_id)
        self._write(path, _anchor_list.dump_json(anchors).decode("utf-8"))
        logger.info("Saved %d anchors for room %s", len(anchors), room_id)
        return path

    def load_anchors(self, room_id: str) -> list[AnnotationAnchor]:
        path = self._anchors_path(room_id)
        if not path.exists():
            return []
        try:
            return _anchor_list.validate_json(path.read_bytes())
        except OSError as e:
            raise StorageError(f"Could not read {path}: {e}") from e
        except ValidationError as e:
            raise StorageError(f"Malformed anchor record {path.name}: {e}") from e

    # ── interchange ──────────────────────────────────────────────────
    def export_text(self, scan_id: str) -> str:
        """Return the pretty, key-sorted interchange form of a stored scan."""
        scan = self.load(scan_id)
        if scan is None:
            raise ScanNotFoundError(f"No stored scan with id {scan_id}")
        return json.dumps(scan.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"

    def export(self, scan_id: str, destination: str | Path) -> Path:
        """Write the interchange form of a stored scan to *destination*."""
        destination = Path(destination)
        self._write(destination, self.export_text(scan_id))
        logger.info("Exported scan %s → %s", scan_id, destination)
        return destination

    def import_scan(self, source: str | Path) -> RoomScan:
        """Parse an exported scan and persist it (same id overwrites)."""
        source = Path(source)
        try:
            scan = RoomScan.model_validate_json(source.read_bytes())
        except OSError as e:
            raise StorageError(f"Could not read {source}: {e}") from e
        except ValidationError as e:
            raise StorageError(f"Malformed scan export {source.name}: {e}") from e
        self.save(scan)
        return scan

    # ── async wrappers ───────────────────────────────────────────────
    async def asave(self, scan: RoomScan) -> Path:
        return await asyncio.to_thread(self.save, scan)

    async def asave_anchors(self, anchors: list[AnnotationAnchor], room_id: str) -> Path:
        return await asyncio.to_thread(self.save_anchors, anchors, room_id)

    async def aload_all(self) -> list[RoomScan]:
        return await asyncio.to_thread(self.load_all)

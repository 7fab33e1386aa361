"""Room signatures: a djb2 fingerprint of a serialised point cloud.

The signature is a non-cryptographic hash.  It only identifies a room when
the payload bytes are reproduced closely, so any change in point order or in
decimation count shifts it.  ``similarity`` compares the hex strings
character by character, which is a rough stand-in for geometric overlap.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np

from roomprint.core.config import RECOGNITION_THRESHOLD

if TYPE_CHECKING:
    from roomprint.core.types import RoomScan

logger = logging.getLogger(__name__)

DJB2_SEED = 5381
_MASK64 = (1 << 64) - 1


def derive_signature(payload: bytes) -> str:
    """Return the 64-bit djb2 hash of *payload* as lowercase hex.

    Equivalent to ``h = (h << 5) + h + byte`` for every byte, seeded at 5381
    and wrapping at 64 bits.  Evaluated in closed form with ``uint64`` arrays
    (which wrap the same way) so large payloads stay fast:
    ``h = 5381·33ⁿ + Σ bᵢ·33ⁿ⁻¹⁻ⁱ  (mod 2⁶⁴)``.
    """
    data = np.frombuffer(bytes(payload), dtype=np.uint8)
    n = len(data)
    if n == 0:
        return format(DJB2_SEED, "x")

    # powers[k] == 33**k mod 2**64, k = 0 .. n
    powers = np.empty(n + 1, dtype=np.uint64)
    powers[0] = 1
    np.cumprod(np.full(n, 33, dtype=np.uint64), out=powers[1:])

    weights = powers[n - 1 :: -1][:n]
    total = int(np.sum(data.astype(np.uint64) * weights, dtype=np.uint64))
    h = (DJB2_SEED * int(powers[n]) + total) & _MASK64
    return format(h, "x")


def similarity(sig_a: str, sig_b: str) -> float:
    """Fraction of positions where the two signatures agree.

    Only the common prefix length is compared; the count is divided by the
    longer length, so signatures of different lengths never score 1.0.
    """
    total = max(len(sig_a), len(sig_b))
    if total == 0:
        return 0.0
    common = sum(1 for a, b in zip(sig_a, sig_b) if a == b)
    return common / total


def rank(
    candidate_signature: str, known_scans: Sequence["RoomScan"]
) -> list[tuple["RoomScan", float]]:
    """Return every known scan paired with its similarity, best first.

    The sort is stable, so equally similar scans keep their input order.
    """
    scored = [(scan, similarity(scan.signature, candidate_signature)) for scan in known_scans]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored


def recognize(
    candidate_signature: str,
    known_scans: Sequence["RoomScan"],
    threshold: float = RECOGNITION_THRESHOLD,
) -> Optional["RoomScan"]:
    """Return the best-matching known scan, or None below *threshold*.

    Ties go to the scan encountered first.  The best score must be strictly
    greater than *threshold*.
    """
    best: Optional["RoomScan"] = None
    best_score = -1.0
    for scan in known_scans:
        score = similarity(scan.signature, candidate_signature)
        if score > best_score:
            best, best_score = scan, score

    if best is None:
        logger.debug("No known scans to match against")
        return None
    if best_score > threshold:
        logger.info("Recognised room %r (similarity %.3f)", best.name, best_score)
        return best
    logger.info("No room recognised (best %r at %.3f)", best.name, best_score)
    return None

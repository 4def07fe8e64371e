"""Parity bit-grid marker decoding.

A parity marker is a 6x6 grid of cells: a solid dark outer ring around a
4x4 payload. Payload layout (row, col):

- data bits at rows 0..2, cols 0..2 (9 bits, row-major, MSB first)
- row parity in col 3 of rows 0..2
- column parity in row 3 of cols 0..2
- overall parity of the data bits at (3, 3)

Dark cells are 1. The decoder is independent of the ArUco quad detector
and works on any axis-aligned region of a grayscale image.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

GRID_SIZE = 6
PAYLOAD_SIZE = 4
MAX_PARITY_ID = (1 << 9) - 1
MIN_REGION_PX = 18
MIN_BORDER_SCORE = 0.78
MAX_PARITY_ERRORS = 1


@dataclass
class ParityDecodeResult:
    marker_id: int
    confidence: float
    border_score: float
    parity_error_count: int


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def sample_grid(gray: np.ndarray, x0: int, y0: int, x1: int, y1: int,
                grid_size: int = GRID_SIZE) -> Optional[np.ndarray]:
    """Binarize a grid_size x grid_size cell grid against the region mean."""
    height, width = gray.shape[:2]
    xs0, xs1 = max(0, x0), min(width - 1, x1)
    ys0, ys1 = max(0, y0), min(height - 1, y1)
    if xs1 < xs0 or ys1 < ys0:
        return None

    # Local threshold: mean of every second pixel in the region.
    coarse = gray[ys0:ys1 + 1:2, xs0:xs1 + 1:2]
    if coarse.size == 0:
        return None
    threshold = float(coarse.mean())

    padded = np.pad(gray.astype(np.float64), 1, mode="edge")
    bits = np.zeros((grid_size, grid_size), dtype=np.uint8)
    for gy in range(grid_size):
        sy = y0 + ((gy + 0.5) * (y1 - y0)) / grid_size
        cy = int(_clamp(sy, 0, height - 1))
        for gx in range(grid_size):
            sx = x0 + ((gx + 0.5) * (x1 - x0)) / grid_size
            cx = int(_clamp(sx, 0, width - 1))
            # 3x3 neighbourhood in padded coordinates (offset by one).
            value = padded[cy:cy + 3, cx:cx + 3].mean()
            bits[gy, gx] = 1 if value < threshold else 0
    return bits


def border_dark_score(bits: np.ndarray) -> float:
    ring = np.ones(bits.shape, dtype=bool)
    ring[1:-1, 1:-1] = False
    total = int(ring.sum())
    return float(bits[ring].sum()) / total if total else 0.0


def extract_payload(bits: np.ndarray) -> np.ndarray:
    return bits[1:1 + PAYLOAD_SIZE, 1:1 + PAYLOAD_SIZE].copy()


def count_parity_errors(payload: np.ndarray) -> int:
    data = payload[:3, :3]
    errors = int(np.count_nonzero(np.bitwise_xor.reduce(data, axis=1) != payload[:3, 3]))
    errors += int(np.count_nonzero(np.bitwise_xor.reduce(data, axis=0) != payload[3, :3]))
    if int(np.bitwise_xor.reduce(data.reshape(-1))) != int(payload[3, 3]):
        errors += 1
    return errors


def payload_to_id(payload: np.ndarray) -> int:
    value = 0
    for bit in payload[:3, :3].reshape(-1):
        value = (value << 1) | (int(bit) & 1)
    return value


def rotate90(bits: np.ndarray) -> np.ndarray:
    """Quarter turn clockwise."""
    return np.rot90(bits, k=-1)


def decode_parity_marker(gray: np.ndarray, x0: int, y0: int, x1: int, y1: int
                         ) -> Optional[ParityDecodeResult]:
    """
    Decode a parity marker from the region (x0, y0)-(x1, y1) of a grayscale
    image. Returns the best decode over the four payload rotations, or None
    when the region is too small, lacks a dark border, or no rotation has
    at most one parity error.
    """
    if x1 - x0 < MIN_REGION_PX or y1 - y0 < MIN_REGION_PX:
        return None

    bits = sample_grid(gray, int(x0), int(y0), int(x1), int(y1))
    if bits is None:
        return None

    border = border_dark_score(bits)
    if border < MIN_BORDER_SCORE:
        return None

    return decode_payload(extract_payload(bits), border)


def decode_payload(payload: np.ndarray, border_score: float = 1.0
                   ) -> Optional[ParityDecodeResult]:
    """Rotation-invariant decode of a 4x4 payload."""
    best: Optional[ParityDecodeResult] = None
    candidate = np.asarray(payload, dtype=np.uint8)
    for _ in range(4):
        errors = count_parity_errors(candidate)
        if errors <= MAX_PARITY_ERRORS:
            confidence = _clamp(0.58 + border_score * 0.26 - errors * 0.18, 0.25, 0.99)
            result = ParityDecodeResult(payload_to_id(candidate), confidence, border_score, errors)
            # Ties go to the lowest id so the pick does not depend on which
            # rotation was visited first.
            if best is None or (result.confidence, -result.marker_id) > (best.confidence, -best.marker_id):
                best = result
        candidate = rotate90(candidate)
    return best


def encode_parity_payload(marker_id: int) -> np.ndarray:
    if not 0 <= marker_id <= MAX_PARITY_ID:
        raise ValueError(f"parity marker id must be in 0..{MAX_PARITY_ID}, got {marker_id}")
    data = np.array(
        [(marker_id >> (8 - i)) & 1 for i in range(9)], dtype=np.uint8
    ).reshape(3, 3)
    payload = np.zeros((PAYLOAD_SIZE, PAYLOAD_SIZE), dtype=np.uint8)
    payload[:3, :3] = data
    payload[:3, 3] = np.bitwise_xor.reduce(data, axis=1)
    payload[3, :3] = np.bitwise_xor.reduce(data, axis=0)
    payload[3, 3] = np.bitwise_xor.reduce(data.reshape(-1))
    return payload


def canonical_parity_id(marker_id: int) -> int:
    """
    Id the decoder reports for a marker encoded with ``marker_id``.

    A valid payload keeps even parity on every row and column, so all four
    rotations decode cleanly; the decoder settles on the lowest id of the
    four. Only canonical ids survive a print-and-decode round trip.

    The rotation choice is made on confidence first, so the canonical pick
    only holds for clean reads. With one flipped corner data bit the
    rotation carrying the error is penalised and another member of the
    group wins: 42 read with payload[0, 0] flipped decodes as 81. Consumers
    that need the canonical id back should map the result through this
    function again.
    """
    payload = encode_parity_payload(marker_id)
    ids = []
    for _ in range(4):
        ids.append(payload_to_id(payload))
        payload = rotate90(payload)
    return min(ids)


def render_parity_marker(marker_id: int, cell_px: int = 10, quiet_zone_cells: int = 1,
                         payload: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Grayscale marker image: white quiet zone, dark ring, payload
    (dark = 0, light = 255).
    """
    bits = np.ones((GRID_SIZE, GRID_SIZE), dtype=np.uint8)
    bits[1:-1, 1:-1] = encode_parity_payload(marker_id) if payload is None else payload
    cells = np.where(bits == 1, 0, 255).astype(np.uint8)
    if quiet_zone_cells > 0:
        cells = np.pad(cells, quiet_zone_cells, mode="constant", constant_values=255)
    return np.kron(cells, np.ones((cell_px, cell_px), dtype=np.uint8))

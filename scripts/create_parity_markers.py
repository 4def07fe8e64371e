#!/usr/bin/env python3
"""Write printable marker images.

Parity markers (ids 0..511) are what the fallback decoder reads when the
ArUco detector rejects a quad. ``--aruco`` writes dictionary markers instead.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import cv2
import numpy as np

from marker_pipeline.strategies.detect_aruco import get_dict
from marker_tracking.decoder import MAX_PARITY_ID, canonical_parity_id, render_parity_marker


def create_aruco_marker(marker_id: int, dict_name: str, size_px: int) -> np.ndarray:
    return cv2.aruco.generateImageMarker(get_dict(dict_name), marker_id, size_px, borderBits=1)


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate printable marker PNGs")
    parser.add_argument("--output-dir", default="markers", help="Output directory (default: markers)")
    parser.add_argument("--marker-ids", type=int, nargs="+", required=True, help=(
        "Marker ids, e.g. 0 1 2. Parity ids must be canonical (lowest of their "
        "rotations); a single flipped corner bit can still read as another id "
        "of the same rotation group, so do not print two markers from one group"
    ))
    parser.add_argument("--cell-px", type=int, default=40, help="Parity grid cell size in pixels (default: 40)")
    parser.add_argument("--aruco", action="store_true", help="Write ArUco markers instead of parity markers")
    parser.add_argument("--dict", default="6x6_1000", help="ArUco dictionary for --aruco (default: 6x6_1000)")
    parser.add_argument("--size", type=int, default=400, help="ArUco marker size in pixels (default: 400)")
    args = parser.parse_args()

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    for marker_id in args.marker_ids:
        if args.aruco:
            image = create_aruco_marker(marker_id, args.dict, args.size)
            path = output_dir / f"aruco_{marker_id}.png"
        else:
            if not 0 <= marker_id <= MAX_PARITY_ID:
                print(f"Error: parity marker id {marker_id} outside 0..{MAX_PARITY_ID}", file=sys.stderr)
                return 1
            canonical = canonical_parity_id(marker_id)
            if canonical != marker_id:
                print(f"Error: parity marker {marker_id} decodes as {canonical}; use {canonical}", file=sys.stderr)
                return 1
            image = render_parity_marker(marker_id, cell_px=args.cell_px, quiet_zone_cells=2)
            path = output_dir / f"parity_{marker_id}.png"
        cv2.imwrite(str(path), image)
        print(f"Created marker: {path}")

    print(f"Wrote {len(args.marker_ids)} markers to {output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

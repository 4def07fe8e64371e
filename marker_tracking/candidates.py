"""Per-frame candidate filtering and scoring."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, asdict
from typing import Any, Optional

import numpy as np

from marker_pipeline.ip_types import RawCandidate, ScoredCandidate

from .config import FilterConfig


@dataclass
class FilterStats:
    rejected_malformed: int = 0
    rejected_invalid_id: int = 0
    rejected_too_small: int = 0
    rejected_bad_aspect: int = 0
    rejected_low_confidence: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FilterResult:
    candidates: list[ScoredCandidate] = field(default_factory=list)
    stats: FilterStats = field(default_factory=FilterStats)


def _dist(a, b) -> float:
    return float(math.hypot(float(a[0]) - float(b[0]), float(a[1]) - float(b[1])))


def _as_points(corners) -> Optional[np.ndarray]:
    """First four (x, y) points of a corner array, or None if it is not one."""
    if corners is None:
        return None
    try:
        pts = np.asarray(corners, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if pts.size < 8 or pts.size % 2:
        return None
    return pts.reshape(-1, 2)[:4]


class CandidateFilter:
    """
    Rejects implausible quads and scores the rest.

    score = confidence * 50 + size_norm * 30 + centeredness * 20, where
    centeredness is one minus the distance of the normalized quad center
    from the image center.
    """

    def __init__(self, config: Optional[FilterConfig] = None):
        self.config = config or FilterConfig()

    def confidence_for(self, hamming_distance: int) -> float:
        if hamming_distance <= 0:
            return self.config.exact_match_confidence
        if hamming_distance == 1:
            return self.config.corrected_confidence
        return 0.0

    def filter(self, candidates: list[RawCandidate], width: int, height: int) -> FilterResult:
        cfg = self.config
        result = FilterResult()
        stats = result.stats

        for cand in candidates:
            corners = _as_points(cand.corners)
            if corners is None or not np.all(np.isfinite(corners)):
                stats.rejected_malformed += 1
                continue

            if cand.marker_id < 0 or cand.marker_id > cfg.max_valid_id:
                stats.rejected_invalid_id += 1
                continue

            diagonal = _dist(corners[0], corners[2])
            if diagonal < cfg.min_diagonal_px:
                stats.rejected_too_small += 1
                continue

            side1 = _dist(corners[0], corners[1])
            side2 = _dist(corners[1], corners[2])
            max_side = max(side1, side2)
            if max_side > 0 and min(side1, side2) / max_side < cfg.min_aspect_ratio:
                stats.rejected_bad_aspect += 1
                continue

            confidence = self.confidence_for(int(cand.hamming_distance))
            if confidence < cfg.min_confidence:
                stats.rejected_low_confidence += 1
                continue

            cx, cy = corners.mean(axis=0)
            x_norm = float(cx) / width
            y_norm = float(cy) / height
            size_norm = (diagonal / math.sqrt(2.0)) / max(width, height)
            centeredness = 1.0 - math.hypot(x_norm - 0.5, y_norm - 0.5)
            score = confidence * 50.0 + size_norm * 30.0 + centeredness * 20.0

            result.candidates.append(ScoredCandidate(
                marker_id=int(cand.marker_id),
                corners=corners,
                hamming_distance=int(cand.hamming_distance),
                confidence=confidence,
                score=score,
                x_norm=x_norm,
                y_norm=y_norm,
                size_norm=size_norm,
            ))

        return result

import numpy as np
import pytest

from marker_pipeline.ip_types import (
    AnchorPose,
    PoseSolution,
    Quaternion,
    RawMarkerDetection,
    ScoredCandidate,
    Vector3,
)


def square_corners(cx: float, cy: float, side: float) -> np.ndarray:
    h = side / 2.0
    return np.array(
        [[cx - h, cy - h], [cx + h, cy - h], [cx + h, cy + h], [cx - h, cy + h]],
        dtype=np.float32,
    )


def scored(marker_id: int, score: float = 60.0, corners=None, confidence: float = 1.0) -> ScoredCandidate:
    if corners is None:
        corners = square_corners(240, 180, 60)
    return ScoredCandidate(marker_id, corners, 0, confidence, score)


def detection(marker_id: int, position=(0.0, 0.0, 0.0), rotation=None,
              confidence: float = 0.9, seen_ms: float = 0.0) -> RawMarkerDetection:
    return RawMarkerDetection(
        marker_id,
        AnchorPose(
            Vector3(*position),
            rotation or Quaternion.identity(),
            confidence,
            seen_ms,
        ),
    )


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FixedSolver:
    """Stands in for PlanarPoseSolver; returns preset solutions and records calls."""

    def __init__(self, solutions):
        self.solutions = list(solutions)
        self.calls = []

    def pose(self, points):
        self.calls.append(np.asarray(points))
        return self.solutions


def translation_solution(z_mm: float, x_mm: float = 0.0, y_mm: float = 0.0, error: float = 0.1) -> PoseSolution:
    return PoseSolution(np.eye(3), np.array([x_mm, y_mm, z_mm]), error)


@pytest.fixture
def clock():
    return FakeClock()

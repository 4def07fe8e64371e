"""Camera-relative solver output to world-space marker poses."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from marker_pipeline.ip_types import (
    AnchorPose,
    ObserverPose,
    PoseSolution,
    Quaternion,
    RawMarkerDetection,
    ScoredCandidate,
    Vector3,
)
from marker_pipeline.strategies.solve_pose import PlanarPoseSolver

from .config import PoseConfig
from .transforms import compose_pose, flip_solver_convention, quaternion_from_matrix

logger = logging.getLogger(__name__)

MIN_DEPTH_MM = 1.0
FOCAL_LENGTH_TOLERANCE_PX = 0.001


@dataclass
class ResolveResult:
    detection: Optional[RawMarkerDetection]
    failure_reason: str = "none"  # none | no-corners | no-valid-candidate | exception


def is_valid_solution(solution: PoseSolution) -> bool:
    """Finite rotation/translation and the marker at least 1 mm in front of the camera."""
    try:
        R = np.asarray(solution.rotation, dtype=np.float64)
        t = np.asarray(solution.translation_mm, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError):
        return False
    if R.shape != (3, 3) or t.shape != (3,):
        return False
    if not np.all(np.isfinite(R)) or not np.all(np.isfinite(t)):
        return False
    if not math.isfinite(float(solution.error)):
        return False
    return float(t[2]) > MIN_DEPTH_MM


def select_solution(solutions: list[PoseSolution]) -> Optional[PoseSolution]:
    """Lowest residual among the valid solutions."""
    valid = [s for s in solutions if is_valid_solution(s)]
    if not valid:
        return None
    return min(valid, key=lambda s: float(s.error))


def camera_relative_pose(solution: PoseSolution) -> tuple[np.ndarray, np.ndarray]:
    """
    Solver frame (+Z forward, mm) to renderer camera frame (+Z backward, m).

    Returns:
        (position (3,), rotation quaternion (4,))
    """
    t = np.asarray(solution.translation_mm, dtype=np.float64).reshape(3)
    position = np.array([t[0], t[1], -t[2]]) / 1000.0
    rotation = quaternion_from_matrix(flip_solver_convention(solution.rotation))
    return position, rotation


class PoseResolver:
    """
    Resolves stable candidates into world-space poses.

    The planar solver is memoized per focal length; a new one is built
    only when the focal length changes.
    """

    def __init__(
        self,
        config: Optional[PoseConfig] = None,
        solver_factory: Callable[[float, float], PlanarPoseSolver] = PlanarPoseSolver,
    ):
        self.config = config or PoseConfig()
        self.solver_factory = solver_factory
        self.default_observer = ObserverPose(
            Vector3(*self.config.default_observer_position), Quaternion.identity()
        )
        self._solver: Optional[PlanarPoseSolver] = None
        self._solver_focal_px = 0.0

    def solver_for(self, focal_length_px: float):
        if self._solver is None or abs(self._solver_focal_px - focal_length_px) > FOCAL_LENGTH_TOLERANCE_PX:
            self._solver = self.solver_factory(self.config.model_size_mm, focal_length_px)
            self._solver_focal_px = focal_length_px
        return self._solver

    def solve(self, candidate: ScoredCandidate, width: int, height: int
              ) -> tuple[Optional[PoseSolution], str]:
        corners = candidate.corners
        if corners is None or np.asarray(corners).size < 8:
            return None, "no-corners"

        pts = np.asarray(corners, dtype=np.float64).reshape(-1, 2)[:4]
        # Center on the principal point, +Y up.
        centered = np.column_stack([pts[:, 0] - width * 0.5, height * 0.5 - pts[:, 1]])

        focal = self.config.focal_length_px or float(width)
        try:
            solutions = self.solver_for(focal).pose(centered)
        except Exception as exc:
            logger.debug("pose solve failed for marker %d: %s", candidate.marker_id, exc)
            return None, "exception"

        best = select_solution(solutions or [])
        if best is None:
            return None, "no-valid-candidate"
        return best, "none"

    def resolve(
        self,
        candidate: ScoredCandidate,
        width: int,
        height: int,
        now_ms: float,
        observer: Optional[ObserverPose] = None,
    ) -> ResolveResult:
        solution, reason = self.solve(candidate, width, height)
        if solution is None:
            return ResolveResult(None, reason)
        return ResolveResult(self.to_world(candidate.marker_id, solution, candidate.confidence,
                                           now_ms, observer))

    def to_world(
        self,
        marker_id: int,
        solution: PoseSolution,
        confidence: float,
        now_ms: float,
        observer: Optional[ObserverPose] = None,
    ) -> RawMarkerDetection:
        viewer = observer if observer is not None else self.default_observer
        rel_position, rel_rotation = camera_relative_pose(solution)
        position, rotation = compose_pose(
            viewer.position, viewer.rotation, rel_position, rel_rotation
        )
        return RawMarkerDetection(
            marker_id=marker_id,
            pose=AnchorPose(
                position=Vector3.from_array(position),
                rotation=Quaternion.from_array(rotation),
                confidence=float(confidence),
                last_seen_at_ms=now_ms,
            ),
            size_meters=self.config.marker_size_m,
        )

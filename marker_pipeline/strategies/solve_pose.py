import cv2, numpy as np
from ..ip_types import PoseSolution

_SOLVEPNP_FLAG = getattr(cv2, "SOLVEPNP_IPPE_SQUARE", cv2.SOLVEPNP_ITERATIVE)


def square_model_points(model_size: float) -> np.ndarray:
    """Marker corners in marker space, clockwise from top-left, Z = 0."""
    h = model_size / 2.0
    return np.array([
        [-h,  h, 0.0],
        [ h,  h, 0.0],
        [ h, -h, 0.0],
        [-h, -h, 0.0],
    ], dtype=np.float64)


class PlanarPoseSolver:
    """
    Planar square pose from four image points.

    Image points are expected centered on the principal point with +Y up,
    so the returned frame is +X right, +Y up, +Z forward (into the scene).
    Translation comes back in the model's unit (millimeters here).
    """
    def __init__(self, model_size_mm: float, focal_length_px: float):
        self.model_size_mm = float(model_size_mm)
        self.focal_length_px = float(focal_length_px)
        self.K = np.array([
            [self.focal_length_px, 0.0, 0.0],
            [0.0, self.focal_length_px, 0.0],
            [0.0, 0.0, 1.0],
        ], dtype=np.float64)
        self.dist = np.zeros((5, 1), dtype=np.float64)
        self._obj = square_model_points(self.model_size_mm)

    def pose(self, image_points) -> list[PoseSolution]:
        pts = np.asarray(image_points, dtype=np.float64).reshape(4, 2)
        n, rvecs, tvecs, errors = cv2.solvePnPGeneric(
            self._obj, pts, self.K, self.dist, flags=_SOLVEPNP_FLAG
        )
        solutions: list[PoseSolution] = []
        if not n:
            return solutions
        errs = np.asarray(errors, dtype=np.float64).reshape(-1) if errors is not None else None
        for i in range(int(n)):
            R, _ = cv2.Rodrigues(np.asarray(rvecs[i], dtype=np.float64).reshape(3))
            t = np.asarray(tvecs[i], dtype=np.float64).reshape(3)
            err = float(errs[i]) if errs is not None and i < len(errs) else float("nan")
            solutions.append(PoseSolution(R, t, err))
        return solutions


def solve_pose(image_points, model_size: float, focal_length: float) -> list[PoseSolution]:
    return PlanarPoseSolver(model_size, focal_length).pose(image_points)

import logging

import cv2
import numpy as np
import pytest

from marker_pipeline.ip_types import Frame
from marker_pipeline.strategies.detect_aruco import ArucoQuadDetect, get_dict
from marker_pipeline.strategies.preprocess import GrayscaleFrame
from marker_pipeline.strategies.solve_pose import PlanarPoseSolver, solve_pose, square_model_points


def test_grayscale_frame_converts_color_and_passes_gray():
    bgr = np.zeros((4, 6, 3), dtype=np.uint8)
    bgr[..., 2] = 255
    gray = GrayscaleFrame().apply(Frame(1, "t", bgr))
    assert gray.image.shape == (4, 6)
    assert gray.idx == 1

    bgra = np.zeros((4, 6, 4), dtype=np.uint8)
    assert GrayscaleFrame().apply(Frame(2, "t", bgra)).image.shape == (4, 6)

    already = np.zeros((4, 6), dtype=np.uint8)
    f = Frame(3, "t", already)
    assert GrayscaleFrame().apply(f) is f


def test_get_dict_accepts_both_spellings_and_falls_back(caplog):
    assert get_dict("DICT_4X4_50").markerSize == 4
    assert get_dict("5x5_100").markerSize == 5
    with caplog.at_level(logging.WARNING):
        fallback = get_dict("9x9_7")
    assert fallback.markerSize == 6
    assert "unknown ArUco dictionary" in caplog.text


def test_aruco_detect_reports_bit_distance_and_rejected_quads():
    dictionary = get_dict("6x6_1000")
    img = np.full((360, 480), 255, dtype=np.uint8)
    img[40:160, 40:160] = cv2.aruco.generateImageMarker(dictionary, 3, 120)
    img[200:300, 300:400] = 0  # solid square: a quad with no valid code

    detector = ArucoQuadDetect("6x6_1000")
    cands = detector.detect(Frame(1, "t", img))
    assert [c.marker_id for c in cands] == [3]
    assert cands[0].hamming_distance == 0
    assert cands[0].corners.shape == (4, 2)
    assert len(detector.last_rejected) >= 1
    assert all(q.shape == (4, 2) for q in detector.last_rejected)


def test_aruco_detect_on_empty_image():
    detector = ArucoQuadDetect()
    assert detector.detect_candidate_quads(np.full((120, 160), 128, dtype=np.uint8)) == []
    assert detector.last_rejected == []


def _project(rvec, tvec, size_mm, focal):
    K = np.array([[focal, 0, 0], [0, focal, 0], [0, 0, 1]], dtype=np.float64)
    pts, _ = cv2.projectPoints(square_model_points(size_mm), np.asarray(rvec, dtype=np.float64),
                               np.asarray(tvec, dtype=np.float64), K, np.zeros(5))
    return pts.reshape(4, 2)


def test_solve_pose_recovers_translation_and_rotation():
    rvec = np.array([0.2, -0.3, 0.1])
    tvec = np.array([30.0, -20.0, 700.0])
    points = _project(rvec, tvec, 120.0, 480.0)

    solutions = solve_pose(points, 120.0, 480.0)
    assert 1 <= len(solutions) <= 2
    best = min(solutions, key=lambda s: s.error)
    assert best.translation_mm == pytest.approx(tvec, abs=0.5)
    R_expected, _ = cv2.Rodrigues(rvec)
    assert np.allclose(best.rotation, R_expected, atol=1e-3)


def test_planar_solver_keeps_model_and_focal():
    solver = PlanarPoseSolver(100.0, 500.0)
    assert solver.K[0, 0] == 500.0
    assert solver.K[0, 2] == 0.0
    assert square_model_points(100.0)[0].tolist() == [-50.0, 50.0, 0.0]

import logging

import cv2
import numpy as np

from ..ip_types import Frame, RawCandidate

logger = logging.getLogger(__name__)

DEFAULT_DICT = "6x6_1000"


def get_dict(name: str):
    """
    ArUco dictionary resolver. Accepts "6x6_1000" or "DICT_6X6_1000".
    Falls back to 6x6_1000 if the name is not recognized.
    """
    key = (name or "").strip()
    if key.upper().startswith("DICT_"):
        key = key[5:]
    key = key.lower()
    table = {
        "4x4_50":    cv2.aruco.DICT_4X4_50,
        "4x4_100":   cv2.aruco.DICT_4X4_100,
        "4x4_250":   cv2.aruco.DICT_4X4_250,
        "4x4_1000":  cv2.aruco.DICT_4X4_1000,
        "5x5_50":    cv2.aruco.DICT_5X5_50,
        "5x5_100":   cv2.aruco.DICT_5X5_100,
        "5x5_250":   cv2.aruco.DICT_5X5_250,
        "5x5_1000":  cv2.aruco.DICT_5X5_1000,
        "6x6_50":    cv2.aruco.DICT_6X6_50,
        "6x6_100":   cv2.aruco.DICT_6X6_100,
        "6x6_250":   cv2.aruco.DICT_6X6_250,
        "6x6_1000":  cv2.aruco.DICT_6X6_1000,
        "7x7_50":    cv2.aruco.DICT_7X7_50,
        "7x7_100":   cv2.aruco.DICT_7X7_100,
        "7x7_250":   cv2.aruco.DICT_7X7_250,
        "7x7_1000":  cv2.aruco.DICT_7X7_1000,
    }
    code = table.get(key)
    if code is None:
        logger.warning("unknown ArUco dictionary %r, using %s", name, DEFAULT_DICT)
        code = table[DEFAULT_DICT]

    if hasattr(cv2.aruco, "getPredefinedDictionary"):           # OpenCV >= 4.7
        return cv2.aruco.getPredefinedDictionary(code)
    return cv2.aruco.Dictionary_get(code)                        # Older OpenCV


def _make_params():
    """Create detector parameters across OpenCV versions."""
    if hasattr(cv2.aruco, "DetectorParameters_create"):
        params = cv2.aruco.DetectorParameters_create()
    else:
        params = cv2.aruco.DetectorParameters()
    # One correctable bit is the most the candidate filter will accept anyway.
    params.errorCorrectionRate = 0.6
    return params


def _as_quad(points) -> np.ndarray:
    return np.asarray(points, dtype=np.float32).reshape(4, 2)


class ArucoQuadDetect:
    """
    Strategy: locate marker quads in a grayscale frame.
    Returns RawCandidates (id, 4 clockwise corners, bit-error distance); the
    quads OpenCV rejected are kept on `last_rejected` for alternate decoders.
    """

    CELL_PX = 8

    def __init__(self, dict_name: str = DEFAULT_DICT):
        self.dictionary = get_dict(dict_name)
        self.params = _make_params()
        self._detector = None
        self.last_rejected: list[np.ndarray] = []
        if hasattr(cv2.aruco, "ArucoDetector"):
            self._detector = cv2.aruco.ArucoDetector(self.dictionary, self.params)

    def detect(self, f: Frame) -> list[RawCandidate]:
        return self.detect_candidate_quads(f.image)

    def detect_candidate_quads(self, image) -> list[RawCandidate]:
        if self._detector is not None:
            corners, ids, rejected = self._detector.detectMarkers(image)
        else:
            corners, ids, rejected = cv2.aruco.detectMarkers(
                image, self.dictionary, parameters=self.params
            )

        self.last_rejected = [_as_quad(r) for r in (rejected or [])]

        cands: list[RawCandidate] = []
        if ids is None or len(ids) == 0:
            return cands
        for i, mid in enumerate(ids.flatten()):
            quad = _as_quad(corners[i])
            cands.append(RawCandidate(int(mid), quad, self._bit_distance(image, quad, int(mid))))
        return cands

    def _bit_distance(self, image, quad: np.ndarray, marker_id: int) -> int:
        """Hamming distance between the sampled payload and the dictionary code."""
        n = int(self.dictionary.markerSize)
        cells = n + 2
        side = cells * self.CELL_PX
        dst = np.array(
            [[0, 0], [side - 1, 0], [side - 1, side - 1], [0, side - 1]],
            dtype=np.float32,
        )
        H = cv2.getPerspectiveTransform(quad, dst)
        warped = cv2.warpPerspective(image, H, (side, side))
        _, binary = cv2.threshold(warped, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)

        bits = np.zeros((n, n), dtype=np.uint8)
        margin = self.CELL_PX // 4
        for r in range(n):
            for c in range(n):
                y0 = (r + 1) * self.CELL_PX + margin
                x0 = (c + 1) * self.CELL_PX + margin
                cell = binary[y0:y0 + self.CELL_PX - 2 * margin, x0:x0 + self.CELL_PX - 2 * margin]
                bits[r, c] = 1 if cell.mean() > 127 else 0
        return int(self.dictionary.getDistanceToId(bits, marker_id, True))

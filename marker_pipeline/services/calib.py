import cv2, numpy as np
from typing import Tuple

def load_calib(path: str) -> Tuple[np.ndarray, np.ndarray, tuple[int,int]]:
    fs = cv2.FileStorage(path, cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise FileNotFoundError(f"Calibration not found: {path}")
    K = fs.getNode("camera_matrix").mat()
    dist = fs.getNode("dist_coeffs").mat()
    w = int(fs.getNode("image_width").real()); h = int(fs.getNode("image_height").real())
    fs.release()
    return K, dist, (w, h)

def focal_length_for_width(path: str, capture_width: int) -> float:
    """fx from a calibration file, rescaled to the capture width."""
    K, _dist, (w, _h) = load_calib(path)
    fx = float(K[0, 0])
    if w > 0 and capture_width > 0:
        fx *= capture_width / float(w)
    return fx

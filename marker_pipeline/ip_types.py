from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np


@dataclass
class Frame:
    idx: int
    ts_iso: str
    image: Any  # numpy array, BGR or grayscale


@dataclass
class Vector3:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    @classmethod
    def from_array(cls, values) -> "Vector3":
        a = np.asarray(values, dtype=np.float64).reshape(-1)
        return cls(float(a[0]), float(a[1]), float(a[2]))

    def copy(self) -> "Vector3":
        return Vector3(self.x, self.y, self.z)


@dataclass
class Quaternion:
    """Orientation as (x, y, z, w). Kept unit length by every writer."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 1.0

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z, self.w], dtype=np.float64)

    @classmethod
    def from_array(cls, values) -> "Quaternion":
        a = np.asarray(values, dtype=np.float64).reshape(-1)
        return cls(float(a[0]), float(a[1]), float(a[2]), float(a[3]))

    @classmethod
    def identity(cls) -> "Quaternion":
        return cls(0.0, 0.0, 0.0, 1.0)

    def copy(self) -> "Quaternion":
        return Quaternion(self.x, self.y, self.z, self.w)


@dataclass
class AnchorPose:
    position: Vector3
    rotation: Quaternion
    confidence: float
    last_seen_at_ms: float


@dataclass
class ObserverPose:
    """World-space pose of the viewing camera, supplied by the host each frame."""

    position: Vector3
    rotation: Quaternion = field(default_factory=Quaternion.identity)


@dataclass
class RawCandidate:
    marker_id: int
    corners: Any  # (4,2) ndarray, consistently ordered
    hamming_distance: int = 0


@dataclass
class ScoredCandidate:
    marker_id: int
    corners: Any  # (4,2) ndarray
    hamming_distance: int
    confidence: float
    score: float
    x_norm: float = 0.0
    y_norm: float = 0.0
    size_norm: float = 0.0


@dataclass
class PoseSolution:
    rotation: Any  # (3,3) ndarray
    translation_mm: Any  # (3,) ndarray
    error: float


@dataclass
class RawMarkerDetection:
    """World-space pose estimate for one marker in one frame, before smoothing."""

    marker_id: int
    pose: AnchorPose
    size_meters: Optional[float] = None


@dataclass
class TrackedMarker:
    marker_id: int
    pose: AnchorPose
    size_meters: Optional[float] = None

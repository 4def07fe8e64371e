"""Per-marker exponential pose smoothing with staleness pruning."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from marker_pipeline.ip_types import (
    AnchorPose,
    Quaternion,
    RawMarkerDetection,
    TrackedMarker,
    Vector3,
)

from .config import SmootherConfig
from .transforms import lerp, lerp_vector, normalize_quaternion, slerp

CONFIDENCE_ALPHA = 0.4
UNSEEN_CONFIDENCE_DECAY = 0.92


@dataclass
class MarkerSmoothState:
    marker_id: int
    position: Vector3
    rotation: Quaternion
    confidence: float
    last_seen_at_ms: float
    detection_count: int = 1
    size_meters: Optional[float] = None

    def to_tracked(self) -> TrackedMarker:
        return TrackedMarker(
            marker_id=self.marker_id,
            pose=AnchorPose(
                position=self.position.copy(),
                rotation=self.rotation.copy(),
                confidence=self.confidence,
                last_seen_at_ms=self.last_seen_at_ms,
            ),
            size_meters=self.size_meters,
        )


class PoseSmoother:
    def __init__(self, config: Optional[SmootherConfig] = None):
        self.config = config or SmootherConfig()
        self._states: dict[int, MarkerSmoothState] = {}

    @property
    def tracked_count(self) -> int:
        return len(self._states)

    def state(self, marker_id: int) -> Optional[MarkerSmoothState]:
        return self._states.get(marker_id)

    def reset(self) -> None:
        self._states.clear()

    def _blend(self, state: MarkerSmoothState, detection: RawMarkerDetection, now_ms: float) -> None:
        pose = detection.pose
        state.position = Vector3.from_array(
            lerp_vector(state.position, pose.position, self.config.position_alpha)
        )
        state.rotation = Quaternion.from_array(
            slerp(state.rotation, pose.rotation, self.config.rotation_alpha)
        )
        state.confidence = lerp(state.confidence, pose.confidence, CONFIDENCE_ALPHA)
        state.last_seen_at_ms = now_ms
        state.detection_count += 1
        if detection.size_meters is not None:
            state.size_meters = detection.size_meters

    def update(self, detections: list[RawMarkerDetection], now_ms: float) -> list[TrackedMarker]:
        """
        Fold one frame of raw world-space estimates into the per-marker state.

        Returns every marker that is still tracked, including ones coasting
        on their last pose because they were not seen this frame.
        """
        seen: set[int] = set()
        for detection in detections:
            seen.add(detection.marker_id)
            existing = self._states.get(detection.marker_id)
            if existing is not None:
                self._blend(existing, detection, now_ms)
                continue
            # First sighting is taken as-is so the marker does not glide in.
            self._states[detection.marker_id] = MarkerSmoothState(
                marker_id=detection.marker_id,
                position=detection.pose.position.copy(),
                rotation=Quaternion.from_array(normalize_quaternion(detection.pose.rotation)),
                confidence=detection.pose.confidence,
                last_seen_at_ms=now_ms,
                size_meters=detection.size_meters,
            )

        results: list[TrackedMarker] = []
        for marker_id in list(self._states):
            state = self._states[marker_id]
            if marker_id not in seen:
                state.confidence *= UNSEEN_CONFIDENCE_DECAY
            if now_ms - state.last_seen_at_ms > self.config.stale_threshold_ms:
                del self._states[marker_id]
                continue
            results.append(state.to_tracked())
        return results

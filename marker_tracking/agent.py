from __future__ import annotations

import logging
from typing import Callable, Optional

from marker_pipeline.ip_types import ObserverPose, TrackedMarker

from .config import SmootherConfig
from .detector import MarkerDetector, MockMarkerDetector
from .smoother import PoseSmoother

logger = logging.getLogger(__name__)

MarkerCallback = Callable[[list[TrackedMarker]], None]


class TrackingAgent:
    """
    Drives a detector from the render loop.

    Detection runs at most once per ``detection_interval_ms``; frames in
    between get the last smoothed list back. Subscribers are only called
    on detection ticks that produced at least one tracked marker.
    """

    def __init__(
        self,
        detector: Optional[MarkerDetector] = None,
        smoother_config: Optional[SmootherConfig] = None,
        detection_interval_ms: float = 50.0,
    ):
        self.detector = detector or MockMarkerDetector()
        self.smoother = PoseSmoother(smoother_config)
        self.detection_interval_ms = detection_interval_ms
        self._subscribers: list[MarkerCallback] = []
        self._last_detection_ms: Optional[float] = None
        self._latest: list[TrackedMarker] = []

    @property
    def latest(self) -> list[TrackedMarker]:
        return list(self._latest)

    def init(self) -> None:
        self.smoother.reset()
        self._last_detection_ms = None
        self._latest = []

    def subscribe(self, callback: MarkerCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, markers: list[TrackedMarker]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(markers)
            except Exception:
                logger.exception("marker subscriber raised")

    def on_frame(
        self,
        now_ms: float,
        frame=None,
        observer: Optional[ObserverPose] = None,
    ) -> list[TrackedMarker]:
        if (
            self._last_detection_ms is not None
            and now_ms - self._last_detection_ms < self.detection_interval_ms
        ):
            return self._latest
        self._last_detection_ms = now_ms

        detections = self.detector.detect(frame, observer)
        self._latest = self.smoother.update(detections, now_ms)
        if self._latest:
            self._notify(self._latest)
        return self._latest

    def dispose(self) -> None:
        self._subscribers.clear()
        self.smoother.reset()
        self._latest = []
        self._last_detection_ms = None
        self.detector.dispose()

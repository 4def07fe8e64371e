"""Marker detector backends.

``CameraWorkerMarkerDetector`` is the real one: capture and decoding run on
a :class:`~marker_tracking.worker.DetectionWorker` thread, while candidate
stability and pose resolution happen on the caller's thread at
``detect()`` time. ``MockMarkerDetector`` fabricates a fixed set of
markers for UI work without a camera, and ``SwitchableDetector`` flips
between the two at runtime.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import numpy as np

from marker_pipeline.ip_types import (
    AnchorPose,
    ObserverPose,
    Quaternion,
    RawMarkerDetection,
    ScoredCandidate,
    Vector3,
)
from marker_pipeline.services.calib import focal_length_for_width
from marker_pipeline.strategies.detect_aruco import ArucoQuadDetect

from .candidates import CandidateFilter
from .capture import BaseCapture, SyntheticCapture, USBOpenCVCapture
from .config import TrackingConfig
from .logging_utils import DebugSummaryLogger
from .resolver import PoseResolver
from .stability import StabilityTracker
from .worker import DetectionWorker, DetectResponse, WorkerDebugInfo

logger = logging.getLogger(__name__)


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def _stop_quietly(capture: Optional[BaseCapture]) -> None:
    if capture is None:
        return
    try:
        capture.stop()
    except Exception as exc:
        logger.warning("capture stop failed: %s", exc)


class DetectorStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


class MarkerDetector(ABC):
    @abstractmethod
    def detect(self, frame=None, observer: Optional[ObserverPose] = None) -> list[RawMarkerDetection]: ...

    @abstractmethod
    def dispose(self) -> None: ...


@dataclass
class PoseAttemptStats:
    attempted: int = 0
    succeeded: int = 0
    last_failure_reason: str = "none"

    def as_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "last_failure_reason": self.last_failure_reason,
        }


@dataclass
class OverlayData:
    candidates: list[ScoredCandidate] = field(default_factory=list)
    best_id: Optional[int] = None
    capture_width: int = 0
    capture_height: int = 0
    debug: dict[str, Any] = field(default_factory=dict)
    pose_stats: dict[str, Any] = field(default_factory=dict)
    status: DetectorStatus = DetectorStatus.IDLE


class CameraWorkerMarkerDetector(MarkerDetector):
    def __init__(
        self,
        config: Optional[TrackingConfig] = None,
        capture: Optional[BaseCapture] = None,
        clock: Optional[Callable[[], float]] = None,
        quad_detector=None,
    ):
        self.config = config or TrackingConfig()
        self._capture_override = capture
        self._quad_detector = quad_detector
        self._clock = clock or monotonic_ms

        self.min_capture_interval_ms = 1000.0 / self.config.max_capture_hz
        self.result_stale_ms = self.config.result_stale_ms

        self.stability = StabilityTracker(self.config.stability)
        self.resolver = PoseResolver(self.config.pose)
        self.debug_logger = DebugSummaryLogger(logger)

        self.capture: Optional[BaseCapture] = None
        self.worker: Optional[DetectionWorker] = None
        self._state_lock = threading.Lock()
        self._starter: Optional[threading.Thread] = None
        self._start_token = 0
        self._starting = False
        self._start_failed = False
        self._frame_counter = 0
        self._last_capture_at_ms: Optional[float] = None

        self._stable: list[ScoredCandidate] = []
        self._best_id: Optional[int] = None
        self._result_at_ms: Optional[float] = None
        self._capture_size = (0, 0)
        self._debug = WorkerDebugInfo()
        self.pose_stats = PoseAttemptStats()

    # -- lifecycle -------------------------------------------------------

    def _build_capture(self) -> BaseCapture:
        if self._capture_override is not None:
            return self._capture_override
        cfg = self.config
        if cfg.dry_run:
            return SyntheticCapture(cfg.fps, cfg.width, cfg.height, realtime=False)
        return USBOpenCVCapture(cfg.device, cfg.fps, cfg.width, cfg.height)

    def _resolve_focal_length(self) -> None:
        pose = self.config.pose
        if pose.focal_length_px is not None or not self.config.calibration_path:
            return
        pose.focal_length_px = focal_length_for_width(self.config.calibration_path, self.config.width)
        logger.info("focal length %.2f px from %s", pose.focal_length_px, self.config.calibration_path)

    def start(self, block: bool = False) -> None:
        """
        Open the capture and start the worker. Runs on a starter thread
        unless ``block`` is set; status reads STARTING until it finishes.
        Failures are logged, never raised.
        """
        with self._state_lock:
            if self._starting or (self.worker is not None and self.worker.is_running):
                return
            self._starting = True
            token = self._start_token
        if block:
            self._open(token)
            return
        self._starter = threading.Thread(
            target=self._open,
            args=(token,),
            name=f"marker-start-{self.config.camera_name}",
            daemon=True,
        )
        self._starter.start()

    def wait_started(self, timeout: Optional[float] = None) -> bool:
        """Join a pending background start. False if it is still running."""
        starter = self._starter
        if starter is not None:
            starter.join(timeout)
            return not starter.is_alive()
        return True

    def _open(self, token: int) -> None:
        capture: Optional[BaseCapture] = None
        worker: Optional[DetectionWorker] = None
        try:
            self._resolve_focal_length()
            capture = self._build_capture()
            capture.start()
            quad = self._quad_detector or ArucoQuadDetect(self.config.aruco_dict)
            worker = DetectionWorker(
                quad,
                CandidateFilter(self.config.filter),
                parity_fallback=self.config.parity_fallback,
                capture=capture,
                name=f"marker-worker-{self.config.camera_name}",
            )
            worker.start()
        except Exception as exc:
            logger.error("marker detector failed to start: %s", exc)
            _stop_quietly(capture)
            with self._state_lock:
                if token == self._start_token:
                    self._start_failed = True
                    self._starting = False
            return

        with self._state_lock:
            current = token == self._start_token
            if current:
                self.capture = capture
                self.worker = worker
                self._start_failed = False
                self._starting = False
        if not current:
            # Disposed while the camera was opening.
            worker.stop()
            _stop_quietly(capture)
            return
        logger.info("marker detector ready (%dx%d, dict=%s)",
                    self.config.width, self.config.height, self.config.aruco_dict)

    def ensure_started(self, block: bool = False) -> None:
        """Clear a failure and try again. Called by whoever supervises the detector."""
        if self.worker is not None and self.worker.is_running and not self.worker.failed:
            return
        if self._starting:
            return
        self._teardown()
        self._start_failed = False
        self.start(block=block)

    def get_status(self) -> DetectorStatus:
        if self._start_failed:
            return DetectorStatus.FAILED
        if self._starting:
            return DetectorStatus.STARTING
        if self.worker is not None:
            if self.worker.failed:
                return DetectorStatus.FAILED
            return DetectorStatus.READY
        return DetectorStatus.IDLE

    def _clear_results(self) -> None:
        self._stable = []
        self._best_id = None
        self._result_at_ms = None
        self._debug = WorkerDebugInfo()

    def reset(self) -> None:
        """Forget all results. A worker response already in flight is discarded."""
        if self.worker is not None:
            self.worker.reset()
        self.stability.reset()
        self._clear_results()
        self._last_capture_at_ms = None

    def _teardown(self) -> None:
        with self._state_lock:
            # Orphans a start still in progress; it cleans up after itself.
            self._start_token += 1
            self._starting = False
            worker, self.worker = self.worker, None
            capture, self.capture = self.capture, None
        if worker is not None:
            worker.reset()
            worker.stop()
        _stop_quietly(capture)

    def dispose(self) -> None:
        self._teardown()
        self.stability.reset()
        self._clear_results()
        self._last_capture_at_ms = None
        self._start_failed = False

    # -- per frame -------------------------------------------------------

    def _apply_response(self, response: DetectResponse, now_ms: float) -> None:
        if not response.captured:
            return
        result = self.stability.update(response.candidates)
        self._stable = result.detections
        self._best_id = result.best_id
        self._result_at_ms = now_ms
        self._capture_size = (response.width, response.height)
        self._debug = response.debug

        summary = response.debug.as_dict()
        summary["stable_count"] = result.stable_count
        summary["best_id"] = result.best_id
        self.debug_logger.log(summary)

    def _maybe_capture(self, now_ms: float) -> None:
        if self.worker.busy:
            return
        if (
            self._last_capture_at_ms is not None
            and now_ms - self._last_capture_at_ms < self.min_capture_interval_ms
        ):
            return
        if self.worker.submit(self._frame_counter + 1):
            self._frame_counter += 1
            self._last_capture_at_ms = now_ms

    def detect(self, frame=None, observer: Optional[ObserverPose] = None) -> list[RawMarkerDetection]:
        """
        World-space estimates for the markers currently considered stable.

        ``frame`` is accepted for interface parity; this detector reads its
        own capture. Returns ``[]`` while starting, after a failure, or when
        the newest worker result is older than ``result_stale_ms``.
        """
        now = self._clock()
        if self.worker is None:
            if not (self._start_failed or self._starting):
                self.start()
            return []

        if self.worker.failed:
            if not self._start_failed:
                logger.error("detection worker failed: %s", self.worker.error)
            self._start_failed = True
            self._clear_results()
            return []

        response = self.worker.poll()
        if response is not None:
            self._apply_response(response, now)
        self._maybe_capture(now)

        if self._result_at_ms is None or now - self._result_at_ms > self.result_stale_ms:
            return []

        width, height = self._capture_size
        detections: list[RawMarkerDetection] = []
        for candidate in self._stable:
            self.pose_stats.attempted += 1
            result = self.resolver.resolve(candidate, width, height, now, observer)
            if result.detection is None:
                self.pose_stats.last_failure_reason = result.failure_reason
                continue
            self.pose_stats.succeeded += 1
            detections.append(result.detection)
        return detections

    def get_overlay_data(self) -> OverlayData:
        width, height = self._capture_size
        return OverlayData(
            candidates=list(self._stable),
            best_id=self._best_id,
            capture_width=width,
            capture_height=height,
            debug=self._debug.as_dict(),
            pose_stats=self.pose_stats.as_dict(),
            status=self.get_status(),
        )


MOCK_MARKERS = {
    101: (-0.5, 1.2, -2.0),
    102: (0.0, 1.5, -2.5),
    103: (0.6, 1.0, -1.8),
}


class MockMarkerDetector(MarkerDetector):
    """Three fixed markers with a few millimetres of jitter, each visible 90% of the time."""

    visibility = 0.9
    jitter_m = 0.004

    def __init__(self, seed: Optional[int] = None, clock: Optional[Callable[[], float]] = None):
        self._rng = np.random.default_rng(seed)
        self._clock = clock or monotonic_ms

    def detect(self, frame=None, observer: Optional[ObserverPose] = None) -> list[RawMarkerDetection]:
        now = self._clock()
        out: list[RawMarkerDetection] = []
        for marker_id, base in MOCK_MARKERS.items():
            if self._rng.random() >= self.visibility:
                continue
            jitter = (self._rng.random(3) - 0.5) * 2.0 * self.jitter_m
            out.append(RawMarkerDetection(
                marker_id=marker_id,
                pose=AnchorPose(
                    position=Vector3.from_array(np.asarray(base) + jitter),
                    rotation=Quaternion.identity(),
                    confidence=0.72 + float(self._rng.random()) * 0.26,
                    last_seen_at_ms=now,
                ),
            ))
        return out

    def dispose(self) -> None:
        return None


DETECTOR_MODES = ("camera", "mock")


class SwitchableDetector(MarkerDetector):
    def __init__(
        self,
        initial_mode: str = "camera",
        camera: Optional[CameraWorkerMarkerDetector] = None,
        mock: Optional[MockMarkerDetector] = None,
    ):
        self.camera = camera or CameraWorkerMarkerDetector()
        self.mock = mock or MockMarkerDetector()
        self._mode = "camera"
        self.set_mode(initial_mode)

    def get_mode(self) -> str:
        return self._mode

    def set_mode(self, mode: str) -> None:
        if mode not in DETECTOR_MODES:
            raise ValueError(f"unknown detector mode {mode!r}")
        if mode != self._mode:
            logger.info("detector mode %s -> %s", self._mode, mode)
        self._mode = mode

    @property
    def active(self) -> MarkerDetector:
        return self.camera if self._mode == "camera" else self.mock

    def detect(self, frame=None, observer: Optional[ObserverPose] = None) -> list[RawMarkerDetection]:
        return self.active.detect(frame, observer)

    def dispose(self) -> None:
        self.camera.dispose()
        self.mock.dispose()


def build_detector(config: TrackingConfig, capture: Optional[BaseCapture] = None) -> SwitchableDetector:
    return SwitchableDetector(
        initial_mode=config.mode,
        camera=CameraWorkerMarkerDetector(config, capture=capture),
    )

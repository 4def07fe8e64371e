"""Single-camera fiducial marker tracking."""

from .agent import TrackingAgent
from .config import TrackingConfig, load_config
from .detector import CameraWorkerMarkerDetector, DetectorStatus, MockMarkerDetector, SwitchableDetector
from .session import TrackingSession

__all__ = [
    "CameraWorkerMarkerDetector",
    "DetectorStatus",
    "MockMarkerDetector",
    "SwitchableDetector",
    "TrackingAgent",
    "TrackingConfig",
    "TrackingSession",
    "load_config",
]

import time
from unittest import mock

import numpy as np
import pytest

from marker_pipeline.ip_types import Frame, ObserverPose, RawCandidate, Vector3
from marker_tracking.capture import BaseCapture
from marker_tracking.config import TrackingConfig
from marker_tracking.detector import (
    MOCK_MARKERS,
    CameraWorkerMarkerDetector,
    DetectorStatus,
    MockMarkerDetector,
    SwitchableDetector,
    build_detector,
)

from conftest import FakeClock, square_corners

W, H = 480, 360


class FakeCapture(BaseCapture):
    def __init__(self, fail_on_start=False):
        self.fail_on_start = fail_on_start
        self.enabled = True
        self.started = 0
        self.stopped = 0
        self.idx = 0

    def start(self):
        self.started += 1
        if self.fail_on_start:
            raise RuntimeError("Failed to open camera: 0")

    def next_frame(self):
        if not self.enabled:
            return None
        self.idx += 1
        return Frame(self.idx, "", np.full((H, W, 3), 200, dtype=np.uint8))

    def stop(self):
        self.stopped += 1


class FakeQuads:
    def __init__(self, candidates=(), error=None):
        self.candidates = list(candidates)
        self.error = error
        self.last_rejected = []

    def detect_candidate_quads(self, image):
        if self.error is not None:
            raise self.error
        return list(self.candidates)


def _settle(detector, timeout=2.0):
    detector.wait_started(timeout)
    deadline = time.monotonic() + timeout
    while detector.worker is not None and detector.worker.busy and time.monotonic() < deadline:
        time.sleep(0.005)


def _tick(detector, clock, ms=130.0, observer=None):
    clock.advance(ms)
    out = detector.detect(None, observer)
    _settle(detector)
    return out


@pytest.fixture
def rig():
    clock = FakeClock(1000.0)
    capture = FakeCapture()
    quads = FakeQuads([RawCandidate(11, square_corners(W / 2, H / 2, 96), 0)])
    cfg = TrackingConfig(width=W, height=H)
    detector = CameraWorkerMarkerDetector(cfg, capture=capture, clock=clock, quad_detector=quads)
    yield detector, clock, capture, quads
    detector.dispose()


def test_detections_appear_once_the_marker_is_stable(rig):
    detector, clock, capture, _ = rig
    observer = ObserverPose(Vector3(0.0, 1.4, 2.5))

    assert detector.get_status() == DetectorStatus.IDLE
    assert _tick(detector, clock, observer=observer) == []  # opens the camera
    assert detector.get_status() == DetectorStatus.READY
    assert capture.started == 1
    assert _tick(detector, clock, observer=observer) == []  # first frame submitted
    assert _tick(detector, clock, observer=observer) == []  # streak 1

    out = _tick(detector, clock, observer=observer)
    assert [d.marker_id for d in out] == [11]
    pos = out[0].pose.position.as_array()
    assert pos == pytest.approx([0.0, 1.4, 1.9], abs=1e-3)
    assert out[0].pose.confidence == pytest.approx(1.0)

    overlay = detector.get_overlay_data()
    assert overlay.best_id == 11
    assert (overlay.capture_width, overlay.capture_height) == (W, H)
    assert overlay.pose_stats["succeeded"] >= 1
    assert overlay.debug["filtered_count"] == 1
    assert overlay.status == DetectorStatus.READY


def test_capture_is_throttled(rig):
    detector, clock, capture, _ = rig
    _tick(detector, clock)
    _tick(detector, clock)
    grabbed = capture.idx
    assert grabbed == 1
    for _ in range(5):
        _tick(detector, clock, ms=10.0)
    assert capture.idx == grabbed


def test_results_go_stale_without_fresh_frames(rig):
    detector, clock, capture, _ = rig
    for _ in range(4):
        out = _tick(detector, clock)
    assert out
    capture.enabled = False
    _tick(detector, clock)
    assert _tick(detector, clock, ms=600.0) == []


def test_reset_clears_results(rig):
    detector, clock, _, _ = rig
    for _ in range(4):
        _tick(detector, clock)
    assert detector.get_overlay_data().best_id == 11
    detector.reset()
    assert detector.detect() == []
    assert detector.stability.tracked_ids == set()


def test_capture_failure_surfaces_as_status_and_can_be_retried():
    clock = FakeClock()
    capture = FakeCapture(fail_on_start=True)
    detector = CameraWorkerMarkerDetector(TrackingConfig(), capture=capture, clock=clock,
                                          quad_detector=FakeQuads())
    assert detector.detect() == []
    assert detector.wait_started(2.0)
    assert detector.get_status() == DetectorStatus.FAILED
    assert detector.detect() == []
    assert capture.started == 1  # no automatic retry

    capture.fail_on_start = False
    detector.ensure_started(block=True)
    assert detector.get_status() == DetectorStatus.READY
    detector.dispose()
    assert detector.get_status() == DetectorStatus.IDLE
    assert capture.stopped >= 1


def test_worker_crash_surfaces_as_failed_status():
    clock = FakeClock()
    detector = CameraWorkerMarkerDetector(
        TrackingConfig(), capture=FakeCapture(), clock=clock,
        quad_detector=FakeQuads(error=ValueError("decoder blew up")),
    )
    _tick(detector, clock)
    _tick(detector, clock)
    assert _tick(detector, clock) == []
    assert detector.get_status() == DetectorStatus.FAILED
    detector.dispose()


def test_focal_length_comes_from_calibration_when_not_configured():
    cfg = TrackingConfig(width=W, height=H, calibration_path="calib.yaml")
    detector = CameraWorkerMarkerDetector(cfg, capture=FakeCapture(), clock=FakeClock(),
                                          quad_detector=FakeQuads())
    with mock.patch("marker_tracking.detector.focal_length_for_width", return_value=700.0) as focal:
        detector.start(block=True)
    focal.assert_called_once_with("calib.yaml", W)
    assert cfg.pose.focal_length_px == 700.0
    detector.dispose()


def test_dispose_stops_worker_and_capture(rig):
    detector, clock, capture, _ = rig
    _tick(detector, clock)
    worker = detector.worker
    detector.dispose()
    assert detector.worker is None
    assert not worker.is_running
    assert capture.stopped == 1
    assert detector.get_overlay_data().candidates == []


def test_mock_detector_is_seeded_and_bounded():
    clock = FakeClock(5.0)
    a = MockMarkerDetector(seed=3, clock=clock)
    b = MockMarkerDetector(seed=3, clock=clock)
    seen = set()
    for _ in range(50):
        da = a.detect()
        db = b.detect()
        assert [d.marker_id for d in da] == [d.marker_id for d in db]
        for d in da:
            seen.add(d.marker_id)
            base = np.asarray(MOCK_MARKERS[d.marker_id])
            assert np.all(np.abs(d.pose.position.as_array() - base) <= 0.004 + 1e-12)
            assert 0.72 <= d.pose.confidence <= 0.98
            assert d.pose.last_seen_at_ms == 5.0
    assert seen == {101, 102, 103}


def test_switchable_detector_delegates_by_mode():
    camera = mock.Mock(spec=CameraWorkerMarkerDetector)
    camera.detect.return_value = ["camera"]
    fake = mock.Mock(spec=MockMarkerDetector)
    fake.detect.return_value = ["mock"]

    detector = SwitchableDetector("mock", camera=camera, mock=fake)
    assert detector.get_mode() == "mock"
    assert detector.detect() == ["mock"]
    detector.set_mode("camera")
    assert detector.detect() == ["camera"]

    with pytest.raises(ValueError):
        detector.set_mode("lidar")

    detector.dispose()
    camera.dispose.assert_called_once()
    fake.dispose.assert_called_once()


def test_build_detector_follows_config_mode():
    detector = build_detector(TrackingConfig(mode="mock"))
    assert detector.get_mode() == "mock"
    assert isinstance(detector.active, MockMarkerDetector)


class SlowCapture(FakeCapture):
    def __init__(self, delay=0.3):
        super().__init__()
        self.delay = delay

    def start(self):
        time.sleep(self.delay)
        super().start()


def test_camera_opens_off_the_calling_thread():
    clock = FakeClock()
    capture = SlowCapture()
    detector = CameraWorkerMarkerDetector(TrackingConfig(), capture=capture, clock=clock,
                                          quad_detector=FakeQuads())
    t0 = time.monotonic()
    assert detector.detect() == []
    assert time.monotonic() - t0 < 0.1
    assert detector.get_status() == DetectorStatus.STARTING
    assert detector.detect() == []
    assert detector.get_status() == DetectorStatus.STARTING

    assert detector.wait_started(2.0)
    assert detector.get_status() == DetectorStatus.READY
    assert capture.started == 1
    detector.dispose()


def test_dispose_during_start_leaves_nothing_running():
    capture = SlowCapture(delay=0.2)
    detector = CameraWorkerMarkerDetector(TrackingConfig(), capture=capture, clock=FakeClock(),
                                          quad_detector=FakeQuads())
    detector.detect()
    detector.dispose()
    assert detector.get_status() == DetectorStatus.IDLE

    assert detector.wait_started(2.0)
    assert detector.worker is None
    assert detector.get_status() == DetectorStatus.IDLE
    assert capture.stopped == 1


def test_dropped_submits_do_not_consume_frame_ids():
    clock = FakeClock()
    detector = CameraWorkerMarkerDetector(TrackingConfig(), capture=FakeCapture(), clock=clock,
                                          quad_detector=FakeQuads())
    worker = mock.Mock(busy=False, failed=False)
    worker.poll.return_value = None
    worker.submit.side_effect = [False, True, True]
    detector.worker = worker

    detector.detect()
    detector.detect()
    clock.advance(500.0)
    detector.detect()
    assert [c.args[0] for c in worker.submit.call_args_list] == [1, 1, 2]

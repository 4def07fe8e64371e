from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from marker_pipeline.ip_types import TrackedMarker
from marker_pipeline.services.storage import SessionStorage

from .agent import TrackingAgent
from .capture import BaseCapture
from .config import TrackingConfig
from .detector import CameraWorkerMarkerDetector, SwitchableDetector, build_detector
from .logging_utils import PACKAGE_LOGGER, add_file_handler, setup_logger
from .output import CsvOutput, OutputSink


@dataclass
class SessionSummary:
    session_path: str
    frames_processed: int
    detection_ticks: int
    markers_written: int
    csv_path: str
    log_path: str
    avg_fps: float
    detector_status: str


class TrackingSession:
    def __init__(
        self,
        config: TrackingConfig,
        logger=None,
        outputs: Optional[list[OutputSink]] = None,
        capture: Optional[BaseCapture] = None,
        agent: Optional[TrackingAgent] = None,
    ):
        self.config = config
        self.logger = logger or setup_logger(config.camera_name)
        if outputs is None:
            outputs = [CsvOutput()] if config.save_csv else []
        self.outputs = outputs
        self.capture = capture
        self.agent = agent
        self._stop_event = threading.Event()
        self._frame_idx = 0
        self._ticks = 0
        self._written = 0

    def stop(self) -> None:
        self._stop_event.set()

    def _build_agent(self) -> TrackingAgent:
        if self.agent is not None:
            return self.agent
        detector = build_detector(self.config, capture=self.capture)
        return TrackingAgent(detector, self.config.smoother, self.config.detection_interval_ms)

    def _on_markers(self, markers: list[TrackedMarker]) -> None:
        self._ticks += 1
        ts_unix = time.time()
        for out in self.outputs:
            out.write_markers(ts_unix, self._frame_idx, markers)
        self._written += len(markers)
        self.logger.debug(
            "frame=%d tracked=%s",
            self._frame_idx,
            ",".join(str(m.marker_id) for m in markers),
        )

    def _detector_status(self, agent: TrackingAgent) -> str:
        detector = agent.detector
        if isinstance(detector, SwitchableDetector):
            if detector.get_mode() == "mock":
                return "mock"
            detector = detector.camera
        if isinstance(detector, CameraWorkerMarkerDetector):
            return detector.get_status().value
        return type(detector).__name__

    def run(self) -> SessionSummary:
        storage = SessionStorage(self.config.session_root, name=f"{self.config.camera_name}_session")
        session_path = storage.begin()
        storage.write_manifest(self.config.as_dict())

        log_file = str(Path(storage.logs_dir) / "session.log")
        file_handler = add_file_handler(self.config.camera_name, log_file)

        for out in self.outputs:
            out.open(Path(storage.session_dir))

        agent = self._build_agent()
        agent.init()
        unsubscribe = agent.subscribe(self._on_markers)

        self.logger.info("session started: %s", session_path)
        self.logger.info("config: %s", self.config.as_dict())

        period = 1.0 / self.config.fps if self.config.fps > 0 else 0.0
        t0 = time.monotonic()
        frames = 0
        status = "idle"

        try:
            while True:
                if self._stop_event.is_set():
                    break
                if self.config.duration_sec and (time.monotonic() - t0) >= self.config.duration_sec:
                    break
                if self.config.max_frames and frames >= self.config.max_frames:
                    break

                tick_start = time.monotonic()
                self._frame_idx = frames
                agent.on_frame(tick_start * 1000.0)
                frames += 1

                if period:
                    remaining = period - (time.monotonic() - tick_start)
                    if remaining > 0:
                        time.sleep(remaining)
        finally:
            status = self._detector_status(agent)
            unsubscribe()
            agent.dispose()

            for out in self.outputs:
                try:
                    out.close()
                except Exception as exc:
                    self.logger.warning("output close failed: %s", exc)

        elapsed = max(1e-6, time.monotonic() - t0)
        avg = frames / elapsed
        self.logger.info(
            "summary frames=%d ticks=%d markers=%d avg_fps=%.2f detector=%s",
            frames, self._ticks, self._written, avg, status,
        )
        logging.getLogger(PACKAGE_LOGGER).removeHandler(file_handler)
        file_handler.close()

        csv_path = ""
        for out in self.outputs:
            if isinstance(out, CsvOutput) and out.path is not None:
                csv_path = str(out.path)
                break
        summary = SessionSummary(
            str(session_path),
            frames,
            self._ticks,
            self._written,
            csv_path,
            log_file,
            avg,
            status,
        )
        storage.write_summary(asdict(summary))
        return summary

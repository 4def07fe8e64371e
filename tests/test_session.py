import csv
import json
from pathlib import Path

import pytest

from marker_tracking import run
from marker_tracking.agent import TrackingAgent
from marker_tracking.config import TrackingConfig
from marker_tracking.detector import MockMarkerDetector
from marker_tracking.output import NullOutput
from marker_tracking.session import TrackingSession


def _mock_config(tmp_path: Path, **overrides) -> TrackingConfig:
    cfg = TrackingConfig(
        camera_name="mockcam",
        session_root=str(tmp_path),
        mode="mock",
        fps=200,
        max_frames=20,
        detection_interval_ms=0,
    )
    return cfg.apply_overrides(**overrides)


def test_mock_session_writes_csv_manifest_and_log(tmp_path: Path):
    cfg = _mock_config(tmp_path)
    agent = TrackingAgent(MockMarkerDetector(seed=1), cfg.smoother, cfg.detection_interval_ms)
    summary = TrackingSession(cfg, agent=agent).run()

    assert summary.frames_processed == 20
    assert summary.detection_ticks > 0
    assert summary.markers_written > 0
    assert summary.detector_status == "MockMarkerDetector"
    assert Path(summary.session_path).exists()
    assert Path(summary.log_path).exists()

    manifest = json.loads((Path(summary.session_path) / "config.json").read_text())
    assert manifest["camera_name"] == "mockcam"
    saved = json.loads((Path(summary.session_path) / "summary.json").read_text())
    assert saved["frames_processed"] == 20

    with open(summary.csv_path, newline="") as fh:
        rows = list(csv.DictReader(fh))
    assert len(rows) == summary.markers_written
    assert {int(r["marker_id"]) for r in rows} <= {101, 102, 103}


def test_session_builds_switchable_detector_from_config(tmp_path: Path):
    summary = TrackingSession(_mock_config(tmp_path, max_frames=3), outputs=[NullOutput()]).run()
    assert summary.frames_processed == 3
    assert summary.detector_status == "mock"
    assert summary.csv_path == ""


def test_dry_run_camera_session_tracks_synthetic_parity_marker(tmp_path: Path):
    cfg = _mock_config(
        tmp_path,
        mode="camera",
        dry_run=True,
        max_frames=None,
        duration_sec=1.5,
        fps=60,
        max_capture_hz=30,
        detection_interval_ms=20,
    )
    summary = TrackingSession(cfg).run()
    assert summary.detector_status == "ready"
    with open(summary.csv_path, newline="") as fh:
        rows = list(csv.DictReader(fh))
    assert rows
    assert {int(r["marker_id"]) for r in rows} == {5}


def test_cli_applies_overrides(tmp_path: Path, monkeypatch):
    cfg_path = tmp_path / "cfg.json"
    cfg_path.write_text(json.dumps({"camera_name": "clicam"}))

    captured = {}

    class FakeSession:
        def __init__(self, cfg):
            captured["cfg"] = cfg

        def stop(self):
            pass

        def run(self):
            return "done"

    monkeypatch.setattr(run, "TrackingSession", FakeSession)
    assert run.main([
        "--config", str(cfg_path),
        "--mock", "--max-frames", "5", "--device", "2",
        "--out", str(tmp_path), "--multi-marker",
    ]) == 0

    cfg = captured["cfg"]
    assert cfg.camera_name == "clicam"
    assert cfg.mode == "mock"
    assert cfg.max_frames == 5
    assert cfg.device == 2
    assert cfg.session_root == str(tmp_path)
    assert cfg.stability.single_best_only is False


def test_cli_rejects_missing_config(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        run.main(["--config", str(tmp_path / "missing.json")])

from __future__ import annotations

import json
from dataclasses import dataclass, asdict, field, fields
from pathlib import Path
from typing import Any, Optional


@dataclass
class SmootherConfig:
    """Exponential pose smoothing per marker."""

    position_alpha: float = 0.3  # lerp factor: 1 = no filtering
    rotation_alpha: float = 0.25  # slerp factor: 1 = no filtering
    stale_threshold_ms: float = 2000.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FilterConfig:
    max_valid_id: int = 249  # 6x6_1000 ids 0..249 are the standard 6x6_250 set
    min_diagonal_px: float = 20.0
    min_aspect_ratio: float = 0.3
    min_confidence: float = 0.7
    exact_match_confidence: float = 1.0
    corrected_confidence: float = 0.75

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StabilityConfig:
    min_streak: int = 2
    streak_decay: int = 2
    max_streak: int = 30
    single_best_only: bool = True  # report only the top-scoring stable id per frame

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PoseConfig:
    marker_size_m: float = 0.12
    model_size_mm: float = 120.0
    focal_length_px: Optional[float] = None  # None: calibration fx, else capture width
    default_observer_position: tuple[float, float, float] = (0.0, 1.4, 2.5)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TrackingConfig:
    camera_name: str = "cam"
    device: int | str = 0
    fps: int = 30
    width: int = 480
    height: int = 360
    calibration_path: Optional[str] = None
    session_root: str = "data/sessions"
    duration_sec: float = 30.0
    max_frames: Optional[int] = None
    aruco_dict: str = "6x6_1000"
    mode: str = "camera"  # "camera" or "mock"
    dry_run: bool = False  # synthetic frames instead of a real camera
    max_capture_hz: float = 8.0
    result_stale_ms: float = 550.0
    detection_interval_ms: float = 50.0
    parity_fallback: bool = True
    save_csv: bool = True
    smoother: SmootherConfig = field(default_factory=SmootherConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    pose: PoseConfig = field(default_factory=PoseConfig)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def apply_overrides(self, **kwargs: Any) -> "TrackingConfig":
        for key, value in kwargs.items():
            if value is not None and hasattr(self, key):
                setattr(self, key, value)
        return self

    def validate(self) -> "TrackingConfig":
        s = self.smoother
        if not 0.0 < s.position_alpha <= 1.0:
            raise ValueError(f"smoother.position_alpha must be in (0, 1], got {s.position_alpha}")
        if not 0.0 < s.rotation_alpha <= 1.0:
            raise ValueError(f"smoother.rotation_alpha must be in (0, 1], got {s.rotation_alpha}")
        if s.stale_threshold_ms <= 0:
            raise ValueError("smoother.stale_threshold_ms must be positive")
        if self.stability.min_streak < 1:
            raise ValueError("stability.min_streak must be at least 1")
        if self.stability.streak_decay < 1:
            raise ValueError("stability.streak_decay must be at least 1")
        if self.stability.max_streak < self.stability.min_streak:
            raise ValueError("stability.max_streak must be >= stability.min_streak")
        if not 0.0 <= self.filter.min_aspect_ratio <= 1.0:
            raise ValueError("filter.min_aspect_ratio must be in [0, 1]")
        if self.pose.marker_size_m <= 0 or self.pose.model_size_mm <= 0:
            raise ValueError("pose marker sizes must be positive")
        if self.max_capture_hz <= 0:
            raise ValueError("max_capture_hz must be positive")
        if self.detection_interval_ms < 0:
            raise ValueError("detection_interval_ms must not be negative")
        if self.mode not in ("camera", "mock"):
            raise ValueError(f"mode must be 'camera' or 'mock', got {self.mode!r}")
        return self


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        import yaml  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "YAML config requested but PyYAML is not installed. "
            "Install with: pip install pyyaml"
        ) from exc
    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML config root must be a mapping")
    return data


def _fill_section(section, raw: Any, name: str):
    """Copy known keys from a mapping onto a config dataclass, coercing to the default's type."""
    if raw is None:
        return section
    if not isinstance(raw, dict):
        raise ValueError(f"{name} must be a mapping")
    for f in fields(section):
        if f.name not in raw:
            continue
        current = getattr(section, f.name)
        value = raw[f.name]
        if value is None:
            setattr(section, f.name, None)
        elif isinstance(current, bool):
            setattr(section, f.name, bool(value))
        elif isinstance(current, int):
            setattr(section, f.name, int(value))
        elif isinstance(current, float):
            setattr(section, f.name, float(value))
        elif isinstance(current, tuple):
            setattr(section, f.name, tuple(float(v) for v in value))
        else:
            setattr(section, f.name, value)
    return section


def load_config(path: str | Path) -> TrackingConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")

    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = _load_yaml(p)
    else:
        with p.open("r", encoding="utf-8") as fp:
            raw = json.load(fp)

    if not isinstance(raw, dict):
        raise ValueError("Config root must be a JSON/YAML object")

    cfg = TrackingConfig()
    cfg.camera_name = str(raw.get("camera_name", cfg.camera_name))
    cfg.device = raw.get("device", cfg.device)
    cfg.fps = int(raw.get("fps", cfg.fps))
    cfg.width = int(raw.get("width", cfg.width))
    cfg.height = int(raw.get("height", cfg.height))
    cfg.calibration_path = raw.get("calibration_path", cfg.calibration_path)
    cfg.session_root = str(raw.get("session_root", cfg.session_root))
    cfg.duration_sec = float(raw.get("duration_sec", cfg.duration_sec))
    cfg.max_frames = raw.get("max_frames", cfg.max_frames)
    if cfg.max_frames is not None:
        cfg.max_frames = int(cfg.max_frames)
    cfg.aruco_dict = str(raw.get("aruco_dict", cfg.aruco_dict))
    cfg.mode = str(raw.get("mode", cfg.mode))
    cfg.dry_run = bool(raw.get("dry_run", cfg.dry_run))
    cfg.max_capture_hz = float(raw.get("max_capture_hz", cfg.max_capture_hz))
    cfg.result_stale_ms = float(raw.get("result_stale_ms", cfg.result_stale_ms))
    cfg.detection_interval_ms = float(raw.get("detection_interval_ms", cfg.detection_interval_ms))
    cfg.parity_fallback = bool(raw.get("parity_fallback", cfg.parity_fallback))
    cfg.save_csv = bool(raw.get("save_csv", cfg.save_csv))

    _fill_section(cfg.smoother, raw.get("smoother"), "smoother")
    _fill_section(cfg.filter, raw.get("filter"), "filter")
    _fill_section(cfg.stability, raw.get("stability"), "stability")
    _fill_section(cfg.pose, raw.get("pose"), "pose")

    return cfg.validate()

import argparse
import signal
import sys

from .config import TrackingConfig, load_config
from .session import TrackingSession


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Track fiducial markers from a single camera")
    ap.add_argument("--config", required=True, help="Path to JSON/YAML config")

    ap.add_argument("--camera-name")
    ap.add_argument("--device")
    ap.add_argument("--fps", type=int)
    ap.add_argument("--width", type=int)
    ap.add_argument("--height", type=int)
    ap.add_argument("--calib")
    ap.add_argument("--out")
    ap.add_argument("--duration", type=float)
    ap.add_argument("--dict")
    ap.add_argument("--max-frames", type=int)
    ap.add_argument("--mock", action="store_true", help="Synthetic detections, no camera")
    ap.add_argument("--dry-run", action="store_true", help="Synthetic frames instead of a camera")
    ap.add_argument("--multi-marker", action="store_true", help="Report every stable marker")
    ap.add_argument("--single-best", action="store_true", help="Report only the best stable marker")
    ap.add_argument("--no-csv", action="store_true")

    return ap


def _apply_args(cfg: TrackingConfig, args: argparse.Namespace) -> TrackingConfig:
    device = args.device
    if isinstance(device, str) and device.isdigit():
        device = int(device)

    cfg.apply_overrides(
        camera_name=args.camera_name,
        device=device,
        fps=args.fps,
        width=args.width,
        height=args.height,
        calibration_path=args.calib,
        session_root=args.out,
        duration_sec=args.duration,
        aruco_dict=args.dict,
        max_frames=args.max_frames,
        mode="mock" if args.mock else None,
        dry_run=True if args.dry_run else None,
        save_csv=False if args.no_csv else None,
    )
    if args.multi_marker:
        cfg.stability.single_best_only = False
    if args.single_best:
        cfg.stability.single_best_only = True
    return cfg.validate()


def main(argv=None) -> int:
    ap = _build_parser()
    args = ap.parse_args(argv)

    cfg = load_config(args.config)
    cfg = _apply_args(cfg, args)

    session = TrackingSession(cfg)

    def _handle_signal(_sig, _frame):
        session.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)

    summary = session.run()
    print(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())

import csv
import io

class CsvWriter:
    """One row per tracked marker per emitted frame."""
    HEADER = [
        "recorded_at",
        "frame_idx", "marker_id",
        "pos_x", "pos_y", "pos_z",
        "rot_x", "rot_y", "rot_z", "rot_w",
        "confidence", "last_seen_ms",
        "size_m",
    ]

    def __init__(self, csv_path: str):
        self.csv_path = csv_path
        self._opened = False
        self._fh = None
        self._w = None

    def open(self):
        self._fh = open(self.csv_path, "w", newline="")
        self._w = csv.writer(self._fh)
        self._w.writerow(self.HEADER)
        self._opened = True

    @staticmethod
    def _row(ts_unix, frame_idx, marker):
        p = marker.pose.position
        q = marker.pose.rotation
        size = "" if marker.size_meters is None else f"{marker.size_meters:.4f}"
        return [
            f"{ts_unix:.6f}",
            frame_idx, marker.marker_id,
            f"{p.x:.6f}", f"{p.y:.6f}", f"{p.z:.6f}",
            f"{q.x:.6f}", f"{q.y:.6f}", f"{q.z:.6f}", f"{q.w:.6f}",
            f"{marker.pose.confidence:.4f}", f"{marker.pose.last_seen_at_ms:.1f}",
            size,
        ]

    def append(self, ts_unix, frame_idx, marker):
        self._w.writerow(self._row(ts_unix, frame_idx, marker))

    @classmethod
    def to_csv_line(cls, ts_unix, frame_idx, marker):
        buf = io.StringIO()
        w = csv.writer(buf)
        w.writerow(cls._row(ts_unix, frame_idx, marker))
        return buf.getvalue().strip()

    def close(self):
        if self._opened and self._fh:
            self._fh.close()
            self._opened = False
            self._fh = None
            self._w = None

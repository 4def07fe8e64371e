from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from marker_pipeline.ip_types import TrackedMarker
from marker_pipeline.services.csv_writer import CsvWriter


class OutputSink(ABC):
    @abstractmethod
    def open(self, session_dir: Path) -> None: ...

    @abstractmethod
    def write_markers(self, ts_unix: float, frame_idx: int, markers: list[TrackedMarker]) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class CsvOutput(OutputSink):
    def __init__(self, filename: str = "tracked_markers.csv"):
        self.filename = filename
        self.path: Optional[Path] = None
        self._writer: Optional[CsvWriter] = None

    def open(self, session_dir: Path) -> None:
        self.path = Path(session_dir) / self.filename
        self._writer = CsvWriter(str(self.path))
        self._writer.open()

    def write_markers(self, ts_unix: float, frame_idx: int, markers: list[TrackedMarker]) -> None:
        if self._writer is None:
            return
        for marker in markers:
            self._writer.append(ts_unix, frame_idx, marker)

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            self._writer = None


class NullOutput(OutputSink):
    def open(self, session_dir: Path) -> None:
        return None

    def write_markers(self, ts_unix: float, frame_idx: int, markers: list[TrackedMarker]) -> None:
        return None

    def close(self) -> None:
        return None

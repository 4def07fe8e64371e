import math
import time
import re
from abc import ABC, abstractmethod
from typing import Any, Sequence

import cv2
import numpy as np

from marker_pipeline.ip_types import Frame

from .decoder import render_parity_marker


class BaseCapture(ABC):
    @abstractmethod
    def start(self) -> None: ...

    @abstractmethod
    def next_frame(self) -> Frame | None: ...

    @abstractmethod
    def stop(self) -> None: ...


class USBOpenCVCapture(BaseCapture):
    def __init__(self, device: int | str, fps: int, width: int, height: int):
        self.device = device
        self.fps = fps
        self.width = width
        self.height = height
        self.cap: Any = None
        self.idx = 0

    def start(self) -> None:
        if isinstance(self.device, int):
            self.cap = cv2.VideoCapture(self.device, cv2.CAP_V4L2)
        else:
            dev_str = str(self.device)
            match = re.match(r"^/dev/video(\d+)$", dev_str)
            if match:
                self.cap = cv2.VideoCapture(int(match.group(1)), cv2.CAP_V4L2)
            else:
                self.cap = cv2.VideoCapture(dev_str)

        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap.set(cv2.CAP_PROP_FPS, self.fps)

        if not self.cap.isOpened():
            raise RuntimeError(f"Failed to open camera: {self.device}")

    def next_frame(self) -> Frame | None:
        if self.cap is None:
            return None
        ok, img = self.cap.read()
        if not ok:
            return None
        if img.shape[1] != self.width or img.shape[0] != self.height:
            img = cv2.resize(img, (self.width, self.height), interpolation=cv2.INTER_AREA)
        self.idx += 1
        ts = time.strftime("%Y-%m-%dT%H:%M:%S")
        return Frame(self.idx, ts, img)

    def stop(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None


class SyntheticCapture(BaseCapture):
    """
    Grey frames with parity markers drawn on them, drifting slowly in a
    circle. Used for dry runs; no camera needed.
    """

    def __init__(
        self,
        fps: int,
        width: int,
        height: int,
        marker_ids: Sequence[int] = (5,),
        cell_px: int = 8,
        drift_px: float = 0.0,
        realtime: bool = True,
    ):
        self.fps = fps
        self.width = width
        self.height = height
        self.marker_ids = list(marker_ids)
        self.cell_px = cell_px
        self.drift_px = drift_px
        self.realtime = realtime
        self.idx = 0
        self._last = 0.0
        self._tiles = [render_parity_marker(mid, cell_px=cell_px) for mid in self.marker_ids]

    def start(self) -> None:
        self._last = time.time()

    def _anchor(self, i: int) -> tuple[int, int]:
        count = max(1, len(self._tiles))
        tile = self._tiles[i]
        slot_w = self.width // count
        x = slot_w * i + (slot_w - tile.shape[1]) // 2
        y = (self.height - tile.shape[0]) // 2
        if self.drift_px:
            phase = self.idx * 0.1
            x += int(round(self.drift_px * math.cos(phase)))
            y += int(round(self.drift_px * math.sin(phase)))
        return x, y

    def render(self) -> np.ndarray:
        img = np.full((self.height, self.width), 200, dtype=np.uint8)
        for i, tile in enumerate(self._tiles):
            x, y = self._anchor(i)
            th, tw = tile.shape
            x0, y0 = max(0, x), max(0, y)
            x1, y1 = min(self.width, x + tw), min(self.height, y + th)
            if x1 <= x0 or y1 <= y0:
                continue
            img[y0:y1, x0:x1] = tile[y0 - y:y1 - y, x0 - x:x1 - x]
        return img

    def next_frame(self) -> Frame | None:
        if self.realtime and self.fps > 0:
            now = time.time()
            wait = max(0.0, (1.0 / self.fps) - (now - self._last))
            if wait > 0:
                time.sleep(wait)
        self._last = time.time()
        self.idx += 1
        ts = time.strftime("%Y-%m-%dT%H:%M:%S")
        return Frame(self.idx, ts, self.render())

    def stop(self) -> None:
        return None

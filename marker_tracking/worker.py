"""Background detection worker.

Quad detection, parity-fallback decoding and candidate filtering run on a
dedicated thread so the render loop never waits on them. At most one
request is in flight: a frame submitted while the worker is busy is
dropped, not queued. Responses carry the frame id and the generation
they were requested under; :meth:`DetectionWorker.reset` bumps the
generation so responses already in flight are discarded.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field, asdict
from typing import Any, Optional

import cv2
import numpy as np

from marker_pipeline.ip_types import Frame, RawCandidate, ScoredCandidate
from marker_pipeline.strategies.preprocess import GrayscaleFrame

from .candidates import CandidateFilter
from .decoder import GRID_SIZE, ParityDecodeResult, decode_parity_marker

logger = logging.getLogger(__name__)


@dataclass
class DetectRequest:
    frame_id: int
    generation: int
    image: Any = None  # 2-D uint8 grayscale; None: grab from the worker's capture


@dataclass
class WorkerDebugInfo:
    decoded_markers: int = 0
    candidate_quad_count: int = 0
    parity_decoded: int = 0
    candidate_count: int = 0
    filtered_count: int = 0
    rejected_malformed: int = 0
    rejected_invalid_id: int = 0
    rejected_too_small: int = 0
    rejected_bad_aspect: int = 0
    rejected_low_confidence: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DetectResponse:
    frame_id: int
    generation: int
    width: int
    height: int
    candidates: list[ScoredCandidate] = field(default_factory=list)
    debug: WorkerDebugInfo = field(default_factory=WorkerDebugInfo)
    captured: bool = True


RECTIFIED_CELL_PX = 12


def _clockwise(quad: np.ndarray) -> np.ndarray:
    """Quad corners in clockwise image order (y down)."""
    pts = np.asarray(quad, dtype=np.float32).reshape(4, 2)
    x, y = pts[:, 0], pts[:, 1]
    area = float(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y))
    return pts if area >= 0 else pts[::-1].copy()


def rectify_quad(gray: np.ndarray, quad: np.ndarray, side: int) -> tuple[np.ndarray, np.ndarray]:
    """Warp a quad to an upright side x side square; also returns the square-to-image homography."""
    src = _clockwise(quad)
    dst = np.array([[0, 0], [side, 0], [side, side], [0, side]], dtype=np.float32)
    H = cv2.getPerspectiveTransform(src, dst)
    warped = cv2.warpPerspective(gray, H, (side, side), flags=cv2.INTER_LINEAR,
                                 borderMode=cv2.BORDER_REPLICATE)
    return warped, cv2.getPerspectiveTransform(dst, src)


def _dark_bounds(square: np.ndarray) -> Optional[tuple[int, int, int, int]]:
    _, binary = cv2.threshold(square, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    ys, xs = np.nonzero(binary == 0)
    if xs.size == 0:
        return None
    return int(xs.min()), int(ys.min()), int(xs.max()) + 1, int(ys.max()) + 1


def decode_parity_quad(gray: np.ndarray, quad: np.ndarray
                       ) -> Optional[tuple[ParityDecodeResult, np.ndarray]]:
    """
    Parity-decode a quad the quad detector rejected.

    The quad is rectified first. It may hug the marker's dark ring, or it
    may be the outline of the light quiet zone around it; in the second case
    the grid is re-sampled over the dark pixels inside the square. Returns
    the decode and the corners of the region it came from, in image
    coordinates.
    """
    side = (GRID_SIZE + 2) * RECTIFIED_CELL_PX
    square, to_image = rectify_quad(gray, quad, side)

    regions = [(0, 0, side, side)]
    inner = _dark_bounds(square)
    if inner is not None and inner != regions[0]:
        regions.append(inner)

    for x0, y0, x1, y1 in regions:
        result = decode_parity_marker(square, x0, y0, x1, y1)
        if result is None:
            continue
        box = np.array([[[x0, y0]], [[x1, y0]], [[x1, y1]], [[x0, y1]]], dtype=np.float32)
        corners = cv2.perspectiveTransform(box, to_image).reshape(4, 2)
        return result, corners
    return None


class DetectionWorker:
    def __init__(
        self,
        quad_detector,
        candidate_filter: Optional[CandidateFilter] = None,
        parity_fallback: bool = True,
        capture=None,
        name: str = "marker-worker",
    ):
        self.quad_detector = quad_detector
        self.candidate_filter = candidate_filter or CandidateFilter()
        self.parity_fallback = parity_fallback
        self.capture = capture
        self._preprocess = GrayscaleFrame()
        self.name = name

        self._requests: queue.Queue[Optional[DetectRequest]] = queue.Queue(maxsize=1)
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._busy = False
        self._failed = False
        self._generation = 0
        self._latest: Optional[DetectResponse] = None

        self.error: Optional[BaseException] = None
        self.frames_submitted = 0
        self.frames_dropped = 0

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        with self._lock:
            self._running = True
            self._busy = False
            self._failed = False
            self._latest = None
            self.error = None
        self._requests = queue.Queue(maxsize=1)
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("%s started", self.name)

    def stop(self, timeout: float = 1.0) -> None:
        self._running = False
        try:
            self._requests.put_nowait(None)
        except queue.Full:
            pass
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        with self._lock:
            self._busy = False
            self._latest = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    @property
    def failed(self) -> bool:
        with self._lock:
            return self._failed

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    # -- messaging -------------------------------------------------------

    def submit(self, frame_id: int, image=None) -> bool:
        """
        Hand a frame to the worker, or with no image ask it to grab one from
        its capture. Returns False if the request was dropped.
        """
        with self._lock:
            if not self._running or self._failed:
                return False
            if self._busy:
                self.frames_dropped += 1
                return False
            self._busy = True
            request = DetectRequest(frame_id, self._generation, image)
        try:
            self._requests.put_nowait(request)
        except queue.Full:
            with self._lock:
                self._busy = False
                self.frames_dropped += 1
            return False
        self.frames_submitted += 1
        return True

    def poll(self) -> Optional[DetectResponse]:
        """Newest unread response of the current generation, if any."""
        with self._lock:
            response, self._latest = self._latest, None
            if response is not None and response.generation != self._generation:
                return None
            return response

    def reset(self) -> None:
        with self._lock:
            self._generation += 1
            self._latest = None

    # -- work ------------------------------------------------------------

    def _grab(self, request: DetectRequest):
        if request.image is not None:
            image = request.image
        else:
            if self.capture is None:
                raise RuntimeError("no image supplied and no capture attached")
            frame = self.capture.next_frame()
            if frame is None:
                return None
            image = frame.image
        return self._preprocess.apply(Frame(request.frame_id, "", image)).image

    def process(self, request: DetectRequest) -> DetectResponse:
        gray = self._grab(request)
        if gray is None:
            return DetectResponse(request.frame_id, request.generation, 0, 0, captured=False)
        height, width = gray.shape[:2]

        raw: list[RawCandidate] = list(self.quad_detector.detect_candidate_quads(gray))
        decoded = len(raw)
        rejected = list(getattr(self.quad_detector, "last_rejected", []) or [])

        parity: dict[int, tuple[float, RawCandidate]] = {}
        if self.parity_fallback:
            for quad in rejected:
                decoded_quad = decode_parity_quad(gray, quad)
                if decoded_quad is None:
                    continue
                result, corners = decoded_quad
                # Nested rejects (quiet-zone outline and ring) decode to the same marker.
                seen = parity.get(result.marker_id)
                if seen is None or result.confidence > seen[0]:
                    parity[result.marker_id] = (
                        result.confidence,
                        RawCandidate(result.marker_id, corners, result.parity_error_count),
                    )
        parity_decoded = len(parity)
        raw.extend(cand for _, cand in parity.values())

        filtered = self.candidate_filter.filter(raw, width, height)
        stats = filtered.stats
        debug = WorkerDebugInfo(
            decoded_markers=decoded + parity_decoded,
            candidate_quad_count=decoded + len(rejected),
            parity_decoded=parity_decoded,
            candidate_count=len(raw),
            filtered_count=len(filtered.candidates),
            rejected_malformed=stats.rejected_malformed,
            rejected_invalid_id=stats.rejected_invalid_id,
            rejected_too_small=stats.rejected_too_small,
            rejected_bad_aspect=stats.rejected_bad_aspect,
            rejected_low_confidence=stats.rejected_low_confidence,
        )
        return DetectResponse(
            frame_id=request.frame_id,
            generation=request.generation,
            width=width,
            height=height,
            candidates=filtered.candidates,
            debug=debug,
        )

    def _loop(self) -> None:
        while self._running:
            try:
                request = self._requests.get(timeout=0.1)
            except queue.Empty:
                continue
            if request is None:
                break

            try:
                response = self.process(request)
            except Exception as exc:
                logger.exception("%s failed on frame %d", self.name, request.frame_id)
                with self._lock:
                    self._failed = True
                    self._busy = False
                    self._latest = None
                    self.error = exc
                self._running = False
                return

            with self._lock:
                self._busy = False
                if request.generation == self._generation:
                    self._latest = response

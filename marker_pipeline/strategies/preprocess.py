from abc import ABC, abstractmethod
import cv2
from ..ip_types import Frame

class PreprocessStrategy(ABC):
    @abstractmethod
    def apply(self, f: Frame) -> Frame: ...

class GrayscaleFrame(PreprocessStrategy):
    """Convert BGR/BGRA frames to single-channel gray; gray frames pass through."""
    def apply(self, f: Frame) -> Frame:
        img = f.image
        if img is None or getattr(img, "ndim", 0) == 2:
            return f
        code = cv2.COLOR_BGRA2GRAY if img.shape[2] == 4 else cv2.COLOR_BGR2GRAY
        g = cv2.cvtColor(img, code)
        return Frame(f.idx, f.ts_iso, g)

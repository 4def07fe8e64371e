import json
import logging
import time
from typing import Any, Callable, Optional

PACKAGE_LOGGER = "marker_tracking"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(camera)s] %(name)s: %(message)s"


class CameraNameFilter(logging.Filter):
    def __init__(self, camera_name: str):
        super().__init__()
        self.camera_name = camera_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.camera = self.camera_name
        return True


def setup_logger(camera_name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Configure the ``marker_tracking`` package logger and return the
    session child logger. Module loggers (``marker_tracking.worker`` and so
    on) propagate into the same handlers, so every record carries the
    camera name.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)

    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(CameraNameFilter(camera_name))
        package_logger.addHandler(handler)

    return logging.getLogger(f"{PACKAGE_LOGGER}.{camera_name}")


def add_file_handler(camera_name: str, log_path: str) -> logging.FileHandler:
    logger = logging.getLogger(PACKAGE_LOGGER)
    handler = logging.FileHandler(log_path)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CameraNameFilter(camera_name))
    logger.addHandler(handler)
    return handler


class DebugSummaryLogger:
    """
    Rate-limited logging of worker debug counters.

    An unchanged summary is logged at most once per ``repeat_interval_s``.
    Frames with nothing decoded, or nothing surviving the filter, log at
    WARNING; everything else at INFO.
    """

    def __init__(
        self,
        logger: logging.Logger,
        repeat_interval_s: float = 2.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.logger = logger
        self.repeat_interval_s = repeat_interval_s
        self._clock = clock or time.monotonic
        self._last_signature = ""
        self._last_logged_at: Optional[float] = None

    def log(self, summary: dict[str, Any]) -> bool:
        now = self._clock()
        signature = json.dumps(summary, sort_keys=True)
        if (
            signature == self._last_signature
            and self._last_logged_at is not None
            and now - self._last_logged_at < self.repeat_interval_s
        ):
            return False
        self._last_signature = signature
        self._last_logged_at = now

        if summary.get("decoded_markers", 0) == 0:
            self.logger.warning("no decoded markers %s", signature)
        elif summary.get("filtered_count", 0) == 0:
            self.logger.warning("decoded markers but nothing survived filtering %s", signature)
        else:
            self.logger.info("decoded markers available %s", signature)
        return True

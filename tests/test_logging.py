import logging
from pathlib import Path

from marker_tracking.logging_utils import (
    PACKAGE_LOGGER,
    DebugSummaryLogger,
    add_file_handler,
    setup_logger,
)


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_setup_logger_returns_child_of_package_logger():
    logger = setup_logger("cam0")
    assert logger.name == f"{PACKAGE_LOGGER}.cam0"
    assert logging.getLogger(PACKAGE_LOGGER).handlers


def test_file_handler_tags_records_with_camera(tmp_path: Path):
    logger = setup_logger("cam1")
    log_path = tmp_path / "session.log"
    handler = add_file_handler("cam1", str(log_path))
    try:
        logger.info("hello")
        logging.getLogger("marker_tracking.worker").warning("from a module")
    finally:
        logging.getLogger(PACKAGE_LOGGER).removeHandler(handler)
        handler.close()

    text = log_path.read_text()
    assert "[cam1] marker_tracking.cam1: hello" in text
    assert "[cam1] marker_tracking.worker: from a module" in text


def test_debug_summary_levels(caplog):
    summaries = DebugSummaryLogger(logging.getLogger("test.summary"), clock=Clock())
    with caplog.at_level(logging.INFO, logger="test.summary"):
        summaries.log({"decoded_markers": 0, "filtered_count": 0})
        summaries.log({"decoded_markers": 2, "filtered_count": 0})
        summaries.log({"decoded_markers": 2, "filtered_count": 1})
    levels = [r.levelno for r in caplog.records]
    assert levels == [logging.WARNING, logging.WARNING, logging.INFO]
    assert "nothing survived filtering" in caplog.records[1].getMessage()


def test_identical_summaries_are_rate_limited():
    clock = Clock()
    summaries = DebugSummaryLogger(logging.getLogger("test.rate"), repeat_interval_s=2.0, clock=clock)
    s = {"decoded_markers": 1, "filtered_count": 1}
    assert summaries.log(s)
    clock.now = 1.0
    assert not summaries.log(s)
    assert summaries.log({"decoded_markers": 2, "filtered_count": 1})
    clock.now = 3.5
    assert summaries.log({"decoded_markers": 2, "filtered_count": 1})

"""
Per-operation log file tests.
"""

from datetime import datetime
import logging
from pathlib import Path
import sys
import threading

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from scratchpad.oplog import log_path, operation_log  # noqa: E402


def test_log_path():
    path = log_path(Path("/logs"), "create", datetime(2024, 5, 1, 13, 4, 5))

    assert path == Path("/logs/create-2024-05-01_13-04-05.log")


def test_captures_only_the_operation_thread(tmp_path):
    package_logger = logging.getLogger("scratchpad")
    previous = package_logger.level
    package_logger.setLevel(logging.INFO)
    log = logging.getLogger("scratchpad.lifecycle")
    try:
        with operation_log(tmp_path, "update") as path:
            log.info("inside the operation")
            other = threading.Thread(target=lambda: log.info("from another worker"))
            other.start()
            other.join()
        log.info("after the operation")
    finally:
        package_logger.setLevel(previous)

    content = path.read_text()
    assert "inside the operation" in content
    assert "from another worker" not in content
    assert "after the operation" not in content
    assert "[INFO] scratchpad.lifecycle:" in content

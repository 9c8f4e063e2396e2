"""
Per-operation log files.

Each lifecycle operation writes ``<log_dir>/<operation>-<timestamp>.log``
holding every scratchpad log record emitted by the worker thread that runs
it, including the captured output of external commands.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .config_constants import LOG_TIMESTAMP_FORMAT

PACKAGE_LOGGER = "scratchpad"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class ThreadFilter(logging.Filter):
    """Pass only records emitted by one thread."""

    def __init__(self, thread_id: int) -> None:
        super().__init__()
        self.thread_id = thread_id

    def filter(self, record: logging.LogRecord) -> bool:
        return record.thread == self.thread_id


def log_path(log_dir: Path, operation: str, now: Optional[datetime] = None) -> Path:
    timestamp = (now or datetime.now()).strftime(LOG_TIMESTAMP_FORMAT)
    return log_dir / f"{operation}-{timestamp}.log"


@contextmanager
def operation_log(log_dir: Path, operation: str) -> Iterator[Path]:
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_path(log_dir, operation)

    handler = logging.FileHandler(path, encoding='utf-8')
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    handler.addFilter(ThreadFilter(threading.get_ident()))

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.addHandler(handler)
    try:
        yield path
    finally:
        package_logger.removeHandler(handler)
        handler.close()

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Iterator

from .results import RunReport

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"

_configured = False


def configure_logging(verbose: bool = False) -> None:
    """Route clusterlab loggers to stderr.

    The default tier hides local recovery (retries, best-effort checks inside a
    settling window, pre-warm probes); ``verbose`` shows it for flaky-test triage.
    """
    global _configured
    root = logging.getLogger("clusterlab")
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not _configured:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        root.addHandler(handler)
        root.propagate = False
        _configured = True
    for handler in root.handlers:
        if not isinstance(handler, ReportLogHandler):
            handler.setLevel(logging.DEBUG if verbose else logging.INFO)


def get_logger(name: str) -> logging.Logger:
    if not name.startswith("clusterlab"):
        name = f"clusterlab.{name}"
    return logging.getLogger(name)


class ReportLogHandler(logging.Handler):
    """Copies every record of a run into the report diagnostics."""

    def __init__(self, report: RunReport) -> None:
        super().__init__(level=logging.DEBUG)
        self.report = report
        self.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.report.log(self.format(record))
        except Exception:
            self.handleError(record)


@contextmanager
def capture_run_logs(report: RunReport) -> Iterator[ReportLogHandler]:
    logger = logging.getLogger("clusterlab")
    handler = ReportLogHandler(report)
    previous = logger.level
    logger.addHandler(handler)
    if previous == logging.NOTSET or previous > logging.DEBUG:
        logger.setLevel(logging.DEBUG)
    try:
        yield handler
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous)

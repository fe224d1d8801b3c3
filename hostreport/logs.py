from __future__ import annotations
import logging
import sys

FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ReportLogHandler(logging.StreamHandler):
    """stderr handler installed by setup_logging."""


def setup_logging(level: str = "WARNING") -> logging.Logger:
    """Point the package logger at the current stderr. Safe to call more than once."""
    logger = logging.getLogger("hostreport")
    logger.setLevel(getattr(logging, str(level).upper(), logging.WARNING))

    for h in [h for h in logger.handlers if isinstance(h, ReportLogHandler)]:
        logger.removeHandler(h)

    handler = ReportLogHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(FORMAT))
    logger.addHandler(handler)
    return logger

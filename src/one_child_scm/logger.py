"""Package logger for the synthetic control analysis."""

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("one_child_scm")
logger.addHandler(logging.NullHandler())


def setup_logging(level: int | str = logging.INFO, log_file: str | Path | None = None):
    """
    Attach console (and optionally file) handlers to the package logger.

    Safe to call more than once: handlers installed by a previous call are
    replaced.

    Args:
        level: Logging level for the package logger
        log_file: Optional path of a run log

    Returns:
        The configured logger
    """
    for handler in list(logger.handlers):
        if getattr(handler, "_one_child_scm", False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    console._one_child_scm = True
    logger.addHandler(console)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler._one_child_scm = True
        logger.addHandler(file_handler)

    logger.setLevel(level)
    return logger

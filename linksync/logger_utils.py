import logging
import os

from .config import LOG_PATH, LOG_LEVEL

_file_handler = None


def _get_file_handler():
    # one handle on the log file shared by every linksync logger in this process
    global _file_handler
    if _file_handler is None:
        os.makedirs(os.path.dirname(LOG_PATH) or ".", exist_ok=True)
        _file_handler = logging.FileHandler(LOG_PATH, encoding="utf-8")
        _file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(process)d %(name)s: %(message)s",
            "%Y-%m-%d %H:%M:%S"
        ))
    return _file_handler


def get_logger(name="linksync"):
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.setLevel(getattr(logging, LOG_LEVEL, logging.DEBUG))
        logger.addHandler(_get_file_handler())
        logger.propagate = False
    return logger

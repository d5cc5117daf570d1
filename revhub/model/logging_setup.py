import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None, console: bool = True) -> logging.Logger:
    """
    Configure the ``revhub`` logger tree.

    Args:
        level: level name for the tree
        log_file: optional path for a rotating log file
        console: attach a stream handler (off while the dashboard owns the screen)
    """
    logger = logging.getLogger("revhub")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in list(logger.handlers):
        if getattr(handler, "_revhub", False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    if console:
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        stream._revhub = True
        logger.addHandler(stream)
    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=10_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler._revhub = True
        logger.addHandler(file_handler)
    logger.propagate = False
    return logger

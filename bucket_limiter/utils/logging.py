import logging
import os
from typing import Optional

PACKAGE_LOGGER = "bucket_limiter"


class bcolours:
    OKBLUE = "\033[94m"
    WARNING = "\033[33m"
    FAIL = "\033[91m"
    ENDC = "\033[0m"
    HIGHINTENSITYRED = "\033[1;91m"
    WHITE = "\033[0;37m"
    HIGHINTENSITYWHITE = "\033[97m"


class LevelColorFormatter(logging.Formatter):
    """Colour bucket_limiter log lines by level."""

    COLOR_MAP = {
        logging.DEBUG: bcolours.OKBLUE,
        logging.INFO: bcolours.WHITE,
        logging.WARNING: bcolours.WARNING,
        logging.ERROR: bcolours.FAIL,
        logging.CRITICAL: bcolours.HIGHINTENSITYRED,
    }

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        color = self.COLOR_MAP.get(record.levelno, bcolours.HIGHINTENSITYWHITE)
        return f"{color}{base}{bcolours.ENDC}"


class _ColourHandler(logging.StreamHandler):
    pass


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Send bucket_limiter logs to stderr in colour.

    Only the ``bucket_limiter`` logger is touched; handlers the host
    application put on the root logger are left alone. The level comes from
    ``level``, then LOG_LEVEL, then INFO. Calling it again only updates the
    level.
    """
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, name, logging.INFO))
    if not any(isinstance(h, _ColourHandler) for h in logger.handlers):
        handler = _ColourHandler()
        handler.setFormatter(
            LevelColorFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
    return logger

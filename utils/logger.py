import logging
import sys
from typing import Optional

LOGGER_NAME = "spotify_auth"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_logger = logging.getLogger(LOGGER_NAME)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Configure console (and optional file) logging for the library and the app.

    Safe to call more than once; handlers are only added the first time.
    """
    _logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    if not _logger.handlers:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(logging.Formatter("%(message)s"))
        _logger.addHandler(console)

        if log_file:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            _logger.addHandler(file_handler)

    return _logger


def log_info(message: str):
    _logger.info(message)


def log_success(message: str):
    _logger.info(f"✅ {message}")


def log_warning(message: str):
    _logger.warning(f"⚠️ {message}")


def log_error(message: str):
    _logger.error(f"❌ {message}")

import logging
import os
import sys
from pathlib import Path

LOGGER_NAME = "blob_server"

FILE_FORMAT = '%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logger(log_dir=None):
    """Return the server logger: DEBUG to ``<log_dir>/blob_server.log``, INFO to stdout.

    `log_dir` falls back to ``LOG_DIR`` and then ``logs``. Handlers are only
    attached on the first call.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    logs_dir = Path(log_dir or os.getenv("LOG_DIR") or "logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.DEBUG)

    file_handler = logging.FileHandler(logs_dir / "blob_server.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger

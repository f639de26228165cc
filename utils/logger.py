"""Logging configuration."""
import logging

from rich.logging import RichHandler

ROOT_LOGGER = "infrawatch"
_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level="INFO", log_file=None):
    """Attach a rich console handler and an optional file handler.

    Returns the list of handlers that were installed so the caller can
    detach them again at shutdown.
    """
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(numeric_level)

    installed = []
    if not root.handlers:
        console_handler = RichHandler(level=numeric_level, rich_tracebacks=True, markup=False)
        root.addHandler(console_handler)
        installed.append(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
            root.addHandler(file_handler)
            installed.append(file_handler)

    return installed


def teardown_logging(handlers):
    """Flush and detach handlers previously returned by setup_logging."""
    root = logging.getLogger(ROOT_LOGGER)
    for handler in handlers:
        handler.flush()
        root.removeHandler(handler)
        handler.close()

"""Runtime context handed to every component at construction."""
import logging
from datetime import datetime, timezone

from utils.logger import ROOT_LOGGER, setup_logging, teardown_logging


def utc_now():
    return datetime.now(timezone.utc)


class RuntimeContext:
    """Config, clock and logger factory shared by one running monitor.

    Lifecycle: build it, call ``start()`` once at startup to install log
    handlers, and ``close()`` at shutdown to flush them.
    """

    def __init__(self, config=None, clock=None):
        self.config = config or {}
        self.clock = clock or utc_now
        self._handlers = []
        self._started = False

    def now(self):
        return self.clock()

    def get_logger(self, name):
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")

    def section(self, name):
        return self.config.get(name) or {}

    def start(self):
        if self._started:
            return self
        log_cfg = self.section("logging")
        self._handlers = setup_logging(log_cfg.get("level", "INFO"), log_cfg.get("file"))
        self._started = True
        return self

    def close(self):
        teardown_logging(self._handlers)
        self._handlers = []
        self._started = False

    def __enter__(self):
        return self.start()

    def __exit__(self, *args):
        self.close()

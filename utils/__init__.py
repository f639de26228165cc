"""Shared utilities."""
from utils.logger import setup_logging, teardown_logging
from utils.context import RuntimeContext, utc_now
from utils.errors import (
    InfrawatchError, ConfigError, QueryError, AdapterError, NotFoundError, InvalidTransitionError,
)
from utils.locks import KeyedLock
from utils.rate_limiter import RateLimiter
from utils.http_client import HTTPClient

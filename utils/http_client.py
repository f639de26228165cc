"""HTTP client for telemetry backends."""
import logging
import time

import requests

from utils.errors import QueryError

logger = logging.getLogger("infrawatch.http")


class HTTPClient:
    """Thin ``requests`` wrapper that turns every failure into a QueryError.

    Never retries: a failed query is retried by the scheduler at the next
    tick of the rule, not here.
    """

    INVALID_QUERY_STATUS = {400, 422}

    def __init__(self, base_url, source, rate_limiter=None, timeout=30, headers=None):
        self.base_url = base_url.rstrip("/")
        self.source = source
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "infrawatch/1.0"})
        if headers:
            self.session.headers.update(headers)

    def get(self, path="", params=None, timeout=None):
        return self._request("GET", path, params, timeout)

    def _request(self, method, path, params=None, timeout=None):
        url = f"{self.base_url}/{path.lstrip('/')}" if path else self.base_url
        if self.rate_limiter:
            self.rate_limiter.wait()

        start = time.monotonic()
        try:
            resp = self.session.request(method, url, params=params, timeout=timeout or self.timeout)
        except requests.exceptions.Timeout as e:
            raise QueryError(QueryError.TIMEOUT, f"{method} {url} timed out: {e}", source=self.source) from e
        except requests.exceptions.RequestException as e:
            raise QueryError(QueryError.BACKEND_ERROR, f"{method} {url} failed: {e}", source=self.source) from e

        latency = int((time.monotonic() - start) * 1000)
        logger.debug(f"{method} {url} → {resp.status_code} ({latency}ms)")

        if resp.status_code in self.INVALID_QUERY_STATUS:
            raise QueryError(
                QueryError.INVALID_QUERY,
                f"HTTP {resp.status_code} from {url}: {resp.text[:200]}",
                source=self.source,
                status_code=resp.status_code,
            )
        if resp.status_code != 200:
            raise QueryError(
                QueryError.BACKEND_ERROR,
                f"HTTP {resp.status_code} from {url}",
                source=self.source,
                status_code=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as e:
            raise QueryError(QueryError.BACKEND_ERROR, f"Non-JSON response from {url}", source=self.source) from e

    def close(self):
        self.session.close()

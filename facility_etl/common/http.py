"""JSON-over-HTTP client for the facility locator APIs."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from types import TracebackType
from typing import Any, Callable
from urllib.parse import urlparse

import requests
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from facility_etl.common.constants import USER_AGENT
from facility_etl.common.errors import StageError
from facility_etl.common.logging import log_event
from facility_etl.common.time_utils import utc_now

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
MAX_RETRY_AFTER_SECONDS = 120.0


@dataclass(frozen=True)
class TimeoutConfig:
    connect: float = 10.0
    read: float = 30.0


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    multiplier: float = 1.0
    max_wait: float = 30.0


class HttpRequestError(StageError):
    error_code = "HTTP_ERROR"

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RetryableHttpError(HttpRequestError):
    error_code = "HTTP_RETRYABLE"

    def __init__(self, message: str, *, status: int | None = None, retry_after: float | None = None) -> None:
        super().__init__(message, status=status)
        self.retry_after = retry_after


class TokenBucket:
    def __init__(
        self,
        rate_per_sec: float,
        capacity: float | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rate_per_sec = rate_per_sec
        self.capacity = capacity if capacity is not None else max(rate_per_sec, 1.0)
        self.tokens = self.capacity
        self.updated_at = time.monotonic()
        self.lock = threading.Lock()
        self.sleep = sleep

    def acquire(self, tokens: float = 1.0) -> None:
        while True:
            with self.lock:
                now = time.monotonic()
                self.tokens = min(self.capacity, self.tokens + (now - self.updated_at) * self.rate_per_sec)
                self.updated_at = now
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return
                wait_for = max((tokens - self.tokens) / self.rate_per_sec, 0.01)
            self.sleep(wait_for)


def parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        seconds = float(value)
    else:
        try:
            seconds = (parsedate_to_datetime(value) - utc_now()).total_seconds()
        except (TypeError, ValueError):
            return None
    return min(max(seconds, 0.0), MAX_RETRY_AFTER_SECONDS)


class _RetryAfterOrBackoff:
    """tenacity wait honouring a server-provided Retry-After over jittered backoff."""

    def __init__(self, config: RetryConfig) -> None:
        self.backoff = wait_exponential_jitter(initial=config.multiplier, max=config.max_wait, jitter=1.0)

    def __call__(self, retry_state: RetryCallState) -> float:
        backoff = self.backoff(retry_state)
        exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is None:
            return backoff
        return max(retry_after, backoff)


class HttpClient:
    def __init__(
        self,
        *,
        timeout: TimeoutConfig | None = None,
        retry: RetryConfig | None = None,
        rate_per_sec: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
        run_id: str | None = None,
    ) -> None:
        self.timeout = timeout or TimeoutConfig()
        self.retry = retry or RetryConfig()
        self.rate_per_sec = rate_per_sec
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self.run_id = run_id
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT, "Accept": "application/json"})
        self._buckets: dict[str, TokenBucket] = {}
        self._buckets_lock = threading.Lock()

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _throttle(self, url: str) -> None:
        host = urlparse(url).netloc
        with self._buckets_lock:
            bucket = self._buckets.get(host)
            if bucket is None:
                bucket = TokenBucket(rate_per_sec=self.rate_per_sec, sleep=self.sleep)
                self._buckets[host] = bucket
        bucket.acquire()

    def _check_status(self, url: str, response: requests.Response) -> None:
        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            headers = getattr(response, "headers", None) or {}
            raise RetryableHttpError(
                f"Retryable HTTP status {status} from {url}",
                status=status,
                retry_after=parse_retry_after(headers.get("Retry-After")),
            )
        if status >= 400:
            raise HttpRequestError(f"HTTP status {status} from {url}", status=status)

    def _get_once(
        self,
        url: str,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
        timeout: TimeoutConfig,
    ) -> Any:
        self._throttle(url)
        try:
            response = self.session.request(
                method="GET",
                url=url,
                params=params,
                headers={**self.session.headers, **(headers or {})},
                timeout=(timeout.connect, timeout.read),
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise RetryableHttpError(f"Transport failure for {url}: {exc}") from exc
        self._check_status(url, response)

        try:
            return response.json()
        except ValueError as exc:
            raise HttpRequestError(f"Invalid JSON payload from {url}") from exc

    def _log_retry(self, url: str, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
        log_event(
            self.logger,
            f"request to {url} failed, retrying: {exc}",
            level=logging.WARNING,
            run_id=self.run_id,
            stage="extract",
            event="HTTP_RETRY",
            status="retrying",
            attempt=retry_state.attempt_number,
            error_code=getattr(exc, "error_code", None),
        )

    def get_json(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: TimeoutConfig | None = None,
    ) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=_RetryAfterOrBackoff(self.retry),
            retry=retry_if_exception_type(RetryableHttpError),
            sleep=self.sleep,
            before_sleep=lambda state: self._log_retry(url, state),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                payload = self._get_once(url, params, headers, timeout or self.timeout)
        return payload

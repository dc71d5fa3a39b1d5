from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable
from typing import Final, TypeVar

import urllib3
from kubernetes.client import ApiException

from watcher.src.backoff import calculate_backoff
from watcher.src.metrics import METRICS
from watcher.src.models import RetryPolicy, TransientStoreError, WatchConfigError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_RETRIABLE_STATUSES = frozenset({0, 408, 429})


class _NoResult:
    """Sentinel type returned when a retriable call ran out of attempts."""

    _instance: _NoResult | None = None

    def __new__(cls) -> _NoResult:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_RESULT"

    def __bool__(self) -> bool:
        return False


NO_RESULT: Final = _NoResult()


def is_retriable(exc: BaseException) -> bool:
    """Return True when *exc* is a transient failure worth retrying.

    Network, timeout, argument, and service-transient errors qualify.  An
    exception group is retriable when any member is.  Everything else,
    including ``401``/``403``/``400`` API responses, is fatal.
    """
    if isinstance(exc, WatchConfigError):
        return False

    if isinstance(exc, ApiException):
        status = exc.status or 0
        return status in _RETRIABLE_STATUSES or status >= 500

    if isinstance(
        exc,
        (
            ConnectionError,
            TimeoutError,
            socket.timeout,
            socket.gaierror,
            urllib3.exceptions.HTTPError,
            TransientStoreError,
            ValueError,
        ),
    ):
        return True

    if isinstance(exc, BaseExceptionGroup):
        return any(is_retriable(inner) for inner in exc.exceptions)

    return False


def invoke_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    interval: float,
    *,
    stop_event: threading.Event | None = None,
    description: str = "remote call",
) -> T | _NoResult:
    """Run *operation* and retry transient failures with jittered backoff.

    Fatal errors propagate on the first occurrence.  After
    ``policy.max_retries`` retries the transient error is absorbed and
    :data:`NO_RESULT` is returned, which callers treat as "assume unchanged".
    The backoff wait happens on *stop_event*, so stopping a watcher cuts the
    wait short and also yields :data:`NO_RESULT`.
    """
    stop = stop_event or threading.Event()
    attempts = 0
    while True:
        try:
            return operation()
        except Exception as exc:
            if not is_retriable(exc):
                raise

            attempts += 1
            if attempts > policy.max_retries:
                LOGGER.warning(
                    "%s failed after %d retries; assuming unchanged: %s",
                    description,
                    policy.max_retries,
                    exc,
                )
                METRICS.retry_exhausted_total.inc()
                return NO_RESULT

            delay_seconds = calculate_backoff(
                interval,
                policy.min_backoff_seconds,
                policy.max_backoff_seconds,
                attempts,
            )
            METRICS.retries_total.inc()
            LOGGER.warning(
                "%s failed (%s); retry %d/%d in %.2fs",
                description,
                exc,
                attempts,
                policy.max_retries,
                delay_seconds,
            )

        if stop.wait(timeout=delay_seconds):
            LOGGER.debug("%s abandoned during backoff because the watcher stopped", description)
            return NO_RESULT

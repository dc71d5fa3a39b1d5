from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from typing import Generic, Protocol, TypeVar

from watcher.src.models import KeyFilter, KeyValue, RetryPolicy, WatchTarget
from watcher.src.retry import _NoResult, invoke_with_retry

T = TypeVar("T")
R = TypeVar("R")


class SettingsStore(Protocol):
    """Remote configuration store consumed by the watchers.

    Implementations must be safe to call from several watcher threads at once.
    """

    def fetch_one(self, key: str, label: str | None) -> KeyValue | None: ...

    def fetch_many(self, key_filter: KeyFilter) -> Iterable[KeyValue]: ...


class PollingWatcher(Generic[T]):
    """Fixed-rate poll loop shared by the single-key and collection watchers.

    Subclasses implement :meth:`poll`, one tick returning an emission or
    ``None``.  :meth:`watch` drives ``poll`` from a ``time.monotonic()``
    schedule anchored at the first call, so per-tick work does not push later
    ticks back.  Ticks that were missed while a slow poll ran are skipped
    rather than replayed.
    """

    kind = "watcher"

    def __init__(
        self,
        store: SettingsStore,
        target: WatchTarget,
        retry_policy: RetryPolicy,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.target = target
        self.retry_policy = retry_policy
        self.logger = logger or logging.getLogger(__name__)
        self._stop = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Stop polling; interrupts a pending tick wait or retry backoff."""
        self._stop.set()

    def poll(self) -> T | None:
        raise NotImplementedError

    def watch(self) -> Iterator[T]:
        """Yield emissions until :meth:`stop` is called.

        Fatal store errors propagate out of the generator.  Watcher state lives
        on the instance, so calling ``watch()`` again resumes where the
        previous stream left off.
        """
        for _ in self._ticks():
            emitted = self.poll()
            if emitted is not None and not self.stopped:
                yield emitted

    def _ticks(self) -> Iterator[None]:
        interval = self.target.poll_interval_seconds
        next_due = time.monotonic() + interval
        while not self._stop.is_set():
            if self._stop.wait(timeout=max(0.0, next_due - time.monotonic())):
                return
            yield None
            next_due += interval
            now = time.monotonic()
            if next_due <= now:
                skipped = int((now - next_due) // interval) + 1
                self.logger.debug(
                    "Poll for %s overran its interval; skipping %d tick(s)",
                    self.target.describe(),
                    skipped,
                )
                next_due += skipped * interval

    def _fetch(self, operation: Callable[[], R], description: str) -> R | _NoResult:
        return invoke_with_retry(
            operation,
            self.retry_policy,
            self.target.poll_interval_seconds,
            stop_event=self._stop,
            description=description,
        )

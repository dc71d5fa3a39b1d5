from __future__ import annotations

import logging

from watcher.src.metrics import METRICS
from watcher.src.models import (
    ChangeEvent,
    ChangeType,
    KeyValue,
    RetryPolicy,
    WatchConfigError,
    WatchTarget,
)
from watcher.src.polling import PollingWatcher, SettingsStore
from watcher.src.retry import NO_RESULT


class KeyValueWatcher(PollingWatcher[ChangeEvent]):
    """Polls a single ``(key, label)`` and reports when its revision changes.

    The last-known state starts at *initial* (or the missing placeholder) and
    is replaced on every emitted change.  Comparison uses presence and version
    tag only, so a re-fetched but identical revision is never reported twice.
    """

    kind = "key"

    def __init__(
        self,
        store: SettingsStore,
        target: WatchTarget,
        retry_policy: RetryPolicy,
        initial: KeyValue | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if target.prefix:
            raise WatchConfigError("KeyValueWatcher requires a key target, not a prefix target")
        if initial is not None and (initial.key != target.key or initial.label != target.label):
            raise WatchConfigError(
                f"Initial key-value {initial.key!r}/{initial.label!r} does not match "
                f"watch target {target.describe()}"
            )
        super().__init__(store, target, retry_policy, logger=logger or logging.getLogger(__name__))
        self._last = initial or KeyValue.missing(target.key, target.label)

    @property
    def last_known(self) -> KeyValue:
        return self._last

    def _is_unchanged(self, fetched: KeyValue | None) -> bool:
        if fetched is None:
            return not self._last.exists
        return self._last.exists and fetched.version_tag == self._last.version_tag

    def poll(self) -> ChangeEvent | None:
        """Run one tick; return the change it observed, if any."""
        if self.stopped:
            return None

        METRICS.polls_total.labels(kind=self.kind).inc()
        key, label = self.target.key, self.target.label
        fetched = self._fetch(
            lambda: self.store.fetch_one(key, label),
            description=f"fetch of {self.target.describe()}",
        )
        if fetched is NO_RESULT or self.stopped:
            return None

        if self._is_unchanged(fetched):
            self.logger.debug("No change for %s", self.target.describe())
            return None

        if fetched is None:
            self._last = KeyValue.missing(key, label)
            event = ChangeEvent.deleted(key, label)
        else:
            self._last = fetched
            event = ChangeEvent.modified(fetched)

        METRICS.changes_total.labels(change_type=event.change_type.value).inc()
        self.logger.info(
            "Detected %s for %s",
            "deletion" if event.change_type is ChangeType.DELETED else "modification",
            self.target.describe(),
        )
        return event

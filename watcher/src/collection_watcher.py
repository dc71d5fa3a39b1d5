from __future__ import annotations

import logging
from collections.abc import Iterable

from watcher.src.metrics import METRICS
from watcher.src.models import (
    ChangeEvent,
    KeyFilter,
    KeyValue,
    KeyValueFields,
    RetryPolicy,
    WatchConfigError,
    WatchTarget,
)
from watcher.src.polling import PollingWatcher, SettingsStore
from watcher.src.retry import NO_RESULT

_TAG_FIELDS = KeyValueFields.KEY | KeyValueFields.VERSION_TAG


class CollectionWatcher(PollingWatcher[list[ChangeEvent]]):
    """Polls every key under a ``(prefix, label)`` and reports batched diffs.

    The watcher keeps a private snapshot of ``key -> version_tag``.  Each tick
    runs in two passes:

    1. A listing restricted to keys and version tags is compared with the
       snapshot, stopping at the first new or retagged key.  Unchanged ticks,
       the common case, end here without fetching any values.
    2. When something changed, the full key-values are listed again and
       diffed: new or retagged keys become ``MODIFIED`` events (in listing
       order), then snapshot keys that disappeared become ``DELETED`` events.

    The snapshot is swapped for the new mapping only once the second listing
    succeeds.  If the remote data reverts between the two passes the batch is
    empty; that batch is still emitted.
    """

    kind = "collection"

    def __init__(
        self,
        store: SettingsStore,
        target: WatchTarget,
        retry_policy: RetryPolicy,
        initial: Iterable[KeyValue] = (),
        logger: logging.Logger | None = None,
    ) -> None:
        if not target.prefix:
            raise WatchConfigError("CollectionWatcher requires a prefix target, not a key target")
        seed = list(initial)
        self._validate_seed(target, seed)
        super().__init__(store, target, retry_policy, logger=logger or logging.getLogger(__name__))
        self._snapshot: dict[str, str] = {kv.key: kv.version_tag for kv in seed}

    @staticmethod
    def _validate_seed(target: WatchTarget, seed: list[KeyValue]) -> None:
        if any(not kv.key for kv in seed):
            raise WatchConfigError("Every observed key-value must have a non-empty key")
        if target.key and any(not kv.key.startswith(target.key) for kv in seed):
            raise WatchConfigError(
                f"All observed key-values must start with the prefix {target.key!r}"
            )
        if any(kv.label != target.label for kv in seed):
            raise WatchConfigError(
                f"All observed key-values must use the label {target.label!r}"
            )

    @property
    def snapshot(self) -> dict[str, str]:
        return dict(self._snapshot)

    def _list(self, fields: KeyValueFields) -> list[KeyValue]:
        key_filter = KeyFilter(prefix=self.target.key, label=self.target.label, fields=fields)
        accepted: list[KeyValue] = []
        for key_value in self.store.fetch_many(key_filter):
            if not key_filter.matches(key_value):
                self.logger.warning(
                    "Dropping key %r label %r returned outside %s",
                    key_value.key,
                    key_value.label,
                    self.target.describe(),
                )
                continue
            accepted.append(key_value)
        return accepted

    def _has_changes(self, listing: list[KeyValue]) -> bool:
        unmatched = dict(self._snapshot)
        for key_value in listing:
            if unmatched.pop(key_value.key, None) != key_value.version_tag:
                return True
        return bool(unmatched)

    def _diff(self, listing: list[KeyValue]) -> tuple[list[ChangeEvent], dict[str, str]]:
        previous = dict(self._snapshot)
        current: dict[str, str] = {}
        changes: list[ChangeEvent] = []
        for key_value in listing:
            current[key_value.key] = key_value.version_tag
            if previous.pop(key_value.key, None) != key_value.version_tag:
                changes.append(ChangeEvent.modified(key_value))

        for key in previous:
            if key not in current:
                changes.append(ChangeEvent.deleted(key, self.target.label))
        return changes, current

    def poll(self) -> list[ChangeEvent] | None:
        """Run one tick; return the batch for it, or ``None`` when nothing changed."""
        if self.stopped:
            return None

        METRICS.polls_total.labels(kind=self.kind).inc()
        listing = self._fetch(
            lambda: self._list(_TAG_FIELDS),
            description=f"version listing of {self.target.describe()}",
        )
        if listing is NO_RESULT or self.stopped:
            return None

        if not self._has_changes(listing):
            self.logger.debug("No change for %s", self.target.describe())
            return None

        full = self._fetch(
            lambda: self._list(KeyValueFields.ALL),
            description=f"listing of {self.target.describe()}",
        )
        if full is NO_RESULT or self.stopped:
            return None

        changes, snapshot = self._diff(full)
        self._snapshot = snapshot

        for event in changes:
            METRICS.changes_total.labels(change_type=event.change_type.value).inc()
        if changes:
            self.logger.info(
                "Detected %d change(s) for %s", len(changes), self.target.describe()
            )
        else:
            self.logger.info(
                "Version listing for %s changed but the full listing did not; emitting empty batch",
                self.target.describe(),
            )
        return changes

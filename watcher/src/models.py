from __future__ import annotations

import enum
from dataclasses import dataclass


class WatchConfigError(ValueError):
    """Raised when a watch target, seed, or retry policy is invalid.

    These are configuration mistakes, not runtime failures, so they are raised
    at construction time before any remote call is made and are never retried.
    """


class TransientStoreError(RuntimeError):
    """Raised by store adapters for service-reported transient failures."""


class ChangeType(enum.Enum):
    MODIFIED = "modified"
    DELETED = "deleted"


class KeyValueFields(enum.Flag):
    """Fields a store listing should populate.

    Watchers only need ``KEY | VERSION_TAG`` to detect change, which keeps the
    cheap first poll pass free of setting values.
    """

    KEY = enum.auto()
    LABEL = enum.auto()
    VALUE = enum.auto()
    VERSION_TAG = enum.auto()
    ALL = KEY | LABEL | VALUE | VERSION_TAG


@dataclass(frozen=True)
class KeyValue:
    """One observed setting.

    Attributes:
        key:         Setting name, never empty.
        label:       Partition alongside the key.  ``None`` and ``""`` are
                     different partitions and are compared exactly.
        value:       Setting value, ``None`` when the store omitted it.
        version_tag: Opaque revision marker.  Empty only for the
                     :meth:`missing` placeholder.
    """

    key: str
    label: str | None
    value: str | None
    version_tag: str

    @classmethod
    def missing(cls, key: str, label: str | None) -> KeyValue:
        """Return the placeholder recorded for a key that is absent remotely."""
        return cls(key=key, label=label, value=None, version_tag="")

    @property
    def exists(self) -> bool:
        return bool(self.version_tag)


@dataclass(frozen=True)
class ChangeEvent:
    change_type: ChangeType
    key: str
    label: str | None
    current: KeyValue | None

    def __post_init__(self) -> None:
        if (self.change_type is ChangeType.DELETED) != (self.current is None):
            raise ValueError("current must be None exactly when change_type is DELETED")

    @classmethod
    def modified(cls, current: KeyValue) -> ChangeEvent:
        return cls(
            change_type=ChangeType.MODIFIED,
            key=current.key,
            label=current.label,
            current=current,
        )

    @classmethod
    def deleted(cls, key: str, label: str | None) -> ChangeEvent:
        return cls(change_type=ChangeType.DELETED, key=key, label=label, current=None)


@dataclass(frozen=True)
class KeyFilter:
    """Listing filter passed to ``SettingsStore.fetch_many``."""

    prefix: str = ""
    label: str | None = None
    fields: KeyValueFields = KeyValueFields.ALL

    def matches(self, key_value: KeyValue) -> bool:
        return key_value.label == self.label and key_value.key.startswith(self.prefix)


@dataclass(frozen=True)
class WatchTarget:
    """A key (or key prefix), a label, and the interval it is polled on.

    For ``prefix=True`` targets ``key`` holds the prefix; an empty prefix
    watches every key carrying ``label``.
    """

    key: str
    label: str | None = None
    poll_interval_seconds: float = 30.0
    prefix: bool = False

    def __post_init__(self) -> None:
        if self.poll_interval_seconds <= 0:
            raise WatchConfigError(
                f"poll_interval_seconds must be > 0, got: {self.poll_interval_seconds}"
            )
        if self.prefix:
            if "*" in self.key:
                raise WatchConfigError(f"The prefix cannot contain '*', got: {self.key!r}")
            if self.label is not None and "*" in self.label:
                raise WatchConfigError(f"The label filter cannot contain '*', got: {self.label!r}")
        elif not self.key:
            raise WatchConfigError("A key watch target requires a non-empty key")

    def describe(self) -> str:
        label = "<null>" if self.label is None else repr(self.label)
        kind = "prefix" if self.prefix else "key"
        return f"{kind} {self.key!r} label {label}"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry settings shared by every watcher of a mirror."""

    max_retries: int = 3
    min_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise WatchConfigError(f"max_retries must be >= 0, got: {self.max_retries}")
        if self.min_backoff_seconds < 0:
            raise WatchConfigError(
                f"min_backoff_seconds must be >= 0, got: {self.min_backoff_seconds}"
            )
        if self.max_backoff_seconds < self.min_backoff_seconds:
            raise WatchConfigError(
                "max_backoff_seconds must be >= min_backoff_seconds, got: "
                f"{self.max_backoff_seconds} < {self.min_backoff_seconds}"
            )

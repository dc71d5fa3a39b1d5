from __future__ import annotations

import logging
import os
import random
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from watcher.src.collection_watcher import CollectionWatcher
from watcher.src.key_watcher import KeyValueWatcher
from watcher.src.kube import ConfigMapSettingsStore, validate_settings_label
from watcher.src.metrics import METRICS
from watcher.src.models import (
    ChangeEvent,
    ChangeType,
    KeyFilter,
    KeyValue,
    RetryPolicy,
    WatchConfigError,
    WatchTarget,
)
from watcher.src.polling import PollingWatcher, SettingsStore
from watcher.src.retry import NO_RESULT, invoke_with_retry

ReloadCallback = Callable[[dict[str, str | None]], None]


class SettingsMirror:
    """Local mirror of remote settings kept fresh by one watcher per target.

    ``load()`` performs the initial full read.  ``start()`` then runs a
    :class:`KeyValueWatcher` or :class:`CollectionWatcher` per
    :class:`WatchTarget`, each on its own daemon thread, and merges their
    changes into the settings map under a lock.  After every merge the flat
    ``key -> value`` map is republished and every ``on_reload`` callback is
    invoked with a copy of it.

    Exhausted transient errors never reach the mirror; watchers simply report
    nothing for that tick.  Errors that do escape a watcher are fatal.  With
    ``stop_on_fatal_error=True`` (the default) the first one stops every
    watcher and clears readiness, otherwise it is logged and the watcher
    resumes at its next tick.

    Key internal state:
        ``_settings``
            Maps key to the last observed :class:`KeyValue`.
        ``_data``
            The published ``key -> value`` view of ``_settings``.
        ``_watchers`` / ``_threads``
            Parallel lists of running watchers and the threads driving them.
    """

    def __init__(
        self,
        store: SettingsStore,
        targets: Sequence[WatchTarget],
        retry_policy: RetryPolicy | None = None,
        selectors: Sequence[KeyFilter] = (),
        stop_on_fatal_error: bool = True,
        join_timeout_seconds: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.targets = list(targets)
        self.retry_policy = retry_policy or RetryPolicy()
        self.selectors = list(selectors)
        self.stop_on_fatal_error = stop_on_fatal_error
        self.join_timeout_seconds = join_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.RLock()
        self._settings: dict[str, KeyValue] = {}
        self._data: dict[str, str | None] = {}
        self._callbacks: list[ReloadCallback] = []
        self._watchers: list[PollingWatcher[Any]] = []
        self._threads: list[threading.Thread] = []

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self.fatal_error: Exception | None = None

    def on_reload(self, callback: ReloadCallback) -> ReloadCallback:
        """Register *callback*; usable as a decorator."""
        with self._lock:
            self._callbacks.append(callback)
        return callback

    @property
    def data(self) -> dict[str, str | None]:
        with self._lock:
            return dict(self._data)

    def get(self, key: str, default: str | None = None) -> str | None:
        with self._lock:
            return self._data.get(key, default)

    @property
    def watcher_count(self) -> int:
        return len(self._watchers)

    def alive_watchers(self) -> int:
        return sum(1 for thread in self._threads if thread.is_alive())

    def healthy(self) -> bool:
        """Return True when the mirror is ready and every watcher thread is running."""
        return self.ready.is_set() and self.alive_watchers() == len(self._threads)

    def _publish(self) -> None:
        with self._lock:
            self._data = {key: kv.value for key, kv in self._settings.items()}
            snapshot = dict(self._data)
            METRICS.reloads_total.inc()
            METRICS.last_reload_timestamp.set(time.time())
            for callback in list(self._callbacks):
                try:
                    callback(dict(snapshot))
                except Exception:
                    METRICS.reload_callback_errors_total.inc()
                    self.logger.exception("Settings reload callback %r failed", callback)

    def load(self) -> None:
        """Read the initial settings and publish them.

        Without selectors every null-label key is loaded.  With several
        selectors, later selectors override keys loaded by earlier ones.
        """
        selectors = self.selectors or [KeyFilter()]
        loaded: dict[str, KeyValue] = {}
        for selector in selectors:
            for key_value in self.store.fetch_many(selector):
                loaded[key_value.key] = key_value

        with self._lock:
            self._settings = loaded
            self._publish()
        self.logger.info(
            "Loaded %d setting(s) from %d selector(s)", len(loaded), len(selectors)
        )

    def apply_changes(self, events: Iterable[ChangeEvent]) -> None:
        """Merge watcher events into the settings map and republish it."""
        with self._lock:
            for event in events:
                if event.change_type is ChangeType.DELETED:
                    self._settings.pop(event.key, None)
                elif event.current is not None:
                    self._settings[event.key] = event.current
            self._publish()

    def _covered_by_load(self, key_filter: KeyFilter) -> bool:
        selectors = self.selectors or [KeyFilter()]
        return any(
            selector.label == key_filter.label and key_filter.prefix.startswith(selector.prefix)
            for selector in selectors
        )

    def _merge_seed(self, key_filter: KeyFilter, seed: Iterable[KeyValue]) -> None:
        """Replace the settings matching *key_filter* with a freshly fetched seed."""
        with self._lock:
            for key, key_value in list(self._settings.items()):
                if key_filter.matches(key_value):
                    del self._settings[key]
            for key_value in seed:
                self._settings[key_value.key] = key_value
            self._publish()

    def _seed_key(self, target: WatchTarget, stop_event: threading.Event) -> KeyValue | None:
        with self._lock:
            loaded = self._settings.get(target.key)
        if loaded is not None and loaded.label == target.label:
            return loaded

        # The key may not have been loaded, or was loaded under another label.
        fetched = invoke_with_retry(
            lambda: self.store.fetch_one(target.key, target.label),
            self.retry_policy,
            target.poll_interval_seconds,
            stop_event=stop_event,
            description=f"seed fetch of {target.describe()}",
        )
        if fetched is NO_RESULT or fetched is None:
            return None
        with self._lock:
            self._settings[fetched.key] = fetched
            self._publish()
        return fetched

    def _seed_collection(self, target: WatchTarget, stop_event: threading.Event) -> list[KeyValue]:
        key_filter = KeyFilter(prefix=target.key, label=target.label)
        if self._covered_by_load(key_filter):
            with self._lock:
                return [kv for kv in self._settings.values() if key_filter.matches(kv)]

        fetched = invoke_with_retry(
            lambda: [kv for kv in self.store.fetch_many(key_filter) if key_filter.matches(kv)],
            self.retry_policy,
            target.poll_interval_seconds,
            stop_event=stop_event,
            description=f"seed listing of {target.describe()}",
        )
        if fetched is NO_RESULT:
            return []
        self._merge_seed(key_filter, fetched)
        return fetched

    def build_watcher(
        self, target: WatchTarget, stop_event: threading.Event | None = None
    ) -> PollingWatcher[Any]:
        """Build the watcher for *target*, seeded so that the mirror and the watcher agree.

        Settings not covered by ``load()`` are fetched and merged into the
        mirror here; otherwise the watcher would consider them unchanged and
        never report them.
        """
        seed_stop = stop_event or self._external_stop
        if target.prefix:
            return CollectionWatcher(
                self.store,
                target,
                self.retry_policy,
                initial=self._seed_collection(target, seed_stop),
            )
        return KeyValueWatcher(
            self.store,
            target,
            self.retry_policy,
            initial=self._seed_key(target, seed_stop),
        )

    def _run_watcher(self, watcher: PollingWatcher[Any]) -> None:
        METRICS.active_watchers.inc()
        try:
            while not watcher.stopped:
                try:
                    for emitted in watcher.watch():
                        events = emitted if isinstance(emitted, list) else [emitted]
                        self.apply_changes(events)
                except Exception as exc:
                    METRICS.fatal_errors_total.inc()
                    if not self.stop_on_fatal_error:
                        self.logger.exception(
                            "Fatal error watching %s; resuming at the next tick",
                            watcher.target.describe(),
                        )
                        continue
                    self.logger.exception(
                        "Fatal error watching %s; stopping all watchers",
                        watcher.target.describe(),
                    )
                    with self._lock:
                        if self.fatal_error is None:
                            self.fatal_error = exc
                    self.request_stop()
                    return
        finally:
            METRICS.active_watchers.dec()

    def start(self, stop_event: threading.Event | None = None) -> None:
        """Create and start one watcher thread per target.

        Seeding retries wait on *stop_event* (default: the mirror's own stop
        event), and targets not yet started are skipped once it is set.
        """
        seed_stop = stop_event or self._external_stop
        for index, target in enumerate(self.targets):
            if self._should_stop(seed_stop):
                self.logger.info("Shutdown requested while starting watchers")
                return
            watcher = self.build_watcher(target, seed_stop)
            thread = threading.Thread(
                target=self._run_watcher,
                args=(watcher,),
                name=f"settings-watch-{index}",
                daemon=True,
            )
            self._watchers.append(watcher)
            self._threads.append(thread)
            thread.start()
            self.logger.info(
                "Watching %s every %.1fs",
                target.describe(),
                target.poll_interval_seconds,
            )

    def request_stop(self) -> None:
        """Ask every watcher to stop; safe to call from any thread, including a watcher's."""
        self._external_stop.set()
        self.ready.clear()
        for watcher in self._watchers:
            watcher.stop()

    def stop(self) -> None:
        """Stop every watcher and wait for its thread to exit."""
        self.request_stop()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is current:
                continue
            thread.join(timeout=self.join_timeout_seconds)
            if thread.is_alive():
                self.logger.error(
                    "Watcher thread %s did not stop within %ss",
                    thread.name,
                    self.join_timeout_seconds,
                )

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Load, watch, and block until shutdown or a fatal watcher error.

        1. Retries the initial load with jittered exponential backoff (1 s
           doubling to a 30 s cap) so a store that is briefly unavailable at
           startup does not crash-loop the process.
        2. ``401`` / ``403`` responses are configuration errors (RBAC/auth)
           and end the loop immediately.
        3. Starts the watchers, sets ``ready``, and waits.
        4. On shutdown, or after a fatal error when ``stop_on_fatal_error`` is
           set, stops and joins every watcher thread.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                self.load()
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Settings store access denied during initial load (status=%s). "
                        "Check RBAC and service account permissions.",
                        exc.status,
                    )
                    self.fatal_error = exc
                    return
                self.logger.exception("Initial settings load failed")
            except Exception:
                self.logger.exception("Unexpected error during initial settings load")

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)

        if self._should_stop(stop):
            return

        try:
            self.start(stop_event=stop)
            if self._should_stop(stop):
                return
            self.ready.set()
            while not self._should_stop(stop):
                self._external_stop.wait(timeout=1.0)
        except Exception as exc:
            self.logger.exception("Failed to start settings watchers")
            self.fatal_error = exc
        finally:
            self.stop()


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(name: str, default: float, *, minimum: float = 0.0, strict: bool = False) -> float:
    """Read a float env var; ``strict`` rejects values equal to ``minimum``."""
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be a number") from exc

    if value < minimum or (strict and value == minimum):
        comparison = ">" if strict else ">="
        raise ValueError(f"{name} must be {comparison} {minimum}, got: {value}")
    return value


def parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_key_labels(raw: str) -> list[tuple[str, str | None]]:
    """Parse ``key|label`` entries separated by commas.

    ``key`` alone means the null label and ``key|`` the empty label, so both
    partitions can be addressed from configuration.
    """
    entries: list[tuple[str, str | None]] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        key, separator, label = part.partition("|")
        entries.append((key.strip(), label.strip() if separator else None))
    return entries


def parse_watch_targets(
    keys: str,
    prefixes: str,
    poll_interval_seconds: float,
) -> list[WatchTarget]:
    targets = [
        WatchTarget(key=key, label=label, poll_interval_seconds=poll_interval_seconds)
        for key, label in parse_key_labels(keys)
    ]
    targets.extend(
        WatchTarget(
            key=prefix,
            label=label,
            poll_interval_seconds=poll_interval_seconds,
            prefix=True,
        )
        for prefix, label in parse_key_labels(prefixes)
    )
    return targets


def build_mirror_from_env(core_api: CoreV1Api) -> SettingsMirror:
    """Construct a :class:`SettingsMirror` over ConfigMaps from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``       - Namespace holding the settings ConfigMaps (``shipshape``).
        ``APP_SELECTOR``          - Label selector for settings ConfigMaps (``app=helloworld``).
        ``SETTINGS_LABEL_KEY``    - ConfigMap label carrying the settings label.
        ``WATCH_KEYS``            - Comma list of ``key`` or ``key|label`` to watch.
        ``WATCH_PREFIXES``        - Comma list of ``prefix`` or ``prefix|label`` to watch.
        ``LOAD_SELECTORS``        - Comma list of ``prefix|label`` for the initial load.
        ``POLL_INTERVAL_SECONDS`` - Poll period per watcher (``30``).
        ``MAX_RETRIES``           - Retries per remote call (``3``).
        ``MIN_BACKOFF_SECONDS`` / ``MAX_BACKOFF_SECONDS`` - Backoff bounds (``1`` / ``30``).
        ``STOP_ON_FATAL_ERROR``   - Stop all watchers on a fatal error (``true``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "shipshape")
    if not namespace.strip():
        raise ValueError("WATCH_NAMESPACE must be a non-empty string")

    app_selector = os.getenv("APP_SELECTOR", "app=helloworld")
    if "=" not in app_selector:
        raise ValueError(
            f"APP_SELECTOR must contain at least one key=value pair, got: {app_selector!r}"
        )

    label_key = os.getenv("SETTINGS_LABEL_KEY", "settings.shipshape.io/label")
    poll_interval_seconds = env_float("POLL_INTERVAL_SECONDS", 30.0, minimum=0.0, strict=True)

    try:
        retry_policy = RetryPolicy(
            max_retries=env_int("MAX_RETRIES", 3, minimum=0),
            min_backoff_seconds=env_float("MIN_BACKOFF_SECONDS", 1.0),
            max_backoff_seconds=env_float("MAX_BACKOFF_SECONDS", 30.0),
        )
        targets = parse_watch_targets(
            os.getenv("WATCH_KEYS", ""),
            os.getenv("WATCH_PREFIXES", ""),
            poll_interval_seconds,
        )
        selectors = [
            KeyFilter(prefix=prefix, label=label)
            for prefix, label in parse_key_labels(os.getenv("LOAD_SELECTORS", ""))
        ]
        for item in [*targets, *selectors]:
            validate_settings_label(item.label)
    except WatchConfigError as exc:
        raise ValueError(f"Invalid watch configuration: {exc}") from exc

    if not targets:
        raise ValueError("At least one of WATCH_KEYS or WATCH_PREFIXES must be set")

    store = ConfigMapSettingsStore(
        core_api=core_api,
        namespace=namespace,
        app_selector=app_selector,
        label_key=label_key,
    )
    return SettingsMirror(
        store=store,
        targets=targets,
        retry_policy=retry_policy,
        selectors=selectors,
        stop_on_fatal_error=parse_bool_env("STOP_ON_FATAL_ERROR", default=True),
    )

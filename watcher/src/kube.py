from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from hashlib import sha256
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api
from kubernetes.config.config_exception import ConfigException

from watcher.src.models import KeyFilter, KeyValue, KeyValueFields, WatchConfigError

LOGGER = logging.getLogger(__name__)

# Kubernetes label value: at most 63 characters, alphanumeric at both ends.
_LABEL_VALUE_RE = re.compile(r"(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?")
_LABEL_VALUE_MAX_LENGTH = 63


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_api() -> CoreV1Api:
    return client.CoreV1Api()


def version_tag(key: str, label: str | None, value: str | None) -> str:
    """Return a stable content tag for one setting.

    ConfigMap ``resourceVersion`` moves on any edit to the object, including
    edits to unrelated keys, so the tag hashes the setting itself instead.
    """
    payload = json.dumps([key, label, value], separators=(",", ":"))
    return sha256(payload.encode("utf-8")).hexdigest()


def validate_settings_label(label: str | None) -> None:
    """Reject settings labels that cannot appear in a ConfigMap label selector.

    ``None`` selects the null-label partition and is always valid; the empty
    string is a valid Kubernetes label value.
    """
    if label is None:
        return
    if len(label) > _LABEL_VALUE_MAX_LENGTH or not _LABEL_VALUE_RE.fullmatch(label):
        raise WatchConfigError(
            f"Settings label {label!r} is not a valid Kubernetes label value "
            f"(at most {_LABEL_VALUE_MAX_LENGTH} characters from [A-Za-z0-9-_.], "
            "starting and ending with an alphanumeric character)"
        )


class ConfigMapSettingsStore:
    """Settings store backed by labelled ConfigMaps in one namespace.

    Every ConfigMap matching ``app_selector`` contributes its ``data`` entries
    as settings.  The ConfigMap label named ``label_key`` is the settings
    label; ConfigMaps without it hold the null-label partition.  When two
    ConfigMaps define the same key under the same label, the one whose name
    sorts last wins.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        app_selector: str,
        label_key: str = "settings.shipshape.io/label",
        request_timeout_seconds: float = 10.0,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.app_selector = app_selector
        self.label_key = label_key
        self.request_timeout_seconds = request_timeout_seconds

    def _label_selector(self, label: str | None) -> str:
        validate_settings_label(label)
        clauses = [part.strip() for part in self.app_selector.split(",") if part.strip()]
        if label is None:
            clauses.append(f"!{self.label_key}")
        else:
            clauses.append(f"{self.label_key}={label}")
        return ",".join(clauses)

    def _list_config_maps(self, label: str | None) -> list[Any]:
        response = self.core_api.list_namespaced_config_map(
            namespace=self.namespace,
            label_selector=self._label_selector(label),
            _request_timeout=self.request_timeout_seconds,
        )
        items = getattr(response, "items", None) or []
        return sorted(
            items,
            key=lambda item: getattr(getattr(item, "metadata", None), "name", None) or "",
        )

    def fetch_many(self, key_filter: KeyFilter) -> Iterator[KeyValue]:
        """Yield the settings matching *key_filter*, one per key.

        The ConfigMap listing is issued when iteration starts, so each call
        produces a fresh, single-use sequence.
        """
        include_value = bool(key_filter.fields & KeyValueFields.VALUE)
        merged: dict[str, KeyValue] = {}
        for config_map in self._list_config_maps(key_filter.label):
            metadata = getattr(config_map, "metadata", None)
            labels = getattr(metadata, "labels", None) or {}
            if labels.get(self.label_key) != key_filter.label:
                continue

            data = getattr(config_map, "data", None)
            if not isinstance(data, dict):
                continue

            for key, raw_value in data.items():
                if not isinstance(key, str) or not key.startswith(key_filter.prefix):
                    continue
                value = "" if raw_value is None else str(raw_value)
                merged[key] = KeyValue(
                    key=key,
                    label=key_filter.label,
                    value=value if include_value else None,
                    version_tag=version_tag(key, key_filter.label, value),
                )

        yield from merged.values()

    def fetch_one(self, key: str, label: str | None) -> KeyValue | None:
        for key_value in self.fetch_many(KeyFilter(prefix=key, label=label)):
            if key_value.key == key:
                return key_value
        return None

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import patch

import pytest
from kubernetes.client import ApiException

from watcher.src.kube import (
    ConfigMapSettingsStore,
    build_core_api,
    load_kube_configuration,
    validate_settings_label,
    version_tag,
)
from watcher.src.models import KeyFilter, KeyValueFields, WatchConfigError

LABEL_KEY = "settings.shipshape.io/label"


def make_config_map(
    name: str,
    data: dict[str, Any] | None,
    settings_label: str | None = None,
) -> SimpleNamespace:
    labels = {"app": "helloworld"}
    if settings_label is not None:
        labels[LABEL_KEY] = settings_label
    return SimpleNamespace(metadata=SimpleNamespace(name=name, labels=labels), data=data)


class FakeCoreApi:
    def __init__(self, config_maps: list[SimpleNamespace], error: Exception | None = None) -> None:
        self.config_maps = config_maps
        self.error = error
        self.selectors: list[str] = []

    def list_namespaced_config_map(
        self, namespace: str, label_selector: str, _request_timeout: float
    ) -> SimpleNamespace:
        self.selectors.append(label_selector)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(items=self.config_maps)


def _make_store(core_api: FakeCoreApi) -> ConfigMapSettingsStore:
    return ConfigMapSettingsStore(
        core_api=core_api,  # type: ignore[arg-type]
        namespace="shipshape",
        app_selector="app=helloworld",
        label_key=LABEL_KEY,
    )


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("watcher.src.kube.config.load_incluster_config") as mock_incluster,
        patch("watcher.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "watcher.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("watcher.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_core_api() -> None:
    with patch("watcher.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        assert build_core_api().name == "core"


def test_version_tag_depends_on_key_label_and_value() -> None:
    base = version_tag("color", None, "red")

    assert base == version_tag("color", None, "red")
    assert base != version_tag("color", None, "blue")
    assert base != version_tag("colour", None, "red")
    assert base != version_tag("color", "", "red")


def test_fetch_many_filters_by_prefix_and_uses_null_label_selector() -> None:
    core_api = FakeCoreApi(
        [make_config_map("settings", {"app.color": "red", "app.size": "L", "other": "x"})]
    )
    store = _make_store(core_api)

    result = list(store.fetch_many(KeyFilter(prefix="app.")))

    assert [kv.key for kv in result] == ["app.color", "app.size"]
    assert result[0].value == "red"
    assert result[0].label is None
    assert result[0].version_tag == version_tag("app.color", None, "red")
    assert core_api.selectors == [f"app=helloworld,!{LABEL_KEY}"]


def test_fetch_many_uses_equality_selector_for_labels() -> None:
    core_api = FakeCoreApi(
        [
            make_config_map("prod", {"color": "blue"}, settings_label="prod"),
            make_config_map("unlabelled", {"color": "red"}),
        ]
    )
    store = _make_store(core_api)

    result = list(store.fetch_many(KeyFilter(label="prod")))

    assert [(kv.key, kv.value, kv.label) for kv in result] == [("color", "blue", "prod")]
    assert core_api.selectors == [f"app=helloworld,{LABEL_KEY}=prod"]


def test_fetch_many_keeps_empty_label_separate_from_null() -> None:
    core_api = FakeCoreApi(
        [
            make_config_map("empty", {"color": "green"}, settings_label=""),
            make_config_map("null", {"color": "red"}),
        ]
    )
    store = _make_store(core_api)

    result = list(store.fetch_many(KeyFilter(label="")))

    assert [(kv.value, kv.label) for kv in result] == [("green", "")]


def test_fetch_many_omits_values_when_not_selected() -> None:
    core_api = FakeCoreApi([make_config_map("settings", {"color": "red"})])
    store = _make_store(core_api)

    tags_only = list(
        store.fetch_many(KeyFilter(fields=KeyValueFields.KEY | KeyValueFields.VERSION_TAG))
    )
    full = list(store.fetch_many(KeyFilter()))

    assert tags_only[0].value is None
    assert tags_only[0].version_tag == full[0].version_tag


def test_fetch_many_last_config_map_by_name_wins() -> None:
    core_api = FakeCoreApi(
        [
            make_config_map("b-overrides", {"color": "blue"}),
            make_config_map("a-defaults", {"color": "red", "size": None}),
        ]
    )
    store = _make_store(core_api)

    result = {kv.key: kv.value for kv in store.fetch_many(KeyFilter())}

    assert result == {"color": "blue", "size": ""}


def test_fetch_many_skips_config_maps_without_data() -> None:
    core_api = FakeCoreApi([make_config_map("empty", None), make_config_map("full", {"k": "v"})])
    store = _make_store(core_api)

    assert [kv.key for kv in store.fetch_many(KeyFilter())] == ["k"]


def test_fetch_many_is_lazy_until_iterated() -> None:
    core_api = FakeCoreApi([make_config_map("settings", {"color": "red"})])
    store = _make_store(core_api)

    listing = store.fetch_many(KeyFilter())
    assert core_api.selectors == []

    list(listing)
    assert len(core_api.selectors) == 1


def test_fetch_one_matches_exact_key() -> None:
    core_api = FakeCoreApi([make_config_map("settings", {"color": "red", "colorblind": "no"})])
    store = _make_store(core_api)

    found = store.fetch_one("color", None)

    assert found is not None
    assert found.value == "red"
    assert store.fetch_one("col", None) is None


def test_api_errors_propagate_for_classification() -> None:
    core_api = FakeCoreApi([], error=ApiException(status=403, reason="Forbidden"))
    store = _make_store(core_api)

    with pytest.raises(ApiException):
        store.fetch_one("color", None)


@pytest.mark.parametrize("label", [None, "", "prod", "eu-west.1", "a_b", "x" * 63])
def test_validate_settings_label_accepts_kubernetes_label_values(label: str | None) -> None:
    validate_settings_label(label)


@pytest.mark.parametrize(
    "label", ["a,b", "env=prod", "!prod", "-prod", "prod.", "has space", "x" * 64]
)
def test_validate_settings_label_rejects_selector_breaking_values(label: str) -> None:
    with pytest.raises(WatchConfigError, match="not a valid Kubernetes label value"):
        validate_settings_label(label)


def test_invalid_label_is_rejected_before_listing() -> None:
    core_api = FakeCoreApi([make_config_map("settings", {"color": "red"})])
    store = _make_store(core_api)

    with pytest.raises(WatchConfigError):
        list(store.fetch_many(KeyFilter(label="a,b")))
    assert core_api.selectors == []

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the application configuration is invalid."""


@dataclass(frozen=True)
class AppConfig:
    """Immutable application configuration loaded at startup.

    Attributes:
        message:        Startup greeting, served until the mirror provides one.
        source:         ``"configmap"`` when ``MESSAGE`` was set, ``"fallback"``
                        for local dev.
        message_key:    Mirrored setting that overrides ``message`` once loaded.
        mirror_enabled: Whether the app runs its own settings mirror.
    """

    message: str
    source: str
    message_key: str = "MESSAGE"
    mirror_enabled: bool = False


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_config(env: Mapping[str, str] | None = None) -> AppConfig:
    """Load application config from the environment.

    The startup message resolves in this order:
    1. ``MESSAGE`` env var (set by ConfigMap ``envFrom``).
    2. Hard-coded fallback if ``ALLOW_MESSAGE_FALLBACK=true`` (local dev only).
    3. Raises :class:`ConfigError`.

    ``MESSAGE_KEY`` names the mirrored setting served instead once the mirror
    has loaded it; ``SETTINGS_MIRROR_ENABLED=true`` turns the mirror on.
    """
    values = env if env is not None else os.environ

    message_key = values.get("MESSAGE_KEY", "MESSAGE").strip()
    if not message_key:
        raise ConfigError("MESSAGE_KEY must be a non-empty string")
    mirror_enabled = parse_bool(values.get("SETTINGS_MIRROR_ENABLED"))

    message = values.get("MESSAGE")
    if message:
        return AppConfig(
            message=message,
            source="configmap",
            message_key=message_key,
            mirror_enabled=mirror_enabled,
        )

    if parse_bool(values.get("ALLOW_MESSAGE_FALLBACK")):
        return AppConfig(
            message="hello from local dev",
            source="fallback",
            message_key=message_key,
            mirror_enabled=mirror_enabled,
        )

    raise ConfigError(
        "MESSAGE is not set. Provide it via ConfigMap or set "
        "ALLOW_MESSAGE_FALLBACK=true for local development."
    )

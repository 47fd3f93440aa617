from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from confighash.src.selector import Selector, SelectorError, is_qualified_name, parse_selector

DEFAULT_LABEL_SELECTOR = "app.kubernetes.io/name=synapse"
DEFAULT_CONFIG_HASH_ANNOTATION = "synapse.gen0sec.com/config-hash"
DEFAULT_IGNORED_CONFIG_MAP_KEYS = "upstreams.yaml"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace to watch, or ``None`` for all namespaces.
        selector: Label predicate shared by watches and listings.
        annotation_key: Pod template annotation that stores the config hash.
        ignored_config_map_keys: ConfigMap keys left out of the hash.
        ignored_secret_keys: Secret keys left out of the hash.
    """

    namespace: str | None
    selector: Selector
    annotation_key: str
    ignored_config_map_keys: frozenset[str]
    ignored_secret_keys: frozenset[str]


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_key_set(value: str | None) -> frozenset[str]:
    """Split a comma-separated key list, dropping blanks."""
    if not value:
        return frozenset()
    return frozenset(item.strip() for item in value.split(",") if item.strip())


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``        - namespace to watch (all namespaces).
        ``LABEL_SELECTOR``         - selector for sources and workloads
                                     (``app.kubernetes.io/name=synapse``).
        ``CONFIG_HASH_ANNOTATION`` - annotation key for the hash
                                     (``synapse.gen0sec.com/config-hash``).
        ``IGNORE_CONFIGMAP_KEYS``  - ConfigMap keys to skip (``upstreams.yaml``).
        ``IGNORE_SECRET_KEYS``     - Secret keys to skip (none).

    Raises :class:`ConfigError` so the process never starts reconciling
    with a broken selector or annotation key.
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "").strip() or None

    raw_selector = values.get("LABEL_SELECTOR", DEFAULT_LABEL_SELECTOR)
    try:
        selector = parse_selector(raw_selector)
    except SelectorError as exc:
        raise ConfigError(f"invalid LABEL_SELECTOR {raw_selector!r}: {exc}") from exc

    annotation_key = values.get("CONFIG_HASH_ANNOTATION", DEFAULT_CONFIG_HASH_ANNOTATION).strip()
    if not annotation_key:
        raise ConfigError("CONFIG_HASH_ANNOTATION cannot be empty")
    if not is_qualified_name(annotation_key):
        raise ConfigError(f"CONFIG_HASH_ANNOTATION is not a valid annotation key: {annotation_key!r}")

    return ControllerConfig(
        namespace=namespace,
        selector=selector,
        annotation_key=annotation_key,
        ignored_config_map_keys=parse_key_set(
            values.get("IGNORE_CONFIGMAP_KEYS", DEFAULT_IGNORED_CONFIG_MAP_KEYS)
        ),
        ignored_secret_keys=parse_key_set(values.get("IGNORE_SECRET_KEYS", "")),
    )

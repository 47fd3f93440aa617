"""Content fingerprints for ConfigMaps and Secrets.

A source fingerprint is a SHA-256 digest over the source's entries after
ignored keys are dropped. Each entry is written as::

    <tag><key>\\0<value>\\0

in ``(tag, key)`` order, where the tag is ``s`` for ConfigMap text data,
``b`` for ConfigMap binary data and ``d`` for Secret data, so a text and a
binary entry with the same key never produce the same input.

The combined fingerprint hashes ``<identity>\\0<fingerprint>\\0`` for every
non-empty source, sorted by identity (``configmap/<name>`` or
``secret/<name>``). An empty string means no source contributed anything.
"""

from __future__ import annotations

from collections.abc import Iterable, Set
from hashlib import sha256

from confighash.src.sources import ConfigSource, SourceKind

TEXT_TAG = "s"
BINARY_TAG = "b"
SECRET_TAG = "d"

_SEPARATOR = b"\x00"


def should_ignore_key(key: str, ignored_keys: Set[str] | None) -> bool:
    if not ignored_keys:
        return False
    return key in ignored_keys


def _digest(tagged_entries: list[tuple[str, str, bytes]]) -> str:
    if not tagged_entries:
        return ""
    tagged_entries.sort(key=lambda entry: (entry[0], entry[1]))
    hasher = sha256()
    for tag, key, value in tagged_entries:
        hasher.update(tag.encode("utf-8"))
        hasher.update(key.encode("utf-8"))
        hasher.update(_SEPARATOR)
        hasher.update(value)
        hasher.update(_SEPARATOR)
    return hasher.hexdigest()


def hash_config_map_content(source: ConfigSource, ignored_keys: Set[str] | None = None) -> str:
    entries = [
        (TEXT_TAG, key, value.encode("utf-8"))
        for key, value in source.text_data.items()
        if not should_ignore_key(key, ignored_keys)
    ]
    entries.extend(
        (BINARY_TAG, key, value)
        for key, value in source.binary_data.items()
        if not should_ignore_key(key, ignored_keys)
    )
    return _digest(entries)


def hash_secret_content(source: ConfigSource, ignored_keys: Set[str] | None = None) -> str:
    entries = [
        (SECRET_TAG, key, value)
        for key, value in source.binary_data.items()
        if not should_ignore_key(key, ignored_keys)
    ]
    return _digest(entries)


def hash_source(
    source: ConfigSource,
    ignored_config_map_keys: Set[str] | None = None,
    ignored_secret_keys: Set[str] | None = None,
) -> str:
    """Fingerprint one source using the exclusion set for its kind."""
    if source.kind is SourceKind.SECRET:
        return hash_secret_content(source, ignored_secret_keys)
    return hash_config_map_content(source, ignored_config_map_keys)


def hash_config_sources(
    config_maps: Iterable[ConfigSource],
    secrets: Iterable[ConfigSource],
    ignored_config_map_keys: Set[str] | None = None,
    ignored_secret_keys: Set[str] | None = None,
) -> str:
    """Combine every non-empty source fingerprint into one order-independent digest."""
    entries: list[tuple[str, str]] = []
    for source in (*config_maps, *secrets):
        source_hash = hash_source(source, ignored_config_map_keys, ignored_secret_keys)
        if not source_hash:
            continue
        entries.append((source.identity, source_hash))

    if not entries:
        return ""

    entries.sort(key=lambda entry: entry[0])
    hasher = sha256()
    for identity, source_hash in entries:
        hasher.update(identity.encode("utf-8"))
        hasher.update(_SEPARATOR)
        hasher.update(source_hash.encode("utf-8"))
        hasher.update(_SEPARATOR)
    return hasher.hexdigest()

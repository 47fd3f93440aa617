from __future__ import annotations

import base64
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from confighash.src.selector import labels_of


class SourceKind(str, Enum):
    """Configuration source kinds; the value prefixes the source identity."""

    CONFIG_MAP = "configmap"
    SECRET = "secret"


@dataclass(frozen=True)
class ConfigSource:
    """Read-only snapshot of a ConfigMap or Secret as seen by the hasher.

    ``text_data`` holds ConfigMap ``data``. ``binary_data`` holds ConfigMap
    ``binaryData`` or Secret ``data``, decoded to raw bytes.
    """

    kind: SourceKind
    namespace: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    text_data: Mapping[str, str] = field(default_factory=dict)
    binary_data: Mapping[str, bytes] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return f"{self.kind.value}/{self.name}"

    @classmethod
    def from_config_map(cls, config_map: Any) -> ConfigSource:
        metadata = getattr(config_map, "metadata", None)
        return cls(
            kind=SourceKind.CONFIG_MAP,
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
            labels=labels_of(config_map),
            text_data=_normalize_text(getattr(config_map, "data", None)),
            binary_data=_normalize_binary(getattr(config_map, "binary_data", None)),
        )

    @classmethod
    def from_secret(cls, secret: Any) -> ConfigSource:
        metadata = getattr(secret, "metadata", None)
        return cls(
            kind=SourceKind.SECRET,
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
            labels=labels_of(secret),
            binary_data=_normalize_binary(getattr(secret, "data", None)),
        )


def _normalize_text(raw_data: Any) -> dict[str, str]:
    if not isinstance(raw_data, Mapping):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def decode_binary_value(value: Any) -> bytes:
    """Return raw bytes for a binary entry.

    The Kubernetes client leaves ``binaryData`` and Secret ``data`` values
    base64-encoded; bytes handed in directly are used as-is.
    """
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return base64.b64decode(str(value))


def _normalize_binary(raw_data: Any) -> dict[str, bytes]:
    if not isinstance(raw_data, Mapping):
        return {}
    return {k: decode_binary_value(v) for k, v in raw_data.items() if isinstance(k, str)}

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from confighash.src.selector import labels_of


@dataclass(frozen=True)
class WorkloadKind:
    """An ``apps/v1`` kind that owns a pod template.

    ``list_method`` and ``patch_method`` name the ``AppsV1Api`` calls used to
    list the kind in a namespace and to patch a single object.
    """

    kind: str
    list_method: str
    patch_method: str


DEPLOYMENT = WorkloadKind(
    kind="Deployment",
    list_method="list_namespaced_deployment",
    patch_method="patch_namespaced_deployment",
)
DAEMON_SET = WorkloadKind(
    kind="DaemonSet",
    list_method="list_namespaced_daemon_set",
    patch_method="patch_namespaced_daemon_set",
)
STATEFUL_SET = WorkloadKind(
    kind="StatefulSet",
    list_method="list_namespaced_stateful_set",
    patch_method="patch_namespaced_stateful_set",
)

WORKLOAD_KINDS: tuple[WorkloadKind, ...] = (DEPLOYMENT, DAEMON_SET, STATEFUL_SET)


@dataclass(frozen=True)
class Workload:
    """Immutable snapshot of a workload taken from a list response."""

    kind: WorkloadKind
    namespace: str
    name: str
    resource_version: str | None = None
    labels: Mapping[str, str] = field(default_factory=dict)
    template_annotations: Mapping[str, str] | None = None

    @classmethod
    def from_object(cls, kind: WorkloadKind, obj: Any, namespace: str = "") -> Workload:
        metadata = getattr(obj, "metadata", None)
        return cls(
            kind=kind,
            namespace=getattr(metadata, "namespace", None) or namespace,
            name=getattr(metadata, "name", None) or "",
            resource_version=getattr(metadata, "resource_version", None),
            labels=labels_of(obj),
            template_annotations=_template_annotations(obj),
        )

    def annotation(self, key: str) -> str | None:
        return (self.template_annotations or {}).get(key)


def _template_annotations(obj: Any) -> dict[str, str] | None:
    """Extract pod template annotations; ``None`` when the map is absent."""
    spec = getattr(obj, "spec", None)
    template = getattr(spec, "template", None)
    metadata = getattr(template, "metadata", None)
    annotations = getattr(metadata, "annotations", None)
    if not isinstance(annotations, Mapping):
        return None
    return {
        k: ("" if v is None else str(v))
        for k, v in annotations.items()
        if isinstance(k, str)
    }

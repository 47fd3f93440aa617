from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from confighash.src.workloads import Workload

LOGGER = logging.getLogger(__name__)


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


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def create_merge_patch(original: Mapping[str, Any], modified: Mapping[str, Any]) -> dict[str, Any]:
    """Return the JSON merge patch (RFC 7386) that turns *original* into *modified*.

    Nested mappings are diffed recursively; keys missing from *modified* are
    emitted as ``None`` (``null``) to delete them.
    """
    patch: dict[str, Any] = {}
    for key, value in modified.items():
        if key not in original:
            patch[key] = value
            continue
        previous = original[key]
        if previous == value:
            continue
        if isinstance(previous, Mapping) and isinstance(value, Mapping):
            nested = create_merge_patch(previous, value)
            if nested:
                patch[key] = nested
        else:
            patch[key] = value
    for key in original:
        if key not in modified:
            patch[key] = None
    return patch


def _template_document(annotations: Mapping[str, str] | None) -> dict[str, Any]:
    template_metadata: dict[str, Any] = {}
    if annotations is not None:
        template_metadata["annotations"] = dict(annotations)
    return {"spec": {"template": {"metadata": template_metadata}}}


def patch_template_annotation(
    apps_api: AppsV1Api,
    workload: Workload,
    annotation_key: str,
    value: str,
) -> bool:
    """Set a pod template annotation on *workload*, returning whether a write was issued.

    Changing a pod template annotation is what ``kubectl rollout restart``
    does: the workload controller rolls new pods. When the snapshot already
    carries *value* nothing is sent. Otherwise the patch is the merge diff
    between the snapshot and a copy holding the new value, plus the
    snapshot's ``resourceVersion`` so the API server rejects the write with
    ``409 Conflict`` if the object changed since it was listed.
    ``ApiException`` is left to the caller.
    """
    if workload.annotation(annotation_key) == value:
        return False

    modified_annotations = dict(workload.template_annotations or {})
    modified_annotations[annotation_key] = value

    body = create_merge_patch(
        _template_document(workload.template_annotations),
        _template_document(modified_annotations),
    )
    if workload.resource_version:
        body.setdefault("metadata", {})["resourceVersion"] = workload.resource_version

    patch_fn = getattr(apps_api, workload.kind.patch_method)
    patch_fn(name=workload.name, namespace=workload.namespace, body=body)
    return True

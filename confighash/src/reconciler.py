from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence, Set
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from confighash.src.hashing import hash_config_sources
from confighash.src.kube import patch_template_annotation
from confighash.src.metrics import METRICS
from confighash.src.selector import Selector
from confighash.src.sources import ConfigSource
from confighash.src.workloads import WORKLOAD_KINDS, Workload, WorkloadKind


class ReconcileCancelled(RuntimeError):
    """Raised when a pass is stopped between steps by its caller."""


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation pass.

    ``config_hash`` is empty when no source contributed content, in which
    case no workload was listed or patched.
    """

    namespace: str
    config_hash: str
    matched_workloads: int
    patched: int


class ConfigHashReconciler:
    """Propagates the combined ConfigMap/Secret fingerprint into workload pod templates.

    Every pass starts from scratch: list the sources in the namespace that
    match the selector, fingerprint them, then list the workloads of every
    registered kind with the same selector and patch the annotation on those
    that are not already current. Nothing is cached between passes, so
    duplicate or out-of-order triggers are harmless.

    Passes are serialized on a process-wide lock so two passes can never
    interleave writes of different fingerprints. API errors are not retried
    here; they propagate to the caller that owns retry policy.
    """

    _pass_lock = threading.Lock()

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        selector: Selector,
        annotation_key: str,
        ignored_config_map_keys: Set[str] | None = None,
        ignored_secret_keys: Set[str] | None = None,
        workload_kinds: Sequence[WorkloadKind] = WORKLOAD_KINDS,
        logger: logging.Logger | None = None,
    ) -> None:
        if not annotation_key or not annotation_key.strip():
            raise ValueError("annotation_key must be a non-empty string")
        self.core_api = core_api
        self.apps_api = apps_api
        self.selector = selector
        self.annotation_key = annotation_key
        self.ignored_config_map_keys = frozenset(ignored_config_map_keys or ())
        self.ignored_secret_keys = frozenset(ignored_secret_keys or ())
        self.workload_kinds = tuple(workload_kinds)
        self.logger = logger or logging.getLogger(__name__)

    def _list_kwargs(self, namespace: str) -> dict[str, str]:
        kwargs = {"namespace": namespace}
        if not self.selector.empty:
            kwargs["label_selector"] = str(self.selector)
        return kwargs

    def _matching_items(self, listing: Any) -> list[Any]:
        items = getattr(listing, "items", None) or []
        return [item for item in items if self.selector.matches_object(item)]

    @staticmethod
    def _check_stop(stop_event: threading.Event | None, namespace: str) -> None:
        if stop_event is not None and stop_event.is_set():
            raise ReconcileCancelled(f"reconciliation of namespace {namespace} cancelled")

    def _lookup_source(self, namespace: str, name: str) -> str | None:
        """Return the kind of the named source, or ``None`` if it no longer exists.

        A 404 is expected for deleted sources and for names that belong to
        the other kind; anything else is a lookup failure.
        """
        try:
            self.core_api.read_namespaced_config_map(name=name, namespace=namespace)
            return "ConfigMap"
        except ApiException as exc:
            if exc.status != 404:
                raise
        try:
            self.core_api.read_namespaced_secret(name=name, namespace=namespace)
            return "Secret"
        except ApiException as exc:
            if exc.status != 404:
                raise
        return None

    def collect_sources(self, namespace: str) -> tuple[list[ConfigSource], list[ConfigSource]]:
        """List the ConfigMaps and Secrets of *namespace* that match the selector."""
        config_maps = self.core_api.list_namespaced_config_map(**self._list_kwargs(namespace))
        secrets = self.core_api.list_namespaced_secret(**self._list_kwargs(namespace))
        return (
            [ConfigSource.from_config_map(item) for item in self._matching_items(config_maps)],
            [ConfigSource.from_secret(item) for item in self._matching_items(secrets)],
        )

    def _hash(self, config_maps: Iterable[ConfigSource], secrets: Iterable[ConfigSource]) -> str:
        return hash_config_sources(
            config_maps,
            secrets,
            self.ignored_config_map_keys,
            self.ignored_secret_keys,
        )

    def list_workloads(self, kind: WorkloadKind, namespace: str) -> list[Workload]:
        list_fn = getattr(self.apps_api, kind.list_method)
        listing = list_fn(**self._list_kwargs(namespace))
        return [
            Workload.from_object(kind, item, namespace=namespace)
            for item in self._matching_items(listing)
        ]

    def _patch_workloads(
        self,
        kind: WorkloadKind,
        namespace: str,
        config_hash: str,
        stop_event: threading.Event | None,
    ) -> tuple[int, int]:
        """Patch every workload of *kind*; return ``(matched, patched)``."""
        workloads = self.list_workloads(kind, namespace)
        patched = 0
        for workload in workloads:
            self._check_stop(stop_event, namespace)
            try:
                updated = patch_template_annotation(
                    apps_api=self.apps_api,
                    workload=workload,
                    annotation_key=self.annotation_key,
                    value=config_hash,
                )
            except ApiException:
                self.logger.error(
                    "Failed to update %s %s/%s with new config hash",
                    kind.kind,
                    namespace,
                    workload.name,
                )
                raise
            if updated:
                patched += 1
                METRICS.workload_patches_total.labels(kind=kind.kind).inc()
                self.logger.info(
                    "Updated %s %s/%s pod template annotation to trigger restart (configHash=%s)",
                    kind.kind,
                    namespace,
                    workload.name,
                    config_hash,
                )
            else:
                self.logger.debug(
                    "%s %s/%s already up to date with config hash",
                    kind.kind,
                    namespace,
                    workload.name,
                )
        return len(workloads), patched

    def reconcile(
        self,
        namespace: str,
        name: str | None = None,
        stop_event: threading.Event | None = None,
    ) -> ReconcileResult:
        """Run one convergence pass for *namespace*.

        *name* identifies the source that triggered the pass and is only
        used for the existence check and log context; the fingerprint always
        covers every matching source in the namespace.
        """
        with self._pass_lock:
            if name:
                kind = self._lookup_source(namespace, name)
                if kind is None:
                    self.logger.info(
                        "Config source %s/%s no longer exists; recomputing hash", namespace, name
                    )
                else:
                    self.logger.debug("Reconciling %s %s/%s", kind, namespace, name)

            self._check_stop(stop_event, namespace)
            config_maps, secrets = self.collect_sources(namespace)
            self._check_stop(stop_event, namespace)

            config_hash = self._hash(config_maps, secrets)
            if not config_hash:
                self.logger.info(
                    "No config sources found in namespace %s, skipping rollout", namespace
                )
                return ReconcileResult(
                    namespace=namespace, config_hash="", matched_workloads=0, patched=0
                )

            matched = 0
            patched = 0
            for kind in self.workload_kinds:
                self._check_stop(stop_event, namespace)
                kind_matched, kind_patched = self._patch_workloads(
                    kind, namespace, config_hash, stop_event
                )
                matched += kind_matched
                patched += kind_patched

            return ReconcileResult(
                namespace=namespace,
                config_hash=config_hash,
                matched_workloads=matched,
                patched=patched,
            )

from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from confighash.src.config import ControllerConfig
from confighash.src.metrics import METRICS
from confighash.src.reconciler import ConfigHashReconciler, ReconcileCancelled, ReconcileResult

WATCH_TIMEOUT_SECONDS = 300
MAX_BACKOFF_SECONDS = 30
THREAD_JOIN_TIMEOUT_SECONDS = 5


@dataclass(frozen=True, order=True)
class ReconcileRequest:
    """Namespaced name of the source whose change triggered a pass."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class SourceWatch:
    """How to list and watch one source kind through ``CoreV1Api``."""

    source: str
    namespaced_list: str
    cluster_list: str


CONFIG_MAP_WATCH = SourceWatch(
    source="configmap",
    namespaced_list="list_namespaced_config_map",
    cluster_list="list_config_map_for_all_namespaces",
)
SECRET_WATCH = SourceWatch(
    source="secret",
    namespaced_list="list_namespaced_secret",
    cluster_list="list_secret_for_all_namespaces",
)
SOURCE_WATCHES: tuple[SourceWatch, ...] = (CONFIG_MAP_WATCH, SECRET_WATCH)


def retry_delay_seconds(attempt: int) -> float:
    """Bounded exponential backoff: 1 s, 2 s, 4 s ... capped at 30 s."""
    return min(float(MAX_BACKOFF_SECONDS), float(2 ** (max(attempt, 1) - 1)))


class WorkQueue:
    """Coalescing queue of reconcile requests with delayed retries.

    A request is never queued twice. A request added while a worker is
    processing it is queued again once, when the worker calls :meth:`done`,
    so a change observed mid-pass always gets a fresh pass. Failure counts
    drive :meth:`add_rate_limited` until :meth:`forget` resets them.
    """

    def __init__(self, now_fn: Callable[[], float] = time.monotonic) -> None:
        self._now = now_fn
        self._cond = threading.Condition()
        self._queue: deque[ReconcileRequest] = deque()
        self._dirty: set[ReconcileRequest] = set()
        self._processing: set[ReconcileRequest] = set()
        self._delayed: dict[ReconcileRequest, float] = {}
        self._failures: dict[ReconcileRequest, int] = {}

    def __len__(self) -> int:
        with self._cond:
            return len(self._dirty) + len(self._delayed)

    def _add_locked(self, request: ReconcileRequest) -> None:
        if request in self._dirty:
            return
        self._dirty.add(request)
        if request in self._processing:
            return
        self._queue.append(request)
        self._cond.notify()

    def add(self, request: ReconcileRequest) -> None:
        with self._cond:
            # An immediate add supersedes a pending retry for the same request.
            self._delayed.pop(request, None)
            self._add_locked(request)

    def add_after(self, request: ReconcileRequest, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(request)
            return
        with self._cond:
            due_at = self._now() + delay_seconds
            existing = self._delayed.get(request)
            if existing is None or due_at < existing:
                self._delayed[request] = due_at
            self._cond.notify()

    def add_rate_limited(self, request: ReconcileRequest) -> float:
        """Schedule a retry after a failure and return the delay used."""
        with self._cond:
            attempt = self._failures.get(request, 0) + 1
            self._failures[request] = attempt
        delay = retry_delay_seconds(attempt)
        self.add_after(request, delay)
        return delay

    def forget(self, request: ReconcileRequest) -> None:
        with self._cond:
            self._failures.pop(request, None)

    def num_requeues(self, request: ReconcileRequest) -> int:
        with self._cond:
            return self._failures.get(request, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due retries onto the queue; return seconds until the next one."""
        now = self._now()
        nearest: float | None = None
        for request, due_at in list(self._delayed.items()):
            if due_at <= now:
                del self._delayed[request]
                self._add_locked(request)
            elif nearest is None or due_at - now < nearest:
                nearest = due_at - now
        return nearest

    def get(self, timeout: float | None = None) -> ReconcileRequest | None:
        """Return the next request, or ``None`` if nothing is ready within *timeout*."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    request = self._queue.popleft()
                    self._dirty.discard(request)
                    self._processing.add(request)
                    return request

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, request: ReconcileRequest) -> None:
        with self._cond:
            self._processing.discard(request)
            if request in self._dirty:
                self._queue.append(request)
                self._cond.notify()


def _resource_version(listing: Any) -> str | None:
    return getattr(getattr(listing, "metadata", None), "resource_version", None)


class ConfigSourceController:
    """Watches ConfigMaps and Secrets and drives :class:`ConfigHashReconciler`.

    One list-then-watch thread runs per source kind. Every admitted event
    (selector match, ``ADDED``/``MODIFIED``/``DELETED``) is turned into a
    :class:`ReconcileRequest` on a coalescing :class:`WorkQueue`, and a single
    worker processes the queue so at most one pass runs at a time.

    The selector used to admit events is the reconciler's own selector
    instance, so watch admission and listing always agree.

    Failed passes are re-queued with bounded exponential backoff; the
    reconciler itself never retries. Watch streams recover from ``410 Gone``
    by re-listing (which re-enqueues every matching source), back off with
    jitter on transient errors, and stop the controller on ``401``/``403``.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        reconciler: ConfigHashReconciler,
        namespace: str | None = None,
        queue: WorkQueue | None = None,
        source_watches: Sequence[SourceWatch] = SOURCE_WATCHES,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.reconciler = reconciler
        self.selector = reconciler.selector
        self.namespace = namespace
        self.queue = queue if queue is not None else WorkQueue()
        self.source_watches = tuple(source_watches)
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._synced: set[str] = set()
        self._synced_lock = threading.Lock()
        self._external_stop = threading.Event()
        self._active_watchers: set[watch.Watch] = set()
        self._watcher_lock = threading.Lock()
        METRICS.queue_depth.set(0)

    def request_stop(self) -> None:
        """Request a cooperative stop, interrupting open watch streams and the current pass."""
        self._external_stop.set()
        with self._watcher_lock:
            active = list(self._active_watchers)
        for watcher in active:
            watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_fn(self, source: SourceWatch) -> Callable[..., Any]:
        if self.namespace:
            return getattr(self.core_api, source.namespaced_list)
        return getattr(self.core_api, source.cluster_list)

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.namespace:
            kwargs["namespace"] = self.namespace
        if not self.selector.empty:
            kwargs["label_selector"] = str(self.selector)
        return kwargs

    def _list_sources(self, source: SourceWatch) -> Any:
        return self._list_fn(source)(**self._list_kwargs())

    def _mark_synced(self, source: SourceWatch) -> None:
        with self._synced_lock:
            self._synced.add(source.source)
            all_synced = all(sw.source in self._synced for sw in self.source_watches)
        if all_synced:
            self.ready.set()

    def _deny(self, source: SourceWatch, status: int | None, phase: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            source.source,
            phase,
            status,
        )
        METRICS.watch_errors_total.labels(source=source.source).inc()
        self.ready.clear()
        self.request_stop()

    def _backoff(self, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        self._external_stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    def handle_event(self, source: str, event_type: str, obj: Any) -> ReconcileRequest | None:
        """Admit one watch event and enqueue a request for it.

        Returns the enqueued request, or ``None`` when the event was
        filtered out.
        """
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None
        if not self.selector.matches_object(obj):
            return None

        metadata = getattr(obj, "metadata", None)
        name = getattr(metadata, "name", None)
        namespace = getattr(metadata, "namespace", None) or self.namespace
        if not name or not namespace:
            self.logger.warning("Skipping %s event for object without namespace/name", source)
            return None

        request = ReconcileRequest(namespace=namespace, name=name)
        self.queue.add(request)
        METRICS.queue_depth.set(len(self.queue))
        self.logger.debug("Enqueued %s %s after %s event", source, request, event_type)
        return request

    def _enqueue_listing(self, source: SourceWatch, listing: Any) -> None:
        for item in getattr(listing, "items", None) or []:
            self.handle_event(source.source, "ADDED", item)

    def watch_source(self, source: SourceWatch, stop: threading.Event) -> None:
        """List-then-watch one source kind until stopped.

        1. Retries the initial list with jittered exponential backoff, then
           enqueues every matching object so drift from while the
           controller was down is corrected.
        2. Streams events from the list's ``resourceVersion``.
        3. On ``410 Gone`` re-lists, re-enqueues and resumes.
        4. On other errors backs off (1 s doubling to 30 s), resetting after
           a stream that ended cleanly.
        ``401``/``403`` stop the whole controller.
        """
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self._list_sources(source)
                resource_version = _resource_version(initial)
                self._enqueue_listing(source, initial)
                self._mark_synced(source)
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", source.source, resource_version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self._deny(source, exc.status, "initial list")
                    return
                self.logger.exception("Initial %s list failed", source.source)
                METRICS.watch_errors_total.labels(source=source.source).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", source.source)
                METRICS.watch_errors_total.labels(source=source.source).inc()
            startup_backoff_seconds = self._backoff(startup_backoff_seconds)

        backoff_seconds = 1
        stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers.add(watcher)
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(source=source.source).inc()
                stream_count += 1
                kwargs = self._list_kwargs()
                kwargs["timeout_seconds"] = WATCH_TIMEOUT_SECONDS
                if resource_version:
                    kwargs["resource_version"] = resource_version

                for event in watcher.stream(self._list_fn(source), **kwargs):
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    event_version = _resource_version(obj)
                    if event_version:
                        resource_version = event_version
                    self.handle_event(source.source, str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", source.source
                    )
                    try:
                        fresh = self._list_sources(source)
                        resource_version = _resource_version(fresh)
                        self._enqueue_listing(source, fresh)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self._deny(source, relist_exc.status, "410 re-list")
                            return
                        self.logger.exception("Failed to re-list %s after 410", source.source)
                        METRICS.watch_errors_total.labels(source=source.source).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self._deny(source, exc.status, "watch")
                    return

                self.logger.exception("Kubernetes API %s watch error", source.source)
                METRICS.watch_errors_total.labels(source=source.source).inc()
                backoff_seconds = self._backoff(backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected %s watch error", source.source)
                METRICS.watch_errors_total.labels(source=source.source).inc()
                backoff_seconds = self._backoff(backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    self._active_watchers.discard(watcher)

    def process_next(self, timeout: float | None = None) -> ReconcileResult | None:
        """Take one request off the queue and run a pass for it.

        Returns the pass result, or ``None`` when no request was ready or
        the pass failed. Failures are re-queued with backoff; cancelled
        passes are dropped because the controller is stopping.
        """
        request = self.queue.get(timeout=timeout)
        if request is None:
            return None

        try:
            with METRICS.reconcile_duration_seconds.time():
                result = self.reconciler.reconcile(
                    namespace=request.namespace,
                    name=request.name,
                    stop_event=self._external_stop,
                )
        except ReconcileCancelled:
            self.logger.info("Reconciliation for %s cancelled", request)
            METRICS.reconcile_total.labels(result="cancelled").inc()
            self.queue.forget(request)
            return None
        except ApiException as exc:
            METRICS.reconcile_total.labels(result="error").inc()
            METRICS.retry_total.inc()
            delay = self.queue.add_rate_limited(request)
            if exc.status == 409:
                self.logger.warning(
                    "Conflict while reconciling %s; retrying in %.1fs", request, delay
                )
            else:
                self.logger.exception(
                    "Kubernetes API error while reconciling %s; retrying in %.1fs", request, delay
                )
            return None
        except Exception:
            METRICS.reconcile_total.labels(result="error").inc()
            METRICS.retry_total.inc()
            delay = self.queue.add_rate_limited(request)
            self.logger.exception(
                "Unexpected error while reconciling %s; retrying in %.1fs", request, delay
            )
            return None
        finally:
            self.queue.done(request)
            METRICS.queue_depth.set(len(self.queue))

        METRICS.reconcile_total.labels(result="success").inc()
        retries = self.queue.num_requeues(request)
        if retries:
            self.logger.info("Reconciled %s after %d failed attempts", request, retries)
        self.queue.forget(request)
        self.logger.debug(
            "Reconciled %s (configHash=%s, matched=%d, patched=%d)",
            request,
            result.config_hash or "<none>",
            result.matched_workloads,
            result.patched,
        )
        return result

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run the source watches and the single reconcile worker until shutdown.

        Returns when *shutdown_event* is set, :meth:`request_stop` is called,
        or a watch hit an authorization error.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        with self._synced_lock:
            self._synced.clear()

        threads = [
            threading.Thread(
                target=self.watch_source,
                args=(source, stop),
                name=f"watch-{source.source}",
                daemon=True,
            )
            for source in self.source_watches
        ]
        for thread in threads:
            thread.start()

        try:
            while not self._should_stop(stop):
                self.process_next(timeout=1.0)
        finally:
            self.request_stop()
            for thread in threads:
                thread.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)
            self.ready.clear()


def build_controller(
    config: ControllerConfig,
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
) -> ConfigSourceController:
    """Wire a :class:`ConfigSourceController` and its reconciler from *config*."""
    reconciler = ConfigHashReconciler(
        core_api=core_api,
        apps_api=apps_api,
        selector=config.selector,
        annotation_key=config.annotation_key,
        ignored_config_map_keys=config.ignored_config_map_keys,
        ignored_secret_keys=config.ignored_secret_keys,
    )
    return ConfigSourceController(
        core_api=core_api,
        reconciler=reconciler,
        namespace=config.namespace,
    )

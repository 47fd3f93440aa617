from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from confighash.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_LEASE_NAME = "86a223f3.synapse.gen0sec.com"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class LeaseLeaderElector:
    """Leader election on a ``coordination.k8s.io/v1`` Lease.

    Only the replica holding the Lease runs the controller, which keeps
    reconciliation passes single-writer across replicas. Each cycle reads
    the Lease and claims it when it is missing, already ours, or has not
    been renewed for ``lease_duration_seconds``. Writes carry the read
    object's ``resourceVersion``, so a competing replica loses with a 409
    and simply tries again on the next cycle.

    A leader that fails to renew keeps leading until ``renew_deadline_seconds``
    have passed since its last successful renewal, then calls
    ``on_stopped_leading``.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str = DEFAULT_LEASE_NAME,
        identity: str = "",
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
    ) -> None:
        if not identity:
            raise ValueError("identity must be a non-empty string")
        if not 0 <= retry_period_seconds < renew_deadline_seconds < lease_duration_seconds:
            raise ValueError(
                "lease timings must satisfy retry_period < renew_deadline < lease_duration"
            )

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _held_by_other(self, spec: V1LeaseSpec | None, now: datetime) -> bool:
        if spec is None or not spec.holder_identity or spec.holder_identity == self.identity:
            return False
        if spec.renew_time is None:
            return False
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - _aware(spec.renew_time)).total_seconds() < duration

    def try_acquire_or_renew(self) -> bool:
        """Run one acquire-or-renew cycle; return True while this replica holds the Lease."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status != 404:
                LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
                return False
            lease = None

        if lease is not None and self._held_by_other(lease.spec, now):
            return False

        previous = lease.spec if lease is not None and lease.spec is not None else V1LeaseSpec()
        spec = V1LeaseSpec(
            holder_identity=self.identity,
            lease_duration_seconds=self.lease_duration_seconds,
            renew_time=now,
            acquire_time=(
                previous.acquire_time
                if previous.holder_identity == self.identity and previous.acquire_time
                else now
            ),
        )
        try:
            if lease is None:
                self.coordination_api.create_namespaced_lease(
                    namespace=self.namespace,
                    body=V1Lease(
                        metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
                        spec=spec,
                    ),
                )
                LOGGER.info("Created leader lease %s", self.lease_name)
            else:
                lease.spec = spec
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s write conflict, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to write lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear the holder so another replica can take over without waiting for expiry."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec is not None and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _transition(self, leading: bool) -> None:
        self._is_leader = leading
        METRICS.leader_state.set(1 if leading else 0)
        METRICS.leader_transitions_total.labels(
            transition="acquired" if leading else "lost"
        ).inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Block until *stop_event* is set, invoking the callbacks on leadership changes."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        METRICS.leader_state.set(0)
        last_renewal = time.monotonic()

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                held = False

            if held:
                last_renewal = time.monotonic()
                if not self._is_leader:
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    self._transition(True)
                    on_started_leading()
            elif self._is_leader:
                since_renewal = time.monotonic() - last_renewal
                if since_renewal >= self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lost leader lease after %.2fs without successful renewal", since_renewal
                    )
                    self._transition(False)
                    on_stopped_leading()
                else:
                    LOGGER.warning(
                        "Lease renewal failed; still leading for up to %ss", self.renew_deadline_seconds
                    )
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            # controller is fully stopped before the Lease is handed back
            self._transition(False)
            on_stopped_leading()
            self.release()


def default_identity() -> str:
    """Return the replica identity: the pod name set through ``HOSTNAME``."""
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))

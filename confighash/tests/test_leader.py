from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from confighash.src.leader import DEFAULT_LEASE_NAME, LeaseLeaderElector, default_identity
from confighash.src.metrics import METRICS

NOW = datetime(2026, 10, 1, 12, 0, 0, tzinfo=UTC)


def _lease(holder: str | None, renewed_ago: float, acquired_ago: float = 60) -> V1Lease:
    return V1Lease(
        metadata=V1ObjectMeta(name=DEFAULT_LEASE_NAME, namespace="edge", resource_version="9"),
        spec=V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=15,
            renew_time=NOW - timedelta(seconds=renewed_ago),
            acquire_time=NOW - timedelta(seconds=acquired_ago),
        ),
    )


def _make_elector(coordination_api: Any = None, **overrides: Any) -> LeaseLeaderElector:
    settings: dict[str, Any] = {
        "namespace": "edge",
        "identity": "replica-a",
        "lease_duration_seconds": 15,
        "renew_deadline_seconds": 10,
        "retry_period_seconds": 0,
    }
    settings.update(overrides)
    elector = LeaseLeaderElector(coordination_api=coordination_api or MagicMock(), **settings)
    elector._now_utc = lambda: NOW  # type: ignore[method-assign]
    return elector


def test_creates_lease_when_missing() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")

    assert _make_elector(api).try_acquire_or_renew() is True

    body = api.create_namespaced_lease.call_args.kwargs["body"]
    assert body.metadata.name == DEFAULT_LEASE_NAME
    assert body.spec.holder_identity == "replica-a"
    assert body.spec.acquire_time == NOW
    assert body.spec.renew_time == NOW


def test_read_failure_other_than_not_found_is_not_leadership() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=500, reason="boom")

    assert _make_elector(api).try_acquire_or_renew() is False
    api.create_namespaced_lease.assert_not_called()


def test_renewal_keeps_acquire_time() -> None:
    existing = _lease("replica-a", renewed_ago=5, acquired_ago=300)
    api = MagicMock()
    api.read_namespaced_lease.return_value = existing

    assert _make_elector(api).try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.acquire_time == NOW - timedelta(seconds=300)
    assert body.spec.renew_time == NOW
    assert body.metadata.resource_version == "9"


def test_active_lease_of_another_replica_is_respected() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("replica-b", renewed_ago=3)

    assert _make_elector(api).try_acquire_or_renew() is False
    api.replace_namespaced_lease.assert_not_called()


def test_expired_lease_is_taken_over_with_fresh_acquire_time() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("replica-b", renewed_ago=60, acquired_ago=600)

    assert _make_elector(api).try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "replica-a"
    assert body.spec.acquire_time == NOW


def test_released_lease_is_taken_over() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease(None, renewed_ago=1)

    assert _make_elector(api).try_acquire_or_renew() is True


def test_naive_renew_time_is_treated_as_utc() -> None:
    lease = _lease("replica-b", renewed_ago=3)
    lease.spec.renew_time = lease.spec.renew_time.replace(tzinfo=None)
    api = MagicMock()
    api.read_namespaced_lease.return_value = lease

    assert _make_elector(api).try_acquire_or_renew() is False


@pytest.mark.parametrize("status", [409, 500])
def test_write_failures_lose_the_cycle(status: int) -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    api.create_namespaced_lease.side_effect = ApiException(status=status, reason="nope")

    assert _make_elector(api).try_acquire_or_renew() is False


def test_release_clears_holder() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("replica-a", renewed_ago=1)

    _make_elector(api).release()

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity is None


def test_release_leaves_foreign_lease_alone() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("replica-b", renewed_ago=1)

    _make_elector(api).release()

    api.replace_namespaced_lease.assert_not_called()


def test_release_failure_is_logged_not_raised() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=500, reason="boom")

    _make_elector(api).release()


def test_run_starts_leading_and_releases_on_stop() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        ApiException(status=404, reason="Not Found"),
        _lease("replica-a", renewed_ago=0),
    ]
    elector = _make_elector(api)
    stop = threading.Event()
    events: list[str] = []

    def on_started() -> None:
        events.append("started")
        stop.set()

    elector.run(
        on_started_leading=on_started,
        on_stopped_leading=lambda: events.append("stopped"),
        stop_event=stop,
    )

    assert events == ["started", "stopped"]
    assert not elector.is_leader
    released = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert released.spec.holder_identity is None


def test_run_stops_controller_before_releasing_lease() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        ApiException(status=404, reason="Not Found"),
        _lease("replica-a", renewed_ago=0),
    ]
    elector = _make_elector(api)
    stop = threading.Event()
    events: list[str] = []
    api.replace_namespaced_lease.side_effect = lambda **_: events.append("released")

    elector.run(
        on_started_leading=stop.set,
        on_stopped_leading=lambda: events.append("stopped"),
        stop_event=stop,
    )

    assert events == ["stopped", "released"]


def test_run_survives_unexpected_errors() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        ConnectionError("network blip"),
        ApiException(status=404, reason="Not Found"),
        ApiException(status=404, reason="Not Found"),
    ]
    elector = _make_elector(api)
    stop = threading.Event()
    started = threading.Event()

    def on_started() -> None:
        started.set()
        stop.set()

    elector.run(on_started_leading=on_started, on_stopped_leading=lambda: None, stop_event=stop)

    assert started.is_set()


def test_leadership_lost_after_renew_deadline() -> None:
    elector = _make_elector(renew_deadline_seconds=1, lease_duration_seconds=2)
    stop = threading.Event()
    stopped: list[bool] = []

    def on_stopped() -> None:
        stopped.append(True)
        stop.set()

    with (
        patch.object(elector, "try_acquire_or_renew", side_effect=[True, False]),
        patch.object(elector, "release") as release_mock,
        patch("confighash.src.leader.time.monotonic", side_effect=[0.0, 0.1, 1.5]),
    ):
        elector.run(on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop)

    assert stopped == [True]
    release_mock.assert_not_called()


def test_leadership_kept_within_renew_deadline() -> None:
    elector = _make_elector(renew_deadline_seconds=3)
    stop = threading.Event()
    stopped: list[bool] = []
    cycles = 0

    def cycle() -> bool:
        nonlocal cycles
        cycles += 1
        if cycles == 1:
            return True
        stop.set()
        return False

    with (
        patch.object(elector, "try_acquire_or_renew", side_effect=cycle),
        patch.object(elector, "release") as release_mock,
        patch("confighash.src.leader.time.monotonic", side_effect=[0.0, 0.1, 0.5]),
    ):
        elector.run(
            on_started_leading=lambda: None,
            on_stopped_leading=lambda: stopped.append(True),
            stop_event=stop,
        )

    # only the shutdown path stops leadership
    assert stopped == [True]
    release_mock.assert_called_once()


def test_transitions_update_metrics() -> None:
    elector = _make_elector()
    acquired = METRICS.leader_transitions_total.labels(transition="acquired")._value.get()
    lost = METRICS.leader_transitions_total.labels(transition="lost")._value.get()

    elector._transition(True)
    assert METRICS.leader_state._value.get() == 1
    elector._transition(False)

    assert METRICS.leader_state._value.get() == 0
    assert METRICS.leader_transitions_total.labels(transition="acquired")._value.get() == acquired + 1
    assert METRICS.leader_transitions_total.labels(transition="lost")._value.get() == lost + 1


def test_rejects_empty_identity() -> None:
    with pytest.raises(ValueError, match="identity"):
        _make_elector(identity="")


@pytest.mark.parametrize(
    ("duration", "renew", "retry"),
    [(10, 10, 2), (15, 5, 5), (5, 10, 2)],
)
def test_rejects_inconsistent_timings(duration: int, renew: int, retry: int) -> None:
    with pytest.raises(ValueError, match="lease timings"):
        _make_elector(
            lease_duration_seconds=duration,
            renew_deadline_seconds=renew,
            retry_period_seconds=retry,
        )


def test_default_identity_uses_hostname(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOSTNAME", "confighash-7c9d-abc12")
    monkeypatch.delenv("POD_NAME", raising=False)

    assert default_identity() == "confighash-7c9d-abc12"


def test_default_identity_falls_back_to_pod_name(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HOSTNAME", raising=False)
    monkeypatch.setenv("POD_NAME", "confighash-0")

    assert default_identity() == "confighash-0"

from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from typing import Any

from confighash.src.config import ConfigError, env_int, load_config, parse_bool
from confighash.src.controller import ConfigSourceController, build_controller
from confighash.src.health import start_health_server
from confighash.src.kube import build_clients, load_kube_configuration
from confighash.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

RUNTIME_VERSION = "0.1.0"
CONTROLLER_STOP_TIMEOUT_SECONDS = 30
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Single-line JSON log records with credentials redacted.

    The controller reads Secrets, so API errors can echo sensitive values
    back into exception text; both the message and the traceback are
    scrubbed.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def leader_election_settings(default_namespace: str | None) -> dict[str, Any]:
    """Read Lease settings from the environment, rejecting inconsistent timings."""
    from confighash.src.leader import DEFAULT_LEASE_NAME, default_identity

    settings: dict[str, Any] = {
        "namespace": os.getenv("LEADER_ELECTION_NAMESPACE", default_namespace or "default"),
        "lease_name": os.getenv("LEADER_ELECTION_ID", DEFAULT_LEASE_NAME),
        "identity": os.getenv("LEADER_ELECTION_IDENTITY", default_identity()),
        "lease_duration_seconds": env_int("LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1),
        "renew_deadline_seconds": env_int("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1),
        "retry_period_seconds": env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1),
    }
    if settings["renew_deadline_seconds"] >= settings["lease_duration_seconds"]:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if settings["retry_period_seconds"] >= settings["renew_deadline_seconds"]:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )
    return settings


def _run_with_leader_election(
    controller: ConfigSourceController,
    settings: dict[str, Any],
    leader_ready: threading.Event,
    shutdown_event: threading.Event,
) -> None:
    from kubernetes.client import CoordinationV1Api

    from confighash.src.leader import LeaseLeaderElector

    elector = LeaseLeaderElector(coordination_api=CoordinationV1Api(), **settings)

    state_lock = threading.Lock()
    worker: threading.Thread | None = None
    worker_stop = threading.Event()

    def run_controller(stop: threading.Event) -> None:
        try:
            controller.run_forever(shutdown_event=stop)
        except Exception:
            LOGGER.exception("Controller thread crashed")
            shutdown_event.set()
            return
        if not stop.is_set() and not shutdown_event.is_set():
            LOGGER.error("Controller exited without a stop signal; terminating process")
            shutdown_event.set()

    def on_started_leading() -> None:
        nonlocal worker, worker_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if worker is not None and worker.is_alive():
                # Never run two watch loops side by side.
                LOGGER.error("Previous controller thread is still running; shutting down")
                shutdown_event.set()
                return
            worker_stop = threading.Event()
            leader_ready.set()
            worker = threading.Thread(
                target=run_controller, args=(worker_stop,), name="controller", daemon=True
            )
            worker.start()

    def on_stopped_leading() -> None:
        nonlocal worker
        with state_lock:
            leader_ready.clear()
            worker_stop.set()
            controller.request_stop()
            if worker is None:
                return
            worker.join(timeout=CONTROLLER_STOP_TIMEOUT_SECONDS)
            if worker.is_alive():
                LOGGER.error(
                    "Controller thread did not stop within %ss after losing leadership",
                    CONTROLLER_STOP_TIMEOUT_SECONDS,
                )
                shutdown_event.set()
                return
            worker = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> None:
    """Controller entrypoint: load config, wire clients, and run until signalled."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
        health_port = env_int("HEALTH_PORT", 8081, minimum=1, maximum=65535)
        leader_settings = (
            leader_election_settings(config.namespace)
            if parse_bool(os.getenv("LEADER_ELECTION_ENABLED"), default=False)
            else None
        )
    except ConfigError:
        LOGGER.exception("Invalid controller configuration")
        raise SystemExit(1) from None

    LOGGER.info(
        "Starting config hash controller (namespace=%s, selector=%s, annotation=%s)",
        config.namespace or "<all>",
        str(config.selector) or "<everything>",
        config.annotation_key,
    )

    load_kube_configuration()
    core_api, apps_api = build_clients()
    controller = build_controller(config, core_api=core_api, apps_api=apps_api)

    leader_ready = threading.Event() if leader_settings is not None else None
    health_server = start_health_server(synced=controller.ready, port=health_port, leader=leader_ready)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        if leader_settings is not None and leader_ready is not None:
            _run_with_leader_election(controller, leader_settings, leader_ready, shutdown_event)
        else:
            controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()

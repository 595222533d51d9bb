from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from nsclass.src.config import ConfigError, LeaderElectionConfig, load_config
from nsclass.src.controller import NamespaceClassController, build_controller
from nsclass.src.health import start_health_server
from nsclass.src.kube import KubeStore, build_clients, load_kube_configuration
from nsclass.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
CONTEXT_FIELDS = ("namespace", "class", "phase")
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
)

LOGGER = logging.getLogger("nsclass")


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects.

    Reconcile context passed through ``extra`` (``namespace``, ``class``,
    ``phase``) becomes top-level fields so logs can be filtered per object.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for field in CONTEXT_FIELDS:
            value = record.__dict__.get(field)
            if value is not None:
                log_entry[field] = value
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, level, logging.INFO))
    # The client logs every request body at DEBUG, including Secrets we apply.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def _run_with_leader_election(
    election: LeaderElectionConfig,
    controller: NamespaceClassController,
    leader_ready: threading.Event,
    shutdown_event: threading.Event,
) -> None:
    """Run the controller only while holding the lease.

    Losing the lease ends the process instead of idling: a restarted pod
    re-lists everything once it wins the lease again.
    """
    from kubernetes.client import CoordinationV1Api

    from nsclass.src.leader import LeaseLeaderElector

    elector = LeaseLeaderElector(CoordinationV1Api(), election)
    controller_stop = threading.Event()
    controller_thread: threading.Thread | None = None

    def _run_controller() -> None:
        try:
            controller.run_forever(shutdown_event=controller_stop)
        except Exception:
            LOGGER.exception("Controller thread crashed")
        finally:
            shutdown_event.set()

    def on_started_leading() -> None:
        nonlocal controller_thread
        if shutdown_event.is_set() or controller_thread is not None:
            return
        leader_ready.set()
        controller_thread = threading.Thread(target=_run_controller, name="controller", daemon=True)
        controller_thread.start()

    def on_stopped_leading() -> None:
        leader_ready.clear()
        controller.request_stop()
        controller_stop.set()
        shutdown_event.set()
        if controller_thread is not None:
            controller_thread.join(timeout=45)
            if controller_thread.is_alive():
                LOGGER.error("Controller thread did not stop within 45s after losing leadership")

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )


def main() -> None:
    """Controller entrypoint: configure logging, wire the API clients and run."""
    try:
        config = load_config()
    except ConfigError as exc:
        configure_logging("INFO")
        LOGGER.error("Invalid configuration: %s", exc)
        sys.exit(2)

    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, custom_api, dynamic = build_clients()
    store = KubeStore(
        core_api,
        custom_api,
        dynamic,
        request_timeout_seconds=config.request_timeout_seconds,
    )
    controller = build_controller(store, config)

    leader_ready = threading.Event() if config.leader_election else None
    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    LOGGER.info(
        "Starting NamespaceClass controller (namespace workers=%d, class workers=%d)",
        config.namespace_concurrency,
        config.class_concurrency,
    )
    if config.leader_election is not None and leader_ready is not None:
        _run_with_leader_election(config.leader_election, controller, leader_ready, shutdown_event)
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Controller process exiting")


if __name__ == "__main__":
    main()

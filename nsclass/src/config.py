from __future__ import annotations

import os
import socket
from collections.abc import Mapping
from dataclasses import dataclass

CONTROLLER_NAME = "namespace-class-controller"

CLASS_LABEL = "namespaceclass.akuity.io/name"
MANAGED_BY_LABEL = "namespaceclass.akuity.io/managed-by"
SOURCE_CLASS_LABEL = "namespaceclass.akuity.io/source-class"
INVENTORY_ANNOTATION = "namespaceclass.akuity.io/inventory"
ATTACHED_CLASS_ANNOTATION = "namespaceclass.akuity.io/attached-class"
CLASS_FINALIZER = "namespaceclass.core.akuity.io/finalizer"

CLASS_GROUP = "akuity.io"
CLASS_VERSION = "v1"
CLASS_PLURAL = "namespaceclasses"

DEFAULT_LEASE_NAME = "namespaceclass-operator-lock.core.akuity.io"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class LeaderElectionConfig:
    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace_concurrency: Worker threads reconciling namespaces.
        class_concurrency: Worker threads reconciling NamespaceClasses.
        health_port: Port for ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics``.
        request_timeout_seconds: Timeout attached to every Kubernetes API call.
        retry_max_backoff_seconds: Cap on the per-key requeue delay after failures.
        leader_election: ``None`` when leader election is disabled.
        log_level: Root logger level name.
    """

    namespace_concurrency: int = 10
    class_concurrency: int = 2
    health_port: int = 8081
    request_timeout_seconds: int = 30
    retry_max_backoff_seconds: int = 300
    leader_election: LeaderElectionConfig | None = None
    log_level: str = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    env: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = env.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def default_identity(env: Mapping[str, str]) -> str:
    """Return this replica's lease identity, preferring the pod name."""
    return env.get("POD_NAME") or env.get("HOSTNAME") or socket.gethostname()


def _load_leader_election(env: Mapping[str, str]) -> LeaderElectionConfig | None:
    if not parse_bool(env.get("LEADER_ELECTION_ENABLED")):
        return None

    namespace = env.get("LEADER_ELECTION_NAMESPACE", "default").strip()
    if not namespace:
        raise ConfigError("LEADER_ELECTION_NAMESPACE must be a non-empty string")

    duration = env_int(env, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1)
    renew = env_int(env, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1)
    retry = env_int(env, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)
    if renew >= duration:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry >= renew:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    return LeaderElectionConfig(
        namespace=namespace,
        lease_name=env.get("LEADER_ELECTION_LEASE_NAME", DEFAULT_LEASE_NAME),
        identity=env.get("LEADER_ELECTION_IDENTITY") or default_identity(env),
        lease_duration_seconds=duration,
        renew_deadline_seconds=renew,
        retry_period_seconds=retry,
    )


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Build a :class:`ControllerConfig` from environment variables.

    Environment variables (with defaults):
        ``NAMESPACE_CONCURRENCY``     namespace workers (``10``).
        ``CLASS_CONCURRENCY``         NamespaceClass workers (``2``).
        ``HEALTH_PORT``               probe/metrics port (``8081``).
        ``REQUEST_TIMEOUT_SECONDS``   per-call API timeout (``30``).
        ``RETRY_MAX_BACKOFF_SECONDS`` requeue backoff cap (``300``).
        ``LEADER_ELECTION_ENABLED``   run under a Lease (``false``).
        ``LOG_LEVEL``                 root log level (``INFO``).
    """
    values = env if env is not None else os.environ

    return ControllerConfig(
        namespace_concurrency=env_int(values, "NAMESPACE_CONCURRENCY", 10, minimum=1),
        class_concurrency=env_int(values, "CLASS_CONCURRENCY", 2, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8081, minimum=1, maximum=65535),
        request_timeout_seconds=env_int(values, "REQUEST_TIMEOUT_SECONDS", 30, minimum=1),
        retry_max_backoff_seconds=env_int(values, "RETRY_MAX_BACKOFF_SECONDS", 300, minimum=1),
        leader_election=_load_leader_election(values),
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
    )

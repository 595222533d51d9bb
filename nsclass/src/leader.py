from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from nsclass.src.config import LeaderElectionConfig
from nsclass.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class LeaseLeaderElector:
    """Lease-based leader election on ``coordination.k8s.io/v1``.

    Only the replica holding the Lease runs watches and reconcile workers,
    so two replicas never reconcile the same namespace concurrently.  Each
    cycle reads the Lease and:

    - creates it when missing (``409`` means another replica won the race);
    - renews it when this identity holds it;
    - takes it over once the holder has not renewed for the lease duration.

    A leader that cannot renew for ``renew_deadline_seconds`` steps down and
    ``on_stopped_leading`` is invoked.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        config: LeaderElectionConfig,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if config.renew_deadline_seconds >= config.lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if config.retry_period_seconds >= config.renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.config = config
        self.now_fn = now_fn
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _read(self) -> V1Lease | None:
        try:
            return self.coordination_api.read_namespaced_lease(
                name=self.config.lease_name, namespace=self.config.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def _held_by_other(self, spec: V1LeaseSpec | None, now: datetime) -> bool:
        if spec is None or not spec.holder_identity or spec.holder_identity == self.config.identity:
            return False
        if spec.renew_time is None:
            return False
        duration = spec.lease_duration_seconds or self.config.lease_duration_seconds
        return (now - _aware(spec.renew_time)).total_seconds() < duration

    def try_acquire_or_renew(self) -> bool:
        """Run a single acquire-or-renew cycle and return whether we hold the lease."""
        now = self.now_fn()
        try:
            lease = self._read()
        except ApiException as exc:
            LOGGER.warning("Failed to read lease %s: %s", self.config.lease_name, exc.reason)
            return False

        if lease is None:
            lease = V1Lease(
                metadata=V1ObjectMeta(name=self.config.lease_name, namespace=self.config.namespace),
                spec=V1LeaseSpec(acquire_time=now),
            )
            self._stamp(lease, now)
            return self._write(self.coordination_api.create_namespaced_lease, lease, create=True)

        if self._held_by_other(lease.spec, now):
            return False

        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        if lease.spec.holder_identity != self.config.identity or lease.spec.acquire_time is None:
            lease.spec.acquire_time = now
        self._stamp(lease, now)
        return self._write(self.coordination_api.replace_namespaced_lease, lease, create=False)

    def _stamp(self, lease: V1Lease, now: datetime) -> None:
        lease.spec.holder_identity = self.config.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.config.lease_duration_seconds

    def _write(self, write: Callable[..., object], lease: V1Lease, *, create: bool) -> bool:
        kwargs = {"namespace": self.config.namespace, "body": lease}
        if not create:
            kwargs["name"] = self.config.lease_name
        try:
            write(**kwargs)
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s changed concurrently, will retry", self.config.lease_name)
            else:
                LOGGER.warning(
                    "Failed to write lease %s: %s", self.config.lease_name, exc.reason
                )
            return False
        return True

    def release(self) -> None:
        """Clear ``holderIdentity`` so another replica can take over immediately."""
        try:
            lease = self._read()
            if lease is None or lease.spec is None:
                return
            if lease.spec.holder_identity != self.config.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.config.lease_name, namespace=self.config.namespace, body=lease
            )
            LOGGER.info("Released leader lease %s", self.config.lease_name)
        except ApiException as exc:
            LOGGER.warning(
                "Failed to release leader lease %s: %s", self.config.lease_name, exc.reason
            )

    def _step_down(self) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Block until *stop_event* is set, calling back on leadership changes."""
        LOGGER.info(
            "Starting leader election for lease %s (identity=%s)",
            self.config.lease_name,
            self.config.identity,
        )
        METRICS.leader_state.set(0)
        last_renewed = time.monotonic()

        while not stop_event.is_set():
            acquired = self.try_acquire_or_renew()
            if acquired:
                last_renewed = time.monotonic()
                if not self._is_leader:
                    self._is_leader = True
                    LOGGER.info("Became leader (identity=%s)", self.config.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    on_started_leading()
            elif self._is_leader:
                elapsed = time.monotonic() - last_renewed
                if elapsed >= self.config.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lost leader lease after %.2fs without successful renewal", elapsed
                    )
                    self._step_down()
                    on_stopped_leading()
            stop_event.wait(timeout=self.config.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._step_down()
            on_stopped_leading()

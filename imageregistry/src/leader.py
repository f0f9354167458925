from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from imageregistry.src.config import LeaderElectionConfig
from imageregistry.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class LeaseLeaderElector:
    """Lease-based leader election (``coordination.k8s.io/v1``).

    The operator's correctness rests on a single sync worker, so only the
    replica holding the Lease runs the controller.  Each cycle reads the
    Lease and either creates it, renews it (we hold it), takes it over (the
    holder let it expire) or backs off (someone else holds a live lease).
    ``409 Conflict`` on create/replace means another replica won the race;
    the next cycle re-reads.

    A leader that fails to renew keeps leading for ``renew_deadline_seconds``
    before calling ``on_stopped_leading``; the deadline is shorter than the
    lease duration so the old leader always stops before a new one can
    take over.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        config: LeaderElectionConfig,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if config.renew_deadline_seconds >= config.lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if config.retry_period_seconds >= config.renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.config = config
        self.clock = clock
        self._is_leader = False

    @property
    def identity(self) -> str:
        return self.config.identity

    @property
    def lease_name(self) -> str:
        return self.config.lease_name

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _held_by_other(self, spec: V1LeaseSpec, now: datetime) -> bool:
        """Return True if another identity holds an unexpired lease."""
        if not spec.holder_identity or spec.holder_identity == self.identity:
            return False
        if spec.renew_time is None:
            return False
        duration = spec.lease_duration_seconds or self.config.lease_duration_seconds
        return (now - _as_utc(spec.renew_time)).total_seconds() < duration

    def try_acquire_or_renew(self) -> bool:
        """Run one election cycle.  Returns True while this replica holds the lease."""
        now = self.clock()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._write(None, now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        if lease.spec is not None and self._held_by_other(lease.spec, now):
            return False
        return self._write(lease, now)

    def _write(self, lease: V1Lease | None, now: datetime) -> bool:
        """Create (``lease is None``) or replace the Lease with us as holder."""
        if lease is None:
            lease = V1Lease(
                metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
                spec=V1LeaseSpec(),
            )
            creating = True
        else:
            creating = False
        if lease.spec is None:
            lease.spec = V1LeaseSpec()

        spec = lease.spec
        if spec.holder_identity != self.identity or spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.config.lease_duration_seconds

        try:
            if creating:
                self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
                LOGGER.info("Created leader lease %s", self.lease_name)
            else:
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s changed underneath us, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to write lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear holderIdentity so another replica can take over immediately."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
            LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _became_leader(self, waited_since: float) -> None:
        self._is_leader = True
        LOGGER.info("Became leader (identity=%s)", self.identity)
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        METRICS.leader_acquire_latency_seconds.observe(time.monotonic() - waited_since)

    def _lost_leadership(self) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign for the lease until *stop_event* is set."""
        LOGGER.info(
            "Starting leader election for lease %s (identity=%s)", self.lease_name, self.identity
        )
        METRICS.leader_state.set(0)
        waited_since = time.monotonic()
        last_renewal = waited_since

        while not stop_event.is_set():
            try:
                holding = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                holding = False

            if holding:
                last_renewal = time.monotonic()
                if not self._is_leader:
                    self._became_leader(waited_since)
                    on_started_leading()
            elif self._is_leader:
                since_renewal = time.monotonic() - last_renewal
                if since_renewal >= self.config.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lost leader lease after %.2fs without successful renewal", since_renewal
                    )
                    self._lost_leadership()
                    waited_since = time.monotonic()
                    on_stopped_leading()
                else:
                    LOGGER.warning(
                        "Lease renewal failed; still leading for up to %ss (elapsed %.2fs)",
                        self.config.renew_deadline_seconds,
                        since_renewal,
                    )
            stop_event.wait(timeout=self.config.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._lost_leadership()
            on_stopped_leading()

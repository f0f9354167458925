from __future__ import annotations

import functools
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from imageregistry.src.bootstrap import bootstrap
from imageregistry.src.cache import StateCache
from imageregistry.src.clusteroperator import ClusterOperatorStatus, StatusPublisher
from imageregistry.src.config import OperatorConfig
from imageregistry.src.errors import (
    CacheSyncError,
    ConflictError,
    NotFoundError,
    PermanentError,
    ReconcileError,
    TransientError,
)
from imageregistry.src.events import WORK_TOKEN, EventRouter
from imageregistry.src.generator import Generator, ResourceGenerator, verify_resource
from imageregistry.src.informer import Informer, wait_for_cache_sync
from imageregistry.src.kube import Clients, ImageRegistryStore
from imageregistry.src.metrics import METRICS
from imageregistry.src.model import ImageRegistry, ManagementState
from imageregistry.src.parameters import (
    FINALIZER,
    IMAGE_REGISTRY_GROUP,
    IMAGE_REGISTRY_PLURAL,
    IMAGE_REGISTRY_VERSION,
    ROUTE_GROUP,
    ROUTE_PLURAL,
    ROUTE_VERSION,
    Globals,
    resource_name,
)
from imageregistry.src.status import sync_status, utc_now_rfc3339
from imageregistry.src.workqueue import WorkQueue

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchedKind:
    """One informer to start: what to list, where, and which cache slot it fills."""

    kind: str
    list_fn: Callable[..., Any]
    namespace: str | None
    cache_slot: str | None = None


def watched_kinds(clients: Clients, namespace: str) -> list[WatchedKind]:
    """Every resource kind whose changes can affect the registry.

    Only Deployments, Services and ImageRegistries are read by the sync
    pass; the rest are watched so that external edits to the managed objects
    trigger a pass.
    """
    return [
        WatchedKind("Deployment", clients.apps.list_namespaced_deployment, namespace, "deployments"),
        WatchedKind("Service", clients.core.list_namespaced_service, namespace, "services"),
        WatchedKind("Secret", clients.core.list_namespaced_secret, namespace),
        WatchedKind("ConfigMap", clients.core.list_namespaced_config_map, namespace),
        WatchedKind("ServiceAccount", clients.core.list_namespaced_service_account, namespace),
        WatchedKind("ClusterRole", clients.rbac.list_cluster_role, None),
        WatchedKind("ClusterRoleBinding", clients.rbac.list_cluster_role_binding, None),
        WatchedKind(
            "Route",
            functools.partial(
                clients.custom.list_namespaced_custom_object,
                group=ROUTE_GROUP,
                version=ROUTE_VERSION,
                plural=ROUTE_PLURAL,
            ),
            namespace,
        ),
        WatchedKind(
            "ImageRegistry",
            functools.partial(
                clients.custom.list_cluster_custom_object,
                group=IMAGE_REGISTRY_GROUP,
                version=IMAGE_REGISTRY_VERSION,
                plural=IMAGE_REGISTRY_PLURAL,
            ),
            None,
            "image_registries",
        ),
    ]


class Controller:
    """Level-triggered reconciler for the cluster image registry.

    Watch events from every informer collapse into a single constant work
    token.  One worker thread drains the queue and runs a full :meth:`sync`
    per token, re-deriving everything from the informer caches, so a dropped
    or coalesced event never loses information.

    Failures are classified once:

    ``PermanentError``
        The spec is invalid.  Logged, surfaced in status, not retried until
        the next watch event.
    ``TransientError``
        Everything else.  Re-queued with per-item exponential backoff.
    """

    def __init__(
        self,
        *,
        namespace: str,
        params: Globals,
        generator: Generator,
        status_publisher: StatusPublisher,
        store: ImageRegistryStore,
        kinds: Sequence[WatchedKind] = (),
        cache: StateCache | None = None,
        resync_seconds: float = 600,
        cache_sync_timeout_seconds: float = 120,
        worker_stop_timeout_seconds: float = 30,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        queue_factory: Callable[[], WorkQueue] = WorkQueue,
        logger: logging.Logger | None = None,
    ) -> None:
        self.namespace = namespace
        self.resource_name = resource_name(namespace)
        self.params = params
        self.generator = generator
        self.status_publisher = status_publisher
        self.store = store
        self.kinds = list(kinds)
        self.cache = cache or StateCache(namespace)
        self.resync_seconds = resync_seconds
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.worker_stop_timeout_seconds = worker_stop_timeout_seconds
        self.now_fn = now_fn
        self.logger = logger or LOGGER

        self._queue_factory = queue_factory
        self.queue = queue_factory()
        self.router = EventRouter(self.queue, logger=self.logger)
        self.informers: list[Informer] = []
        self.ready = threading.Event()
        self._stop_requested = False
        self._active_stop: threading.Event | None = None
        self._state_lock = threading.Lock()
        self._worker: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Sync pass
    # ------------------------------------------------------------------

    def bootstrap(self) -> None:
        bootstrap(self.store, self.resource_name)

    def remove_resources(self, cr: ImageRegistry) -> None:
        self.logger.info("Removing resources for %s", cr.describe())
        try:
            self.generator.teardown(cr)
        except ReconcileError:
            raise
        except Exception as exc:
            raise TransientError(f"unable to remove resources: {exc}") from exc

    def create_or_update_resources(self, cr: ImageRegistry) -> bool:
        """Validate *cr* and converge the managed resources.

        Returns True if *cr* was modified along the way.  Validation runs
        before anything is touched, so an invalid spec leaves the cluster as
        it was.
        """
        try:
            verify_resource(cr, self.params)
        except PermanentError as exc:
            raise PermanentError(f"unable to complete resource: {exc}") from exc

        try:
            return self.generator.converge(cr)
        except ReconcileError:
            raise
        except Exception as exc:
            raise TransientError(f"unable to apply resources: {exc}") from exc

    def finalize_resources(self, cr: ImageRegistry) -> None:
        """Tear everything down, then release the object for deletion.

        The finalizer is only dropped after a complete teardown, so a
        partial failure can never leave orphaned resources behind a deleted
        ImageRegistry.
        """
        if not cr.has_finalizer(FINALIZER):
            self.logger.debug("No finalizer on %s; nothing to finalize", cr.describe())
            return

        self.logger.info("Finalizing %s", cr.describe())
        self.remove_resources(cr)
        cr.remove_finalizer(FINALIZER)
        self.store.update(cr)
        self.logger.info("Removed finalizer from %s", cr.describe())

    def _sync_internal_hostname(self, cr: ImageRegistry) -> bool:
        try:
            service = self.cache.get_service(self.params.service_name)
        except NotFoundError:
            return False

        metadata = getattr(service, "metadata", None)
        ports = getattr(getattr(service, "spec", None), "ports", None) or []
        if not ports:
            self.logger.warning(
                "Service %s has no ports; cannot derive internal registry hostname",
                self.params.service_name,
            )
            return False

        hostname = f"{metadata.name}.{metadata.namespace}.svc:{ports[0].port}"
        if cr.status.internal_registry_hostname == hostname:
            return False
        cr.status.internal_registry_hostname = hostname
        return True

    def _get_deployment(self, name: str) -> Any:
        try:
            return self.cache.get_deployment(name)
        except NotFoundError:
            return None

    def sync(self) -> PermanentError | None:
        """Run one full reconciliation pass.

        Raises :class:`TransientError` when the pass should be retried.
        Returns the swallowed :class:`PermanentError` (or ``None``) so the
        caller can record it without re-queuing.
        """
        try:
            cr = self.cache.get_desired_state(self.resource_name)
        except NotFoundError:
            self.bootstrap()
            return None

        if cr.deletion_timestamp is not None:
            self.finalize_resources(cr)
            return None

        status_changed = False
        apply_error: ReconcileError | None = None
        removed = False

        state = cr.management_state
        if state is ManagementState.REMOVED:
            try:
                self.remove_resources(cr)
            except ReconcileError as exc:
                apply_error = exc
            removed = True
        elif state is ManagementState.MANAGED:
            if cr.add_finalizer(FINALIZER):
                status_changed = True
            try:
                if self.create_or_update_resources(cr):
                    status_changed = True
            except ReconcileError as exc:
                apply_error = exc
            else:
                if self._sync_internal_hostname(cr):
                    status_changed = True
        elif state is ManagementState.UNMANAGED:
            pass
        else:
            self.logger.warning(
                "Unknown management state %r on %s; ignoring",
                cr.raw_management_state,
                cr.describe(),
            )

        deployment = self._get_deployment(cr.name)

        if sync_status(cr, deployment, apply_error, removed, now_fn=self.now_fn):
            status_changed = True

        if status_changed:
            self.logger.info("Status changed: %s", cr.describe())
            cr.status.observed_generation = cr.generation
            try:
                self.store.update(cr)
            except ConflictError:
                self.logger.info("Conflict updating %s; will retry with fresh state", cr.describe())
                raise
            except TransientError as exc:
                self.logger.error("Unable to update %s: %s", cr.describe(), exc)
                raise

        if isinstance(apply_error, PermanentError):
            self.logger.error(
                "Not retrying %s until its spec changes: %s", cr.describe(), apply_error
            )
            return apply_error
        if apply_error is not None:
            raise apply_error
        return None

    # ------------------------------------------------------------------
    # Driver loop
    # ------------------------------------------------------------------

    def process_next_work_item(self) -> bool:
        """Handle one work-queue item.  Returns False once the queue shuts down."""
        item, shutting_down = self.queue.get()
        if shutting_down:
            return False

        try:
            if not isinstance(item, str):
                self.queue.forget(item)
                self.logger.error("Expected string in work queue but got %r", item)
                return True

            started = time.monotonic()
            try:
                permanent_error = self.sync()
            except ReconcileError as exc:
                self.queue.add_rate_limited(WORK_TOKEN)
                METRICS.workqueue_retries_total.inc()
                METRICS.syncs_total.labels(result="transient").inc()
                self.logger.error("Unable to sync: %s, requeuing", exc)
            except Exception:
                self.queue.add_rate_limited(WORK_TOKEN)
                METRICS.workqueue_retries_total.inc()
                METRICS.syncs_total.labels(result="transient").inc()
                self.logger.exception("Unexpected error during sync, requeuing")
            else:
                self.queue.forget(item)
                result = "success" if permanent_error is None else "permanent"
                METRICS.syncs_total.labels(result=result).inc()
                self.logger.info("Event from work queue successfully processed")
            finally:
                METRICS.sync_duration_seconds.observe(time.monotonic() - started)
            return True
        finally:
            self.queue.done(item)

    def run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def worker_alive(self) -> bool:
        worker = self._worker
        return worker is not None and worker.is_alive()

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    def build_informers(self) -> list[Informer]:
        """Create one informer per watched kind and wire it to the router and cache."""
        informers = []
        for watched in self.kinds:
            informer = Informer(
                kind=watched.kind,
                list_fn=watched.list_fn,
                namespace=watched.namespace,
                resync_seconds=self.resync_seconds,
            )
            informer.add_event_handler(self.router)
            if watched.cache_slot is not None:
                self.cache.assign(watched.cache_slot, informer.store)
            informers.append(informer)
        return informers

    def _reset_queue(self) -> None:
        self.queue = self._queue_factory()
        self.router.queue = self.queue

    def request_stop(self) -> None:
        """Stop a running controller from another thread.

        A request that arrives before :meth:`run` has started is held and
        makes the next run return without starting anything.
        """
        with self._state_lock:
            active_stop = self._active_stop
            if active_stop is None:
                self._stop_requested = True
        if active_stop is not None:
            active_stop.set()

    def _stop_informers(self) -> None:
        for informer in self.informers:
            informer.stop()
        deadline = time.monotonic() + self.worker_stop_timeout_seconds
        for informer in self.informers:
            informer.join(timeout=max(0.0, deadline - time.monotonic()))
        lingering = [informer.kind for informer in self.informers if informer.is_alive()]
        if lingering:
            self.logger.error(
                "Informers did not stop within %ss: %s",
                self.worker_stop_timeout_seconds,
                ", ".join(lingering),
            )

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        """Start informers, wait for their caches, then process work until stopped.

        Raises :class:`CacheSyncError` if the caches do not sync within
        ``cache_sync_timeout_seconds``; running a pass against a half-empty
        cache would report every resource as missing.
        """
        stop = shutdown_event or threading.Event()
        with self._state_lock:
            self._active_stop = stop
            if self._stop_requested:
                self._stop_requested = False
                stop.set()
        if self.queue.shutting_down:
            self._reset_queue()
        self.informers = []

        try:
            if stop.is_set():
                self.logger.info("Stop requested before the controller started")
                return

            try:
                self.status_publisher.create()
            except Exception:
                self.logger.exception("Unable to create cluster operator resource")

            self.informers = self.build_informers()
            for informer in self.informers:
                informer.start(stop_event=stop)

            self.logger.info("Waiting for %d informer caches to sync", len(self.informers))
            if not wait_for_cache_sync(stop, self.cache_sync_timeout_seconds, self.informers):
                if stop.is_set():
                    self.logger.info("Stop requested before informer caches synced")
                    return
                raise CacheSyncError("failed to wait for caches to sync")

            self._worker = threading.Thread(
                target=self.run_worker, name="sync-worker", daemon=True
            )
            self._worker.start()
            self.ready.set()
            self.logger.info("Started events processor")

            while not stop.wait(timeout=1.0):
                pass
            self.logger.info("Shutting down events processor")
        finally:
            self.ready.clear()
            self.queue.shut_down()
            self._stop_informers()
            if self._worker is not None:
                self._worker.join(timeout=self.worker_stop_timeout_seconds)
                if self._worker.is_alive():
                    self.logger.error(
                        "Sync worker did not stop within %ss", self.worker_stop_timeout_seconds
                    )
            with self._state_lock:
                self._active_stop = None


def build_controller(clients: Clients, config: OperatorConfig) -> Controller:
    """Wire a :class:`Controller` with its collaborators from configuration."""
    params = Globals(namespace=config.namespace, image=config.image)
    return Controller(
        namespace=config.namespace,
        params=params,
        generator=ResourceGenerator(clients, params),
        status_publisher=ClusterOperatorStatus(
            clients.custom, name=config.operator_name, namespace=config.operator_namespace
        ),
        store=ImageRegistryStore(clients.custom),
        kinds=watched_kinds(clients, config.namespace),
        resync_seconds=config.resync_seconds,
        cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
    )

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from imageregistry.src.errors import NotFoundError
from imageregistry.src.events import (
    Added,
    DeletedFinalStateUnknown,
    Updated,
    WatchEvent,
    decode_deleted,
    decode_identity,
)
from imageregistry.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[WatchEvent], Any]


def _object_name(obj: Any) -> str | None:
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("name")
    return getattr(getattr(obj, "metadata", None), "name", None)


def _object_resource_version(obj: Any) -> str | None:
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


def _items(listing: Any) -> list[Any]:
    if isinstance(listing, dict):
        return list(listing.get("items") or [])
    return list(getattr(listing, "items", None) or [])


def _list_resource_version(listing: Any) -> str | None:
    if isinstance(listing, dict):
        return (listing.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(listing, "metadata", None), "resource_version", None)


class Store:
    """Thread-safe, name-keyed snapshot of one resource kind."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> Any:
        with self._lock:
            try:
                return self._items[name]
            except KeyError:
                raise NotFoundError(self.kind, name) from None

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def keys(self) -> set[str]:
        with self._lock:
            return set(self._items)

    def put(self, name: str, obj: Any) -> Any:
        """Store *obj* and return the previous value (or ``None``)."""
        with self._lock:
            previous = self._items.get(name)
            self._items[name] = obj
            return previous

    def delete(self, name: str) -> Any:
        with self._lock:
            return self._items.pop(name, None)

    def replace(self, items: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            previous = self._items
            self._items = dict(items)
            return previous


class Informer:
    """List-then-watch one resource kind into a :class:`Store`.

    1. Lists the kind (retrying with jittered backoff) and seeds the store.
       Only after that first list is :meth:`has_synced` true.
    2. Streams watch events from the list's ``resourceVersion`` and applies
       them to the store before notifying handlers.
    3. On ``410 Gone`` re-lists and diffs the fresh listing against the
       store.  Objects that disappeared while the watch was down are
       delivered as deletes wrapped in :class:`DeletedFinalStateUnknown`.
    4. Every ``resync_seconds`` re-delivers every stored object as an
       update whose old and new resourceVersion are equal.

    ``401`` / ``403`` stop the informer without ever marking it synced so
    startup fails on the cache-sync wait instead of trusting an empty cache.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        namespace: str | None = None,
        resync_seconds: float = 600,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.namespace = namespace
        self.resync_seconds = resync_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or LOGGER
        self.store = Store(kind)
        self._handlers: list[EventHandler] = []
        self._synced = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        METRICS.informers_synced.labels(kind=kind).set(0)

    def add_event_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def start(self, stop_event: threading.Event | None = None) -> threading.Thread:
        thread = threading.Thread(
            target=self.run,
            kwargs={"stop_event": stop_event},
            name=f"informer-{self.kind}",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        return thread

    def stop(self) -> None:
        """Stop the informer and interrupt any open watch stream."""
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _should_stop(self, stop_event: threading.Event | None) -> bool:
        return self._stop.is_set() or (stop_event is not None and stop_event.is_set())

    def _scope_kwargs(self) -> dict[str, Any]:
        if self.namespace is None:
            return {}
        return {"namespace": self.namespace}

    def _dispatch(self, event: WatchEvent) -> None:
        for handler in self._handlers:
            try:
                handler(event)
            except Exception:
                self.logger.exception("Event handler failed for %s event", self.kind)

    def _list(self) -> tuple[dict[str, Any], str | None]:
        listing = self.list_fn(**self._scope_kwargs())
        items: dict[str, Any] = {}
        for obj in _items(listing):
            name = _object_name(obj)
            if name:
                items[name] = obj
        return items, _list_resource_version(listing)

    def _replace(self, items: dict[str, Any]) -> None:
        """Swap in a fresh listing and notify handlers of the differences."""
        previous = self.store.replace(items)
        for name, obj in items.items():
            old = previous.get(name)
            if old is None:
                self._dispatch(Added(decode_identity(self.kind, obj)))
            elif _object_resource_version(old) != _object_resource_version(obj):
                self._dispatch(
                    Updated(decode_identity(self.kind, old), decode_identity(self.kind, obj))
                )
        for name, old in previous.items():
            if name not in items:
                tombstone = DeletedFinalStateUnknown(key=self._key(name), obj=old)
                self._dispatch(decode_deleted(self.kind, tombstone))

    def _key(self, name: str) -> str:
        return f"{self.namespace}/{name}" if self.namespace else name

    def _resync(self) -> None:
        for obj in self.store.list():
            identity = decode_identity(self.kind, obj)
            self._dispatch(Updated(identity, identity))

    def handle_watch_event(self, event_type: str, obj: Any) -> None:
        """Apply a single watch event to the store and notify handlers."""
        name = _object_name(obj)
        if not name:
            self.logger.warning("Ignoring %s %s event without metadata.name", self.kind, event_type)
            return

        if event_type == "ADDED" or event_type == "MODIFIED":
            old = self.store.put(name, obj)
            if old is None:
                self._dispatch(Added(decode_identity(self.kind, obj)))
            else:
                self._dispatch(
                    Updated(decode_identity(self.kind, old), decode_identity(self.kind, obj))
                )
        elif event_type == "DELETED":
            self.store.delete(name)
            self._dispatch(decode_deleted(self.kind, obj))
        else:
            self.logger.debug("Ignoring %s watch event of type %s", self.kind, event_type)

    def _next_watch_timeout(self, next_resync: float) -> int:
        remaining = max(1.0, next_resync - time.monotonic())
        return int(min(self.watch_timeout_seconds, max(1, remaining)))

    def _list_until_synced(self, stop_event: threading.Event | None) -> tuple[bool, str | None]:
        """List and replace the store, retrying with jittered backoff.

        Returns ``(True, resourceVersion)`` once a listing has been applied
        and ``(False, None)`` if stopped or access is denied.
        """
        backoff_seconds = 1.0
        while not self._should_stop(stop_event):
            try:
                items, resource_version = self._list()
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    return False, None
                self.logger.exception("Listing %s failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error listing %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            else:
                if self._should_stop(stop_event):
                    break
                self._replace(items)
                self._synced.set()
                METRICS.informers_synced.labels(kind=self.kind).set(1)
                self.logger.info(
                    "Synced %d %s object(s) at resourceVersion %s",
                    len(items),
                    self.kind,
                    resource_version,
                )
                return True, resource_version
            self._backoff(stop_event, backoff_seconds)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return False, None

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Run list-then-watch until stopped.

        The watch only ever resumes from the resourceVersion of a successful
        list or of an event seen since; after ``410 Gone`` nothing is watched
        until a relist has been applied to the store.
        """
        listed, resource_version = self._list_until_synced(stop_event)
        if not listed:
            return

        next_resync = time.monotonic() + self.resync_seconds
        backoff_seconds = 1.0
        stream_count = 0
        while not self._should_stop(stop_event):
            if self.resync_seconds > 0 and time.monotonic() >= next_resync:
                self._resync()
                next_resync = time.monotonic() + self.resync_seconds

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            expired = False
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                stream_count += 1
                kwargs = self._scope_kwargs()
                if resource_version:
                    kwargs["resource_version"] = resource_version
                stream = watcher.stream(
                    self.list_fn,
                    timeout_seconds=self._next_watch_timeout(next_resync),
                    **kwargs,
                )
                for event in stream:
                    if self._should_stop(stop_event):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    event_type = str(event.get("type", ""))
                    if event_type == "ERROR":
                        raw = event.get("raw_object") or {}
                        raise ApiException(status=raw.get("code"), reason=raw.get("reason"))
                    version = _object_resource_version(obj)
                    if version:
                        resource_version = version
                    self.handle_watch_event(event_type, obj)
                backoff_seconds = 1.0
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    expired = True
                elif exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    return
                else:
                    self.logger.exception("Kubernetes API watch error for %s", self.kind)
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self._backoff(stop_event, backoff_seconds)
                    backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                self._backoff(stop_event, backoff_seconds)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

            if expired:
                # The API server compacted past our resourceVersion; only a
                # fresh list can tell us what happened in between.
                listed, resource_version = self._list_until_synced(stop_event)
                if not listed:
                    return
                backoff_seconds = 1.0

    def _backoff(self, stop_event: threading.Event | None, seconds: float) -> None:
        deadline = time.monotonic() + seconds * (0.5 + random.random())  # noqa: S311
        while not self._should_stop(stop_event):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._stop.wait(timeout=min(remaining, 0.5))


def wait_for_cache_sync(
    stop_event: threading.Event,
    timeout_seconds: float,
    informers: Iterable[Informer],
    poll_interval: float = 0.1,
) -> bool:
    """Block until every informer has synced.

    Returns False if *stop_event* fires or *timeout_seconds* pass first.
    """
    pending = list(informers)
    deadline = time.monotonic() + timeout_seconds
    while True:
        pending = [informer for informer in pending if not informer.has_synced()]
        if not pending:
            return True
        if stop_event.is_set():
            return False
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            LOGGER.error(
                "Timed out waiting for caches to sync: %s",
                ", ".join(informer.kind for informer in pending),
            )
            return False
        stop_event.wait(timeout=min(poll_interval, remaining))

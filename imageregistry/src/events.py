from __future__ import annotations

import logging
from collections.abc import Hashable
from dataclasses import dataclass
from typing import Any, Protocol, Union

from imageregistry.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

WORK_TOKEN = "changes"


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Stand-in for an object that vanished while the watch was disconnected.

    ``obj`` is the last state the informer stored; it may be stale.
    """

    key: str
    obj: Any


@dataclass(frozen=True)
class ObjectIdentity:
    kind: str
    namespace: str | None
    name: str
    resource_version: str | None

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"


@dataclass(frozen=True)
class Added:
    identity: ObjectIdentity | None


@dataclass(frozen=True)
class Updated:
    old: ObjectIdentity | None
    new: ObjectIdentity | None


@dataclass(frozen=True)
class Deleted:
    identity: ObjectIdentity | None
    tombstone: bool = False
    key: str | None = None


WatchEvent = Union[Added, Updated, Deleted]


def _metadata_field(metadata: Any, attr: str, key: str) -> Any:
    if isinstance(metadata, dict):
        return metadata.get(key)
    return getattr(metadata, attr, None)


def decode_identity(kind: str, obj: Any) -> ObjectIdentity | None:
    """Extract an :class:`ObjectIdentity` from a client model or a plain dict.

    Typed ``kubernetes`` models expose snake_case attributes; custom objects
    arrive as camelCase dicts.  Returns ``None`` when no name can be found.
    """
    if isinstance(obj, dict):
        metadata = obj.get("metadata")
    else:
        metadata = getattr(obj, "metadata", None)
    if metadata is None:
        return None

    name = _metadata_field(metadata, "name", "name")
    if not name:
        return None
    return ObjectIdentity(
        kind=kind,
        namespace=_metadata_field(metadata, "namespace", "namespace") or None,
        name=str(name),
        resource_version=_metadata_field(metadata, "resource_version", "resourceVersion"),
    )


def decode_deleted(kind: str, obj: Any) -> Deleted:
    """Build a :class:`Deleted` event, unwrapping a tombstone if needed."""
    if isinstance(obj, DeletedFinalStateUnknown):
        return Deleted(identity=decode_identity(kind, obj.obj), tombstone=True, key=obj.key)
    return Deleted(identity=decode_identity(kind, obj))


class Enqueuer(Protocol):
    def add_rate_limited(self, item: Hashable) -> None: ...


class EventRouter:
    """Turn watch events from every informer into work-queue adds.

    The router knows nothing about which fields matter to the sync pass; it
    only drops update notifications whose resourceVersion did not change,
    which is what the informer's periodic resync delivers.  Everything else
    enqueues the constant work token and the sync pass works out the rest
    from the cache.
    """

    def __init__(
        self,
        queue: Enqueuer,
        token: Hashable = WORK_TOKEN,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.token = token
        self.logger = logger or LOGGER

    def __call__(self, event: WatchEvent) -> bool:
        return self.handle(event)

    def handle(self, event: WatchEvent) -> bool:
        """Route one event; return True if the work token was enqueued."""
        if isinstance(event, Added):
            self.logger.debug("Enqueue sync due to %s (add)", event.identity)
            return self._enqueue(event.identity, "add")

        if isinstance(event, Updated):
            old, new = event.old, event.new
            if old is None or new is None:
                self.logger.error(
                    "Unable to decode object identity for update event (old=%s, new=%s)",
                    old,
                    new,
                )
                return self._enqueue(new or old, "update")
            if old.resource_version == new.resource_version:
                METRICS.resyncs_filtered_total.labels(kind=new.kind).inc()
                return False
            self.logger.debug("Enqueue sync due to %s (update)", new)
            return self._enqueue(new, "update")

        if isinstance(event, Deleted):
            if event.tombstone:
                if event.identity is None:
                    self.logger.error(
                        "Error decoding object tombstone %s, invalid type", event.key
                    )
                else:
                    self.logger.debug(
                        "Recovered deleted object %s from tombstone", event.identity
                    )
            elif event.identity is None:
                self.logger.error("Error decoding deleted object, invalid type")
            self.logger.debug("Enqueue sync due to %s (delete)", event.identity)
            return self._enqueue(event.identity, "delete")

        self.logger.error("Ignoring unsupported watch event %r", event)
        return False

    def _enqueue(self, identity: ObjectIdentity | None, event_type: str) -> bool:
        kind = identity.kind if identity is not None else "unknown"
        METRICS.events_total.labels(kind=kind, type=event_type).inc()
        self.queue.add_rate_limited(self.token)
        return True

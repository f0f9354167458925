from __future__ import annotations

import logging
from collections.abc import Hashable
from types import SimpleNamespace

import pytest

from imageregistry.src.events import (
    WORK_TOKEN,
    Added,
    Deleted,
    DeletedFinalStateUnknown,
    EventRouter,
    ObjectIdentity,
    Updated,
    decode_deleted,
    decode_identity,
)


class RecordingQueue:
    def __init__(self) -> None:
        self.added: list[Hashable] = []

    def add_rate_limited(self, item: Hashable) -> None:
        self.added.append(item)


def make_service(name: str = "image-registry", resource_version: str = "1") -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace="openshift-image-registry",
            resource_version=resource_version,
        )
    )


def identity(resource_version: str, name: str = "image-registry") -> ObjectIdentity:
    return ObjectIdentity(
        kind="Service",
        namespace="openshift-image-registry",
        name=name,
        resource_version=resource_version,
    )


# ---------------------------------------------------------------------------
# Identity decoding
# ---------------------------------------------------------------------------


def test_decode_identity_from_typed_model() -> None:
    decoded = decode_identity("Service", make_service(resource_version="7"))

    assert decoded == identity("7")
    assert str(decoded) == "Service openshift-image-registry/image-registry"


def test_decode_identity_from_custom_object_dict() -> None:
    obj = {"metadata": {"name": "image-registry", "resourceVersion": "42"}}

    decoded = decode_identity("ImageRegistry", obj)

    assert decoded == ObjectIdentity("ImageRegistry", None, "image-registry", "42")
    assert str(decoded) == "ImageRegistry image-registry"


@pytest.mark.parametrize(
    "obj",
    [
        None,
        "not-an-object",
        SimpleNamespace(metadata=None),
        SimpleNamespace(metadata=SimpleNamespace(name="")),
        {"metadata": {}},
    ],
)
def test_decode_identity_returns_none_for_unusable_objects(obj: object) -> None:
    assert decode_identity("Service", obj) is None


def test_decode_deleted_unwraps_tombstone() -> None:
    tombstone = DeletedFinalStateUnknown(
        key="openshift-image-registry/image-registry", obj=make_service(resource_version="3")
    )

    event = decode_deleted("Service", tombstone)

    assert event.tombstone
    assert event.identity == identity("3")
    assert event.key == "openshift-image-registry/image-registry"


def test_decode_deleted_tombstone_with_garbage_keeps_key() -> None:
    event = decode_deleted("Service", DeletedFinalStateUnknown(key="ns/broken", obj=object()))

    assert event.tombstone
    assert event.identity is None
    assert event.key == "ns/broken"


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def test_add_event_enqueues_work_token() -> None:
    queue = RecordingQueue()
    router = EventRouter(queue)

    assert router(Added(identity("1"))) is True
    assert queue.added == [WORK_TOKEN]


def test_update_with_same_resource_version_is_filtered() -> None:
    queue = RecordingQueue()
    router = EventRouter(queue)

    assert router(Updated(identity("5"), identity("5"))) is False
    assert queue.added == []


def test_update_with_new_resource_version_enqueues() -> None:
    queue = RecordingQueue()
    router = EventRouter(queue)

    assert router(Updated(identity("5"), identity("6"))) is True
    assert queue.added == [WORK_TOKEN]


def test_update_with_undecodable_object_still_enqueues(caplog: pytest.LogCaptureFixture) -> None:
    queue = RecordingQueue()
    router = EventRouter(queue)

    with caplog.at_level(logging.ERROR):
        assert router(Updated(None, identity("6"))) is True

    assert queue.added == [WORK_TOKEN]
    assert "Unable to decode object identity" in caplog.text


def test_delete_event_enqueues() -> None:
    queue = RecordingQueue()
    router = EventRouter(queue)

    assert router(Deleted(identity("9"))) is True
    assert queue.added == [WORK_TOKEN]


def test_tombstone_delete_is_logged_and_enqueued(caplog: pytest.LogCaptureFixture) -> None:
    queue = RecordingQueue()
    router = EventRouter(queue)

    with caplog.at_level(logging.DEBUG):
        router(Deleted(identity("9"), tombstone=True, key="openshift-image-registry/image-registry"))

    assert queue.added == [WORK_TOKEN]
    assert "Recovered deleted object" in caplog.text


def test_undecodable_tombstone_is_logged_and_still_enqueued(
    caplog: pytest.LogCaptureFixture,
) -> None:
    queue = RecordingQueue()
    router = EventRouter(queue)

    with caplog.at_level(logging.ERROR):
        assert router(Deleted(None, tombstone=True, key="ns/broken")) is True

    assert queue.added == [WORK_TOKEN]
    assert "ns/broken" in caplog.text


def test_every_meaningful_event_enqueues_the_same_constant_token() -> None:
    queue = RecordingQueue()
    router = EventRouter(queue)

    router(Added(identity("1", name="a")))
    router(Updated(identity("1", name="b"), identity("2", name="b")))
    router(Deleted(identity("3", name="c")))

    assert queue.added == [WORK_TOKEN, WORK_TOKEN, WORK_TOKEN]

from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import patch

import pytest
from kubernetes.client import ApiException

from imageregistry.src.cache import StateCache
from imageregistry.src.errors import CacheNotSyncedError, NotFoundError
from imageregistry.src.events import Added, Deleted, Updated, WatchEvent
from imageregistry.src.informer import Informer, Store, wait_for_cache_sync


def make_deployment(name: str, resource_version: str) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name, namespace="openshift-image-registry", resource_version=resource_version
        )
    )


def make_listing(*items: Any, resource_version: str = "100") -> SimpleNamespace:
    return SimpleNamespace(
        items=list(items), metadata=SimpleNamespace(resource_version=resource_version)
    )


class FakeLister:
    def __init__(self, *listings: Any) -> None:
        self.listings = list(listings)
        self.calls: list[dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        result = self.listings.pop(0) if len(self.listings) > 1 else self.listings[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeWatch:
    """Replays scripted watch streams; sets *stop* once the script runs out."""

    def __init__(self, streams: list[Any], stop: threading.Event) -> None:
        self.streams = streams
        self.stop_event = stop
        self.calls: list[dict[str, Any]] = []

    def __call__(self) -> FakeWatch:
        return self

    def stream(self, func: Any, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if not self.streams:
            self.stop_event.set()
            return iter([])
        script = self.streams.pop(0)
        if isinstance(script, Exception):
            raise script
        return iter(script)

    def stop(self) -> None:
        pass


def _informer(list_fn: Any, resync_seconds: float = 0) -> tuple[Informer, list[WatchEvent]]:
    informer = Informer(
        kind="Deployment",
        list_fn=list_fn,
        namespace="openshift-image-registry",
        resync_seconds=resync_seconds,
    )
    received: list[WatchEvent] = []
    informer.add_event_handler(received.append)
    return informer, received


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def test_store_get_raises_not_found() -> None:
    store = Store("Deployment")

    with pytest.raises(NotFoundError) as excinfo:
        store.get("image-registry")

    assert excinfo.value.kind == "Deployment"
    assert excinfo.value.name == "image-registry"


def test_store_put_returns_previous_value() -> None:
    store = Store("Deployment")

    assert store.put("a", 1) is None
    assert store.put("a", 2) == 1
    assert store.get("a") == 2
    assert store.delete("a") == 2
    assert store.keys() == set()


# ---------------------------------------------------------------------------
# Event handling
# ---------------------------------------------------------------------------


def test_watch_added_then_modified_updates_store_and_notifies() -> None:
    informer, received = _informer(FakeLister(make_listing()))

    informer.handle_watch_event("ADDED", make_deployment("image-registry", "1"))
    informer.handle_watch_event("MODIFIED", make_deployment("image-registry", "2"))

    assert isinstance(received[0], Added)
    assert isinstance(received[1], Updated)
    assert received[1].old.resource_version == "1"
    assert received[1].new.resource_version == "2"
    assert informer.store.get("image-registry").metadata.resource_version == "2"


def test_watch_deleted_removes_from_store() -> None:
    informer, received = _informer(FakeLister(make_listing()))
    informer.handle_watch_event("ADDED", make_deployment("image-registry", "1"))

    informer.handle_watch_event("DELETED", make_deployment("image-registry", "2"))

    assert isinstance(received[-1], Deleted)
    assert not received[-1].tombstone
    with pytest.raises(NotFoundError):
        informer.store.get("image-registry")


def test_watch_event_without_name_is_ignored() -> None:
    informer, received = _informer(FakeLister(make_listing()))

    informer.handle_watch_event("ADDED", SimpleNamespace(metadata=SimpleNamespace(name=None)))

    assert received == []


def test_handler_failure_does_not_stop_other_handlers() -> None:
    informer, received = _informer(FakeLister(make_listing()))

    def _boom(event: WatchEvent) -> None:
        raise RuntimeError("boom")

    informer._handlers.insert(0, _boom)
    informer.handle_watch_event("ADDED", make_deployment("image-registry", "1"))

    assert len(received) == 1


def test_relist_diff_delivers_tombstones_for_vanished_objects() -> None:
    informer, received = _informer(FakeLister(make_listing()))
    informer._replace(
        {
            "keep": make_deployment("keep", "1"),
            "change": make_deployment("change", "1"),
            "gone": make_deployment("gone", "1"),
        }
    )
    received.clear()

    informer._replace(
        {
            "keep": make_deployment("keep", "1"),
            "change": make_deployment("change", "2"),
            "new": make_deployment("new", "1"),
        }
    )

    updates = [event for event in received if isinstance(event, Updated)]
    adds = [event for event in received if isinstance(event, Added)]
    deletes = [event for event in received if isinstance(event, Deleted)]
    assert [event.new.name for event in updates] == ["change"]
    assert [event.identity.name for event in adds] == ["new"]
    assert len(deletes) == 1
    assert deletes[0].tombstone
    assert deletes[0].identity.name == "gone"
    assert deletes[0].key == "openshift-image-registry/gone"


def test_resync_redelivers_objects_with_unchanged_resource_version() -> None:
    informer, received = _informer(FakeLister(make_listing()))
    informer.store.put("image-registry", make_deployment("image-registry", "5"))

    informer._resync()

    assert len(received) == 1
    event = received[0]
    assert isinstance(event, Updated)
    assert event.old.resource_version == event.new.resource_version == "5"


# ---------------------------------------------------------------------------
# List-then-watch loop
# ---------------------------------------------------------------------------


def test_run_lists_syncs_then_watches_from_list_resource_version() -> None:
    stop = threading.Event()
    lister = FakeLister(make_listing(make_deployment("image-registry", "10"), resource_version="10"))
    informer, received = _informer(lister)
    fake_watch = FakeWatch(
        [[{"type": "MODIFIED", "object": make_deployment("image-registry", "11")}]], stop
    )

    with patch("imageregistry.src.informer.watch.Watch", fake_watch):
        informer.run(stop_event=stop)

    assert informer.has_synced()
    assert lister.calls[0] == {"namespace": "openshift-image-registry"}
    assert fake_watch.calls[0]["resource_version"] == "10"
    assert fake_watch.calls[1]["resource_version"] == "11"
    assert [type(event) for event in received] == [Added, Updated]


def test_run_relists_after_410_gone() -> None:
    stop = threading.Event()
    lister = FakeLister(
        make_listing(make_deployment("old", "1"), resource_version="1"),
        make_listing(make_deployment("fresh", "20"), resource_version="20"),
    )
    informer, received = _informer(lister)
    fake_watch = FakeWatch([ApiException(status=410, reason="Gone")], stop)

    with patch("imageregistry.src.informer.watch.Watch", fake_watch):
        informer.run(stop_event=stop)

    assert len(lister.calls) == 2
    assert fake_watch.calls[-1]["resource_version"] == "20"
    deletes = [event for event in received if isinstance(event, Deleted)]
    assert deletes and deletes[0].tombstone and deletes[0].identity.name == "old"
    assert informer.store.keys() == {"fresh"}


def test_relist_connection_failure_retries_instead_of_killing_the_informer() -> None:
    stop = threading.Event()
    lister = FakeLister(
        make_listing(make_deployment("old", "1"), resource_version="1"),
        ConnectionResetError("connection reset by peer"),
        make_listing(make_deployment("fresh", "20"), resource_version="20"),
    )
    informer, received = _informer(lister)
    fake_watch = FakeWatch([ApiException(status=410, reason="Gone")], stop)

    with (
        patch("imageregistry.src.informer.watch.Watch", fake_watch),
        patch.object(informer, "_backoff") as backoff,
    ):
        informer.run(stop_event=stop)

    assert len(lister.calls) == 3
    backoff.assert_called_once()
    assert informer.store.keys() == {"fresh"}
    assert fake_watch.calls[-1]["resource_version"] == "20"
    deletes = [event for event in received if isinstance(event, Deleted)]
    assert [event.identity.name for event in deletes] == ["old"]


def test_failed_relist_never_resumes_watch_without_resource_version() -> None:
    stop = threading.Event()
    lister = FakeLister(
        make_listing(make_deployment("old", "1"), make_deployment("keep", "1"), resource_version="1"),
        ApiException(status=500, reason="Internal Server Error"),
        make_listing(make_deployment("keep", "1"), resource_version="30"),
    )
    informer, received = _informer(lister)
    fake_watch = FakeWatch([ApiException(status=410, reason="Gone")], stop)

    with (
        patch("imageregistry.src.informer.watch.Watch", fake_watch),
        patch.object(informer, "_backoff"),
    ):
        informer.run(stop_event=stop)

    assert informer.store.keys() == {"keep"}
    assert [call.get("resource_version") for call in fake_watch.calls] == ["1", "30"]
    deletes = [event for event in received if isinstance(event, Deleted)]
    assert [event.identity.name for event in deletes] == ["old"]


def test_forbidden_relist_stops_the_informer_quietly() -> None:
    stop = threading.Event()
    lister = FakeLister(
        make_listing(make_deployment("old", "1"), resource_version="1"),
        ApiException(status=403, reason="Forbidden"),
    )
    informer, _ = _informer(lister)
    fake_watch = FakeWatch([ApiException(status=410, reason="Gone")], stop)

    with patch("imageregistry.src.informer.watch.Watch", fake_watch):
        informer.run(stop_event=stop)

    assert len(fake_watch.calls) == 1
    assert informer.store.keys() == {"old"}


def test_backoff_wakes_when_informer_is_stopped() -> None:
    informer, _ = _informer(FakeLister(make_listing()))
    waiter = threading.Thread(target=informer._backoff, args=(threading.Event(), 30))
    waiter.start()

    informer.stop()
    waiter.join(timeout=2)

    assert not waiter.is_alive()


def test_run_stops_without_syncing_on_forbidden_list() -> None:
    stop = threading.Event()
    lister = FakeLister(ApiException(status=403, reason="Forbidden"))
    informer, _ = _informer(lister)

    informer.run(stop_event=stop)

    assert not informer.has_synced()


def test_cluster_scoped_informer_lists_without_namespace() -> None:
    stop = threading.Event()
    lister = FakeLister({"items": [], "metadata": {"resourceVersion": "3"}})
    informer = Informer(kind="ImageRegistry", list_fn=lister, namespace=None, resync_seconds=0)
    fake_watch = FakeWatch([], stop)

    with patch("imageregistry.src.informer.watch.Watch", fake_watch):
        informer.run(stop_event=stop)

    assert lister.calls[0] == {}
    assert "namespace" not in fake_watch.calls[0]
    assert informer.has_synced()


# ---------------------------------------------------------------------------
# Cache sync wait
# ---------------------------------------------------------------------------


def _synced(value: bool, kind: str = "Deployment") -> Any:
    return SimpleNamespace(kind=kind, has_synced=lambda: value)


def test_wait_for_cache_sync_succeeds_when_all_synced() -> None:
    assert wait_for_cache_sync(threading.Event(), 1, [_synced(True), _synced(True)]) is True


def test_wait_for_cache_sync_times_out() -> None:
    assert wait_for_cache_sync(threading.Event(), 0.2, [_synced(True), _synced(False)]) is False


def test_wait_for_cache_sync_returns_false_when_stopped() -> None:
    stop = threading.Event()
    stop.set()

    assert wait_for_cache_sync(stop, 30, [_synced(False)]) is False


def test_wait_for_cache_sync_sees_late_sync() -> None:
    flag = threading.Event()
    informer = SimpleNamespace(kind="Service", has_synced=flag.is_set)
    threading.Timer(0.1, flag.set).start()

    assert wait_for_cache_sync(threading.Event(), 2, [informer]) is True


# ---------------------------------------------------------------------------
# State cache
# ---------------------------------------------------------------------------


def test_state_cache_rejects_unknown_slot() -> None:
    with pytest.raises(ValueError, match="secrets"):
        StateCache("openshift-image-registry").assign("secrets", Store("Secret"))


def test_state_cache_reads_before_assignment_are_transient() -> None:
    cache = StateCache("openshift-image-registry")

    with pytest.raises(CacheNotSyncedError):
        cache.get_deployment("image-registry")


def test_state_cache_decodes_a_private_copy_of_desired_state() -> None:
    store = Store("ImageRegistry")
    store.put(
        "image-registry",
        {"metadata": {"name": "image-registry", "resourceVersion": "9"}, "spec": {"replicas": 1}},
    )
    cache = StateCache("openshift-image-registry")
    cache.assign("image_registries", store)

    cr = cache.get_desired_state("image-registry")
    cr.spec["replicas"] = 4

    assert cr.resource_version == "9"
    assert store.get("image-registry")["spec"]["replicas"] == 1
    with pytest.raises(NotFoundError):
        cache.get_desired_state("other")

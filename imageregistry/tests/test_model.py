from __future__ import annotations

from typing import Any

import pytest

from imageregistry.src.bootstrap import bootstrap, default_image_registry
from imageregistry.src.errors import ConflictError, TransientError
from imageregistry.src.model import ImageRegistry, ManagementState
from imageregistry.src.parameters import resource_name


def raw_registry(**metadata: Any) -> dict[str, Any]:
    return {
        "apiVersion": "imageregistry.operator.openshift.io/v1alpha1",
        "kind": "ImageRegistry",
        "metadata": {
            "name": "image-registry",
            "resourceVersion": "42",
            "generation": 3,
            "uid": "1234",
            "labels": {"owner": "someone-else"},
            **metadata,
        },
        "spec": {"managementState": "Managed", "replicas": 2, "proxy": {"http": "x"}},
        "status": {
            "observedGeneration": 2,
            "internalRegistryHostname": "image-registry.openshift-image-registry.svc:5000",
            "conditions": [
                {
                    "type": "Available",
                    "status": "True",
                    "reason": "MinimumAvailability",
                    "lastTransitionTime": "2026-01-01T00:00:00Z",
                }
            ],
            "storageManaged": True,
        },
    }


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Managed", ManagementState.MANAGED),
        ("Unmanaged", ManagementState.UNMANAGED),
        ("Removed", ManagementState.REMOVED),
        ("managed", ManagementState.UNKNOWN),
        ("", ManagementState.UNKNOWN),
        (None, ManagementState.UNKNOWN),
    ],
)
def test_management_state_parse(raw: Any, expected: ManagementState) -> None:
    assert ManagementState.parse(raw) is expected


def test_from_dict_decodes_metadata_and_status() -> None:
    cr = ImageRegistry.from_dict(raw_registry(deletionTimestamp="2026-01-02T00:00:00Z"))

    assert cr.name == "image-registry"
    assert cr.generation == 3
    assert cr.resource_version == "42"
    assert cr.deletion_timestamp == "2026-01-02T00:00:00Z"
    assert cr.management_state is ManagementState.MANAGED
    assert cr.status.observed_generation == 2
    available = cr.status.get_condition("Available")
    assert available is not None
    assert available.last_transition_time == "2026-01-01T00:00:00Z"
    assert cr.status.get_condition("Failing") is None


def test_from_dict_does_not_alias_the_cached_object() -> None:
    raw = raw_registry()
    cr = ImageRegistry.from_dict(raw)

    cr.spec["replicas"] = 5
    cr.add_finalizer("example.com/finalizer")

    assert raw["spec"]["replicas"] == 2
    assert "finalizers" not in raw["metadata"]


def test_to_dict_preserves_fields_written_by_others() -> None:
    cr = ImageRegistry.from_dict(raw_registry())
    cr.status.observed_generation = 3

    out = cr.to_dict()

    assert out["apiVersion"] == "imageregistry.operator.openshift.io/v1alpha1"
    assert out["kind"] == "ImageRegistry"
    assert out["metadata"]["uid"] == "1234"
    assert out["metadata"]["labels"] == {"owner": "someone-else"}
    assert out["metadata"]["resourceVersion"] == "42"
    assert out["spec"]["proxy"] == {"http": "x"}
    assert out["status"]["storageManaged"] is True
    assert out["status"]["observedGeneration"] == 3
    assert out["status"]["conditions"][0] == {
        "type": "Available",
        "status": "True",
        "reason": "MinimumAvailability",
        "lastTransitionTime": "2026-01-01T00:00:00Z",
    }


def test_finalizer_helpers_report_changes() -> None:
    cr = ImageRegistry(name="image-registry")

    assert cr.add_finalizer("a") is True
    assert cr.add_finalizer("a") is False
    assert cr.has_finalizer("a")
    assert cr.to_dict()["metadata"]["finalizers"] == ["a"]

    assert cr.remove_finalizer("a") is True
    assert cr.remove_finalizer("a") is False
    assert "finalizers" not in cr.to_dict()["metadata"]


def test_describe_names_object_and_version() -> None:
    cr = ImageRegistry.from_dict(raw_registry())

    assert cr.describe() == "imageregistry 'image-registry' (resourceVersion=42)"


@pytest.mark.parametrize(
    ("namespace", "expected"),
    [
        ("openshift-image-registry", "image-registry"),
        ("registry", "registry"),
        ("openshift-", "openshift-"),
    ],
)
def test_resource_name_strips_platform_prefix(namespace: str, expected: str) -> None:
    assert resource_name(namespace) == expected


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


class RecordingCreator:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.created: list[ImageRegistry] = []

    def create(self, cr: ImageRegistry) -> ImageRegistry:
        self.created.append(cr)
        if self.error is not None:
            raise self.error
        return cr


def test_default_image_registry_is_managed_with_ephemeral_storage() -> None:
    cr = default_image_registry("image-registry", secret_fn=lambda: "fixed")

    assert cr.management_state is ManagementState.MANAGED
    assert cr.spec["replicas"] == 1
    assert cr.spec["httpSecret"] == "fixed"
    assert cr.spec["storage"] == {"filesystem": {"volumeSource": {"emptyDir": {}}}}


def test_default_http_secret_is_random() -> None:
    first = default_image_registry("image-registry").spec["httpSecret"]
    second = default_image_registry("image-registry").spec["httpSecret"]

    assert len(first) == 128
    assert first != second


def test_bootstrap_creates_named_object() -> None:
    creator = RecordingCreator()

    bootstrap(creator, "image-registry")

    assert [cr.name for cr in creator.created] == ["image-registry"]


def test_bootstrap_tolerates_already_exists() -> None:
    bootstrap(RecordingCreator(ConflictError("already exists")), "image-registry")


def test_bootstrap_propagates_other_failures() -> None:
    with pytest.raises(TransientError):
        bootstrap(RecordingCreator(TransientError("forbidden")), "image-registry")

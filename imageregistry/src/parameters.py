from __future__ import annotations

from dataclasses import dataclass, field

IMAGE_REGISTRY_GROUP = "imageregistry.operator.openshift.io"
IMAGE_REGISTRY_VERSION = "v1alpha1"
IMAGE_REGISTRY_PLURAL = "imageregistries"
IMAGE_REGISTRY_KIND = "ImageRegistry"

CLUSTER_OPERATOR_GROUP = "config.openshift.io"
CLUSTER_OPERATOR_VERSION = "v1"
CLUSTER_OPERATOR_PLURAL = "clusteroperators"

ROUTE_GROUP = "route.openshift.io"
ROUTE_VERSION = "v1"
ROUTE_PLURAL = "routes"

FINALIZER = "imageregistry.operator.openshift.io/finalizer"


def resource_name(namespace: str) -> str:
    """Return the singleton ImageRegistry name for a target namespace.

    ``openshift-image-registry`` maps to ``image-registry``; namespaces without
    the ``openshift-`` prefix are used as-is.
    """
    prefix = "openshift-"
    if namespace.startswith(prefix) and len(namespace) > len(prefix):
        return namespace[len(prefix):]
    return namespace


@dataclass(frozen=True)
class Globals:
    """Fixed shape of the managed registry workload."""

    namespace: str
    image: str
    labels: dict[str, str] = field(default_factory=lambda: {"docker-registry": "default"})
    service_account: str = "registry"
    container_port: int = 5000
    healthz_route: str = "/healthz"
    healthz_timeout_seconds: int = 5
    service_name: str = "image-registry"

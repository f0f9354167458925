from __future__ import annotations

import logging
from dataclasses import dataclass

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    RbacAuthorizationV1Api,
)
from kubernetes.config.config_exception import ConfigException

from imageregistry.src.errors import ConflictError, TransientError
from imageregistry.src.metrics import METRICS
from imageregistry.src.model import ImageRegistry
from imageregistry.src.parameters import (
    IMAGE_REGISTRY_GROUP,
    IMAGE_REGISTRY_PLURAL,
    IMAGE_REGISTRY_VERSION,
)

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class Clients:
    """API clients shared by every component for the operator's lifetime."""

    core: CoreV1Api
    apps: AppsV1Api
    rbac: RbacAuthorizationV1Api
    custom: CustomObjectsApi


def build_clients() -> Clients:
    """Return API clients using the active kube configuration."""
    return Clients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        rbac=client.RbacAuthorizationV1Api(),
        custom=client.CustomObjectsApi(),
    )


class ImageRegistryStore:
    """Authoritative write path for ImageRegistry objects.

    Writes go straight to the API server, never through the informer cache.
    Updates carry the object's ``resourceVersion``, so a concurrent change by
    another actor comes back as :class:`ConflictError`.
    """

    def __init__(self, custom_api: CustomObjectsApi) -> None:
        self.custom_api = custom_api

    def create(self, cr: ImageRegistry) -> ImageRegistry:
        """Create *cr*; ``409 AlreadyExists`` propagates as :class:`ConflictError`."""
        try:
            obj = self.custom_api.create_cluster_custom_object(
                group=IMAGE_REGISTRY_GROUP,
                version=IMAGE_REGISTRY_VERSION,
                plural=IMAGE_REGISTRY_PLURAL,
                body=cr.to_dict(),
            )
        except ApiException as exc:
            if exc.status == 409:
                raise ConflictError(f"imageregistry {cr.name!r} already exists") from exc
            raise TransientError(
                f"failed to create imageregistry {cr.name!r}: {exc.reason}"
            ) from exc
        return ImageRegistry.from_dict(obj)

    def update(self, cr: ImageRegistry) -> ImageRegistry:
        try:
            obj = self.custom_api.replace_cluster_custom_object(
                group=IMAGE_REGISTRY_GROUP,
                version=IMAGE_REGISTRY_VERSION,
                plural=IMAGE_REGISTRY_PLURAL,
                name=cr.name,
                body=cr.to_dict(),
            )
        except ApiException as exc:
            if exc.status == 409:
                METRICS.status_updates_total.labels(result="conflict").inc()
                raise ConflictError(
                    f"imageregistry {cr.name!r} was modified concurrently"
                ) from exc
            METRICS.status_updates_total.labels(result="error").inc()
            raise TransientError(
                f"failed to update imageregistry {cr.name!r}: {exc.reason}"
            ) from exc
        METRICS.status_updates_total.labels(result="success").inc()
        return ImageRegistry.from_dict(obj)

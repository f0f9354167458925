from __future__ import annotations

import logging
from typing import Any, Protocol

from kubernetes.client import ApiException, CustomObjectsApi

from imageregistry.src.errors import TransientError
from imageregistry.src.parameters import (
    CLUSTER_OPERATOR_GROUP,
    CLUSTER_OPERATOR_PLURAL,
    CLUSTER_OPERATOR_VERSION,
)

LOGGER = logging.getLogger(__name__)


class StatusPublisher(Protocol):
    def create(self) -> None: ...


class ClusterOperatorStatus:
    """Publishes the operator's existence record on the cluster status surface."""

    def __init__(self, custom_api: CustomObjectsApi, name: str, namespace: str) -> None:
        self.custom_api = custom_api
        self.name = name
        self.namespace = namespace

    def manifest(self) -> dict[str, Any]:
        return {
            "apiVersion": f"{CLUSTER_OPERATOR_GROUP}/{CLUSTER_OPERATOR_VERSION}",
            "kind": "ClusterOperator",
            "metadata": {"name": self.name},
            "status": {
                "relatedObjects": [
                    {"group": "", "resource": "namespaces", "name": self.namespace}
                ]
            },
        }

    def create(self) -> None:
        """Create the ClusterOperator object; an existing one is left alone."""
        try:
            self.custom_api.create_cluster_custom_object(
                group=CLUSTER_OPERATOR_GROUP,
                version=CLUSTER_OPERATOR_VERSION,
                plural=CLUSTER_OPERATOR_PLURAL,
                body=self.manifest(),
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("ClusterOperator %s already exists", self.name)
                return
            raise TransientError(
                f"failed to create ClusterOperator {self.name!r}: {exc.reason}"
            ) from exc
        LOGGER.info("Created ClusterOperator %s", self.name)

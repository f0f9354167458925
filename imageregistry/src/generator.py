from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from typing import Any, Protocol

from kubernetes.client import (
    ApiException,
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1EmptyDirVolumeSource,
    V1EnvVar,
    V1HTTPGetAction,
    V1LabelSelector,
    V1ObjectMeta,
    V1PersistentVolumeClaimVolumeSource,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Probe,
    V1Service,
    V1ServiceAccount,
    V1ServicePort,
    V1ServiceSpec,
    V1Volume,
    V1VolumeMount,
)

from imageregistry.src.errors import PermanentError, TransientError
from imageregistry.src.kube import Clients
from imageregistry.src.model import ImageRegistry
from imageregistry.src.parameters import Globals

LOGGER = logging.getLogger(__name__)

STORAGE_BACKENDS = ("filesystem", "s3", "gcs", "azure", "swift")
REGISTRY_STORAGE_PATH = "/registry"


class Generator(Protocol):
    def converge(self, cr: ImageRegistry) -> bool: ...

    def teardown(self, cr: ImageRegistry) -> None: ...


def verify_resource(cr: ImageRegistry, params: Globals) -> None:
    """Reject specs that no amount of retrying can converge.

    Raises :class:`PermanentError` before any resource is touched.
    """
    spec = cr.spec

    replicas = spec.get("replicas")
    if replicas is not None and (
        isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 0
    ):
        raise PermanentError(f"spec.replicas must be a non-negative integer, got: {replicas!r}")

    storage = spec.get("storage") or {}
    if not isinstance(storage, dict):
        raise PermanentError("spec.storage must be an object")
    configured = [name for name in STORAGE_BACKENDS if storage.get(name)]
    if len(configured) > 1:
        raise PermanentError(
            "spec.storage must configure at most one backend, got: " + ", ".join(configured)
        )

    http_secret = spec.get("httpSecret")
    if http_secret is not None and not isinstance(http_secret, str):
        raise PermanentError("spec.httpSecret must be a string")

    if not params.image:
        raise PermanentError("registry image is not configured")


def _generate_http_secret() -> str:
    return secrets.token_hex(64)


class ResourceGenerator:
    """Create, update and delete the registry's ServiceAccount, Service and Deployment.

    Every API failure is wrapped in :class:`TransientError`; deletes of
    objects that are already gone succeed silently.
    """

    def __init__(
        self,
        clients: Clients,
        params: Globals,
        secret_fn: Callable[[], str] = _generate_http_secret,
        logger: logging.Logger | None = None,
    ) -> None:
        self.clients = clients
        self.params = params
        self.secret_fn = secret_fn
        self.logger = logger or LOGGER

    def converge(self, cr: ImageRegistry) -> bool:
        """Apply the managed resources for *cr*.

        Returns True when *cr* itself was modified (a generated
        ``spec.httpSecret``) and must be written back.
        """
        modified = False
        if not cr.spec.get("httpSecret"):
            cr.spec["httpSecret"] = self.secret_fn()
            modified = True

        namespace = self.params.namespace
        self._apply(
            "ServiceAccount",
            self.params.service_account,
            read=lambda: self.clients.core.read_namespaced_service_account(
                name=self.params.service_account, namespace=namespace
            ),
            create=lambda body: self.clients.core.create_namespaced_service_account(
                namespace=namespace, body=body
            ),
            patch=lambda body: self.clients.core.patch_namespaced_service_account(
                name=self.params.service_account, namespace=namespace, body=body
            ),
            body=self.service_account_manifest(),
        )
        self._apply(
            "Service",
            self.params.service_name,
            read=lambda: self.clients.core.read_namespaced_service(
                name=self.params.service_name, namespace=namespace
            ),
            create=lambda body: self.clients.core.create_namespaced_service(
                namespace=namespace, body=body
            ),
            patch=lambda body: self.clients.core.patch_namespaced_service(
                name=self.params.service_name, namespace=namespace, body=body
            ),
            body=self.service_manifest(),
        )
        self._apply(
            "Deployment",
            cr.name,
            read=lambda: self.clients.apps.read_namespaced_deployment(
                name=cr.name, namespace=namespace
            ),
            create=lambda body: self.clients.apps.create_namespaced_deployment(
                namespace=namespace, body=body
            ),
            patch=lambda body: self.clients.apps.patch_namespaced_deployment(
                name=cr.name, namespace=namespace, body=body
            ),
            body=self.deployment_manifest(cr),
        )
        return modified

    def teardown(self, cr: ImageRegistry) -> None:
        namespace = self.params.namespace
        self._delete(
            "Deployment",
            cr.name,
            lambda: self.clients.apps.delete_namespaced_deployment(
                name=cr.name, namespace=namespace
            ),
        )
        self._delete(
            "Service",
            self.params.service_name,
            lambda: self.clients.core.delete_namespaced_service(
                name=self.params.service_name, namespace=namespace
            ),
        )
        self._delete(
            "ServiceAccount",
            self.params.service_account,
            lambda: self.clients.core.delete_namespaced_service_account(
                name=self.params.service_account, namespace=namespace
            ),
        )

    def _apply(
        self,
        kind: str,
        name: str,
        read: Callable[[], Any],
        create: Callable[[Any], Any],
        patch: Callable[[Any], Any],
        body: Any,
    ) -> None:
        try:
            try:
                read()
            except ApiException as exc:
                if exc.status != 404:
                    raise
                create(body)
                self.logger.info("Created %s %s/%s", kind, self.params.namespace, name)
                return
            patch(body)
            self.logger.debug("Updated %s %s/%s", kind, self.params.namespace, name)
        except ApiException as exc:
            raise TransientError(
                f"failed to apply {kind} {self.params.namespace}/{name}: {exc.reason}"
            ) from exc

    def _delete(self, kind: str, name: str, delete: Callable[[], Any]) -> None:
        try:
            delete()
            self.logger.info("Deleted %s %s/%s", kind, self.params.namespace, name)
        except ApiException as exc:
            if exc.status == 404:
                return
            raise TransientError(
                f"failed to delete {kind} {self.params.namespace}/{name}: {exc.reason}"
            ) from exc

    def service_account_manifest(self) -> V1ServiceAccount:
        return V1ServiceAccount(
            metadata=V1ObjectMeta(
                name=self.params.service_account,
                namespace=self.params.namespace,
                labels=dict(self.params.labels),
            )
        )

    def service_manifest(self) -> V1Service:
        port = self.params.container_port
        return V1Service(
            metadata=V1ObjectMeta(
                name=self.params.service_name,
                namespace=self.params.namespace,
                labels=dict(self.params.labels),
            ),
            spec=V1ServiceSpec(
                selector=dict(self.params.labels),
                ports=[
                    V1ServicePort(
                        name=f"{port}-tcp",
                        port=port,
                        protocol="TCP",
                        target_port=port,
                    )
                ],
            ),
        )

    def _volumes(self, cr: ImageRegistry) -> list[V1Volume]:
        filesystem = (cr.spec.get("storage") or {}).get("filesystem") or {}
        source = filesystem.get("volumeSource") or {}
        claim = (source.get("persistentVolumeClaim") or {}).get("claimName")
        if claim:
            return [
                V1Volume(
                    name="registry-storage",
                    persistent_volume_claim=V1PersistentVolumeClaimVolumeSource(claim_name=claim),
                )
            ]
        return [V1Volume(name="registry-storage", empty_dir=V1EmptyDirVolumeSource())]

    def deployment_manifest(self, cr: ImageRegistry) -> V1Deployment:
        params = self.params
        port = params.container_port
        probe = V1Probe(
            http_get=V1HTTPGetAction(path=params.healthz_route, port=port, scheme="HTTP"),
            timeout_seconds=params.healthz_timeout_seconds,
        )
        container = V1Container(
            name="registry",
            image=params.image,
            ports=[V1ContainerPort(container_port=port, protocol="TCP")],
            env=[
                V1EnvVar(name="REGISTRY_HTTP_ADDR", value=f":{port}"),
                V1EnvVar(name="REGISTRY_HTTP_SECRET", value=str(cr.spec.get("httpSecret", ""))),
            ],
            liveness_probe=probe,
            readiness_probe=probe,
            volume_mounts=[
                V1VolumeMount(name="registry-storage", mount_path=REGISTRY_STORAGE_PATH)
            ],
        )
        replicas = cr.spec.get("replicas")
        return V1Deployment(
            metadata=V1ObjectMeta(
                name=cr.name,
                namespace=params.namespace,
                labels=dict(params.labels),
            ),
            spec=V1DeploymentSpec(
                replicas=1 if replicas is None else replicas,
                selector=V1LabelSelector(match_labels=dict(params.labels)),
                template=V1PodTemplateSpec(
                    metadata=V1ObjectMeta(labels=dict(params.labels)),
                    spec=V1PodSpec(
                        service_account_name=params.service_account,
                        containers=[container],
                        volumes=self._volumes(cr),
                    ),
                ),
            ),
        )

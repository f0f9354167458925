from __future__ import annotations

from typing import Any

from imageregistry.src.errors import CacheNotSyncedError
from imageregistry.src.informer import Store
from imageregistry.src.model import ImageRegistry


class StateCache:
    """Read-only view over the informer stores the sync pass depends on.

    Deployments and Services are looked up in the target namespace (their
    informers are scoped to it); ImageRegistries are cluster scoped.  The
    desired state is decoded into a fresh :class:`ImageRegistry` on every
    read, so the sync pass can mutate it freely without touching the cache.
    """

    def __init__(self, namespace: str) -> None:
        self.namespace = namespace
        self.image_registries: Store | None = None
        self.deployments: Store | None = None
        self.services: Store | None = None

    def assign(self, slot: str, store: Store) -> None:
        if slot not in {"image_registries", "deployments", "services"}:
            raise ValueError(f"unknown cache slot {slot!r}")
        setattr(self, slot, store)

    @staticmethod
    def _require(store: Store | None, kind: str) -> Store:
        if store is None:
            raise CacheNotSyncedError(f"{kind} cache is not available yet")
        return store

    def get_desired_state(self, name: str) -> ImageRegistry:
        obj = self._require(self.image_registries, "ImageRegistry").get(name)
        return ImageRegistry.from_dict(obj)

    def get_deployment(self, name: str) -> Any:
        return self._require(self.deployments, "Deployment").get(name)

    def get_service(self, name: str) -> Any:
        return self._require(self.services, "Service").get(name)

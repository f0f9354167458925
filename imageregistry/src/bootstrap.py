from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from typing import Protocol

from imageregistry.src.errors import ConflictError
from imageregistry.src.model import ImageRegistry, ManagementState

LOGGER = logging.getLogger(__name__)


class ImageRegistryCreator(Protocol):
    def create(self, cr: ImageRegistry) -> ImageRegistry: ...


def default_image_registry(
    name: str,
    secret_fn: Callable[[], str] = lambda: secrets.token_hex(64),
) -> ImageRegistry:
    """Build the ImageRegistry created when none exists yet."""
    return ImageRegistry(
        name=name,
        spec={
            "managementState": ManagementState.MANAGED.value,
            "replicas": 1,
            "httpSecret": secret_fn(),
            "storage": {"filesystem": {"volumeSource": {"emptyDir": {}}}},
        },
    )


def bootstrap(store: ImageRegistryCreator, name: str) -> None:
    """Create the default ImageRegistry.

    An object that already exists is not an error: the cache simply has not
    seen it yet and the resulting watch event triggers another pass.  Any
    other failure propagates as :class:`TransientError`.
    """
    LOGGER.info("No imageregistry found; creating the default one")
    try:
        created = store.create(default_image_registry(name))
    except ConflictError:
        LOGGER.info("Default imageregistry already exists; waiting for the cache to catch up")
        return
    LOGGER.info("Created %s", created.describe())

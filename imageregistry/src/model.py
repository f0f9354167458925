from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from imageregistry.src.parameters import (
    IMAGE_REGISTRY_GROUP,
    IMAGE_REGISTRY_KIND,
    IMAGE_REGISTRY_VERSION,
)


class ManagementState(str, Enum):
    MANAGED = "Managed"
    UNMANAGED = "Unmanaged"
    REMOVED = "Removed"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> ManagementState:
        """Map a raw ``spec.managementState`` value onto the enum.

        Empty and unrecognized values become ``UNKNOWN`` so the sync pass can
        log them and move on.
        """
        for member in cls:
            if member.value == value:
                return member
        return cls.UNKNOWN


@dataclass
class Condition:
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Condition:
        return cls(
            type=str(raw.get("type", "")),
            status=str(raw.get("status", "Unknown")),
            reason=str(raw.get("reason") or ""),
            message=str(raw.get("message") or ""),
            last_transition_time=raw.get("lastTransitionTime"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "status": self.status}
        if self.reason:
            out["reason"] = self.reason
        if self.message:
            out["message"] = self.message
        if self.last_transition_time is not None:
            out["lastTransitionTime"] = self.last_transition_time
        return out


@dataclass
class ImageRegistryStatus:
    observed_generation: int = 0
    internal_registry_hostname: str = ""
    conditions: list[Condition] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> ImageRegistryStatus:
        raw = dict(raw or {})
        observed = raw.pop("observedGeneration", 0) or 0
        hostname = raw.pop("internalRegistryHostname", "") or ""
        conditions = [
            Condition.from_dict(item)
            for item in raw.pop("conditions", None) or []
            if isinstance(item, dict)
        ]
        return cls(
            observed_generation=int(observed),
            internal_registry_hostname=str(hostname),
            conditions=conditions,
            extra=raw,
        )

    def to_dict(self) -> dict[str, Any]:
        out = copy.deepcopy(self.extra)
        out["observedGeneration"] = self.observed_generation
        if self.internal_registry_hostname:
            out["internalRegistryHostname"] = self.internal_registry_hostname
        if self.conditions:
            out["conditions"] = [condition.to_dict() for condition in self.conditions]
        return out

    def get_condition(self, condition_type: str) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


@dataclass
class ImageRegistry:
    """Decoded ``ImageRegistry`` custom resource.

    The controller reads and writes only a handful of fields; everything
    else in ``metadata`` and ``spec`` is carried through untouched so an
    update never drops fields written by other actors.
    """

    name: str
    generation: int = 0
    resource_version: str | None = None
    deletion_timestamp: str | None = None
    finalizers: list[str] = field(default_factory=list)
    spec: dict[str, Any] = field(default_factory=dict)
    status: ImageRegistryStatus = field(default_factory=ImageRegistryStatus)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def management_state(self) -> ManagementState:
        return ManagementState.parse(self.spec.get("managementState"))

    @property
    def raw_management_state(self) -> Any:
        return self.spec.get("managementState")

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Append *finalizer* if missing; return True when the object changed."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> ImageRegistry:
        obj = copy.deepcopy(obj)
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            generation=int(metadata.get("generation") or 0),
            resource_version=metadata.get("resourceVersion"),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            finalizers=list(metadata.get("finalizers") or []),
            spec=obj.get("spec") or {},
            status=ImageRegistryStatus.from_dict(obj.get("status")),
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        metadata = copy.deepcopy(self.metadata)
        metadata["name"] = self.name
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version
        if self.finalizers:
            metadata["finalizers"] = list(self.finalizers)
        else:
            metadata.pop("finalizers", None)
        return {
            "apiVersion": f"{IMAGE_REGISTRY_GROUP}/{IMAGE_REGISTRY_VERSION}",
            "kind": IMAGE_REGISTRY_KIND,
            "metadata": metadata,
            "spec": copy.deepcopy(self.spec),
            "status": self.status.to_dict(),
        }

    def describe(self) -> str:
        """Short identity used in log lines."""
        return f"imageregistry {self.name!r} (resourceVersion={self.resource_version})"

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from imageregistry.src.errors import PermanentError, ReconcileError
from imageregistry.src.model import Condition, ImageRegistry, ImageRegistryStatus, ManagementState

AVAILABLE = "Available"
PROGRESSING = "Progressing"
FAILING = "Failing"
REMOVED = "Removed"

TRUE = "True"
FALSE = "False"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def set_condition(
    status: ImageRegistryStatus,
    condition_type: str,
    value: str,
    reason: str,
    message: str,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> bool:
    """Set a condition in place; return True if anything observable changed.

    ``lastTransitionTime`` only moves when the condition's status flips, so
    rewriting an identical condition is a no-op and a second sync pass over
    unchanged state produces no write.
    """
    existing = status.get_condition(condition_type)
    if existing is None:
        status.conditions.append(
            Condition(
                type=condition_type,
                status=value,
                reason=reason,
                message=message,
                last_transition_time=now_fn(),
            )
        )
        return True

    changed = False
    if existing.status != value:
        existing.status = value
        existing.last_transition_time = now_fn()
        changed = True
    if existing.reason != reason:
        existing.reason = reason
        changed = True
    if existing.message != message:
        existing.message = message
        changed = True
    return changed


def _deployment_counts(deployment: Any) -> tuple[int, int, int, bool]:
    """Return ``(desired, updated, available, generation_observed)`` for a deployment."""
    spec = getattr(deployment, "spec", None)
    status = getattr(deployment, "status", None)
    metadata = getattr(deployment, "metadata", None)

    desired = getattr(spec, "replicas", None)
    desired = 1 if desired is None else int(desired)
    updated = int(getattr(status, "updated_replicas", None) or 0)
    available = int(getattr(status, "available_replicas", None) or 0)

    generation = getattr(metadata, "generation", None)
    observed = getattr(status, "observed_generation", None)
    generation_observed = generation is None or (observed is not None and observed >= generation)
    return desired, updated, available, generation_observed


def sync_status(
    cr: ImageRegistry,
    deployment: Any,
    apply_error: ReconcileError | None,
    removed: bool,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> bool:
    """Recompute the ImageRegistry conditions from the observed world.

    Returns True if ``cr.status`` changed and needs to be persisted.
    """
    status = cr.status
    changed = False

    def put(condition_type: str, value: str, reason: str, message: str) -> None:
        nonlocal changed
        changed = set_condition(status, condition_type, value, reason, message, now_fn) or changed

    if removed:
        put(AVAILABLE, FALSE, "Removed", "The registry is removed")
        if deployment is not None:
            put(PROGRESSING, TRUE, "DeletingResources", "The registry resources are being removed")
        else:
            put(PROGRESSING, FALSE, "Removed", "All registry resources are removed")
        put(REMOVED, TRUE, "Removed", "The registry is removed")
    else:
        if deployment is None:
            put(AVAILABLE, FALSE, "DeploymentNotFound", "The deployment does not exist")
            if cr.management_state is ManagementState.MANAGED:
                put(PROGRESSING, TRUE, "DeploymentNotFound", "The deployment does not exist")
            else:
                put(PROGRESSING, FALSE, "DeploymentNotFound", "The deployment does not exist")
        else:
            desired, updated, available, generation_observed = _deployment_counts(deployment)
            if available > 0:
                put(AVAILABLE, TRUE, "MinimumAvailability", "The deployment has minimum availability")
            else:
                put(
                    AVAILABLE,
                    FALSE,
                    "NoReplicasAvailable",
                    "The deployment does not have available replicas",
                )
            if not generation_observed or updated < desired or available < desired:
                put(
                    PROGRESSING,
                    TRUE,
                    "DeploymentRolling",
                    f"The deployment has {available}/{desired} available replicas",
                )
            else:
                put(PROGRESSING, FALSE, "DeploymentRolledOut", "The deployment is up to date")
        put(REMOVED, FALSE, "AsExpected", "The registry is not removed")

    if apply_error is None:
        put(FAILING, FALSE, "AsExpected", "")
    elif isinstance(apply_error, PermanentError):
        put(FAILING, TRUE, "InvalidSpec", str(apply_error))
    else:
        put(FAILING, TRUE, "ApplyFailed", str(apply_error))

    return changed

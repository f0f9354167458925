from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_NAMESPACE = "openshift-image-registry"
DEFAULT_OPERATOR_NAME = "cluster-image-registry-operator"
DEFAULT_IMAGE = "quay.io/openshift/origin-docker-registry:latest"


class ConfigError(RuntimeError):
    """Raised when the operator configuration is invalid."""


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int
    controller_stop_timeout_seconds: int


@dataclass(frozen=True)
class OperatorConfig:
    """Immutable operator configuration loaded at startup.

    Attributes:
        namespace: Target namespace the registry is deployed into.
        operator_namespace: Namespace the operator itself runs in; holds the
            leader-election lease.
        operator_name: Name of the ClusterOperator existence record.
        image: Registry container image.
    """

    namespace: str
    operator_namespace: str
    operator_name: str
    image: str
    resync_seconds: int
    cache_sync_timeout_seconds: int
    health_port: int
    log_level: str
    leader_election: LeaderElectionConfig


def _required_name(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> OperatorConfig:
    """Load operator config from the environment.

    Environment variables (with defaults):
        ``IMAGE_REGISTRY_NAMESPACE`` - target namespace (``openshift-image-registry``).
        ``WATCH_NAMESPACE`` - operator namespace (the target namespace).
        ``OPERATOR_NAME`` - ClusterOperator name (``cluster-image-registry-operator``).
        ``IMAGE`` - registry image.
        ``RESYNC_PERIOD_SECONDS`` - informer resync period (``600``).
        ``CACHE_SYNC_TIMEOUT_SECONDS`` - startup cache-sync window (``120``).
        ``HEALTH_PORT`` - health/metrics port (``8080``).
        ``LEADER_ELECTION_*`` - lease-based leader election settings.
    """
    values = env if env is not None else os.environ

    namespace = _required_name(values, "IMAGE_REGISTRY_NAMESPACE", DEFAULT_NAMESPACE)
    operator_namespace = _required_name(values, "WATCH_NAMESPACE", namespace)
    operator_name = _required_name(values, "OPERATOR_NAME", DEFAULT_OPERATOR_NAME)
    image = _required_name(values, "IMAGE", DEFAULT_IMAGE)

    lease_duration = env_int("LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values)
    renew_deadline = env_int("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values)
    retry_period = env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=values)
    if renew_deadline >= lease_duration:
        raise ValueError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ValueError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    leader_election = LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", f"{operator_name}-lock"),
        identity=values.get(
            "LEADER_ELECTION_IDENTITY",
            values.get("HOSTNAME", values.get("POD_NAME", "unknown")),
        ),
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        # Must exceed a typical sync pass so a leadership handoff never runs
        # two workers at once.
        controller_stop_timeout_seconds=env_int(
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1, env=values
        ),
    )

    return OperatorConfig(
        namespace=namespace,
        operator_namespace=operator_namespace,
        operator_name=operator_name,
        image=image,
        resync_seconds=env_int("RESYNC_PERIOD_SECONDS", 600, minimum=0, env=values),
        cache_sync_timeout_seconds=env_int(
            "CACHE_SYNC_TIMEOUT_SECONDS", 120, minimum=1, env=values
        ),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
        leader_election=leader_election,
    )

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

# Annotations read from / written back to the Deployment.
ANNOTATION_PORT = "routesync.io/port"
ANNOTATION_URL = "routesync.io/route-url"
ANNOTATION_SYNCED = "routesync.io/route-synced-at"
ANNOTATION_ROUTE_ID = "routesync.io/route-id"


@dataclass(frozen=True)
class Workload:
    """A single-replica candidate for a route, as seen by the controller."""

    namespace: str
    name: str
    uid: str = ""
    replicas: int = 1
    ready: bool = False
    identity: str | None = None
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)
    selector: Mapping[str, str] = field(default_factory=dict)
    resource_version: str | None = None

    @property
    def key(self) -> str:
        return workload_key(self.namespace, self.name)

    @property
    def eligible(self) -> bool:
        return self.replicas == 1 and self.ready


def workload_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def port_from_annotations(annotations: Mapping[str, str] | None, default_port: int) -> int:
    """Return the port override annotation, or default_port when it is absent.

    Raises ValueError for a malformed or out-of-range value.
    """
    raw = (annotations or {}).get(ANNOTATION_PORT)
    if raw is None:
        return default_port
    try:
        port = int(str(raw).strip())
    except ValueError:
        raise ValueError(f"invalid port annotation {raw!r}") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"port out of range (1-65535): {port}")
    return port


def _condition_status(conditions: Any, cond_type: str) -> str | None:
    for cond in conditions or []:
        if getattr(cond, "type", None) == cond_type:
            return getattr(cond, "status", None)
    return None


def is_deployment_ready(deployment: Any) -> bool:
    """At least one ready replica and the Available condition not False."""
    status = getattr(deployment, "status", None)
    if status is None:
        return False
    if (getattr(status, "ready_replicas", None) or 0) < 1:
        return False
    return _condition_status(getattr(status, "conditions", None), "Available") != "False"


def is_pod_ready(pod: Any) -> bool:
    metadata = getattr(pod, "metadata", None)
    if metadata is not None and getattr(metadata, "deletion_timestamp", None) is not None:
        return False
    status = getattr(pod, "status", None)
    if status is None:
        return False
    return _condition_status(getattr(status, "conditions", None), "Ready") == "True"


def desired_replica_count(deployment: Any) -> int:
    # Kubernetes defaults spec.replicas to 1 when unset.
    spec = getattr(deployment, "spec", None)
    replicas = getattr(spec, "replicas", None) if spec is not None else None
    return 1 if replicas is None else int(replicas)


def workload_from_deployment(deployment: Any, identity_label: str) -> Workload:
    """Build a Workload from a kubernetes V1Deployment."""
    metadata = deployment.metadata
    labels = dict(metadata.labels or {})
    spec = getattr(deployment, "spec", None)
    selector = getattr(spec, "selector", None) if spec is not None else None
    match_labels = dict(getattr(selector, "match_labels", None) or {})
    return Workload(
        namespace=metadata.namespace or "",
        name=metadata.name,
        uid=metadata.uid or "",
        replicas=desired_replica_count(deployment),
        ready=is_deployment_ready(deployment),
        identity=labels.get(identity_label) or None,
        labels=labels,
        annotations=dict(metadata.annotations or {}),
        selector=match_labels,
        resource_version=metadata.resource_version,
    )

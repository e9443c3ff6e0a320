from __future__ import annotations

import re

# Label values cannot contain ':', so "routesync:<identity>" parses unambiguously.
ROUTE_ID_PREFIX = "routesync:"

_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class InvalidRouteId(ValueError):
    pass


def normalize_identity(value: str | None) -> str:
    """Lowercase a workload identity and check it is a DNS-1123 label.

    The identity becomes the first label of the generated hostname, so
    ``Foo`` and ``foo`` name the same route and ``a.b`` or ``a_b`` are rejected.
    """
    identity = (value or "").strip().lower()
    if not identity:
        raise InvalidRouteId("identity cannot be empty")
    if len(identity) > 63 or not _DNS_LABEL_RE.match(identity):
        raise InvalidRouteId(f"identity {value!r} is not a valid DNS label")
    return identity


def build_route_id(identity: str) -> str:
    return f"{ROUTE_ID_PREFIX}{normalize_identity(identity)}"


def parse_route_id(route_id: str) -> str:
    """Return the workload identity encoded in a managed route id."""
    if not is_managed_route_id(route_id):
        raise InvalidRouteId(f"invalid route id format: {route_id!r}")
    return route_id[len(ROUTE_ID_PREFIX):]


def is_managed_route_id(route_id: str | None) -> bool:
    return bool(route_id) and route_id.startswith(ROUTE_ID_PREFIX) and len(route_id) > len(ROUTE_ID_PREFIX)


def build_hostname(identity: str, base_domain: str) -> str:
    return f"{normalize_identity(identity)}.{base_domain}"

from __future__ import annotations

import ipaddress
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

import httpx

from .route_ids import is_managed_route_id

logger = logging.getLogger(__name__)


class RouteTableError(Exception):
    pass


class RouteTableUnavailable(RouteTableError):
    """The admin endpoint could not be reached or did not answer in time."""


class RouteTableRejected(RouteTableError):
    """The admin endpoint answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class RouteDescriptor:
    route_id: str
    hostnames: tuple[str, ...]
    target: str

    def matches(self, hostnames: Iterable[str], target: str) -> bool:
        return self.hostnames == tuple(hostnames) and self.target == target


class RouteCommands(Protocol):
    """What the event handler and reconciler need from the routing engine."""

    def create_route(self, route_id: str, hostnames: Iterable[str], target: str, timeout_s: float | None = None) -> None: ...

    def delete_route(self, route_id: str, timeout_s: float | None = None) -> None: ...


def split_target(target: str) -> tuple[str, int]:
    """Validate an ``ip:port`` dial address and return its parts."""
    host, sep, port_s = (target or "").rpartition(":")
    if not sep or not host:
        raise ValueError(f"invalid target address: {target!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        ipaddress.ip_address(host)
    except ValueError:
        raise ValueError(f"invalid IP address: {host!r}") from None
    try:
        port = int(port_s)
    except ValueError:
        raise ValueError(f"invalid port: {port_s!r}") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"port out of range (1-65535): {port}")
    return host, port


def format_target(ip: str, port: int) -> str:
    if ":" in ip:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def route_payload(route_id: str, hostnames: Iterable[str], target: str) -> dict[str, Any]:
    return {
        "@id": route_id,
        "match": [{"host": list(hostnames)}],
        "handle": [
            {
                "handler": "reverse_proxy",
                "upstreams": [{"dial": target}],
            }
        ],
    }


def parse_route(raw: Any, route_id: str | None = None) -> RouteDescriptor | None:
    """Read id, hosts and the first upstream dial out of a route object."""
    if not isinstance(raw, dict):
        return None
    rid = raw.get("@id") or route_id
    if not isinstance(rid, str) or not rid:
        return None

    hostnames: list[str] = []
    for m in raw.get("match") or []:
        if isinstance(m, dict):
            hostnames.extend(h for h in (m.get("host") or []) if isinstance(h, str))

    target = ""
    for h in raw.get("handle") or []:
        if not isinstance(h, dict):
            continue
        upstreams = h.get("upstreams") or []
        if upstreams and isinstance(upstreams[0], dict):
            target = str(upstreams[0].get("dial") or "")
            break

    return RouteDescriptor(route_id=rid, hostnames=tuple(hostnames), target=target)


class RouteTableClient:
    """Idempotent client for the routing engine's admin API."""

    def __init__(
        self,
        base_url: str,
        server_name: str = "srv0",
        timeout_s: float = 10.0,
        health_timeout_s: float = 2.0,
        health_path: str = "/config/",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.server_name = server_name
        self.timeout_s = timeout_s
        self.health_timeout_s = health_timeout_s
        self.health_path = health_path
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout_s,
            transport=transport,
            follow_redirects=False,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5, keepalive_expiry=30.0),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "RouteTableClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def routes_path(self) -> str:
        return f"/config/apps/http/servers/{self.server_name}/routes"

    @staticmethod
    def route_path(route_id: str) -> str:
        return f"/id/{route_id}"

    def _request(self, method: str, path: str, timeout_s: float | None = None, **kwargs: Any) -> httpx.Response:
        timeout = self.timeout_s if timeout_s is None else timeout_s
        try:
            return self._client.request(method, path, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise RouteTableUnavailable(f"{method} {path}: timed out after {timeout}s") from e
        except httpx.TransportError as e:
            raise RouteTableUnavailable(f"{method} {path}: {type(e).__name__}: {e}") from e

    @staticmethod
    def _check(resp: httpx.Response, what: str) -> None:
        if 200 <= resp.status_code < 300:
            return
        body = resp.text[:500]
        raise RouteTableRejected(f"{what}: HTTP {resp.status_code} - {body}", status_code=resp.status_code, body=body)

    @staticmethod
    def _json(resp: httpx.Response, what: str) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise RouteTableError(f"{what}: invalid JSON response") from e

    def create_route(self, route_id: str, hostnames: Iterable[str], target: str, timeout_s: float | None = None) -> None:
        """Create a route; no-op when an identical one exists, replace when it differs."""
        if not route_id:
            raise ValueError("route_id cannot be empty")
        hosts = tuple(hostnames)
        if not hosts or not all(isinstance(h, str) and h for h in hosts):
            raise ValueError("hostnames cannot be empty")
        split_target(target)

        existing = self.get_route(route_id, timeout_s=timeout_s)
        if existing is not None:
            if existing.matches(hosts, target):
                logger.debug("Route %s already up to date", route_id)
                return
            logger.info(
                "Route %s differs (%s -> %s), replacing",
                route_id,
                existing.target,
                target,
                extra={"route_id": route_id},
            )
            self.delete_route(route_id, timeout_s=timeout_s)

        resp = self._request("POST", self.routes_path, timeout_s=timeout_s, json=route_payload(route_id, hosts, target))
        self._check(resp, f"create route {route_id}")

    def delete_route(self, route_id: str, timeout_s: float | None = None) -> None:
        """Delete a route; a missing route counts as deleted."""
        if not route_id:
            raise ValueError("route_id cannot be empty")
        resp = self._request("DELETE", self.route_path(route_id), timeout_s=timeout_s)
        if resp.status_code == 404:
            logger.debug("Route %s already absent", route_id)
            return
        self._check(resp, f"delete route {route_id}")

    def get_route(self, route_id: str, timeout_s: float | None = None) -> RouteDescriptor | None:
        if not route_id:
            raise ValueError("route_id cannot be empty")
        resp = self._request("GET", self.route_path(route_id), timeout_s=timeout_s)
        if resp.status_code == 404:
            return None
        self._check(resp, f"get route {route_id}")
        return parse_route(self._json(resp, f"get route {route_id}"), route_id=route_id)

    def list_raw_routes(self, timeout_s: float | None = None) -> list[dict[str, Any]]:
        resp = self._request("GET", self.routes_path, timeout_s=timeout_s)
        if resp.status_code == 404:
            return []
        self._check(resp, "list routes")
        data = self._json(resp, "list routes")
        if data is None:
            return []
        if not isinstance(data, list):
            raise RouteTableError(f"list routes: expected an array, got {type(data).__name__}")
        return [r for r in data if isinstance(r, dict)]

    def list_routes(self, timeout_s: float | None = None) -> list[RouteDescriptor]:
        """Managed routes, one per id; a repeated id keeps its last configuration."""
        by_id: dict[str, RouteDescriptor] = {}
        for raw in self.list_raw_routes(timeout_s=timeout_s):
            desc = parse_route(raw)
            if desc is None or not is_managed_route_id(desc.route_id):
                continue
            if desc.route_id in by_id:
                logger.warning("Duplicate route id %s in listing", desc.route_id, extra={"route_id": desc.route_id})
            by_id[desc.route_id] = desc
        return list(by_id.values())

    def cleanup_duplicate_routes(self, timeout_s: float | None = None) -> int:
        """Delete every copy of any managed id listed more than once.

        The controller recreates the correct route on its next pass.
        Returns the number of successful deletes.
        """
        counts = Counter(
            raw.get("@id") for raw in self.list_raw_routes(timeout_s=timeout_s) if is_managed_route_id(raw.get("@id"))
        )
        deleted = 0
        for route_id, n in counts.items():
            if n < 2:
                continue
            logger.warning("Route %s appears %d times, deleting all copies", route_id, n, extra={"route_id": route_id})
            for _ in range(n):
                try:
                    self.delete_route(route_id, timeout_s=timeout_s)
                except RouteTableError as e:
                    logger.warning("Failed to delete duplicate route %s: %s", route_id, e, extra={"route_id": route_id})
                    continue
                deleted += 1
        return deleted

    def health_check(self, path: str | None = None, timeout_s: float | None = None) -> None:
        """Short request to the admin endpoint; raises RouteTableError when unhealthy."""
        check_path = path or self.health_path
        resp = self._request("GET", check_path, timeout_s=self.health_timeout_s if timeout_s is None else timeout_s)
        self._check(resp, f"health check {check_path}")

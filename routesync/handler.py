from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum

from .admin_client import RouteCommands, format_target
from .kube import WorkloadSource
from .route_ids import InvalidRouteId, build_hostname, build_route_id, normalize_identity
from .tracker import RouteTracker
from .workloads import ANNOTATION_ROUTE_ID, ANNOTATION_SYNCED, ANNOTATION_URL, Workload, port_from_annotations

logger = logging.getLogger(__name__)


class SyncAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


class EventHandler:
    """Decides whether a workload should have a route and what it points to.

    Every call recomputes the desired route from the workload and the
    tracker. Besides the tracker, the handler remembers which eligible
    workloads claim each identity: an identity claimed by more than one
    workload gets no route until a single claimant is left.
    Route table failures are raised to the caller.
    """

    def __init__(
        self,
        routes: RouteCommands,
        tracker: RouteTracker,
        source: WorkloadSource,
        base_domain: str,
        default_port: int,
        request_timeout_s: float = 10.0,
    ) -> None:
        self.routes = routes
        self.tracker = tracker
        self.source = source
        self.base_domain = base_domain
        self.default_port = default_port
        self.request_timeout_s = request_timeout_s
        # identity -> workloads currently eligible for it, and the reverse
        self._claims: dict[str, dict[str, Workload]] = {}
        self._claimed: dict[str, str] = {}

    def on_workload_added(self, workload: Workload) -> SyncAction:
        return self.sync(workload)

    def on_workload_updated(self, old: Workload | None, new: Workload) -> SyncAction:
        if old is not None and old.replicas != new.replicas:
            if old.replicas == 1:
                logger.info("Workload %s scaled from 1 to %d replicas", new.key, new.replicas, extra={"workload": new.key})
            elif new.replicas == 1:
                logger.info("Workload %s scaled from %d to 1 replica", new.key, old.replicas, extra={"workload": new.key})
        if old is not None and old.ready and not new.ready:
            logger.info("Workload %s is no longer ready", new.key, extra={"workload": new.key})
        return self.sync(new)

    def on_workload_deleted(self, workload: Workload) -> SyncAction:
        freed = self._claim(workload, None)
        action = self.remove(workload)
        self._sync_freed(freed)
        return action

    def sync(self, workload: Workload) -> SyncAction:
        identity = self._route_identity(workload) if workload.eligible else None
        freed = self._claim(workload, identity)
        action = self._sync(workload, identity)
        self._sync_freed(freed)
        return action

    def _route_identity(self, workload: Workload) -> str | None:
        if not workload.identity:
            logger.warning("Workload %s has no identity label, skipping", workload.key, extra={"workload": workload.key})
            return None
        try:
            return normalize_identity(workload.identity)
        except InvalidRouteId as e:
            logger.warning("Workload %s skipped: %s", workload.key, e, extra={"workload": workload.key})
            return None

    def _claim(self, workload: Workload, identity: str | None) -> list[Workload]:
        """Record which identity the workload holds; None releases it.

        Returns the workload left alone on an identity this one just gave up,
        since it can now have the route.
        """
        key = workload.key
        freed: list[Workload] = []
        previous = self._claimed.get(key)
        if previous is not None and previous != identity:
            group = self._claims[previous]
            group.pop(key, None)
            if not group:
                del self._claims[previous]
            elif len(group) == 1:
                freed = list(group.values())
        if identity is None:
            self._claimed.pop(key, None)
        else:
            self._claims.setdefault(identity, {})[key] = workload
            self._claimed[key] = identity
        return freed

    def _sync_freed(self, freed: list[Workload]) -> None:
        for other in freed:
            logger.info("Identity conflict on %s resolved", other.key, extra={"workload": other.key})
            self.sync(other)

    def _sync(self, workload: Workload, identity: str | None) -> SyncAction:
        if not workload.eligible:
            return self.remove(workload)

        if identity is None:
            action = self.remove(workload)
            return SyncAction.SKIPPED if action is SyncAction.UNCHANGED else action

        group = self._claims[identity]
        if len(group) > 1:
            # Both would map to one route id and hostname; none gets a route until only one is left.
            logger.warning(
                "Identity %s is claimed by %s; no route for any of them",
                identity,
                ", ".join(sorted(group)),
                extra={"workload": workload.key, "route_id": build_route_id(identity)},
            )
            for member in list(group.values()):
                self.remove(member)
            return SyncAction.SKIPPED

        ip = self.source.get_ready_instance(workload)
        if ip is None:
            logger.debug("No ready instance for %s", workload.key)
            return self.remove(workload)

        try:
            port = port_from_annotations(workload.annotations, self.default_port)
        except ValueError as e:
            logger.warning(
                "Invalid port annotation on %s, using default %d: %s",
                workload.key,
                self.default_port,
                e,
                extra={"workload": workload.key},
            )
            port = self.default_port

        route_id = build_route_id(identity)
        hostname = build_hostname(identity, self.base_domain)
        target = format_target(ip, port)

        entry = self.tracker.get(workload.key)
        if entry is not None and entry.route_id == route_id and entry.target == target:
            return SyncAction.UNCHANGED

        if entry is not None:
            # No atomic address swap in the engine: delete, then create.
            logger.info(
                "Target of %s changed %s -> %s, replacing route",
                workload.key,
                entry.target,
                target,
                extra={"workload": workload.key, "route_id": route_id},
            )
            self.routes.delete_route(entry.route_id, timeout_s=self.request_timeout_s)
            self.tracker.delete(workload.key)

        self.routes.create_route(route_id, [hostname], target, timeout_s=self.request_timeout_s)
        self.tracker.set(workload.key, route_id, target)
        logger.info(
            "Route %s created: %s -> %s",
            route_id,
            hostname,
            target,
            extra={"workload": workload.key, "route_id": route_id},
        )

        self._write_back(workload, hostname, route_id)
        return SyncAction.UPDATED if entry is not None else SyncAction.CREATED

    def remove(self, workload: Workload) -> SyncAction:
        entry = self.tracker.get(workload.key)
        if entry is None:
            return SyncAction.UNCHANGED

        self.routes.delete_route(entry.route_id, timeout_s=self.request_timeout_s)
        self.tracker.delete(workload.key)
        logger.info(
            "Route %s deleted",
            entry.route_id,
            extra={"workload": workload.key, "route_id": entry.route_id},
        )
        return SyncAction.DELETED

    def _write_back(self, workload: Workload, hostname: str, route_id: str) -> None:
        annotations = {
            ANNOTATION_URL: hostname,
            ANNOTATION_SYNCED: datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            ANNOTATION_ROUTE_ID: route_id,
        }
        try:
            self.source.patch_annotations(workload, annotations)
        except Exception as e:
            # the route itself is in place; only the write-back failed
            logger.warning("Failed to annotate %s: %s", workload.key, e, extra={"workload": workload.key})

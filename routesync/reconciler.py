from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from .admin_client import RouteTableClient, RouteTableError
from .kube import WorkloadSource, WorkloadSourceError
from .route_ids import InvalidRouteId, build_route_id
from .settings import Settings
from .tracker import RouteTracker
from .workloads import Workload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    engine_routes: int
    expected_routes: int
    deleted: int
    failed: int = 0
    stale: int = 0


@dataclass(frozen=True)
class RecoveryResult:
    total_routes: int
    recovered: int
    skipped: int


class Reconciler:
    """Compares live workloads with the routing engine and removes drift.

    Orphaned routes are deleted; missing routes are left to the event path
    so that a pass never races an in-flight create.
    """

    def __init__(
        self,
        source: WorkloadSource,
        routes: RouteTableClient,
        tracker: RouteTracker,
        settings: Settings,
    ) -> None:
        self.source = source
        self.routes = routes
        self.tracker = tracker
        self.settings = settings
        self.last_result: ReconcileResult | None = None
        self.last_recovery: RecoveryResult | None = None
        self._stop = threading.Event()
        self._thr: threading.Thread | None = None
        self._pass_lock = threading.Lock()

    def start(self, stop: threading.Event | None = None) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = threading.Thread(target=self._loop, args=(stop,), name="routesync-reconciler", daemon=True)
        self._thr.start()

    def stop(self, timeout_s: float | None = None) -> None:
        self._stop.set()
        if self._thr is not None:
            self._thr.join(timeout=timeout_s)

    def _stopped(self, stop: threading.Event | None) -> bool:
        return self._stop.is_set() or (stop is not None and stop.is_set())

    def _sleep(self, stop: threading.Event | None, seconds: float) -> bool:
        """Sleep up to ``seconds``; return False if stopped meanwhile."""
        waited = 0.0
        while waited < seconds:
            if self._stopped(stop):
                return False
            step = min(0.5, seconds - waited)
            self._stop.wait(timeout=step)
            waited += step
        return not self._stopped(stop)

    def _loop(self, stop: threading.Event | None) -> None:
        logger.info("Reconciler started (period %ss)", self.settings.reconcile_period_s)
        while not self._stopped(stop):
            try:
                self.reconcile()
            except Exception as e:
                logger.warning("Reconciliation pass failed: %s: %s", type(e).__name__, e)
            if not self._sleep(stop, self.settings.reconcile_period_s):
                break
        logger.info("Reconciler stopped")

    def _routable(self) -> tuple[dict[str, Workload], int]:
        """Map route id -> the one eligible workload entitled to it.

        Workloads without a usable identity, or sharing one with another
        eligible workload, are left out and counted as skipped.
        """
        groups: dict[str, list[Workload]] = {}
        skipped = 0
        for w in self.source.list_workloads().items:
            if not w.eligible:
                continue
            try:
                route_id = build_route_id(w.identity or "")
            except InvalidRouteId as e:
                logger.warning("Workload %s skipped: %s", w.key, e, extra={"workload": w.key})
                skipped += 1
                continue
            groups.setdefault(route_id, []).append(w)

        routable: dict[str, Workload] = {}
        for route_id, members in groups.items():
            if len(members) > 1:
                logger.warning(
                    "Route %s is claimed by %s; none of them is routed",
                    route_id,
                    ", ".join(sorted(m.key for m in members)),
                    extra={"route_id": route_id},
                )
                skipped += len(members)
                continue
            routable[route_id] = members[0]
        return routable, skipped

    def reconcile(self) -> ReconcileResult:
        with self._pass_lock:
            return self._reconcile()

    def _reconcile(self) -> ReconcileResult:
        timeout = self.settings.request_timeout_s
        # taken before listing, so entries set by the event path meanwhile are never dropped
        tracked = self.tracker.list()
        actual = {r.route_id for r in self.routes.list_routes(timeout_s=timeout)}
        expected = set(self._routable()[0])

        stale = 0
        for key, entry in tracked.items():
            if entry.route_id in actual or not self.tracker.delete_if(key, entry):
                continue
            logger.info(
                "Route %s of %s is gone from the engine, dropping tracker entry",
                entry.route_id,
                key,
                extra={"workload": key, "route_id": entry.route_id},
            )
            stale += 1

        deleted = failed = 0
        for route_id in sorted(actual - expected):
            logger.info("Deleting orphaned route %s", route_id, extra={"route_id": route_id})
            try:
                self.routes.delete_route(route_id, timeout_s=timeout)
            except RouteTableError as e:
                logger.warning("Failed to delete orphaned route %s: %s", route_id, e, extra={"route_id": route_id})
                failed += 1
                continue
            self.tracker.delete_by_route_id(route_id)
            deleted += 1

        result = ReconcileResult(
            engine_routes=len(actual),
            expected_routes=len(expected),
            deleted=deleted,
            failed=failed,
            stale=stale,
        )
        self.last_result = result
        logger.info(
            "Reconciliation completed: %d engine routes, %d expected, %d orphans deleted, %d stale entries dropped",
            result.engine_routes,
            result.expected_routes,
            result.deleted,
            result.stale,
        )
        return result

    def recover_tracker(self) -> RecoveryResult:
        """Rebuild tracker entries from routes that already exist in the engine."""
        routes = self.routes.list_routes(timeout_s=self.settings.request_timeout_s)
        by_id = {r.route_id: r for r in routes}

        routable, skipped = self._routable()
        recovered = 0
        for route_id, w in routable.items():
            route = by_id.get(route_id)
            if route is None:
                continue
            # the event path may already have set a newer entry
            if not self.tracker.set_if_absent(w.key, route.route_id, route.target):
                continue
            logger.info(
                "Recovered route %s -> %s",
                route.route_id,
                route.target,
                extra={"workload": w.key, "route_id": route.route_id},
            )
            recovered += 1

        result = RecoveryResult(total_routes=len(routes), recovered=recovered, skipped=skipped)
        self.last_recovery = result
        logger.info(
            "Tracker recovered: %d routes, %d mappings, %d skipped",
            result.total_routes,
            result.recovered,
            result.skipped,
        )
        return result

    def recover_tracker_with_retry(self, stop: threading.Event | None = None) -> bool:
        """Startup recovery with exponential backoff; False when all attempts fail."""
        s = self.settings
        logger.info("Starting delayed tracker recovery")
        if not self._sleep(stop, s.recovery_initial_delay_s):
            return False

        delay = s.recovery_initial_delay_s
        for attempt in range(1, s.recovery_max_attempts + 1):
            try:
                self.routes.health_check(timeout_s=s.health_timeout_s)
                try:
                    deleted = self.routes.cleanup_duplicate_routes(timeout_s=s.request_timeout_s)
                    if deleted:
                        logger.info("Cleaned up %d duplicate routes", deleted)
                except RouteTableError as e:
                    # not fatal for recovery
                    logger.warning("Duplicate route cleanup failed (attempt %d): %s", attempt, e)
                self.recover_tracker()
                logger.info("Tracker recovery completed on attempt %d", attempt)
                return True
            except (RouteTableError, WorkloadSourceError) as e:
                logger.warning("Tracker recovery attempt %d/%d failed: %s", attempt, s.recovery_max_attempts, e)

            if attempt < s.recovery_max_attempts:
                if not self._sleep(stop, delay):
                    return False
                delay = min(delay * 2, s.recovery_max_delay_s)

        logger.error("Failed to recover tracker after %d attempts; continuing in event-driven mode", s.recovery_max_attempts)
        return False

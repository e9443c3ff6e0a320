from __future__ import annotations

import logging
import threading
from dataclasses import asdict
from typing import Any

from .admin_client import RouteTableClient
from .db import EventLog, EventLogHandler
from .handler import EventHandler
from .kube import KubeWorkloadSource, WorkloadSource, load_kube_apis
from .reconciler import ReconcileResult, Reconciler
from .settings import Settings
from .tracker import RouteTracker
from .watcher import Watcher

logger = logging.getLogger(__name__)


class Controller:
    """Owns every component and the root stop signal for one namespace."""

    def __init__(
        self,
        settings: Settings,
        source: WorkloadSource,
        routes: RouteTableClient,
        tracker: RouteTracker | None = None,
        events: EventLog | None = None,
    ) -> None:
        self.settings = settings
        self.source = source
        self.routes = routes
        self.tracker = tracker or RouteTracker()
        self.events = events or EventLog(settings.db_path)
        self.handler = EventHandler(
            routes=routes,
            tracker=self.tracker,
            source=source,
            base_domain=settings.base_domain,
            default_port=settings.default_port,
            request_timeout_s=settings.request_timeout_s,
        )
        self.watcher = Watcher(
            source,
            self.handler,
            resync_period_s=settings.resync_period_s,
            max_watch_s=settings.watch_timeout_s,
        )
        self.reconciler = Reconciler(source, routes, self.tracker, settings)
        self.watcher_error: str | None = None
        self.recovered: bool | None = None
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._log_handler: EventLogHandler | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Controller":
        apps_api, core_api = load_kube_apis(settings.kubeconfig)
        source = KubeWorkloadSource(
            apps_api,
            core_api,
            namespace=settings.namespace,
            label_selector=settings.label_selector,
            identity_label=settings.identity_label,
            request_timeout_s=settings.request_timeout_s,
        )
        routes = RouteTableClient(
            settings.admin_url,
            server_name=settings.server_name,
            timeout_s=settings.request_timeout_s,
            health_timeout_s=settings.health_timeout_s,
            health_path=settings.health_path,
        )
        return cls(settings, source, routes)

    def start(self) -> None:
        if self._threads:
            return
        self.events.init_db()
        self._log_handler = EventLogHandler(self.events)
        pkg_logger = logging.getLogger("routesync")
        if pkg_logger.level == logging.NOTSET:
            pkg_logger.setLevel(logging.INFO)
        pkg_logger.addHandler(self._log_handler)
        self._stop.clear()

        self._spawn("routesync-watcher", self._run_watcher)
        self._spawn("routesync-recovery", self._run_recovery)
        self.reconciler.start(self._stop)

        logger.info(
            "Controller started for namespace %s (base domain %s, reconcile every %ss)",
            self.settings.namespace,
            self.settings.base_domain,
            self.settings.reconcile_period_s,
        )

    def stop(self, grace_s: float | None = None) -> None:
        if grace_s is None:
            grace_s = self.settings.shutdown_grace_s
        logger.info("Controller stopping")
        self._stop.set()
        self.watcher.stop()
        self.reconciler.stop(timeout_s=grace_s)
        for t in self._threads:
            t.join(timeout=grace_s)
            if t.is_alive():
                logger.warning("Thread %s did not exit within %ss", t.name, grace_s)
        self._threads = []
        self.routes.close()
        if self._log_handler is not None:
            logging.getLogger("routesync").removeHandler(self._log_handler)
            self._log_handler = None

    def _spawn(self, name: str, target: Any) -> None:
        t = threading.Thread(target=target, name=name, daemon=True)
        self._threads.append(t)
        t.start()

    def _run_watcher(self) -> None:
        try:
            self.watcher.start(self._stop)
        except Exception as e:
            self.watcher_error = f"{type(e).__name__}: {e}"
            logger.error("Watcher stopped with error: %s", self.watcher_error)

    def _run_recovery(self) -> None:
        try:
            self.recovered = self.reconciler.recover_tracker_with_retry(self._stop)
        except Exception:
            self.recovered = False
            logger.exception("Tracker recovery crashed")

    def reconcile_now(self) -> ReconcileResult:
        return self.reconciler.reconcile()

    def status(self) -> dict[str, Any]:
        last = self.reconciler.last_result
        recovery = self.reconciler.last_recovery
        return {
            "namespace": self.settings.namespace,
            "ready": self.watcher.is_ready(),
            "tracked_routes": self.tracker.count(),
            "watcher_error": self.watcher_error,
            "recovered": self.recovered,
            "last_reconcile": None if last is None else asdict(last),
            "last_recovery": None if recovery is None else asdict(recovery),
        }

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Callable

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.responses import JSONResponse

from .admin_client import RouteTableError
from .api_models import EventView, ReconcileView, RouteView, StatusView
from .controller import Controller
from .kube import WorkloadSourceError
from .settings import load_settings

logger = logging.getLogger(__name__)


def _default_controller() -> Controller:
    return Controller.from_settings(load_settings())


def create_app(controller_factory: Callable[[], Controller] | None = None) -> FastAPI:
    """Build the status/operations app; the controller runs for the app's lifetime."""
    factory = controller_factory or _default_controller
    app = FastAPI(title="routesync")
    app.state.controller = None

    def _controller() -> Controller:
        ctl = app.state.controller
        if ctl is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="controller not started")
        return ctl

    @app.on_event("startup")
    def startup() -> None:
        ctl = factory()
        ctl.start()
        app.state.controller = ctl

    @app.on_event("shutdown")
    def shutdown() -> None:
        ctl = app.state.controller
        if ctl is not None:
            ctl.stop()
            app.state.controller = None

    @app.get("/healthz")
    def healthz() -> dict:
        return {"status": "healthy"}

    @app.get("/readyz")
    def readyz():
        ctl = _controller()
        if not ctl.watcher.is_ready():
            return JSONResponse(status_code=503, content={"status": "syncing", "watcher_error": ctl.watcher_error})
        return {"status": "ready"}

    @app.get("/status", response_model=StatusView)
    def get_status() -> StatusView:
        return StatusView(**_controller().status())

    @app.get("/routes", response_model=list[RouteView])
    def list_routes() -> list[RouteView]:
        entries = _controller().tracker.list()
        return [RouteView(workload=k, route_id=e.route_id, target=e.target) for k, e in sorted(entries.items())]

    @app.get("/events", response_model=list[EventView])
    def list_events(limit: int = Query(50, ge=1, le=1000)) -> list[EventView]:
        return [EventView(**asdict(e)) for e in _controller().events.list_events(limit)]

    @app.post("/reconcile", response_model=ReconcileView)
    def reconcile() -> ReconcileView:
        try:
            result = _controller().reconcile_now()
        except (RouteTableError, WorkloadSourceError) as e:
            logger.warning("Manual reconciliation failed: %s", e)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
        return ReconcileView(**asdict(result))

    return app

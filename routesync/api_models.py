from __future__ import annotations

from pydantic import BaseModel, Field


class RouteView(BaseModel):
    workload: str = Field(..., description="Workload key (namespace/name)")
    route_id: str
    target: str = Field(..., description="Dial address ip:port")


class EventView(BaseModel):
    id: int
    ts: str
    level: str
    workload: str | None = None
    route_id: str | None = None
    message: str


class ReconcileView(BaseModel):
    engine_routes: int
    expected_routes: int
    deleted: int
    failed: int = 0
    stale: int = 0


class RecoveryView(BaseModel):
    total_routes: int
    recovered: int
    skipped: int


class StatusView(BaseModel):
    namespace: str
    ready: bool
    tracked_routes: int = Field(..., ge=0)
    watcher_error: str | None = None
    recovered: bool | None = None
    last_reconcile: ReconcileView | None = None
    last_recovery: RecoveryView | None = None

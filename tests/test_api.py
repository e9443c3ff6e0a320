import time

import pytest
from fastapi.testclient import TestClient

from fakes import make_client, make_workload, source_error
from routesync.api import create_app
from routesync.controller import Controller


@pytest.fixture
def controller(settings, source, api):
    return Controller(settings, source, make_client(api))


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def http(controller):
    app = create_app(lambda: controller)
    with TestClient(app) as c:
        # let the startup list, recovery and first reconcile pass settle
        assert wait_for(
            lambda: controller.watcher.is_ready()
            and controller.recovered is not None
            and controller.reconciler.last_result is not None
        )
        yield c


def test_healthz(http):
    r = http.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


def test_routes_are_served_after_initial_sync(controller, source, http):
    w1 = make_workload("w1")
    source.put(w1, ip="10.0.0.5")
    controller.handler.on_workload_added(w1)

    assert http.get("/readyz").status_code == 200
    r = http.get("/routes")
    assert r.status_code == 200
    assert r.json() == [{"workload": "apps/w1", "route_id": "routesync:w1", "target": "10.0.0.5:8089"}]


def test_status(http):
    body = http.get("/status").json()
    assert body["namespace"] == "apps"
    assert body["tracked_routes"] == 0
    assert body["last_reconcile"]["deleted"] == 0


def test_manual_reconcile_deletes_orphans(api, http):
    api.add_route("routesync:orphan", ["orphan.example.com"], "10.0.0.7:8089")

    r = http.post("/reconcile")

    assert r.status_code == 200
    assert r.json()["deleted"] == 1
    assert api.route_ids() == []


def test_manual_reconcile_reports_engine_failure(api, http):
    api.down = True

    r = http.post("/reconcile")

    assert r.status_code == 502


def test_events_are_journaled(controller, source, http):
    w1 = make_workload("w1")
    source.put(w1, ip="10.0.0.5")
    controller.handler.on_workload_added(w1)

    events = http.get("/events", params={"limit": 100}).json()
    assert any(e["route_id"] == "routesync:w1" for e in events)


def test_events_limit_is_validated(http):
    assert http.get("/events", params={"limit": 0}).status_code == 422


def test_readyz_reports_watcher_failure(settings, source, api):
    source.list_errors = [source_error(403)] * 10
    controller = Controller(settings, source, make_client(api))
    with TestClient(create_app(lambda: controller)) as c:
        assert wait_for(lambda: controller.watcher_error is not None)
        r = c.get("/readyz")

    assert r.status_code == 503
    assert "WatcherError" in r.json()["watcher_error"]

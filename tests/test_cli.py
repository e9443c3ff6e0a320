import json

import requests

import cli


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload


def test_routes_command_prints_json(monkeypatch, capsys):
    seen = {}

    def fake_get(url, params=None, timeout=None):
        seen["url"] = url
        return FakeResponse([{"workload": "apps/w1", "route_id": "routesync:w1", "target": "10.0.0.5:8089"}])

    monkeypatch.setattr(cli.requests, "get", fake_get)

    assert cli.main(["--api", "http://ctl:8000/", "routes"]) == 0
    assert seen["url"] == "http://ctl:8000/routes"
    assert json.loads(capsys.readouterr().out)[0]["route_id"] == "routesync:w1"


def test_events_passes_limit(monkeypatch, capsys):
    seen = {}

    def fake_get(url, params=None, timeout=None):
        seen["params"] = params
        return FakeResponse([])

    monkeypatch.setattr(cli.requests, "get", fake_get)

    assert cli.main(["events", "--limit", "5"]) == 0
    assert seen["params"] == {"limit": 5}


def test_reconcile_failure_exit_code(monkeypatch, capsys):
    monkeypatch.setattr(cli.requests, "post", lambda url, timeout=None: FakeResponse({"detail": "down"}, 502))

    assert cli.main(["reconcile"]) == 1


def test_unreachable_api(monkeypatch, capsys):
    def boom(url, params=None, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(cli.requests, "get", boom)

    assert cli.main(["status"]) == 1
    assert "cannot reach" in capsys.readouterr().err

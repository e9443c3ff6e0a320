import logging

from routesync.db import EventLog, EventLogHandler


def test_event_log_roundtrip(tmp_path):
    events = EventLog(str(tmp_path / "events.db"))
    events.init_db()

    events.log_event("info", "Route routesync:w1 created", workload="apps/w1", route_id="routesync:w1")
    events.log_event("warning", "Reconciliation pass failed")

    rows = events.list_events(10)
    assert [r.message for r in rows] == ["Reconciliation pass failed", "Route routesync:w1 created"]
    assert rows[0].level == "WARNING"
    assert rows[0].workload is None
    assert rows[1].route_id == "routesync:w1"
    assert len(events.list_events(1)) == 1


def test_directory_path_gets_a_file_inside(tmp_path):
    events = EventLog(str(tmp_path))
    assert events.path == str(tmp_path / "routesync.db")


def test_in_memory_journal_persists_across_calls():
    events = EventLog(":memory:")
    events.init_db()
    events.log_event("info", "hello")
    assert [r.message for r in events.list_events()] == ["hello"]


def test_log_handler_forwards_extras(tmp_path):
    events = EventLog(str(tmp_path / "events.db"))
    events.init_db()
    log = logging.getLogger("routesync.test-journal")
    log.setLevel(logging.DEBUG)
    handler = EventLogHandler(events)
    log.addHandler(handler)
    try:
        log.debug("not journaled")
        log.info("Route %s deleted", "routesync:w1", extra={"workload": "apps/w1", "route_id": "routesync:w1"})
    finally:
        log.removeHandler(handler)

    rows = events.list_events()
    assert len(rows) == 1
    assert rows[0].message == "Route routesync:w1 deleted"
    assert (rows[0].workload, rows[0].route_id) == ("apps/w1", "routesync:w1")

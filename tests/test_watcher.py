import threading
import time
from dataclasses import replace

import pytest

from fakes import make_workload, source_error
from routesync.watcher import Watcher, WatcherError


class RecordingHandler:
    def __init__(self, fail_on: str | None = None):
        self.calls = []
        self.fail_on = fail_on
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _record(self, kind, workload):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.calls.append((kind, workload.name))
            if self.fail_on == workload.name:
                raise RuntimeError("route table down")
        finally:
            with self._lock:
                self.active -= 1

    def on_workload_added(self, workload):
        self._record("added", workload)

    def on_workload_updated(self, old, new):
        self._record("updated", new)

    def on_workload_deleted(self, workload):
        self._record("deleted", workload)


def run_in_thread(watcher):
    stop = threading.Event()
    errors = []

    def target():
        try:
            watcher.start(stop)
        except Exception as e:
            errors.append(e)

    t = threading.Thread(target=target, daemon=True)
    t.start()
    return stop, t, errors


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_initial_list_then_events_in_order(source):
    w1, w2 = make_workload("w1"), make_workload("w2")
    source.put(w1)
    source.watch_batches = [
        [("ADDED", w2), ("MODIFIED", replace(w1, replicas=2)), ("DELETED", w2)],
    ]
    handler = RecordingHandler()
    watcher = Watcher(source, handler, resync_period_s=60)

    stop, t, errors = run_in_thread(watcher)
    assert wait_for(lambda: len(handler.calls) == 4)
    assert watcher.is_ready()
    stop.set()
    watcher.stop()
    t.join(timeout=3)

    assert not errors
    assert handler.calls == [("added", "w1"), ("added", "w2"), ("updated", "w1"), ("deleted", "w2")]
    assert handler.max_active == 1
    assert not watcher.is_ready()


def test_resync_replays_and_heals_missed_deletes(source):
    w1, w2 = make_workload("w1"), make_workload("w2")
    source.put(w1)
    source.put(w2)
    handler = RecordingHandler()
    watcher = Watcher(source, handler, resync_period_s=60)

    stop, t, errors = run_in_thread(watcher)
    assert wait_for(watcher.is_ready)
    source.remove(w2.key)  # deletion notification lost

    watcher.stop()
    t.join(timeout=3)
    handler.calls.clear()
    watcher.resync()

    assert handler.calls == [("updated", "w1"), ("deleted", "w2")]
    assert not errors


def test_handler_failure_does_not_stop_dispatch(source):
    source.put(make_workload("bad"))
    source.put(make_workload("good"))
    handler = RecordingHandler(fail_on="bad")
    watcher = Watcher(source, handler, resync_period_s=60)

    stop, t, errors = run_in_thread(watcher)
    assert wait_for(lambda: len(handler.calls) == 2)
    watcher.stop()
    t.join(timeout=3)

    assert [name for _, name in handler.calls] == ["bad", "good"]
    assert not errors


def test_permission_denied_at_startup_is_fatal(source):
    source.list_errors = [source_error(403)]
    watcher = Watcher(source, RecordingHandler(), resync_period_s=60)

    with pytest.raises(WatcherError):
        watcher.start(threading.Event())
    assert not watcher.is_ready()


def test_unreachable_source_fails_after_sync_timeout(source):
    source.list_errors = [source_error(None)] * 5
    watcher = Watcher(source, RecordingHandler(), resync_period_s=60, sync_timeout_s=0)

    with pytest.raises(WatcherError):
        watcher.start(threading.Event())


def test_transient_watch_error_reconnects(source, monkeypatch):
    w1 = make_workload("w1")
    source.watch_batches = [source_error(500), [("ADDED", w1)]]
    handler = RecordingHandler()
    watcher = Watcher(source, handler, resync_period_s=60)
    monkeypatch.setattr("routesync.watcher.random.random", lambda: 0.0)
    monkeypatch.setattr(watcher, "max_backoff_s", 0.01)

    stop, t, errors = run_in_thread(watcher)
    assert wait_for(lambda: handler.calls == [("added", "w1")])
    watcher.stop()
    t.join(timeout=3)

    assert source.watch_calls >= 2
    assert not errors


def test_expired_resource_version_triggers_relist(source):
    w1 = make_workload("w1")
    source.put(w1)
    source.watch_batches = [source_error(410)]
    handler = RecordingHandler()
    watcher = Watcher(source, handler, resync_period_s=60)

    stop, t, errors = run_in_thread(watcher)
    assert wait_for(lambda: ("updated", "w1") in handler.calls)
    watcher.stop()
    t.join(timeout=3)

    assert source.list_calls >= 2
    assert handler.calls[:2] == [("added", "w1"), ("updated", "w1")]


def test_watch_permission_denied_is_fatal(source):
    source.watch_batches = [source_error(401)]
    watcher = Watcher(source, RecordingHandler(), resync_period_s=60)

    stop, t, errors = run_in_thread(watcher)
    t.join(timeout=3)

    assert len(errors) == 1
    assert isinstance(errors[0], WatcherError)


def test_watch_timeout_is_capped(source):
    watcher = Watcher(source, RecordingHandler(), resync_period_s=60, max_watch_s=2)

    stop, t, errors = run_in_thread(watcher)
    assert wait_for(lambda: source.watch_calls >= 2)
    watcher.stop()
    t.join(timeout=3)

    assert source.watch_timeouts
    assert max(source.watch_timeouts) <= 2
    assert not errors

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class TrackerEntry:
    route_id: str
    target: str


class ReadWriteLock:
    """Many readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class RouteTracker:
    """Local cache of workload key -> route id and last-known target.

    Rebuilt from the routing engine at startup; never persisted.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._routes: dict[str, TrackerEntry] = {}

    def set(self, key: str, route_id: str, target: str) -> None:
        with self._lock.write():
            self._routes[key] = TrackerEntry(route_id=route_id, target=target)

    def get(self, key: str) -> TrackerEntry | None:
        with self._lock.read():
            return self._routes.get(key)

    def set_if_absent(self, key: str, route_id: str, target: str) -> bool:
        with self._lock.write():
            if key in self._routes:
                return False
            self._routes[key] = TrackerEntry(route_id=route_id, target=target)
            return True

    def delete(self, key: str) -> bool:
        with self._lock.write():
            return self._routes.pop(key, None) is not None

    def delete_if(self, key: str, expected: TrackerEntry) -> bool:
        """Delete the entry only if it still equals ``expected``."""
        with self._lock.write():
            if self._routes.get(key) != expected:
                return False
            del self._routes[key]
            return True

    def delete_by_route_id(self, route_id: str) -> list[str]:
        with self._lock.write():
            keys = [k for k, e in self._routes.items() if e.route_id == route_id]
            for k in keys:
                del self._routes[k]
            return keys

    def list(self) -> dict[str, TrackerEntry]:
        with self._lock.read():
            return dict(self._routes)

    def count(self) -> int:
        with self._lock.read():
            return len(self._routes)

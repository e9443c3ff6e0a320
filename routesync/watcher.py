from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Protocol

from .kube import WorkloadList, WorkloadSource, WorkloadSourceError
from .workloads import Workload

logger = logging.getLogger(__name__)


class WatcherError(Exception):
    pass


class WorkloadEventHandler(Protocol):
    def on_workload_added(self, workload: Workload) -> object: ...

    def on_workload_updated(self, old: Workload | None, new: Workload) -> object: ...

    def on_workload_deleted(self, workload: Workload) -> object: ...


class Watcher:
    """List-then-watch over the workload source with a periodic full resync.

    Callbacks run on the thread that called ``start``, one at a time and in
    the order the source emits events. The resync re-lists every workload and
    replays it as an update so that missed notifications are healed.
    """

    def __init__(
        self,
        source: WorkloadSource,
        handler: WorkloadEventHandler,
        resync_period_s: float,
        sync_timeout_s: float = 30.0,
        max_backoff_s: float = 30.0,
        max_watch_s: float | None = None,
    ) -> None:
        self.source = source
        self.handler = handler
        self.resync_period_s = resync_period_s
        self.sync_timeout_s = sync_timeout_s
        self.max_backoff_s = max_backoff_s
        self.max_watch_s = max_watch_s
        self._cache: dict[str, Workload] = {}
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._resource_version: str | None = None
        self._next_resync = 0.0

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def stop(self) -> None:
        self._stop.set()
        self._ready.clear()
        self.source.stop_watch()

    def _should_stop(self, stop: threading.Event | None) -> bool:
        return self._stop.is_set() or (stop is not None and stop.is_set())

    def _wait(self, stop: threading.Event | None, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._should_stop(stop):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._stop.wait(timeout=min(remaining, 0.5))

    def start(self, stop: threading.Event | None = None) -> None:
        """Block until stopped; raise WatcherError on a fatal source error."""
        self._stop.clear()
        try:
            self._initial_sync(stop)
            if self._should_stop(stop):
                return
            self._watch_loop(stop)
        finally:
            self._ready.clear()

    def _initial_sync(self, stop: threading.Event | None) -> None:
        deadline = time.monotonic() + self.sync_timeout_s
        backoff = 1.0
        while not self._should_stop(stop):
            try:
                listing = self.source.list_workloads()
            except WorkloadSourceError as e:
                if e.fatal:
                    raise WatcherError(f"access denied listing workloads (status={e.status}): {e}") from e
                if time.monotonic() + backoff >= deadline:
                    raise WatcherError(f"workload source not reachable within {self.sync_timeout_s}s: {e}") from e
                logger.warning("Initial workload list failed, retrying in %.1fs: %s", backoff, e)
                self._wait(stop, backoff * (0.5 + random.random()))
                backoff = min(backoff * 2, self.max_backoff_s)
                continue

            self._resource_version = listing.resource_version
            for w in listing.items:
                self._cache[w.key] = w
                self._dispatch(self.handler.on_workload_added, w)
            self._next_resync = time.monotonic() + self.resync_period_s
            self._ready.set()
            logger.info("Watcher synced %d workloads (resourceVersion %s)", len(listing.items), listing.resource_version)
            return

    def _watch_loop(self, stop: threading.Event | None) -> None:
        backoff = 1.0
        while not self._should_stop(stop):
            if time.monotonic() >= self._next_resync:
                try:
                    self.resync()
                except WorkloadSourceError as e:
                    if e.fatal:
                        raise WatcherError(f"access denied during resync (status={e.status}): {e}") from e
                    logger.warning("Resync failed: %s", e)
                    self._next_resync = time.monotonic() + min(backoff, self.resync_period_s)

            timeout = self._next_resync - time.monotonic()
            if self.max_watch_s is not None:
                # bounds how long stop() waits on a blocked stream read
                timeout = min(timeout, self.max_watch_s)
            timeout = max(1.0, timeout)
            try:
                for event in self.source.watch_workloads(self._resource_version, timeout):
                    if self._should_stop(stop):
                        break
                    if event.resource_version:
                        self._resource_version = event.resource_version
                    self._handle_event(event.type, event.workload)
                backoff = 1.0
            except WorkloadSourceError as e:
                if e.expired:
                    logger.warning("Watch resource version expired, re-listing")
                    self._next_resync = 0.0
                    continue
                if e.fatal:
                    raise WatcherError(f"access denied watching workloads (status={e.status}): {e}") from e
                logger.warning("Watch failed, reconnecting in %.1fs: %s", backoff, e)
                self._wait(stop, backoff * (0.5 + random.random()))
                backoff = min(backoff * 2, self.max_backoff_s)
            except Exception:
                logger.exception("Unexpected watch error")
                self._wait(stop, backoff * (0.5 + random.random()))
                backoff = min(backoff * 2, self.max_backoff_s)

    def resync(self) -> None:
        """Re-list the source and replay every workload through the handler."""
        listing: WorkloadList = self.source.list_workloads()
        self._resource_version = listing.resource_version
        seen: set[str] = set()
        for w in listing.items:
            seen.add(w.key)
            old = self._cache.get(w.key)
            self._cache[w.key] = w
            if old is None:
                self._dispatch(self.handler.on_workload_added, w)
            else:
                self._dispatch(self.handler.on_workload_updated, old, w)
        for key in [k for k in self._cache if k not in seen]:
            gone = self._cache.pop(key)
            self._dispatch(self.handler.on_workload_deleted, gone)
        self._next_resync = time.monotonic() + self.resync_period_s
        logger.debug("Resync dispatched %d workloads", len(listing.items))

    def _handle_event(self, event_type: str, workload: Workload) -> None:
        if event_type == "DELETED":
            self._cache.pop(workload.key, None)
            self._dispatch(self.handler.on_workload_deleted, workload)
            return
        old = self._cache.get(workload.key)
        self._cache[workload.key] = workload
        if old is None:
            self._dispatch(self.handler.on_workload_added, workload)
        else:
            self._dispatch(self.handler.on_workload_updated, old, workload)

    def _dispatch(self, fn: Callable[..., object], *args: Workload) -> None:
        # Failures are not retried here; the next resync or reconcile pass repairs them.
        try:
            fn(*args)
        except Exception as e:
            key = args[-1].key if args else "?"
            logger.error("Handling %s for %s failed: %s", fn.__name__, key, e, extra={"workload": key})

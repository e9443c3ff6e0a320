from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Iterator, Protocol

import urllib3
from kubernetes import client, config, watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from .workloads import Workload, is_pod_ready, workload_from_deployment

logger = logging.getLogger(__name__)


class WorkloadSourceError(Exception):
    """A failed call to the workload source; status is None when unreachable."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status

    @property
    def fatal(self) -> bool:
        return self.status in {401, 403}

    @property
    def expired(self) -> bool:
        return self.status == 410


@dataclass(frozen=True)
class WorkloadList:
    items: list[Workload]
    resource_version: str | None = None


@dataclass(frozen=True)
class WatchEvent:
    type: str  # ADDED|MODIFIED|DELETED
    workload: Workload
    resource_version: str | None = None


class WorkloadSource(Protocol):
    def list_workloads(self) -> WorkloadList: ...

    def watch_workloads(self, resource_version: str | None, timeout_s: float) -> Iterator[WatchEvent]: ...

    def stop_watch(self) -> None: ...

    def get_ready_instance(self, workload: Workload) -> str | None: ...

    def patch_annotations(self, workload: Workload, annotations: dict[str, str]) -> None: ...


def load_kube_apis(kubeconfig: str | None = None) -> tuple[AppsV1Api, CoreV1Api]:
    """In-cluster config first, then the kubeconfig file (default ~/.kube/config)."""
    try:
        config.load_incluster_config()
    except ConfigException:
        path = kubeconfig or os.path.join(os.path.expanduser("~"), ".kube", "config")
        if not os.path.exists(path):
            raise WorkloadSourceError(f"no in-cluster config and kubeconfig {path} does not exist") from None
        try:
            config.load_kube_config(config_file=path)
        except ConfigException as e:
            raise WorkloadSourceError(f"failed to load kubeconfig from {path}: {e}") from None
        logger.info("Loaded kubeconfig from %s", path)
    else:
        logger.info("Using in-cluster kubernetes config")
    return client.AppsV1Api(), client.CoreV1Api()


def _wrap(exc: Exception, what: str) -> WorkloadSourceError:
    if isinstance(exc, ApiException):
        return WorkloadSourceError(f"{what}: {exc.status} {exc.reason}", status=exc.status)
    return WorkloadSourceError(f"{what}: {type(exc).__name__}: {exc}")


def _selector_string(selector: dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


class KubeWorkloadSource:
    """Workload source backed by Deployments and Pods in one namespace."""

    def __init__(
        self,
        apps_api: AppsV1Api,
        core_api: CoreV1Api,
        namespace: str,
        label_selector: str,
        identity_label: str,
        request_timeout_s: float = 10.0,
    ) -> None:
        self.apps_api = apps_api
        self.core_api = core_api
        self.namespace = namespace
        self.label_selector = label_selector
        self.identity_label = identity_label
        self.request_timeout_s = request_timeout_s
        self._active_watch: watch.Watch | None = None
        self._watch_lock = threading.Lock()

    def list_workloads(self) -> WorkloadList:
        try:
            result = self.apps_api.list_namespaced_deployment(
                namespace=self.namespace,
                label_selector=self.label_selector,
                _request_timeout=self.request_timeout_s,
            )
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _wrap(e, f"list deployments in {self.namespace}") from e
        items = [workload_from_deployment(d, self.identity_label) for d in result.items or []]
        rv = getattr(getattr(result, "metadata", None), "resource_version", None)
        return WorkloadList(items=items, resource_version=rv)

    def watch_workloads(self, resource_version: str | None, timeout_s: float) -> Iterator[WatchEvent]:
        w = watch.Watch()
        with self._watch_lock:
            self._active_watch = w
        server_timeout = max(1, int(timeout_s))
        try:
            stream = w.stream(
                self.apps_api.list_namespaced_deployment,
                namespace=self.namespace,
                label_selector=self.label_selector,
                resource_version=resource_version,
                timeout_seconds=server_timeout,
                _request_timeout=server_timeout + self.request_timeout_s,
            )
            for event in stream:
                event_type = str(event.get("type", ""))
                obj = event.get("object")
                if event_type == "ERROR":
                    code = obj.get("code") if isinstance(obj, dict) else getattr(obj, "code", None)
                    raise WorkloadSourceError(f"watch error event: {obj!r}", status=code)
                if event_type not in {"ADDED", "MODIFIED", "DELETED"} or obj is None:
                    continue
                if getattr(obj, "metadata", None) is None:
                    continue
                workload = workload_from_deployment(obj, self.identity_label)
                yield WatchEvent(type=event_type, workload=workload, resource_version=workload.resource_version)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _wrap(e, f"watch deployments in {self.namespace}") from e
        finally:
            w.stop()
            with self._watch_lock:
                if self._active_watch is w:
                    self._active_watch = None

    def stop_watch(self) -> None:
        with self._watch_lock:
            active = self._active_watch
        if active is not None:
            active.stop()

    def get_ready_instance(self, workload: Workload) -> str | None:
        if not workload.selector:
            return None
        try:
            pods = self.core_api.list_namespaced_pod(
                namespace=workload.namespace or self.namespace,
                label_selector=_selector_string(dict(workload.selector)),
                _request_timeout=self.request_timeout_s,
            )
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _wrap(e, f"list pods for {workload.key}") from e
        for pod in pods.items or []:
            if is_pod_ready(pod) and pod.status.pod_ip:
                return pod.status.pod_ip
        return None

    def patch_annotations(self, workload: Workload, annotations: dict[str, str]) -> None:
        body = {"metadata": {"annotations": dict(annotations)}}
        try:
            self.apps_api.patch_namespaced_deployment(
                name=workload.name,
                namespace=workload.namespace or self.namespace,
                body=body,
                _request_timeout=self.request_timeout_s,
            )
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _wrap(e, f"patch annotations on {workload.key}") from e

from __future__ import annotations

import json
import threading
from typing import Callable, Optional

from cluster_adapter.adapter import ClusterCommandError, classify_failure, object_key

from models import ReleaseSpec


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCluster:
    """In-memory cluster that records every call the orchestrator makes.

    Workloads whose image is listed in ``unhealthy_images`` never report ready
    replicas; manifests carrying an image in ``failing_images`` are rejected on
    apply, and an image in ``apply_errors`` makes apply raise that exception.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], str] = {}
        self.namespaces: set[str] = set()
        self.applied_services: list[str] = []
        self.applied_images: list[str] = []
        self.status_calls: list[str] = []
        self.mutations = 0
        self.installed: dict[str, str] = {}
        self.install_calls: list[str] = []
        self.install_failures: dict[str, str] = {}
        self.install_hook: Optional[Callable[[dict], None]] = None
        self.unhealthy_images: set[str] = set()
        self.failing_images: set[str] = set()
        self.apply_errors: dict[str, Exception] = {}
        self.unreachable = False
        self.status_error: Optional[Exception] = None
        self._lock = threading.Lock()

    def cluster_info(self, timeout: Optional[float] = None) -> None:
        if self.unreachable:
            raise ClusterCommandError(
                "kubectl cluster-info failed: Unable to connect to the server",
                classify_failure("Unable to connect to the server", "INFRASTRUCTURE"),
            )

    def apply(self, namespace: str, objects: list[dict], timeout: Optional[float] = None) -> list[str]:
        with self._lock:
            changed: list[str] = []
            if objects:
                labels = objects[0]["metadata"]["labels"]
                self.applied_services.append(labels["app.kubernetes.io/component"])
            if namespace not in self.namespaces:
                self.namespaces.add(namespace)
                changed.append(f"Namespace/{namespace}")
            for obj in objects:
                image = _image_of(obj)
                if image:
                    self.applied_images.append(image)
                if image in self.apply_errors:
                    raise self.apply_errors[image]
                if image and image in self.failing_images:
                    message = f'The {obj["kind"]} "{obj["metadata"]["name"]}" is invalid: image rejected'
                    raise ClusterCommandError(message, classify_failure(message, "APPLY"))
                key = object_key(obj)
                manifest = json.dumps(obj, sort_keys=True)
                if self.objects.get((namespace, key)) == manifest:
                    continue
                self.objects[(namespace, key)] = manifest
                changed.append(key)
            self.mutations += len(changed)
            return changed

    def get_status(self, service_ref: dict, timeout: Optional[float] = None) -> dict:
        self.status_calls.append(service_ref["service"])
        if self.status_error is not None:
            raise self.status_error
        endpoint = (
            f"http://{service_ref['serviceName']}.{service_ref['namespace']}.svc.cluster.local:{service_ref['port']}"
        )
        manifest = self.objects.get((service_ref["namespace"], f"{service_ref['kind']}/{service_ref['name']}"))
        if manifest is None:
            return {"exists": False, "desired": 0, "ready": 0, "updated": 0, "available": 0, "endpoint": endpoint}
        obj = json.loads(manifest)
        desired = int(obj["spec"].get("replicas", 1))
        ready = 0 if _image_of(obj) in self.unhealthy_images else desired
        return {
            "exists": True,
            "desired": desired,
            "ready": ready,
            "updated": desired,
            "available": ready,
            "endpoint": endpoint,
        }

    def prerequisite_version(self, prerequisite: dict, timeout: Optional[float] = None) -> Optional[str]:
        return self.installed.get(prerequisite["name"])

    def install_prerequisite(self, prerequisite: dict, timeout: Optional[float] = None) -> None:
        self.install_calls.append(prerequisite["name"])
        if self.install_hook is not None:
            self.install_hook(prerequisite)
        failure = self.install_failures.get(prerequisite["name"])
        if failure:
            raise ClusterCommandError(failure, classify_failure(failure, "PREREQUISITE"))
        self.installed[prerequisite["name"]] = prerequisite.get("version") or "1.0.0"

    def workload_image(self, namespace: str, kind: str, name: str) -> Optional[str]:
        manifest = self.objects.get((namespace, f"{kind}/{name}"))
        return _image_of(json.loads(manifest)) if manifest else None


def _image_of(obj: dict) -> Optional[str]:
    template = (obj.get("spec") or {}).get("template") or {}
    containers = (template.get("spec") or {}).get("containers") or []
    return containers[0].get("image") if containers else None


def make_spec(
    backend_tag: str = "1.0.0",
    frontend_tag: str = "1.0.0",
    database_tag: str = "15.4",
    namespace: str = "pci-app-staging",
    **overrides,
) -> ReleaseSpec:
    payload = {
        "environment": "staging",
        "namespace": namespace,
        "releaseName": "pci-app-staging",
        "imageRefs": {
            "database": {"registry": "registry.example", "repository": "postgres", "tag": database_tag},
            "backend": {"registry": "registry.example", "repository": "pci/backend", "tag": backend_tag},
            "frontend": {"registry": "registry.example", "repository": "pci/frontend", "tag": frontend_tag},
        },
        "replicas": {"database": 1, "backend": 2, "frontend": 2},
        "healthChecks": {
            service: {"timeoutSeconds": 1, "intervalSeconds": 1, "maxAttempts": 3}
            for service in ("database", "backend", "frontend")
        },
        "dependencyOrder": ["database", "backend", "frontend"],
        "ports": {"database": 5432, "backend": 3001, "frontend": 3000},
    }
    payload.update(overrides)
    return ReleaseSpec(**payload)

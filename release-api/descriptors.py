"""Resource descriptor model.

Turns a ``ReleaseSpec`` into the ordered list of Kubernetes objects that make
up the stack. Rendering is pure: the same spec always produces the same
objects in the same order, and nothing time- or attempt-specific is written
into them, so re-applying an unchanged spec diffs clean on the cluster.
"""

import hashlib
import json
import re
from typing import List, Optional, Tuple

from errors import InvalidSpec
from models import Environment, ImageRef, ReleaseRequest, ReleaseSpec


MANAGED_BY = "release-orchestrator"
MUTABLE_TAGS = {"latest"}
STATEFUL_SERVICES = {"database"}

DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

DEFAULT_PORTS = {"frontend": 3000, "backend": 3001, "database": 5432}

REPLICA_PROFILES = {
    Environment.PRODUCTION: 2,
    Environment.STAGING: 1,
    Environment.PREVIEW: 1,
}

RESOURCE_PROFILES = {
    Environment.PRODUCTION: {
        "requests": {"cpu": "250m", "memory": "256Mi"},
        "limits": {"cpu": "1", "memory": "512Mi"},
    },
    Environment.STAGING: {
        "requests": {"cpu": "100m", "memory": "128Mi"},
        "limits": {"cpu": "500m", "memory": "256Mi"},
    },
    Environment.PREVIEW: {
        "requests": {"cpu": "50m", "memory": "64Mi"},
        "limits": {"cpu": "250m", "memory": "128Mi"},
    },
}

STORAGE_PROFILES = {
    Environment.PRODUCTION: "10Gi",
    Environment.STAGING: "5Gi",
    Environment.PREVIEW: "1Gi",
}


def derive_namespace(environment: Environment, app_name: str, preview_id: Optional[str] = None) -> str:
    if environment == Environment.PRODUCTION:
        return app_name
    if environment == Environment.STAGING:
        return f"{app_name}-staging"
    return _dns_safe(f"{app_name}-preview-{preview_id or ''}")


def derive_release_name(environment: Environment, app_name: str, preview_id: Optional[str] = None) -> str:
    if environment == Environment.PREVIEW:
        return _dns_safe(f"{app_name}-preview-{preview_id or ''}")
    return f"{app_name}-{environment.value}"


def resolve_release_spec(request: ReleaseRequest, app_name: str, default_registry: str) -> ReleaseSpec:
    """Fill environment defaults into a request and return a concrete spec.

    Only defaults are applied here; invariants are checked by ``validate_spec``
    so an unresolvable request still fails as ``InvalidSpec``.
    """
    environment = request.environment
    image_refs = {}
    for service, value in request.imageRefs.items():
        ref = ImageRef.parse(value) if isinstance(value, str) else value
        if not ref.registry and default_registry:
            ref = ImageRef(registry=default_registry, repository=ref.repository, tag=ref.tag)
        image_refs[service] = ref

    replicas = dict(request.replicas)
    ports = dict(request.ports)
    for service in request.dependencyOrder:
        if service not in replicas:
            replicas[service] = 1 if service in STATEFUL_SERVICES else REPLICA_PROFILES[environment]
        if service not in ports and service in DEFAULT_PORTS:
            ports[service] = DEFAULT_PORTS[service]

    return ReleaseSpec(
        environment=environment,
        previewId=request.previewId,
        namespace=request.namespace or derive_namespace(environment, app_name, request.previewId),
        releaseName=request.releaseName or derive_release_name(environment, app_name, request.previewId),
        imageRefs=image_refs,
        replicas=replicas,
        healthChecks=dict(request.healthChecks),
        dependencyOrder=list(request.dependencyOrder),
        ports=ports,
        config=dict(request.config),
        ingress=request.ingress,
        allowMutableTags=request.allowMutableTags,
    )


def validate_spec(spec: ReleaseSpec) -> None:
    problems: List[str] = []
    order = spec.dependencyOrder
    if not order:
        problems.append("dependencyOrder must list at least one service")
    seen = set()
    for service in order:
        if service in seen:
            problems.append(f"{service} appears more than once in dependencyOrder")
        seen.add(service)
        if not DNS_LABEL.match(service):
            problems.append(f"{service} is not a valid service name")
        if service not in spec.imageRefs:
            problems.append(f"{service} has no imageRefs entry")
        if service not in spec.replicas:
            problems.append(f"{service} has no replicas entry")
        if service not in spec.healthChecks:
            problems.append(f"{service} has no healthChecks entry")
        if service not in spec.ports:
            problems.append(f"{service} has no port")
    for mapping_name, mapping in (
        ("imageRefs", spec.imageRefs),
        ("replicas", spec.replicas),
        ("healthChecks", spec.healthChecks),
    ):
        for service in sorted(mapping):
            if service not in seen:
                problems.append(f"{mapping_name} entry {service} is not in dependencyOrder")

    for service, ref in sorted(spec.imageRefs.items()):
        if not ref.repository:
            problems.append(f"{service} image repository is empty")
        if not ref.tag:
            problems.append(f"{service} image tag is required")
        elif ref.tag in MUTABLE_TAGS and not spec.allowMutableTags:
            problems.append(f"{service} image tag '{ref.tag}' is mutable; set allowMutableTags to use it")
    for service, count in sorted(spec.replicas.items()):
        if count < 0:
            problems.append(f"{service} replicas must be >= 0")
    for service, port in sorted(spec.ports.items()):
        if not 0 < port < 65536:
            problems.append(f"{service} port {port} is out of range")
    for service, check in sorted(spec.healthChecks.items()):
        if check.path is not None and not check.path.startswith("/"):
            problems.append(f"{service} health check path must start with '/'")

    if len(spec.namespace) > 63 or not DNS_LABEL.match(spec.namespace):
        problems.append(f"namespace {spec.namespace!r} is not a valid DNS label")
    if not DNS_LABEL.match(spec.releaseName):
        problems.append(f"releaseName {spec.releaseName!r} is not a valid DNS label")
    if spec.environment == Environment.PREVIEW and not spec.previewId:
        problems.append("preview releases require previewId")
    if spec.ingress is not None:
        if spec.ingress.service not in seen:
            problems.append(f"ingress service {spec.ingress.service} is not in dependencyOrder")
        if not spec.ingress.path.startswith("/"):
            problems.append("ingress path must start with '/'")
    for service in sorted(spec.config):
        if service not in seen:
            problems.append(f"config entry {service} is not in dependencyOrder")

    if problems:
        raise InvalidSpec("Release spec is invalid", problems)


def render(spec: ReleaseSpec) -> List[dict]:
    objects: List[dict] = []
    for _, service_objects in render_by_service(spec):
        objects.extend(service_objects)
    return objects


def render_by_service(spec: ReleaseSpec) -> List[Tuple[str, List[dict]]]:
    validate_spec(spec)
    return [(service, _render_service(spec, service)) for service in spec.dependencyOrder]


def service_ref(spec: ReleaseSpec, service: str) -> dict:
    name = object_name(spec.releaseName, service)
    return {
        "namespace": spec.namespace,
        "service": service,
        "kind": "StatefulSet" if service in STATEFUL_SERVICES else "Deployment",
        "name": name,
        "serviceName": name,
        "port": spec.ports.get(service),
    }


def manifest_digest(objects: List[dict]) -> str:
    payload = json.dumps(objects, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def object_name(release_name: str, service: str) -> str:
    return f"{release_name}-{service}"[:63].rstrip("-")


def _render_service(spec: ReleaseSpec, service: str) -> List[dict]:
    name = object_name(spec.releaseName, service)
    labels = _selector_labels(spec, service)
    objects: List[dict] = []
    config = spec.config.get(service) or {}
    if config:
        objects.append(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": _metadata(spec, service, f"{name}-config"),
                "data": {key: config[key] for key in sorted(config)},
            }
        )
    objects.append(_workload(spec, service, name, labels, bool(config)))
    objects.append(
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": _metadata(spec, service, name),
            "spec": {
                "type": "ClusterIP",
                "selector": dict(labels),
                "ports": [
                    {
                        "name": "http" if service not in STATEFUL_SERVICES else "tcp",
                        "port": spec.ports[service],
                        "targetPort": spec.ports[service],
                        "protocol": "TCP",
                    }
                ],
            },
        }
    )
    if spec.ingress is not None and spec.ingress.service == service:
        objects.append(_ingress(spec, service, name))
    return objects


def _workload(spec: ReleaseSpec, service: str, name: str, labels: dict, has_config: bool) -> dict:
    port = spec.ports[service]
    check = spec.healthChecks[service]
    container = {
        "name": service,
        "image": spec.imageRefs[service].reference(),
        "imagePullPolicy": "Always" if spec.imageRefs[service].tag in MUTABLE_TAGS else "IfNotPresent",
        "ports": [{"containerPort": port, "protocol": "TCP"}],
        "resources": {key: dict(value) for key, value in RESOURCE_PROFILES[spec.environment].items()},
        "readinessProbe": _probe(check.path, port, check.timeoutSeconds),
    }
    if has_config:
        container["envFrom"] = [{"configMapRef": {"name": f"{name}-config"}}]
    workload_spec = {
        "replicas": spec.replicas[service],
        "selector": {"matchLabels": dict(labels)},
        "template": {
            "metadata": {"labels": dict(labels)},
            "spec": {"containers": [container]},
        },
    }
    kind = "Deployment"
    if service in STATEFUL_SERVICES:
        kind = "StatefulSet"
        container["volumeMounts"] = [{"name": "data", "mountPath": "/var/lib/postgresql/data"}]
        workload_spec["serviceName"] = name
        workload_spec["volumeClaimTemplates"] = [
            {
                "metadata": {"name": "data"},
                "spec": {
                    "accessModes": ["ReadWriteOnce"],
                    "resources": {"requests": {"storage": STORAGE_PROFILES[spec.environment]}},
                },
            }
        ]
    metadata = _metadata(spec, service, name)
    metadata["labels"]["app.kubernetes.io/version"] = _label_value(spec.imageRefs[service].tag)
    return {
        "apiVersion": "apps/v1",
        "kind": kind,
        "metadata": metadata,
        "spec": workload_spec,
    }


def _ingress(spec: ReleaseSpec, service: str, name: str) -> dict:
    ingress = spec.ingress
    metadata = _metadata(spec, service, name)
    if ingress.tlsIssuer:
        metadata["annotations"] = {"cert-manager.io/cluster-issuer": ingress.tlsIssuer}
    body = {
        "ingressClassName": ingress.className,
        "rules": [
            {
                "host": ingress.host,
                "http": {
                    "paths": [
                        {
                            "path": ingress.path,
                            "pathType": "Prefix",
                            "backend": {"service": {"name": name, "port": {"number": spec.ports[service]}}},
                        }
                    ]
                },
            }
        ],
    }
    if ingress.tlsIssuer:
        body["tls"] = [{"hosts": [ingress.host], "secretName": f"{name}-tls"}]
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": metadata,
        "spec": body,
    }


def _probe(path: Optional[str], port: int, timeout_seconds: float) -> dict:
    probe = {"periodSeconds": 5, "timeoutSeconds": max(int(timeout_seconds), 1)}
    if path:
        probe["httpGet"] = {"path": path, "port": port}
    else:
        probe["tcpSocket"] = {"port": port}
    return probe


def _selector_labels(spec: ReleaseSpec, service: str) -> dict:
    return {
        "app.kubernetes.io/name": service,
        "app.kubernetes.io/instance": spec.releaseName,
    }


def _metadata(spec: ReleaseSpec, service: str, name: str) -> dict:
    labels = _selector_labels(spec, service)
    labels["app.kubernetes.io/component"] = service
    labels["app.kubernetes.io/part-of"] = spec.releaseName
    labels["app.kubernetes.io/managed-by"] = MANAGED_BY
    return {"name": name, "namespace": spec.namespace, "labels": labels}


def _label_value(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_.-]", "-", value)[:63]
    return cleaned.strip("-_.")


def _dns_safe(value: str) -> str:
    cleaned = re.sub(r"[^a-z0-9-]", "-", value.lower())
    cleaned = re.sub(r"-+", "-", cleaned)
    return cleaned[:63].strip("-")

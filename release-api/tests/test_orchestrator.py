import threading
from pathlib import Path

import httpx
import pytest

from fake_cluster import FakeClock, FakeCluster, make_spec

from descriptors import render_by_service, resolve_release_spec
from errors import InvalidSpec, ReleaseInProgress
from health_gate import HealthGate
from models import Prerequisite, ReleaseRequest
from orchestrator import ReleaseOrchestrator
from prerequisites import PrerequisiteInstaller
from storage import Storage


CERT_MANAGER = Prerequisite(
    name="cert-manager",
    namespace="cert-manager",
    chart="cert-manager",
    repoName="jetstack",
    repoUrl="https://charts.jetstack.io",
    version="v1.13.0",
    values={"installCRDs": "true"},
)

BACKEND_IMAGE = "registry.example/pci/backend:{}"


def _build(tmp_path: Path, cluster: FakeCluster = None, clock: FakeClock = None, prerequisites=None):
    cluster = cluster or FakeCluster()
    clock = clock or FakeClock()
    storage = Storage(str(tmp_path / "releases.db"))
    orchestrator = ReleaseOrchestrator(
        storage,
        cluster,
        PrerequisiteInstaller(cluster, verify_attempts=2, verify_base_seconds=0, sleep=clock.sleep),
        HealthGate(cluster, sleep=clock.sleep),
        prerequisites=[CERT_MANAGER] if prerequisites is None else prerequisites,
        rollback_grace_seconds=600,
        clock=clock,
    )
    return orchestrator, storage, cluster, clock


def _states(storage: Storage, release_id: str) -> list:
    return [event["state"] for event in storage.list_events(release_id)]


def test_first_release_succeeds_in_dependency_order(tmp_path: Path):
    orchestrator, storage, cluster, _ = _build(tmp_path)

    record = orchestrator.run_release(make_spec(), deadline_seconds=600, requested_by="user-1")

    assert record.outcome.value == "SUCCEEDED"
    assert record.previousGoodId is None
    assert cluster.applied_services == ["database", "backend", "frontend"]
    assert cluster.install_calls == ["cert-manager"]
    assert _states(storage, record.id) == [
        "PENDING",
        "PREREQUISITES_READY",
        "APPLYING",
        "HEALTH_CHECKING",
        "APPLYING",
        "HEALTH_CHECKING",
        "APPLYING",
        "HEALTH_CHECKING",
        "SUCCEEDED",
    ]
    assert record.mutations == cluster.mutations
    assert orchestrator.get_current("pci-app-staging").id == record.id


def test_each_service_is_healthy_before_the_next_is_applied(tmp_path: Path):
    orchestrator, _, cluster, _ = _build(tmp_path)
    calls = []
    original_apply = cluster.apply
    original_status = cluster.get_status

    def apply(namespace, objects, timeout=None):
        calls.append(("apply", objects[0]["metadata"]["labels"]["app.kubernetes.io/component"]))
        return original_apply(namespace, objects, timeout)

    def get_status(service_ref, timeout=None):
        calls.append(("status", service_ref["service"]))
        return original_status(service_ref, timeout)

    cluster.apply = apply
    cluster.get_status = get_status

    orchestrator.run_release(make_spec())

    assert calls == [
        ("apply", "database"),
        ("status", "database"),
        ("apply", "backend"),
        ("status", "backend"),
        ("apply", "frontend"),
        ("status", "frontend"),
    ]


def test_identical_rerun_makes_no_mutations(tmp_path: Path):
    orchestrator, storage, cluster, _ = _build(tmp_path)
    first = orchestrator.run_release(make_spec())
    mutations_after_first = cluster.mutations
    installs_after_first = list(cluster.install_calls)

    second = orchestrator.run_release(make_spec())

    assert second.outcome.value == "SUCCEEDED"
    assert second.mutations == 0
    assert cluster.mutations == mutations_after_first
    assert cluster.install_calls == installs_after_first
    assert second.previousGoodId == first.id
    assert orchestrator.get_current("pci-app-staging").id == second.id
    assert [item["id"] for item in storage.list_releases("pci-app-staging")] == [second.id, first.id]


def test_unhealthy_backend_rolls_back_to_previous_release(tmp_path: Path):
    orchestrator, storage, cluster, _ = _build(tmp_path)
    good = orchestrator.run_release(make_spec(backend_tag="1.0.0"))
    cluster.unhealthy_images.add(BACKEND_IMAGE.format("2.0.0"))
    cluster.applied_services.clear()

    record = orchestrator.run_release(make_spec(backend_tag="2.0.0"))

    assert record.outcome.value == "ROLLED_BACK"
    assert record.previousGoodId == good.id
    assert [failure.category for failure in record.failures] == ["HEALTH"]
    # the attempt stops at backend; rollback restores the whole previous stack
    assert cluster.applied_services == ["database", "backend", "database", "backend", "frontend"]
    assert cluster.workload_image("pci-app-staging", "Deployment", "pci-app-staging-backend") == BACKEND_IMAGE.format(
        "1.0.0"
    )
    assert _states(storage, record.id)[-2:] == ["ROLLING_BACK", "ROLLED_BACK"]
    assert orchestrator.get_current("pci-app-staging").id == good.id


def test_first_release_failure_without_rollback_target_fails(tmp_path: Path):
    orchestrator, storage, cluster, _ = _build(tmp_path)
    cluster.unhealthy_images.add(BACKEND_IMAGE.format("1.0.0"))

    record = orchestrator.run_release(make_spec())

    assert record.outcome.value == "FAILED"
    assert [failure.category for failure in record.failures] == ["HEALTH", "ROLLBACK"]
    assert "ROLLING_BACK" not in _states(storage, record.id)
    assert "frontend" not in cluster.applied_services
    assert orchestrator.get_current("pci-app-staging") is None


def test_rejected_manifest_is_recorded_as_apply_failure_and_rolled_back(tmp_path: Path):
    orchestrator, _, cluster, _ = _build(tmp_path)
    good = orchestrator.run_release(make_spec())
    cluster.failing_images.add(BACKEND_IMAGE.format("3.0.0"))

    record = orchestrator.run_release(make_spec(backend_tag="3.0.0"))

    assert record.outcome.value == "ROLLED_BACK"
    assert record.failures[0].category == "VALIDATION"
    assert "backend" in record.failures[0].summary
    assert orchestrator.get_current("pci-app-staging").id == good.id


def test_failed_rollback_ends_failed_with_rollback_failure(tmp_path: Path):
    orchestrator, storage, cluster, _ = _build(tmp_path)
    good = orchestrator.run_release(make_spec())
    cluster.unhealthy_images.update({BACKEND_IMAGE.format("1.0.0"), BACKEND_IMAGE.format("2.0.0")})

    record = orchestrator.run_release(make_spec(backend_tag="2.0.0"))

    assert record.outcome.value == "FAILED"
    assert [failure.category for failure in record.failures] == ["HEALTH", "ROLLBACK"]
    assert good.id in record.failures[1].summary
    assert _states(storage, record.id)[-2:] == ["ROLLING_BACK", "FAILED"]
    assert orchestrator.get_current("pci-app-staging").id == good.id


def test_prerequisite_failure_fails_before_any_apply(tmp_path: Path):
    orchestrator, storage, cluster, _ = _build(tmp_path)
    cluster.install_failures["cert-manager"] = "Error: chart repository unreachable"

    record = orchestrator.run_release(make_spec())

    assert record.outcome.value == "FAILED"
    assert record.failures[0].category == "PREREQUISITE"
    assert cluster.applied_services == []
    assert _states(storage, record.id) == ["PENDING", "FAILED"]


def test_unreachable_cluster_fails_as_prerequisite(tmp_path: Path):
    orchestrator, _, cluster, _ = _build(tmp_path)
    cluster.unreachable = True

    record = orchestrator.run_release(make_spec())

    assert record.outcome.value == "FAILED"
    assert record.failures[0].category == "PREREQUISITE"
    assert "cluster" in record.failures[0].summary
    assert cluster.applied_services == []


def test_deadline_during_health_gate_rolls_back(tmp_path: Path):
    orchestrator, storage, cluster, clock = _build(tmp_path)
    good = orchestrator.run_release(make_spec())
    cluster.unhealthy_images.add(BACKEND_IMAGE.format("2.0.0"))
    slow_checks = {
        service: {"timeoutSeconds": 1, "intervalSeconds": 5, "maxAttempts": 100}
        for service in ("database", "backend", "frontend")
    }

    record = orchestrator.run_release(make_spec(backend_tag="2.0.0", healthChecks=slow_checks), deadline_seconds=10)

    assert record.outcome.value == "ROLLED_BACK"
    assert record.failures[0].category == "TIMEOUT"
    assert clock.now == pytest.approx(10)
    assert orchestrator.get_current("pci-app-staging").id == good.id


def test_deadline_exhausted_during_prerequisites_fails(tmp_path: Path):
    clock = FakeClock()
    orchestrator, _, cluster, _ = _build(tmp_path, clock=clock)
    cluster.install_hook = lambda prerequisite: clock.sleep(30)

    record = orchestrator.run_release(make_spec(), deadline_seconds=10)

    assert record.outcome.value == "FAILED"
    assert record.failures[0].category == "TIMEOUT"
    assert cluster.applied_services == []


def test_invalid_spec_creates_no_record(tmp_path: Path):
    orchestrator, storage, _, _ = _build(tmp_path)
    spec = make_spec(dependencyOrder=["database", "backend"])

    with pytest.raises(InvalidSpec) as excinfo:
        orchestrator.run_release(spec)

    assert any("frontend" in problem for problem in excinfo.value.problems)
    assert storage.list_releases() == []


def test_concurrent_release_in_same_namespace_is_rejected(tmp_path: Path):
    orchestrator, storage, cluster, _ = _build(tmp_path)
    entered = threading.Event()
    release = threading.Event()

    def block(prerequisite):
        entered.set()
        release.wait(timeout=5)

    cluster.install_hook = block
    results = {}
    worker = threading.Thread(target=lambda: results.setdefault("first", orchestrator.run_release(make_spec())))
    worker.start()
    assert entered.wait(timeout=5)

    with pytest.raises(ReleaseInProgress):
        orchestrator.run_release(make_spec(backend_tag="2.0.0"))

    release.set()
    worker.join(timeout=5)
    assert results["first"].outcome.value == "SUCCEEDED"
    assert len(storage.list_releases("pci-app-staging")) == 1


def test_other_namespace_is_not_blocked(tmp_path: Path):
    orchestrator, storage, _, _ = _build(tmp_path)
    storage.begin_release(
        {
            "id": "in-flight",
            "namespace": "pci-app",
            "environment": "production",
            "state": "APPLYING",
            "spec": {},
            "startedAt": "2026-01-01T00:00:00Z",
        }
    )

    record = orchestrator.run_release(make_spec())

    assert record.outcome.value == "SUCCEEDED"


def test_unexpected_error_is_recorded_as_failed(tmp_path: Path):
    orchestrator, _, cluster, _ = _build(tmp_path)
    cluster.status_error = ValueError("status payload was not a mapping")

    record = orchestrator.run_release(make_spec())

    assert record.outcome.value == "FAILED"
    assert [failure.category for failure in record.failures] == ["UNKNOWN", "ROLLBACK"]
    assert "not a mapping" in record.failures[0].detail


def test_unexpected_apply_error_rolls_back_full_stack(tmp_path: Path):
    orchestrator, storage, cluster, _ = _build(tmp_path)
    good = orchestrator.run_release(make_spec())
    cluster.apply_errors["registry.example/pci/frontend:2.0.0"] = OSError("broken pipe")

    record = orchestrator.run_release(make_spec(backend_tag="2.0.0", frontend_tag="2.0.0"))

    assert record.outcome.value == "ROLLED_BACK"
    assert record.failures[0].category == "UNKNOWN"
    assert "broken pipe" in record.failures[0].detail
    assert _states(storage, record.id)[-2:] == ["ROLLING_BACK", "ROLLED_BACK"]
    assert cluster.workload_image("pci-app-staging", "Deployment", "pci-app-staging-backend") == BACKEND_IMAGE.format(
        "1.0.0"
    )
    assert orchestrator.get_current("pci-app-staging").id == good.id


def test_rollback_restores_services_left_behind_by_an_abandoned_release(tmp_path: Path):
    orchestrator, storage, cluster, _ = _build(tmp_path)
    good = orchestrator.run_release(make_spec())
    storage.begin_release(
        {
            "id": "crashed",
            "namespace": "pci-app-staging",
            "environment": "staging",
            "state": "PENDING",
            "spec": {},
            "startedAt": "2026-01-01T00:00:00Z",
        }
    )
    backend_objects = dict(render_by_service(make_spec(backend_tag="2.0.0")))["backend"]
    cluster.apply("pci-app-staging", backend_objects)
    assert orchestrator.resolve_abandoned() == ["crashed"]
    cluster.unhealthy_images.add("registry.example/postgres:16.1")

    record = orchestrator.run_release(make_spec(database_tag="16.1"))

    assert record.outcome.value == "ROLLED_BACK"
    assert record.previousGoodId == good.id
    assert cluster.workload_image("pci-app-staging", "Deployment", "pci-app-staging-backend") == BACKEND_IMAGE.format(
        "1.0.0"
    )
    assert cluster.workload_image("pci-app-staging", "StatefulSet", "pci-app-staging-database") == (
        "registry.example/postgres:15.4"
    )


def test_release_events_carry_the_release_id(tmp_path: Path, caplog):
    orchestrator, _, _, _ = _build(tmp_path)

    with caplog.at_level("INFO", logger="relorch.obs"):
        record = orchestrator.run_release(make_spec())

    events = [message for message in caplog.messages if message.startswith("event=")]
    installed = [message for message in events if message.startswith("event=prerequisite_installed")]
    assert installed and f"release_id={record.id}" in installed[0]
    assert all(f"release_id={record.id}" in message for message in events)


def test_resolve_abandoned_fails_in_flight_releases(tmp_path: Path):
    orchestrator, storage, _, _ = _build(tmp_path)
    storage.begin_release(
        {
            "id": "crashed",
            "namespace": "pci-app-staging",
            "environment": "staging",
            "state": "PENDING",
            "spec": {},
            "startedAt": "2026-01-01T00:00:00Z",
        }
    )
    storage.transition("crashed", "PREREQUISITES_READY")

    assert orchestrator.resolve_abandoned() == ["crashed"]

    crashed = storage.get_release("crashed")
    assert crashed["outcome"] == "FAILED"
    assert crashed["failures"][0]["category"] == "INFRASTRUCTURE"
    assert orchestrator.run_release(make_spec()).outcome.value == "SUCCEEDED"


def _production_request(tag: str) -> ReleaseRequest:
    return ReleaseRequest(
        environment="production",
        imageRefs={"database": "pg:16.1", "backend": f"api:{tag}", "frontend": f"web:{tag}"},
        dependencyOrder=["database", "backend", "frontend"],
        healthChecks={
            "database": {"maxAttempts": 5},
            "backend": {"path": "/api/health", "expectedStatus": 200, "maxAttempts": 5},
            "frontend": {"path": "/", "expectedStatus": 200, "maxAttempts": 5},
        },
    )


def _production_orchestrator(tmp_path: Path):
    cluster = FakeCluster()
    clock = FakeClock()

    def respond(request: httpx.Request) -> httpx.Response:
        image = cluster.workload_image("pci-app", "Deployment", "pci-app-production-backend") or ""
        if request.url.path == "/api/health" and image.endswith("/api:v3"):
            return httpx.Response(503)
        return httpx.Response(200)

    storage = Storage(str(tmp_path / "releases.db"))
    orchestrator = ReleaseOrchestrator(
        storage,
        cluster,
        PrerequisiteInstaller(cluster, sleep=clock.sleep),
        HealthGate(cluster, http_client=httpx.Client(transport=httpx.MockTransport(respond)), sleep=clock.sleep),
        prerequisites=[],
        clock=clock,
    )
    return orchestrator, cluster


def test_production_release_healthy_on_first_poll_becomes_current(tmp_path: Path):
    orchestrator, cluster = _production_orchestrator(tmp_path)
    spec = resolve_release_spec(_production_request("v2"), "pci-app", "pciregistry.azurecr.io")

    record = orchestrator.run_release(spec)

    assert record.outcome.value == "SUCCEEDED"
    assert cluster.status_calls == ["database", "backend", "frontend"]
    assert orchestrator.get_current("pci-app").id == record.id


def test_production_backend_never_healthy_rolls_back_without_touching_frontend(tmp_path: Path):
    orchestrator, cluster = _production_orchestrator(tmp_path)
    good = orchestrator.run_release(resolve_release_spec(_production_request("v2"), "pci-app", "pciregistry.azurecr.io"))

    record = orchestrator.run_release(resolve_release_spec(_production_request("v3"), "pci-app", "pciregistry.azurecr.io"))

    assert record.outcome.value == "ROLLED_BACK"
    assert record.failures[0].category == "HEALTH"
    assert "pciregistry.azurecr.io/web:v3" not in cluster.applied_images
    assert orchestrator.get_current("pci-app").id == good.id


def test_production_backend_never_healthy_on_first_release_fails(tmp_path: Path):
    orchestrator, cluster = _production_orchestrator(tmp_path)

    record = orchestrator.run_release(resolve_release_spec(_production_request("v3"), "pci-app", "pciregistry.azurecr.io"))

    assert record.outcome.value == "FAILED"
    assert cluster.status_calls.count("backend") == 5
    assert "pciregistry.azurecr.io/web:v3" not in cluster.applied_images
    assert orchestrator.get_current("pci-app") is None

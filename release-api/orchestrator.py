import logging
import time
import uuid
from typing import Callable, List, Optional

from cluster_adapter.adapter import ClusterCommandError, build_failure, normalize_failures
from deadline import Deadline
from descriptors import render_by_service, service_ref
from errors import (
    ApplyError,
    DeadlineExceeded,
    PrerequisiteError,
    ReleaseError,
    RollbackImpossible,
    Unhealthy,
)
from health_gate import HealthGate
from models import Prerequisite, ReleaseRecord, ReleaseSpec
from observability import log_event, release_context
from prerequisites import PrerequisiteInstaller
from release_state import STATE_LABELS, can_transition, is_terminal
from storage import Storage, utc_now


def failure_for(exc: Exception) -> dict:
    """Map an orchestrator error onto the normalized failure shape."""
    if isinstance(exc, ApplyError) and exc.failure and exc.failure.get("category") not in {None, "UNKNOWN"}:
        failure = dict(exc.failure)
        failure["summary"] = f"{exc.message}: {failure.get('summary')}"
        return failure
    if isinstance(exc, ReleaseError):
        return build_failure(exc.category, exc.message, exc.action_hint, exc.detail)
    return build_failure(
        "UNKNOWN",
        "Release failed for an unexpected reason.",
        "Retry the release or contact the platform team.",
        str(exc) or exc.__class__.__name__,
    )


class _ReleaseRun:
    def __init__(self, release_id: str, state: str) -> None:
        self.release_id = release_id
        self.state = state
        self.mutations = 0


class ReleaseOrchestrator:
    """Drives one release from PENDING to a terminal outcome.

    Services are applied in dependency order and each one must pass its health
    gate before the next is touched. Any failure after prerequisites are ready
    restores the full stack of the namespace's last SUCCEEDED release, if there
    is one, so no mix of versions is left running. Every release that
    got a record ends SUCCEEDED, ROLLED_BACK or FAILED; only an invalid spec or a
    namespace that is already busy is reported to the caller as an exception.
    """

    def __init__(
        self,
        storage: Storage,
        cluster,
        installer: PrerequisiteInstaller,
        health_gate: HealthGate,
        prerequisites: Optional[List[Prerequisite]] = None,
        rollback_grace_seconds: Optional[float] = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.storage = storage
        self.cluster = cluster
        self.installer = installer
        self.health_gate = health_gate
        self.prerequisites = list(prerequisites or [])
        self.rollback_grace_seconds = rollback_grace_seconds
        self.clock = clock
        self._logger = logging.getLogger("relorch.orchestrator")

    def run_release(
        self,
        spec: ReleaseSpec,
        deadline_seconds: Optional[float] = None,
        intent_correlation_id: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> ReleaseRecord:
        plan = render_by_service(spec)
        record = {
            "id": str(uuid.uuid4()),
            "namespace": spec.namespace,
            "environment": spec.environment.value,
            "state": "PENDING",
            "outcome": None,
            "spec": spec.model_dump(mode="json"),
            "startedAt": utc_now(),
            "finishedAt": None,
            "intentCorrelationId": intent_correlation_id,
            "requestedBy": requested_by,
            "mutations": 0,
        }
        previous_good_id = self.storage.begin_release(record)
        run = _ReleaseRun(record["id"], "PENDING")
        with release_context(run.release_id):
            log_event(
                "release_started",
                namespace=spec.namespace,
                environment=spec.environment.value,
                previous_good_id=previous_good_id,
                deadline_seconds=deadline_seconds,
            )
            deadline = Deadline(deadline_seconds, self.clock)
            try:
                self._drive(run, spec, plan, deadline, previous_good_id)
            except Exception as exc:
                self._logger.exception("release.unexpected_error release_id=%s", run.release_id)
                if not is_terminal(run.state):
                    self._finish(run, "FAILED", [failure_for(exc)], "Release failed unexpectedly")
        return self._record(run.release_id)

    def get_current(self, namespace: str, environment: Optional[str] = None) -> Optional[ReleaseRecord]:
        current = self.storage.get_current(namespace, environment)
        if not current:
            return None
        return ReleaseRecord(**current)

    def resolve_abandoned(self) -> List[str]:
        """Fail releases left in flight by a previous process so their namespaces unblock."""
        resolved = []
        for release in self.storage.list_in_flight():
            failure = build_failure(
                "INFRASTRUCTURE",
                "Release was interrupted before it finished.",
                "Inspect the namespace and start a new release.",
                f"Release was in state {release['state']} when the orchestrator restarted",
            )
            try:
                self.storage.finish_release(release["id"], "FAILED", [failure], "Release abandoned")
            except RuntimeError:
                continue
            with release_context(release["id"]):
                log_event("release_abandoned", namespace=release["namespace"])
            resolved.append(release["id"])
        return resolved

    def _drive(self, run: _ReleaseRun, spec: ReleaseSpec, plan, deadline: Deadline, previous_good_id) -> None:
        try:
            prerequisites = self.installer.ensure(self.prerequisites, deadline)
        except (PrerequisiteError, DeadlineExceeded) as exc:
            self._finish(run, "FAILED", [failure_for(exc)], exc.message)
            return
        installed = [item["name"] for item in prerequisites if item.get("action") == "installed"]
        detail = f"Installed {', '.join(installed)}" if installed else None
        self._transition(run, "PREREQUISITES_READY", detail)

        try:
            for service, objects in plan:
                self._transition(run, "APPLYING", f"Applying {service}")
                deadline.check(f"apply of {service}")
                changed = self._apply(spec.namespace, service, objects, deadline)
                self._transition(
                    run,
                    "HEALTH_CHECKING",
                    f"Applied {service} ({len(changed)} changed); waiting for health gate",
                    mutations=len(changed),
                )
                attempts = self.health_gate.await_ready(service_ref(spec, service), spec.healthChecks[service], deadline)
                self._logger.info(
                    "release.service_ready release_id=%s service=%s attempts=%s",
                    run.release_id,
                    service,
                    attempts,
                )
        except (ApplyError, Unhealthy, DeadlineExceeded) as exc:
            self._recover(run, failure_for(exc), previous_good_id)
            return
        except Exception as exc:
            # The namespace may already be partly mutated.
            self._logger.exception("release.unexpected_error release_id=%s", run.release_id)
            self._recover(run, failure_for(exc), previous_good_id)
            return
        self._finish(run, "SUCCEEDED", [], f"Release {spec.releaseName} is serving")

    def _recover(self, run: _ReleaseRun, cause: dict, previous_good_id: Optional[str]) -> None:
        failures = [cause]
        previous = self.storage.get_release(previous_good_id) if previous_good_id else None
        if previous is None:
            impossible = RollbackImpossible(
                "No previous successful release to roll back to",
                f"Namespace has no SUCCEEDED release before {run.release_id}",
            )
            failures.append(failure_for(impossible))
            self._finish(run, "FAILED", failures, impossible.message)
            return

        self._transition(run, "ROLLING_BACK", f"Restoring release {previous['id']}")
        log_event("release_rollback_started", target_release_id=previous["id"])
        grace = Deadline(self.rollback_grace_seconds, self.clock)
        try:
            previous_spec = ReleaseSpec(**previous["spec"])
            for service, objects in render_by_service(previous_spec):
                grace.check(f"rollback of {service}")
                changed = self._apply(previous_spec.namespace, service, objects, grace)
                run.mutations += len(changed)
                self.health_gate.await_ready(
                    service_ref(previous_spec, service),
                    previous_spec.healthChecks[service],
                    grace,
                )
        except Exception as rollback_exc:
            if not isinstance(rollback_exc, ReleaseError):
                self._logger.exception("release.rollback_error release_id=%s", run.release_id)
            reason = failure_for(rollback_exc)
            failures.append(
                build_failure(
                    "ROLLBACK",
                    f"Rollback to release {previous['id']} failed: {reason['summary']}",
                    RollbackImpossible.action_hint,
                    reason.get("detail"),
                )
            )
            self._finish(run, "FAILED", failures, "Rollback failed")
            return
        self._finish(run, "ROLLED_BACK", failures, f"Restored release {previous['id']}")

    def _apply(self, namespace: str, service: str, objects: List[dict], deadline: Deadline) -> List[str]:
        try:
            changed = self.cluster.apply(namespace, objects, timeout=deadline.bounded(None))
        except ClusterCommandError as exc:
            raise ApplyError(service, str(exc), exc.failure) from exc
        log_event("release_service_applied", namespace=namespace, service=service, changed=len(changed))
        return changed

    def _transition(self, run: _ReleaseRun, state: str, detail: Optional[str] = None, mutations: int = 0) -> None:
        if not can_transition(run.state, state):
            raise RuntimeError(f"Illegal release transition {run.state} -> {state}")
        self.storage.transition(run.release_id, state, detail or STATE_LABELS[state], mutations=mutations)
        log_event("release_transition", from_state=run.state, to_state=state)
        run.state = state

    def _finish(self, run: _ReleaseRun, outcome: str, failures: List[dict], detail: Optional[str] = None) -> None:
        # FAILED is reachable from every in-flight state.
        if outcome != "FAILED" and not can_transition(run.state, outcome):
            raise RuntimeError(f"Illegal release transition {run.state} -> {outcome}")
        self.storage.finish_release(
            run.release_id,
            outcome,
            normalize_failures(failures),
            detail or STATE_LABELS[outcome],
            mutations=run.mutations,
        )
        log_event(
            "release_finished",
            from_state=run.state,
            outcome=outcome,
            failure_count=len(failures),
        )
        run.mutations = 0
        run.state = outcome

    def _record(self, release_id: str) -> ReleaseRecord:
        return ReleaseRecord(**self.storage.get_release(release_id))

"""Release error taxonomy.

``InvalidSpec`` and ``ReleaseInProgress`` are caller errors: they are raised
before a release record exists and surface as HTTP errors. Everything else is
recorded on the release record and resolved by the orchestrator into a
terminal outcome.
"""

from typing import Optional


class ReleaseError(Exception):
    code = "RELEASE_ERROR"
    category = "UNKNOWN"
    action_hint = "Retry the release or contact the platform team."

    def __init__(self, message: str, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class InvalidSpec(ReleaseError):
    code = "INVALID_SPEC"
    category = "VALIDATION"
    action_hint = "Fix the release spec and resubmit."

    def __init__(self, message: str, problems: Optional[list[str]] = None) -> None:
        super().__init__(message, "; ".join(problems or []) or None)
        self.problems = problems or []


class ReleaseInProgress(ReleaseError):
    code = "RELEASE_IN_PROGRESS"
    category = "POLICY"
    action_hint = "Wait for the in-flight release to finish."

    def __init__(self, namespace: str, release_id: Optional[str] = None) -> None:
        super().__init__(f"Namespace {namespace} already has a release in flight", release_id)
        self.namespace = namespace
        self.release_id = release_id


class PrerequisiteError(ReleaseError):
    code = "PREREQUISITE_FAILED"
    category = "PREREQUISITE"
    action_hint = "Fix the cluster add-on and retry the whole release."

    def __init__(self, name: str, cause: str) -> None:
        super().__init__(f"Prerequisite {name} is not ready", cause)
        self.name = name
        self.cause = cause


class ApplyError(ReleaseError):
    code = "APPLY_FAILED"
    category = "APPLY"
    action_hint = "Inspect the failing object and retry the release."

    def __init__(self, service: str, detail: str, failure: Optional[dict] = None) -> None:
        super().__init__(f"Resources for {service} could not be applied", detail)
        self.service = service
        self.failure = failure


class Unhealthy(ReleaseError):
    code = "UNHEALTHY"
    category = "HEALTH"
    action_hint = "Inspect the service logs; the release did not become ready."

    def __init__(self, service: str, attempts: int, last_error: Optional[str]) -> None:
        super().__init__(f"Service {service} failed its health gate after {attempts} attempts", last_error)
        self.service = service
        self.attempts = attempts
        self.last_error = last_error


class DeadlineExceeded(ReleaseError):
    code = "DEADLINE_EXCEEDED"
    category = "TIMEOUT"
    action_hint = "Retry the release or extend its deadline."

    def __init__(self, operation: str) -> None:
        super().__init__(f"Release deadline exceeded during {operation}")
        self.operation = operation


class RollbackImpossible(ReleaseError):
    code = "ROLLBACK_IMPOSSIBLE"
    category = "ROLLBACK"
    action_hint = "Manual intervention required: the namespace is left in its last applied state."

import logging
import os
import sys
import uuid
from typing import Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError
from fastapi.responses import JSONResponse

from auth import get_actor
from config import SETTINGS
from errors import InvalidSpec, ReleaseInProgress
from idempotency import IdempotencyStore, request_fingerprint
from models import ReleaseRequest, Role, TimelineEvent
from policy import Guardrails, PolicyError
from release_state import STATE_LABELS
from storage import build_storage


HERE = os.path.abspath(os.path.dirname(__file__))
ADAPTER_CANDIDATES = [
    os.path.join(HERE, "cluster-adapter"),
    os.path.join(os.path.dirname(HERE), "cluster-adapter"),
]
for candidate in ADAPTER_CANDIDATES:
    if os.path.isdir(candidate) and candidate not in sys.path:
        sys.path.append(candidate)
        break

from cluster_adapter.adapter import KubectlAdapter
from cluster_adapter.redaction import redact_text

from descriptors import render, resolve_release_spec
from health_gate import HealthGate
from observability import get_request_id, log_event, request_id_ctx
from orchestrator import ReleaseOrchestrator
from prerequisites import PrerequisiteInstaller


app = FastAPI(title="Release Orchestrator API", version="1.0.0")
storage = build_storage()
idempotency = IdempotencyStore()
cluster = KubectlAdapter(
    mode=SETTINGS.cluster_mode,
    kube_context=SETTINGS.kube_context,
    token=SETTINGS.kube_token,
    command_timeout_seconds=SETTINGS.command_timeout_seconds,
    request_id_provider=get_request_id,
)
installer = PrerequisiteInstaller(
    cluster,
    verify_attempts=SETTINGS.prereq_verify_attempts,
    verify_base_seconds=SETTINGS.prereq_verify_base_seconds,
)
health_gate = HealthGate(cluster)
orchestrator = ReleaseOrchestrator(
    storage,
    cluster,
    installer,
    health_gate,
    prerequisites=SETTINGS.prerequisites,
    rollback_grace_seconds=SETTINGS.rollback_grace_seconds,
)
logger = logging.getLogger("relorch.api")
guardrails = Guardrails(storage)

logger.info(
    "config.cluster loaded mode=%s kube_context=%s kube_token=%s prerequisites=%s",
    SETTINGS.cluster_mode,
    SETTINGS.kube_context or "default",
    "set" if SETTINGS.kube_token else "missing",
    ",".join(p.name for p in SETTINGS.prerequisites) or "none",
)

if SETTINGS.resolve_abandoned_on_start:
    abandoned = orchestrator.resolve_abandoned()
    if abandoned:
        logger.warning("release.abandoned_resolved count=%s ids=%s", len(abandoned), ",".join(abandoned))

RELEASE_ROLES = {Role.PLATFORM_ADMIN, Role.RELEASE_OPERATOR}
READ_ROLES = {Role.PLATFORM_ADMIN, Role.RELEASE_OPERATOR, Role.OBSERVER}

USER_ERROR_CODES = {
    "INVALID_REQUEST",
    "INVALID_SPEC",
    "IDMP_KEY_REQUIRED",
    "IDMP_KEY_CONFLICT",
    "REGISTRY_NOT_ALLOWLISTED",
    "NOT_FOUND",
    "NO_CURRENT_RELEASE",
}
POLICY_CODES = {
    "RELEASE_IN_PROGRESS",
    "MUTATIONS_DISABLED",
    "ROLE_FORBIDDEN",
    "AUTHZ_ROLE_REQUIRED",
    "UNAUTHORIZED",
}


def classify_failure_cause(error_code: Optional[str]) -> str:
    if error_code in USER_ERROR_CODES:
        return "USER_ERROR"
    if error_code in POLICY_CODES:
        return "POLICY_CHANGE"
    return "UNKNOWN"


def error_response(status_code: int, code: str, message: str, operator_hint: Optional[str] = None) -> JSONResponse:
    payload = {
        "code": code,
        "error_code": code,
        "failure_cause": classify_failure_cause(code),
        "message": message,
        "request_id": request_id_ctx.get() or str(uuid.uuid4()),
    }
    if operator_hint:
        payload["operator_hint"] = operator_hint
    return JSONResponse(status_code=status_code, content=payload)


@app.exception_handler(PolicyError)
async def policy_error_handler(request: Request, exc: PolicyError):
    return error_response(exc.status_code, exc.code, exc.message)


@app.exception_handler(InvalidSpec)
async def invalid_spec_handler(request: Request, exc: InvalidSpec):
    return error_response(400, exc.code, exc.message, operator_hint=redact_text(exc.detail or ""))


@app.exception_handler(ReleaseInProgress)
async def release_in_progress_handler(request: Request, exc: ReleaseInProgress):
    return error_response(409, exc.code, exc.message)


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        payload = dict(exc.detail)
        code = payload.get("code")
        payload.setdefault("error_code", code)
        payload.setdefault("failure_cause", classify_failure_cause(code))
        payload["request_id"] = request_id_ctx.get() or str(uuid.uuid4())
        return JSONResponse(status_code=exc.status_code, content=payload)
    return error_response(exc.status_code, "HTTP_ERROR", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = sorted({".".join(str(part) for part in (error.get("loc") or ())[1:]) for error in exc.errors()})
    return error_response(400, "INVALID_REQUEST", "Invalid request", operator_hint=", ".join(f for f in fields if f))


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-Id"] = request_id
    return response


def _idempotency_key(request: Request, idempotency_key: str) -> str:
    return f"{idempotency_key}:{request.method}:{request.url.path}"


def enforce_idempotency(request: Request, idempotency_key: str, fingerprint: str):
    cached = idempotency.get(_idempotency_key(request, idempotency_key))
    if not cached:
        return None
    if cached.get("request_fingerprint") != fingerprint:
        return error_response(
            409,
            "IDMP_KEY_CONFLICT",
            "Idempotency-Key was already used with a different request",
        )
    return JSONResponse(status_code=cached["status_code"], content=cached["response"])


def store_idempotency(request: Request, idempotency_key: str, response: dict, status_code: int, fingerprint: str) -> None:
    idempotency.set(_idempotency_key(request, idempotency_key), response, status_code, fingerprint)


def _timeline_event(state: str, occurred_at: str, detail: Optional[str]) -> dict:
    return TimelineEvent(
        key=state.lower(),
        label=STATE_LABELS.get(state, state.title()),
        occurredAt=occurred_at,
        detail=detail,
    ).model_dump()


@app.get("/v1/health")
def health():
    return {"status": "ok"}


@app.post("/v1/releases", status_code=201)
def create_release(
    body: ReleaseRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    guardrails.require_role(actor, RELEASE_ROLES, "start releases")
    guardrails.require_mutations_enabled()
    guardrails.require_idempotency_key(idempotency_key)
    fingerprint = request_fingerprint(body.model_dump(mode="json"))
    cached = enforce_idempotency(request, idempotency_key, fingerprint)
    if cached:
        return cached

    spec = resolve_release_spec(body, SETTINGS.app_name, SETTINGS.default_registry)
    guardrails.validate_registries(spec)
    guardrails.enforce_namespace_lock(spec.namespace)
    deadline_seconds = body.deadlineSeconds or SETTINGS.release_deadline_seconds
    log_event(
        "release_intent_submitted",
        actor_id=actor.actor_id,
        actor_role=actor.role.value,
        namespace=spec.namespace,
        environment=spec.environment.value,
        deadline_seconds=deadline_seconds,
    )
    record = orchestrator.run_release(
        spec,
        deadline_seconds=deadline_seconds,
        intent_correlation_id=idempotency_key,
        requested_by=actor.actor_id,
    )
    payload = record.model_dump(mode="json")
    logger.info(
        "release.finished release_id=%s namespace=%s outcome=%s mutations=%s idempotency_key=%s",
        record.id,
        record.namespace,
        payload["outcome"],
        record.mutations,
        idempotency_key,
    )
    store_idempotency(request, idempotency_key, payload, 201, fingerprint)
    return payload


@app.post("/v1/releases/validate")
def validate_release(
    body: ReleaseRequest,
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    guardrails.require_role(actor, RELEASE_ROLES, "validate releases")
    spec = resolve_release_spec(body, SETTINGS.app_name, SETTINGS.default_registry)
    guardrails.validate_registries(spec)
    objects = render(spec)
    return {
        "spec": spec.model_dump(mode="json"),
        "resources": objects,
        "summary": [f"{obj['kind']}/{obj['metadata']['name']}" for obj in objects],
    }


@app.get("/v1/releases")
def list_releases(
    namespace: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    guardrails.require_role(actor, READ_ROLES, "view releases")
    return storage.list_releases(namespace, limit)


@app.get("/v1/releases/{release_id}")
def get_release(release_id: str, authorization: Optional[str] = Header(None)):
    actor = get_actor(authorization)
    guardrails.require_role(actor, READ_ROLES, "view releases")
    record = storage.get_release(release_id)
    if not record:
        return error_response(404, "NOT_FOUND", "Release not found")
    return record


@app.get("/v1/releases/{release_id}/timeline")
def get_release_timeline(release_id: str, authorization: Optional[str] = Header(None)):
    actor = get_actor(authorization)
    guardrails.require_role(actor, READ_ROLES, "view releases")
    if not storage.get_release(release_id):
        return error_response(404, "NOT_FOUND", "Release not found")
    return [
        _timeline_event(event["state"], event["occurredAt"], event["detail"])
        for event in storage.list_events(release_id)
    ]


@app.get("/v1/namespaces/{namespace}/current")
def get_current_release(
    namespace: str,
    environment: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    guardrails.require_role(actor, READ_ROLES, "view releases")
    current = orchestrator.get_current(namespace, environment)
    if current is None:
        return error_response(404, "NO_CURRENT_RELEASE", f"Namespace {namespace} has no successful release")
    return current.model_dump(mode="json")

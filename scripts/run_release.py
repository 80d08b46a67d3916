#!/usr/bin/env python3
"""Submit a release to the release orchestrator via POST /v1/releases.

Intended for CI and operators:
- builds a ReleaseRequest for the frontend/backend/database stack
- submits it with an Idempotency-Key so a retried CI step never starts a second release
- waits for the terminal record and exits 0 only when the outcome is SUCCEEDED
"""

from __future__ import annotations

import argparse
import hashlib
import json
import os
import sys
from typing import Any

import requests


SERVICES = ("database", "backend", "frontend")
DEFAULT_HEALTH_PATHS = {"backend": "/health", "frontend": "/"}


class CliError(RuntimeError):
    """Raised for user-facing validation/runtime errors."""


def _required_env(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise CliError(f"Missing required env var: {name}")
    return value


def normalize_api_base(value: str) -> str:
    base = value.strip().rstrip("/")
    if not base:
        raise CliError("RELORCH_API_BASE must not be empty")
    if not base.endswith("/v1"):
        base = f"{base}/v1"
    return base


def build_release_request(args: argparse.Namespace) -> dict[str, Any]:
    images = {
        "database": args.database_image,
        "backend": f"{args.registry}/pci-backend:{args.backend_tag or args.tag}",
        "frontend": f"{args.registry}/pci-frontend:{args.frontend_tag or args.tag}",
    }
    health_checks = {}
    for service in SERVICES:
        check: dict[str, Any] = {"maxAttempts": args.health_attempts, "intervalSeconds": args.health_interval}
        if service in DEFAULT_HEALTH_PATHS:
            check["path"] = DEFAULT_HEALTH_PATHS[service]
        health_checks[service] = check
    payload: dict[str, Any] = {
        "environment": args.environment,
        "imageRefs": images,
        "healthChecks": health_checks,
        "dependencyOrder": list(SERVICES),
        "allowMutableTags": args.allow_mutable_tags,
    }
    if args.namespace:
        payload["namespace"] = args.namespace
    if args.preview_id:
        payload["previewId"] = args.preview_id
    if args.host:
        payload["ingress"] = {"host": args.host, "service": "frontend", "tlsIssuer": args.tls_issuer}
    if args.deadline_seconds:
        payload["deadlineSeconds"] = args.deadline_seconds
    return payload


def default_idempotency_key(explicit: str | None, payload: dict[str, Any]) -> str:
    if explicit:
        return explicit
    run_id = os.environ.get("GITHUB_RUN_ID", "").strip()
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()[:16]
    if run_id:
        return f"github-{run_id}-{payload['environment']}-{digest}"
    return f"release-{payload['environment']}-{digest}"


def submit_release(
    *,
    api_base: str,
    token: str,
    idempotency_key: str,
    payload: dict[str, Any],
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "Idempotency-Key": idempotency_key,
    }
    try:
        response = requests.post(
            f"{api_base}/releases",
            json=payload,
            headers=headers,
            timeout=(10, timeout_seconds),
        )
    except requests.RequestException as exc:
        raise CliError(f"HTTP request failed for {api_base}/releases: {exc}") from exc
    try:
        body = response.json()
    except ValueError:
        body = None
    if response.status_code not in (200, 201):
        code = body.get("code") if isinstance(body, dict) else None
        raise CliError(f"Release submission failed status={response.status_code} code={code} body={response.text}")
    if not isinstance(body, dict):
        raise CliError("Release response was not a JSON object")
    return body


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Release the PCI application stack.")
    parser.add_argument("--environment", choices=("production", "staging", "preview"), default="production")
    parser.add_argument("--registry", default="pciregistry.azurecr.io")
    parser.add_argument("--tag", required=True)
    parser.add_argument("--backend-tag", dest="backend_tag")
    parser.add_argument("--frontend-tag", dest="frontend_tag")
    parser.add_argument("--database-image", dest="database_image", default="postgres:15")
    parser.add_argument("--namespace")
    parser.add_argument("--preview-id", dest="preview_id")
    parser.add_argument("--host")
    parser.add_argument("--tls-issuer", dest="tls_issuer", default="letsencrypt-prod")
    parser.add_argument("--deadline-seconds", dest="deadline_seconds", type=float)
    parser.add_argument("--health-attempts", dest="health_attempts", type=int, default=30)
    parser.add_argument("--health-interval", dest="health_interval", type=float, default=5.0)
    parser.add_argument("--allow-mutable-tags", dest="allow_mutable_tags", action="store_true")
    parser.add_argument("--idempotency-key", dest="idempotency_key")
    return parser.parse_args(argv)


def main(argv: list[str]) -> int:
    try:
        args = parse_args(argv)
        api_base = normalize_api_base(_required_env("RELORCH_API_BASE"))
        token = _required_env("RELORCH_API_TOKEN")
        payload = build_release_request(args)
        idempotency_key = default_idempotency_key(args.idempotency_key, payload)
        record = submit_release(
            api_base=api_base,
            token=token,
            idempotency_key=idempotency_key,
            payload=payload,
            timeout_seconds=(args.deadline_seconds or 1800) + 120,
        )
    except CliError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    outcome = record.get("outcome")
    print(
        "release "
        f"id={record.get('id')} "
        f"namespace={record.get('namespace')} "
        f"outcome={outcome} "
        f"mutations={record.get('mutations')} "
        f"idempotency_key={idempotency_key}"
    )
    for failure in record.get("failures") or []:
        print(f"  {failure.get('category')}: {failure.get('summary')} ({failure.get('actionHint')})", file=sys.stderr)
    return 0 if outcome == "SUCCEEDED" else 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))

import json
import os
from typing import Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from models import Prerequisite


DEFAULT_PREREQUISITES = [
    {
        "name": "ingress-nginx",
        "namespace": "ingress-nginx",
        "chart": "ingress-nginx",
        "repoName": "ingress-nginx",
        "repoUrl": "https://kubernetes.github.io/ingress-nginx",
        "version": None,
        "values": {},
    },
    {
        "name": "cert-manager",
        "namespace": "cert-manager",
        "chart": "cert-manager",
        "repoName": "jetstack",
        "repoUrl": "https://charts.jetstack.io",
        "version": "v1.13.0",
        "values": {"installCRDs": "true"},
    },
]


class Settings:
    def __init__(self) -> None:
        self.ssm_prefix = os.getenv("RELORCH_SSM_PREFIX", "")
        self.mutations_disabled = self._as_bool(
            self._get("mutations_disabled", "RELORCH_MUTATIONS_DISABLED", "0", str)
        )
        self.db_path = os.getenv("RELORCH_DB_PATH", "./data/relorch.db")
        self.app_name = self._get("app_name", "RELORCH_APP_NAME", "pci-app", str)
        self.default_registry = self._get("default_registry", "RELORCH_DEFAULT_REGISTRY", "pciregistry.azurecr.io", str)
        registries = self._get("allowed_registries", "RELORCH_ALLOWED_REGISTRIES", "", str)
        self.allowed_registries = [r.strip().lower() for r in registries.split(",") if r.strip()]

        self.cluster_mode = os.getenv("RELORCH_CLUSTER_MODE", "kubectl")
        self.kube_context = self._get("kube_context", "RELORCH_KUBE_CONTEXT", "", str)
        self.command_timeout_seconds = self._get(
            "command_timeout_seconds", "RELORCH_COMMAND_TIMEOUT_SECONDS", 600.0, float
        )
        self.release_deadline_seconds = self._get(
            "release_deadline_seconds", "RELORCH_RELEASE_DEADLINE_SECONDS", 1800.0, float
        )
        self.rollback_grace_seconds = self._get(
            "rollback_grace_seconds", "RELORCH_ROLLBACK_GRACE_SECONDS", 600.0, float
        )
        self.prereq_verify_attempts = self._get(
            "prereq_verify_attempts", "RELORCH_PREREQ_VERIFY_ATTEMPTS", 5, int
        )
        self.prereq_verify_base_seconds = self._get(
            "prereq_verify_base_seconds", "RELORCH_PREREQ_VERIFY_BASE_SECONDS", 2.0, float
        )
        prerequisites = self._get("prerequisites", "RELORCH_PREREQUISITES", "", str)
        self.prerequisites = self._parse_prerequisites(prerequisites)

        self.resolve_abandoned_on_start = self._as_bool(
            self._get("resolve_abandoned_on_start", "RELORCH_RESOLVE_ABANDONED_ON_START", "1", str)
        )

        self.idempotency_ttl_seconds = self._get(
            "idempotency_ttl_seconds", "RELORCH_IDEMPOTENCY_TTL_SECONDS", 24 * 60 * 60, int
        )
        self.oidc_issuer = self._get("oidc/issuer", "RELORCH_OIDC_ISSUER", "", str)
        self.oidc_audience = self._get("oidc/audience", "RELORCH_OIDC_AUDIENCE", "", str)
        self.oidc_jwks_url = self._get("oidc/jwks_url", "RELORCH_OIDC_JWKS_URL", "", str)
        self.oidc_roles_claim = self._get(
            "oidc/roles_claim",
            "RELORCH_OIDC_ROLES_CLAIM",
            "https://relorch.example/claims/roles",
            str,
        )
        self.kube_token = self._resolve_secret(self._get("kube/token", "RELORCH_KUBE_TOKEN", "", str))

    def _as_bool(self, value: object) -> bool:
        text = str(value or "").strip().lower()
        return text in {"1", "true", "yes", "on"}

    def _get(self, ssm_key: str, env_key: str, default, parser: Callable) -> Optional[object]:
        if env_key in os.environ:
            try:
                return parser(os.environ[env_key])
            except ValueError:
                return default
        if self.ssm_prefix:
            value = self._read_ssm(f"{self.ssm_prefix}/{ssm_key}")
            if value is not None:
                try:
                    return parser(value)
                except ValueError:
                    return default
        return default

    def _read_ssm(self, name: str) -> Optional[str]:
        try:
            client = boto3.client("ssm")
            response = client.get_parameter(Name=name, WithDecryption=True)
            return response.get("Parameter", {}).get("Value")
        except ClientError:
            return None

    def _resolve_secret(self, value: Optional[str]) -> Optional[str]:
        if not isinstance(value, str):
            return value
        if not value.startswith("arn:aws:secretsmanager:"):
            return value
        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=value)
            return response.get("SecretString", value)
        except (BotoCoreError, ClientError):
            return value

    def _parse_prerequisites(self, value: Optional[str]) -> list[Prerequisite]:
        raw = str(value or "").strip()
        if not raw:
            return [Prerequisite(**item) for item in DEFAULT_PREREQUISITES]
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if not isinstance(parsed, list):
            return [Prerequisite(**item) for item in DEFAULT_PREREQUISITES]
        prerequisites: list[Prerequisite] = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            payload = dict(item)
            payload.setdefault("namespace", payload.get("name"))
            try:
                prerequisites.append(Prerequisite(**payload))
            except ValueError:
                continue
        return prerequisites


SETTINGS = Settings()

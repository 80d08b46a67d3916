import json
import logging
import subprocess
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from cluster_adapter.redaction import redact_args, redact_text


class ClusterCommandError(RuntimeError):
    def __init__(self, message: str, failure: dict, command: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.failure = failure
        self.command = command or []


class KubectlAdapter:
    def __init__(
        self,
        mode: str = "kubectl",
        kube_context: str = "",
        token: str = "",
        command_timeout_seconds: Optional[float] = None,
        kubectl_binary: str = "kubectl",
        helm_binary: str = "helm",
        runner: Optional[Callable[..., subprocess.CompletedProcess]] = None,
        request_id_provider: Optional[Callable[[], str]] = None,
    ) -> None:
        self.mode = mode
        self.kube_context = kube_context.strip() if kube_context else ""
        self.token = token or ""
        self.command_timeout_seconds = command_timeout_seconds
        self.kubectl_binary = kubectl_binary
        self.helm_binary = helm_binary
        self.runner = runner or subprocess.run
        self.request_id_provider = request_id_provider
        self._objects: Dict[str, dict] = {}
        self._releases: Dict[str, dict] = {}
        self._namespaces: set = set()
        self._logger = logging.getLogger("relorch.cluster")
        self._obs_logger = logging.getLogger("relorch.obs")

    def cluster_info(self, timeout: Optional[float] = None) -> None:
        if self.mode == "stub":
            return
        self._run(self._kubectl(["cluster-info"]), operation="cluster_info", timeout=timeout, category="INFRASTRUCTURE")

    def apply(self, namespace: str, objects: List[dict], timeout: Optional[float] = None) -> List[str]:
        if self.mode == "stub":
            return self._stub_apply(namespace, objects)
        changed: List[str] = []
        if self._ensure_namespace(namespace, timeout):
            changed.append(f"Namespace/{namespace}")
        for obj in objects:
            key = object_key(obj)
            manifest = json.dumps(obj, sort_keys=True)
            diff = self._run(
                self._kubectl(["diff", "-n", namespace, "-f", "-"]),
                operation="diff",
                timeout=timeout,
                input_text=manifest,
                allowed_codes={0, 1},
                category="APPLY",
            )
            if diff.returncode == 0:
                self._logger.info("cluster.apply.unchanged namespace=%s object=%s", namespace, key)
                continue
            self._run(
                self._kubectl(["apply", "-n", namespace, "-f", "-"]),
                operation="apply",
                timeout=timeout,
                input_text=manifest,
                category="APPLY",
            )
            self._logger.info("cluster.apply.changed namespace=%s object=%s", namespace, key)
            changed.append(key)
        return changed

    def get_status(self, service_ref: dict, timeout: Optional[float] = None) -> dict:
        namespace = service_ref["namespace"]
        kind = service_ref.get("kind", "Deployment")
        if self.mode == "stub":
            return self._stub_status(service_ref)
        result = self._run(
            self._kubectl(["get", kind.lower(), service_ref["name"], "-n", namespace, "-o", "json"]),
            operation="get_status",
            timeout=timeout,
            allowed_codes={0, 1},
            category="HEALTH",
        )
        endpoint = self._endpoint(service_ref)
        if result.returncode != 0:
            if "notfound" in (result.stderr or "").lower().replace(" ", ""):
                return {"exists": False, "desired": 0, "ready": 0, "updated": 0, "available": 0, "endpoint": endpoint}
            raise ClusterCommandError(
                redact_text(f"kubectl get {kind.lower()} failed: {_safe_snippet(result.stderr)}"),
                classify_failure(result.stderr, "HEALTH"),
                redact_args(result.args if isinstance(result.args, list) else []),
            )
        payload = _parse_json(result.stdout)
        spec = payload.get("spec") or {}
        status = payload.get("status") or {}
        replicas = spec.get("replicas")
        return {
            "exists": True,
            "desired": 1 if replicas is None else int(replicas),
            "ready": int(status.get("readyReplicas") or 0),
            "updated": int(status.get("updatedReplicas") or 0),
            "available": int(status.get("availableReplicas") or 0),
            "endpoint": endpoint,
        }

    def prerequisite_version(self, prerequisite: dict, timeout: Optional[float] = None) -> Optional[str]:
        if self.mode == "stub":
            release = self._releases.get(prerequisite["name"])
            return release["version"] if release else None
        result = self._run(
            self._helm(
                [
                    "list",
                    "--namespace",
                    prerequisite["namespace"],
                    "--filter",
                    f"^{prerequisite['name']}$",
                    "--output",
                    "json",
                ]
            ),
            operation="prerequisite_version",
            timeout=timeout,
            category="PREREQUISITE",
        )
        releases = _parse_json(result.stdout, default=[])
        if not isinstance(releases, list):
            return None
        for release in releases:
            if not isinstance(release, dict) or release.get("name") != prerequisite["name"]:
                continue
            if (release.get("status") or "").lower() != "deployed":
                return None
            return chart_version(release.get("chart", ""), prerequisite.get("chart", ""))
        return None

    def install_prerequisite(self, prerequisite: dict, timeout: Optional[float] = None) -> None:
        if self.mode == "stub":
            self._releases[prerequisite["name"]] = {
                "namespace": prerequisite["namespace"],
                "version": prerequisite.get("version") or "stub",
            }
            return
        repo_name = prerequisite.get("repoName") or prerequisite["name"]
        if prerequisite.get("repoUrl"):
            self._run(
                self._helm(["repo", "add", repo_name, prerequisite["repoUrl"], "--force-update"]),
                operation="helm_repo_add",
                timeout=timeout,
                category="PREREQUISITE",
            )
            self._run(
                self._helm(["repo", "update", repo_name]),
                operation="helm_repo_update",
                timeout=timeout,
                category="PREREQUISITE",
            )
        args = [
            "upgrade",
            "--install",
            prerequisite["name"],
            f"{repo_name}/{prerequisite.get('chart') or prerequisite['name']}",
            "--namespace",
            prerequisite["namespace"],
            "--create-namespace",
            "--wait",
        ]
        if prerequisite.get("version"):
            args += ["--version", prerequisite["version"]]
        for key in sorted((prerequisite.get("values") or {}).keys()):
            args += ["--set", f"{key}={prerequisite['values'][key]}"]
        if timeout is not None:
            args += ["--timeout", f"{max(int(timeout), 1)}s"]
        self._run(self._helm(args), operation="helm_install", timeout=timeout, category="PREREQUISITE")
        self._logger.info(
            "cluster.prerequisite.installed name=%s namespace=%s version=%s",
            prerequisite["name"],
            prerequisite["namespace"],
            prerequisite.get("version") or "latest",
        )

    def _ensure_namespace(self, namespace: str, timeout: Optional[float]) -> bool:
        result = self._run(
            self._kubectl(["get", "namespace", namespace]),
            operation="get_namespace",
            timeout=timeout,
            allowed_codes={0, 1},
            category="APPLY",
        )
        if result.returncode == 0:
            return False
        self._run(
            self._kubectl(["create", "namespace", namespace]),
            operation="create_namespace",
            timeout=timeout,
            category="APPLY",
        )
        return True

    def _kubectl(self, args: List[str]) -> List[str]:
        command = [self.kubectl_binary]
        if self.kube_context:
            command += ["--context", self.kube_context]
        if self.token:
            command += ["--token", self.token]
        return command + args

    def _helm(self, args: List[str]) -> List[str]:
        command = [self.helm_binary]
        if self.kube_context:
            command += ["--kube-context", self.kube_context]
        if self.token:
            command += ["--kube-token", self.token]
        return command + args

    def _endpoint(self, service_ref: dict) -> str:
        service_name = service_ref.get("serviceName") or service_ref["name"]
        port = service_ref.get("port")
        host = f"{service_name}.{service_ref['namespace']}.svc.cluster.local"
        if port:
            return f"http://{host}:{port}"
        return f"http://{host}"

    def _run(
        self,
        args: List[str],
        operation: str,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
        allowed_codes: Optional[set] = None,
        category: str = "UNKNOWN",
    ) -> subprocess.CompletedProcess:
        allowed = allowed_codes or {0}
        effective_timeout = _min_timeout(timeout, self.command_timeout_seconds)
        request_id = self.request_id_provider() if self.request_id_provider else ""
        safe_args = redact_args(args)
        start = time.monotonic()
        self._log_cluster_event("cluster_call_started", request_id, operation, safe_args)
        try:
            result = self.runner(
                args,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=effective_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            duration_ms = round((time.monotonic() - start) * 1000, 1)
            message = f"{args[0]} {operation} timed out after {effective_timeout}s"
            self._log_cluster_event(
                "cluster_call_failed",
                request_id,
                operation,
                safe_args,
                outcome="FAILED",
                duration_ms=duration_ms,
                error=message,
            )
            raise ClusterCommandError(message, classify_failure(message, "TIMEOUT"), safe_args) from exc
        except FileNotFoundError as exc:
            message = f"{args[0]} binary not found"
            self._log_cluster_event("cluster_call_failed", request_id, operation, safe_args, outcome="FAILED", error=message)
            raise ClusterCommandError(message, classify_failure(message, "INFRASTRUCTURE"), safe_args) from exc
        duration_ms = round((time.monotonic() - start) * 1000, 1)
        if result.returncode not in allowed:
            snippet = _safe_snippet(result.stderr or result.stdout or "")
            message = redact_text(f"{args[0]} {operation} exited {result.returncode}: {snippet}")
            self._log_cluster_event(
                "cluster_call_failed",
                request_id,
                operation,
                safe_args,
                outcome="FAILED",
                duration_ms=duration_ms,
                error=message,
                exit_code=result.returncode,
            )
            self._logger.warning("cluster.command operation=%s exit_code=%s error=%s", operation, result.returncode, message)
            raise ClusterCommandError(message, classify_failure(result.stderr or message, category), safe_args)
        self._log_cluster_event(
            "cluster_call_succeeded",
            request_id,
            operation,
            safe_args,
            outcome="SUCCESS",
            duration_ms=duration_ms,
            exit_code=result.returncode,
        )
        return result

    def _log_cluster_event(
        self,
        event: str,
        request_id: str,
        operation: str,
        args: List[str],
        outcome: Optional[str] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        exit_code: Optional[int] = None,
    ) -> None:
        fields = {
            "event": event,
            "request_id": request_id or "",
            "engine": "kubernetes",
            "operation": operation,
            "command": " ".join(args[:3]),
        }
        if outcome:
            fields["outcome"] = outcome
        if duration_ms is not None:
            fields["duration_ms"] = duration_ms
        if exit_code is not None:
            fields["exit_code"] = exit_code
        if error:
            fields["error"] = redact_text(error)
        parts = [f"{key}={fields[key]}" for key in sorted(fields.keys())]
        self._obs_logger.info(" ".join(parts))

    def _stub_apply(self, namespace: str, objects: List[dict]) -> List[str]:
        changed: List[str] = []
        if namespace not in self._namespaces:
            self._namespaces.add(namespace)
            changed.append(f"Namespace/{namespace}")
        for obj in objects:
            key = f"{namespace}/{object_key(obj)}"
            manifest = json.dumps(obj, sort_keys=True)
            if self._objects.get(key, {}).get("manifest") == manifest:
                continue
            self._objects[key] = {"manifest": manifest, "object": obj}
            changed.append(object_key(obj))
        return changed

    def _stub_status(self, service_ref: dict) -> dict:
        key = f"{service_ref['namespace']}/{service_ref.get('kind', 'Deployment')}/{service_ref['name']}"
        entry = self._objects.get(key)
        # Nothing listens in stub mode, so there is no endpoint to probe.
        endpoint = None
        if not entry:
            return {"exists": False, "desired": 0, "ready": 0, "updated": 0, "available": 0, "endpoint": endpoint}
        replicas = int((entry["object"].get("spec") or {}).get("replicas", 1))
        return {
            "exists": True,
            "desired": replicas,
            "ready": replicas,
            "updated": replicas,
            "available": replicas,
            "endpoint": endpoint,
        }

    @staticmethod
    def _utc_now() -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def object_key(obj: dict) -> str:
    metadata = obj.get("metadata") or {}
    return f"{obj.get('kind', 'Unknown')}/{metadata.get('name', '')}"


def chart_version(chart: str, chart_name: str) -> Optional[str]:
    if not chart:
        return None
    prefix = f"{chart_name}-" if chart_name else ""
    if prefix and chart.startswith(prefix):
        return chart[len(prefix) :]
    if "-" in chart:
        return chart.rsplit("-", 1)[-1]
    return None


def _min_timeout(first: Optional[float], second: Optional[float]) -> Optional[float]:
    values = [value for value in (first, second) if value is not None]
    if not values:
        return None
    return max(min(values), 0.001)


def _parse_json(text: str, default=None):
    if not text:
        return {} if default is None else default
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {} if default is None else default


def _safe_snippet(value: str, limit: int = 240) -> str:
    if not value:
        return ""
    text = value.replace("\n", " ").replace("\r", " ").strip()
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


_PATTERN_MAP = [
    {
        "pattern": "no matches for kind",
        "category": "PREREQUISITE",
        "summary": "Cluster is missing a required resource definition.",
        "action": "Install the add-on that provides the CRD and retry.",
    },
    {
        "pattern": "timed out",
        "category": "TIMEOUT",
        "summary": "Cluster operation timed out.",
        "action": "Retry the release or extend its deadline.",
    },
    {
        "pattern": "deadline exceeded",
        "category": "TIMEOUT",
        "summary": "Cluster operation timed out.",
        "action": "Retry the release or extend its deadline.",
    },
    {
        "pattern": "unable to connect",
        "category": "INFRASTRUCTURE",
        "summary": "Cluster API is unreachable.",
        "action": "Check the kube context and cluster connectivity, then retry.",
    },
    {
        "pattern": "connection refused",
        "category": "INFRASTRUCTURE",
        "summary": "Cluster API is unreachable.",
        "action": "Check the kube context and cluster connectivity, then retry.",
    },
    {
        "pattern": "no such host",
        "category": "INFRASTRUCTURE",
        "summary": "Cluster API is unreachable.",
        "action": "Check the kube context and cluster connectivity, then retry.",
    },
    {
        "pattern": "binary not found",
        "category": "INFRASTRUCTURE",
        "summary": "Cluster tooling is not installed.",
        "action": "Install kubectl and helm on the release host.",
    },
    {
        "pattern": "forbidden",
        "category": "POLICY",
        "summary": "Cluster rejected the request for lack of permission.",
        "action": "Grant the release identity the required RBAC permissions.",
    },
    {
        "pattern": "unauthorized",
        "category": "POLICY",
        "summary": "Cluster rejected the release credentials.",
        "action": "Refresh the cluster credentials and retry.",
    },
    {
        "pattern": "is invalid",
        "category": "VALIDATION",
        "summary": "Cluster rejected a resource manifest.",
        "action": "Fix the release spec and retry.",
    },
    {
        "pattern": "error validating",
        "category": "VALIDATION",
        "summary": "Cluster rejected a resource manifest.",
        "action": "Fix the release spec and retry.",
    },
]

_DEFAULT_SUMMARIES = {
    "APPLY": ("Resources could not be applied.", "Inspect the failing object and retry the release."),
    "PREREQUISITE": ("Cluster add-on could not be installed.", "Inspect the add-on chart and retry the release."),
    "HEALTH": ("Service status could not be read.", "Inspect the workload and retry the release."),
    "TIMEOUT": ("Cluster operation timed out.", "Retry the release or extend its deadline."),
    "INFRASTRUCTURE": ("Cluster API is unreachable.", "Check the kube context and cluster connectivity, then retry."),
    "UNKNOWN": ("Cluster operation failed for an unknown reason.", "Retry the release or contact the platform team."),
}


def classify_failure(text: Optional[str], default_category: str = "UNKNOWN") -> dict:
    lowered = (text or "").lower()
    for entry in _PATTERN_MAP:
        if entry["pattern"] in lowered:
            return build_failure(entry["category"], entry["summary"], entry["action"], _safe_snippet(redact_text(text or "")))
    summary, action = _DEFAULT_SUMMARIES.get(default_category, _DEFAULT_SUMMARIES["UNKNOWN"])
    return build_failure(default_category, summary, action, _safe_snippet(redact_text(text or "")) or None)


def build_failure(category: str, summary: str, action_hint: str, detail: Optional[str]) -> dict:
    return {
        "category": category,
        "summary": summary,
        "detail": detail,
        "actionHint": action_hint,
        "observedAt": KubectlAdapter._utc_now(),
    }


def normalize_failures(raw_failures: Optional[List[dict]]) -> List[dict]:
    if not raw_failures:
        return []
    normalized = []
    for failure in raw_failures:
        summary = failure.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            summary = "Release failed."
        action_hint = failure.get("actionHint")
        if not isinstance(action_hint, str) or not action_hint.strip():
            action_hint = "Retry the release or contact the platform team."
        category = str(failure.get("category") or "UNKNOWN").strip().upper()
        if category not in FAILURE_CATEGORIES:
            category = "UNKNOWN"
        detail = failure.get("detail")
        normalized.append(
            {
                "category": category,
                "summary": summary,
                "detail": redact_text(detail) if isinstance(detail, str) else detail,
                "actionHint": action_hint,
                "observedAt": failure.get("observedAt") or KubectlAdapter._utc_now(),
            }
        )
    return normalized


FAILURE_CATEGORIES = {
    "VALIDATION",
    "PREREQUISITE",
    "APPLY",
    "HEALTH",
    "TIMEOUT",
    "ROLLBACK",
    "INFRASTRUCTURE",
    "POLICY",
    "UNKNOWN",
}

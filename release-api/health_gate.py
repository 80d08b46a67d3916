import logging
import time
from typing import Callable, Optional, Tuple

import httpx

from cluster_adapter.adapter import ClusterCommandError
from deadline import Deadline
from errors import Unhealthy
from models import HealthCheckSpec
from observability import log_event


class HealthGate:
    """Polls a deployed service until it reports ready or the attempt budget runs out.

    An attempt is ready when the workload has all desired replicas ready and,
    if the check names a path, the service answers it with the expected
    status. Each poll is bounded by the check's own timeout, so a hanging
    endpoint costs one attempt and no more.
    """

    def __init__(
        self,
        cluster,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cluster = cluster
        self.http_client = http_client or httpx.Client(follow_redirects=False)
        self.sleep = sleep
        self._logger = logging.getLogger("relorch.health")

    def await_ready(self, service_ref: dict, check: HealthCheckSpec, deadline: Optional[Deadline] = None) -> int:
        deadline = deadline or Deadline(None)
        service = service_ref.get("service") or service_ref["name"]
        last_error: Optional[str] = None
        for attempt in range(1, check.maxAttempts + 1):
            deadline.check(f"health gate for {service}")
            poll_timeout = deadline.bounded(check.timeoutSeconds)
            ready, last_error = self._poll(service_ref, check, poll_timeout)
            if ready:
                log_event("health_gate_passed", service=service, namespace=service_ref["namespace"], attempts=attempt)
                return attempt
            self._logger.info(
                "health.poll service=%s attempt=%s max_attempts=%s error=%s",
                service,
                attempt,
                check.maxAttempts,
                last_error,
            )
            if attempt < check.maxAttempts:
                deadline.check(f"health gate for {service}")
                pause = deadline.bounded(check.intervalSeconds)
                if pause:
                    self.sleep(pause)
        log_event(
            "health_gate_exhausted",
            level=logging.WARNING,
            service=service,
            namespace=service_ref["namespace"],
            attempts=check.maxAttempts,
            error=last_error,
        )
        raise Unhealthy(service, check.maxAttempts, last_error)

    def _poll(self, service_ref: dict, check: HealthCheckSpec, timeout: Optional[float]) -> Tuple[bool, Optional[str]]:
        try:
            status = self.cluster.get_status(service_ref, timeout=timeout)
        except ClusterCommandError as exc:
            return False, str(exc)
        if not status.get("exists", True):
            return False, f"{service_ref.get('kind', 'Deployment')} {service_ref['name']} not found"
        desired = int(status.get("desired") or 0)
        if desired == 0:
            return True, None
        ready = int(status.get("ready") or 0)
        if ready < desired:
            return False, f"{ready}/{desired} replicas ready"
        if not check.path or not status.get("endpoint"):
            return True, None
        url = f"{status['endpoint'].rstrip('/')}{check.path}"
        try:
            response = self.http_client.get(url, timeout=timeout)
        except httpx.TimeoutException:
            return False, f"GET {check.path} timed out after {timeout}s"
        except httpx.HTTPError as exc:
            return False, f"GET {check.path} failed: {exc}"
        if response.status_code != check.expectedStatus:
            return False, f"GET {check.path} returned {response.status_code}, expected {check.expectedStatus}"
        return True, None

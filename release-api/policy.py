from typing import Iterable, Optional

from config import SETTINGS
from models import Actor, ReleaseSpec, Role


class PolicyError(Exception):
    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class Guardrails:
    def __init__(self, storage) -> None:
        self.storage = storage

    def require_mutations_enabled(self) -> None:
        if SETTINGS.mutations_disabled:
            raise PolicyError(503, "MUTATIONS_DISABLED", "Mutating operations are disabled")

    def require_idempotency_key(self, key: Optional[str]) -> None:
        if not key:
            raise PolicyError(400, "IDMP_KEY_REQUIRED", "Idempotency-Key is required")

    def require_role(self, actor: Actor, allowed: Iterable[Role], action: str) -> None:
        if actor.role not in set(allowed):
            raise PolicyError(403, "ROLE_FORBIDDEN", f"Role {actor.role.value} may not {action}")

    def validate_registries(self, spec: ReleaseSpec) -> None:
        allowed = SETTINGS.allowed_registries
        if not allowed:
            return
        for service, image in sorted(spec.imageRefs.items()):
            if image.registry.lower() not in allowed:
                raise PolicyError(
                    400,
                    "REGISTRY_NOT_ALLOWLISTED",
                    f"Image registry for {service} is not allowlisted",
                )

    def enforce_namespace_lock(self, namespace: str) -> None:
        active = self.storage.get_in_flight(namespace)
        if active:
            raise PolicyError(
                409,
                "RELEASE_IN_PROGRESS",
                f"Namespace {namespace} already has release {active['id']} in flight",
            )

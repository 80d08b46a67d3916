from enum import Enum
from typing import Dict, List, Optional, Union
from pydantic import BaseModel, Field


class Role(str, Enum):
    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    RELEASE_OPERATOR = "RELEASE_OPERATOR"
    OBSERVER = "OBSERVER"


class Environment(str, Enum):
    PRODUCTION = "production"
    STAGING = "staging"
    PREVIEW = "preview"


class ReleaseState(str, Enum):
    PENDING = "PENDING"
    PREREQUISITES_READY = "PREREQUISITES_READY"
    APPLYING = "APPLYING"
    HEALTH_CHECKING = "HEALTH_CHECKING"
    ROLLING_BACK = "ROLLING_BACK"
    SUCCEEDED = "SUCCEEDED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


class ReleaseOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


class Actor(BaseModel):
    actor_id: str
    role: Role


class ImageRef(BaseModel):
    registry: str = ""
    repository: str
    tag: str

    def reference(self) -> str:
        separator = "@" if self.tag.startswith("sha256:") else ":"
        if self.registry:
            return f"{self.registry}/{self.repository}{separator}{self.tag}"
        return f"{self.repository}{separator}{self.tag}"

    @classmethod
    def parse(cls, value: str) -> "ImageRef":
        text = value.strip()
        if "@" in text:
            name, tag = text.split("@", 1)
        else:
            slash = text.rfind("/")
            colon = text.rfind(":")
            if colon > slash:
                name, tag = text[:colon], text[colon + 1 :]
            else:
                name, tag = text, ""
        registry = ""
        repository = name
        if "/" in name:
            head, rest = name.split("/", 1)
            if "." in head or ":" in head or head == "localhost":
                registry, repository = head, rest
        return cls(registry=registry, repository=repository, tag=tag)


class HealthCheckSpec(BaseModel):
    path: Optional[str] = None
    expectedStatus: int = 200
    timeoutSeconds: float = Field(5.0, gt=0)
    intervalSeconds: float = Field(5.0, ge=0)
    maxAttempts: int = Field(30, ge=1)


class IngressSpec(BaseModel):
    host: str
    service: str = "frontend"
    path: str = "/"
    className: str = "nginx"
    tlsIssuer: Optional[str] = None


class ReleaseSpec(BaseModel):
    environment: Environment
    previewId: Optional[str] = None
    namespace: str
    releaseName: str
    imageRefs: Dict[str, ImageRef]
    replicas: Dict[str, int]
    healthChecks: Dict[str, HealthCheckSpec]
    dependencyOrder: List[str]
    ports: Dict[str, int] = {}
    config: Dict[str, Dict[str, str]] = {}
    ingress: Optional[IngressSpec] = None
    allowMutableTags: bool = False


class ReleaseRequest(BaseModel):
    environment: Environment
    previewId: Optional[str] = None
    namespace: Optional[str] = None
    releaseName: Optional[str] = None
    imageRefs: Dict[str, Union[ImageRef, str]]
    replicas: Dict[str, int] = {}
    healthChecks: Dict[str, HealthCheckSpec] = {}
    dependencyOrder: List[str]
    ports: Dict[str, int] = {}
    config: Dict[str, Dict[str, str]] = {}
    ingress: Optional[IngressSpec] = None
    allowMutableTags: bool = False
    deadlineSeconds: Optional[float] = Field(None, gt=0)


class Prerequisite(BaseModel):
    name: str
    namespace: str
    chart: str = ""
    repoName: Optional[str] = None
    repoUrl: Optional[str] = None
    version: Optional[str] = None
    values: Dict[str, str] = {}


class NormalizedFailure(BaseModel):
    category: str
    summary: str
    detail: Optional[str] = None
    actionHint: Optional[str] = None
    observedAt: str


class TimelineEvent(BaseModel):
    key: str
    label: str
    occurredAt: str
    detail: Optional[str] = None


class ReleaseRecord(BaseModel):
    id: str
    namespace: str
    environment: str
    state: ReleaseState
    outcome: Optional[ReleaseOutcome] = None
    spec: dict
    startedAt: str
    finishedAt: Optional[str] = None
    previousGoodId: Optional[str] = None
    intentCorrelationId: Optional[str] = None
    requestedBy: Optional[str] = None
    mutations: int = 0
    failures: List[NormalizedFailure] = []

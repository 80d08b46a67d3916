import json
import threading
import time
from typing import Dict, List, NoReturn, Optional

import jwt
import requests
from fastapi import HTTPException
from jwt.algorithms import RSAAlgorithm

from config import SETTINGS
from models import Actor, Role

# Highest privilege first; a token carrying several groups gets the strongest role.
ROLE_GROUPS = [
    ("relorch-platform-admins", Role.PLATFORM_ADMIN),
    ("relorch-release-operators", Role.RELEASE_OPERATOR),
    ("relorch-observers", Role.OBSERVER),
]


def _reject(status_code: int, code: str, message: str) -> NoReturn:
    raise HTTPException(status_code=status_code, detail={"code": code, "message": message})


class SigningKeys:
    """JWKS keyed by kid, refetched when the URL changes or the copy is older than the TTL."""

    def __init__(self, ttl_seconds: float = 300) -> None:
        self.ttl_seconds = ttl_seconds
        self._url: Optional[str] = None
        self._fetched_at = 0.0
        self._keys: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, url: str, kid: str) -> Optional[dict]:
        with self._lock:
            if self._url != url or time.time() - self._fetched_at >= self.ttl_seconds:
                self._keys = self._fetch(url)
                self._url = url
                self._fetched_at = time.time()
            return self._keys.get(kid)

    @staticmethod
    def _fetch(url: str) -> Dict[str, dict]:
        try:
            response = requests.get(url, timeout=5)
            response.raise_for_status()
            document = response.json()
        except (requests.RequestException, ValueError):
            _reject(503, "OIDC_UNAVAILABLE", "Signing keys could not be fetched")
        return {key["kid"]: key for key in document.get("keys", []) if key.get("kid")}


SIGNING_KEYS = SigningKeys()


def jwks_url() -> str:
    if SETTINGS.oidc_jwks_url:
        return SETTINGS.oidc_jwks_url
    return f"{SETTINGS.oidc_issuer.rstrip('/')}/.well-known/jwks.json"


def _require_oidc_settings() -> None:
    missing = [
        name
        for name, value in (
            ("RELORCH_OIDC_ISSUER", SETTINGS.oidc_issuer),
            ("RELORCH_OIDC_AUDIENCE", SETTINGS.oidc_audience),
            ("RELORCH_OIDC_ROLES_CLAIM", SETTINGS.oidc_roles_claim),
        )
        if not value
    ]
    if missing:
        _reject(500, "OIDC_CONFIG_MISSING", f"{', '.join(missing)} required")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        _reject(401, "UNAUTHORIZED", "Authorization header required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip() or " " in token.strip():
        _reject(401, "UNAUTHORIZED", "Authorization must be Bearer token")
    return token.strip()


def verify_token(token: str) -> dict:
    _require_oidc_settings()
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except jwt.InvalidTokenError:
        _reject(401, "UNAUTHORIZED", "Invalid token header")
    if not kid:
        _reject(401, "UNAUTHORIZED", "Token is missing kid")
    jwk = SIGNING_KEYS.get(jwks_url(), kid)
    if jwk is None:
        _reject(401, "UNAUTHORIZED", "Unknown signing key")
    try:
        return jwt.decode(
            token,
            key=RSAAlgorithm.from_jwk(json.dumps(jwk)),
            algorithms=["RS256"],
            audience=SETTINGS.oidc_audience,
            issuer=SETTINGS.oidc_issuer,
        )
    except jwt.ExpiredSignatureError:
        _reject(401, "UNAUTHORIZED", "Token expired")
    except jwt.InvalidTokenError:
        _reject(401, "UNAUTHORIZED", "Invalid token")


def _groups(claims: dict) -> List[str]:
    value = claims.get(SETTINGS.oidc_roles_claim)
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list):
        return [str(item) for item in value]
    _reject(403, "AUTHZ_ROLE_REQUIRED", "Roles claim missing or invalid")


def resolve_role(groups: List[str]) -> Role:
    for group, role in ROLE_GROUPS:
        if group in groups:
            return role
    _reject(403, "AUTHZ_ROLE_REQUIRED", "No recognized release role in token")


def get_actor(authorization: Optional[str]) -> Actor:
    claims = verify_token(_bearer_token(authorization))
    actor_id = claims.get("sub") or claims.get("email") or "unknown"
    return Actor(actor_id=actor_id, role=resolve_role(_groups(claims)))

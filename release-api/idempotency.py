import hashlib
import json
import threading
import time
from typing import Optional

from config import SETTINGS


def request_fingerprint(payload: dict) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyStore:
    """Remembers the response to each Idempotency-Key for a bounded time."""

    def __init__(self, ttl_seconds: Optional[int] = None) -> None:
        self.ttl_seconds = SETTINGS.idempotency_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._store: dict[str, dict] = {}
        self._lock = threading.Lock()

    def _cleanup(self) -> None:
        now = time.time()
        expired = [k for k, v in self._store.items() if v["expires_at"] <= now]
        for k in expired:
            del self._store[k]

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            self._cleanup()
            return self._store.get(key)

    def set(
        self,
        key: str,
        response: dict,
        status_code: int,
        request_fingerprint: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._cleanup()
            self._store[key] = {
                "response": response,
                "status_code": status_code,
                "request_fingerprint": request_fingerprint,
                "expires_at": time.time() + self.ttl_seconds,
            }

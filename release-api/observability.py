"""Structured key=value events.

Each event carries the HTTP request id and, inside ``release_context``, the id
of the release being driven. Worker threads started with a copied context
(see ``prerequisites``) inherit both, so one search on ``release_id=`` follows a
release through the orchestrator, the add-on installer and the health gate.
"""

import contextvars
import logging
from contextlib import contextmanager
from typing import Any, Iterator

from cluster_adapter.redaction import redact_text


request_id_ctx = contextvars.ContextVar("request_id", default="")
release_id_ctx = contextvars.ContextVar("release_id", default="")
_logger = logging.getLogger("relorch.obs")


def get_request_id() -> str:
    return request_id_ctx.get() or ""


@contextmanager
def release_context(release_id: str) -> Iterator[None]:
    token = release_id_ctx.set(release_id)
    try:
        yield
    finally:
        release_id_ctx.reset(token)


def _format(value: Any) -> str:
    if isinstance(value, (list, tuple, set)):
        value = ",".join(str(item) for item in value)
    return redact_text(str(value))


def log_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    context = {"request_id": get_request_id(), "release_id": release_id_ctx.get()}
    payload = {key: value for key, value in context.items() if value}
    payload.update({key: value for key, value in fields.items() if value is not None})
    parts = [f"event={event}"] + [f"{key}={_format(payload[key])}" for key in sorted(payload)]
    _logger.log(level, " ".join(parts))

import re
from urllib.parse import urlsplit


_TOKEN_PATTERNS = [
    re.compile(r"(Authorization\s*:\s*)([^\n\r]+)", re.IGNORECASE),
    re.compile(r"(Bearer\s+)\S+", re.IGNORECASE),
    re.compile(r"(--token[=\s]+)\S+", re.IGNORECASE),
    re.compile(r"(--password[=\s]+)\S+", re.IGNORECASE),
    re.compile(r"((?:client-key|client-certificate|certificate-authority)-data:\s*)\S+", re.IGNORECASE),
    re.compile(r"(\"auth\"\s*:\s*\")[^\"]+", re.IGNORECASE),
    re.compile(r"((?:password|passwd|secret)=)[^&\s]+", re.IGNORECASE),
    re.compile(r"(token=)[^&\s]+", re.IGNORECASE),
]


def redact_url(value: str) -> str:
    if not value:
        return ""
    try:
        parsed = urlsplit(value)
    except ValueError:
        return "<redacted-url>"
    if not parsed.scheme or not parsed.netloc:
        return "<redacted-url>"
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return f"{parsed.scheme}://{host}{parsed.path}"


def redact_text(value: str) -> str:
    if not value:
        return value
    redacted = value
    for pattern in _TOKEN_PATTERNS:
        redacted = pattern.sub(r"\1[REDACTED]", redacted)
    redacted = re.sub(r"https?://[^\s\"']+", lambda match: redact_url(match.group(0)), redacted)
    return redacted


def redact_args(args: list[str]) -> list[str]:
    redacted: list[str] = []
    hide_next = False
    for arg in args:
        if hide_next:
            redacted.append("[REDACTED]")
            hide_next = False
            continue
        if arg in {"--token", "--kube-token", "--password"}:
            redacted.append(arg)
            hide_next = True
            continue
        redacted.append(redact_text(arg))
    return redacted

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

REDACTED = "***REDACTED***"

# Transaction signatures are public identifiers and are deliberately absent here.
_SENSITIVE_EXACT_KEYS = {
    "api_key",
    "apikey",
    "api-key",
    "x-api-key",
    "secret",
    "password",
    "token",
    "access_token",
    "authorization",
    "database_url",
}
_SENSITIVE_COMPACT_KEYS = {key.replace("_", "").replace("-", "") for key in _SENSITIVE_EXACT_KEYS}

_URL_PATTERN = re.compile(r"https?://[^\s\"']+")
_QUERY_SECRET_PATTERN = re.compile(r"([?&])(api[-_]?key|token|access_token)=([^&\s\"']+)", re.IGNORECASE)


def _is_sensitive_key(key: object) -> bool:
    compact = str(key).casefold().replace("_", "").replace("-", "")
    return compact in _SENSITIVE_COMPACT_KEYS


def _mask_secret(value: str) -> str:
    if not value:
        return REDACTED
    if len(value) > 8:
        return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
    return "*" * len(value)


def redact_url(url: str) -> str:
    """Strip credentials from an RPC endpoint: userinfo and key-like query params."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return REDACTED
    netloc = parts.netloc
    if "@" in netloc:
        netloc = f"{REDACTED}@{netloc.rsplit('@', 1)[1]}"
    query = parts.query
    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        query = urlencode(
            [(key, _mask_secret(value) if _is_sensitive_key(key) else value) for key, value in pairs]
        )
    path = parts.path
    # Hosted RPC providers commonly embed the key as the last path segment.
    segments = path.split("/")
    if segments and len(segments[-1]) >= 24 and segments[-1].isalnum():
        segments[-1] = _mask_secret(segments[-1])
        path = "/".join(segments)
    return urlunsplit((parts.scheme, netloc, path, query, parts.fragment))


def sanitize_text(text: str) -> str:
    redacted = _URL_PATTERN.sub(lambda match: redact_url(match.group(0)), str(text))
    return _QUERY_SECRET_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}={_mask_secret(match.group(3))}", redacted
    )


def sanitize_mapping(d: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in d.items():
        key_str = str(key)
        if _is_sensitive_key(key_str):
            sanitized[key_str] = _mask_secret(str(value)) if value is not None else REDACTED
            continue
        sanitized[key_str] = redact_data(value)
    return sanitized


def redact_data(value: Any) -> Any:
    if isinstance(value, Mapping):
        return sanitize_mapping(value)
    if isinstance(value, list):
        return [redact_data(item) for item in value]
    if isinstance(value, tuple):
        return tuple(redact_data(item) for item in value)
    if isinstance(value, str):
        return sanitize_text(value)
    return value

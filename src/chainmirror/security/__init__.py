from chainmirror.security.redaction import (
    REDACTED,
    redact_data,
    redact_url,
    sanitize_mapping,
    sanitize_text,
)

__all__ = [
    "REDACTED",
    "redact_data",
    "redact_url",
    "sanitize_mapping",
    "sanitize_text",
]

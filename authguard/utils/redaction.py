"""Redaction of sensitive values in free-form metadata.

Metadata bags travel from detectors into the database, the audit sink and
the log. Anything keyed like a credential is masked before it leaves the
process.
"""

from typing import Any

SENSITIVE_KEY_FRAGMENTS = (
    "password",
    "passwd",
    "token",
    "secret",
    "authorization",
    "cookie",
    "api_key",
    "apikey",
)

REDACTED = "[REDACTED]"


def is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in SENSITIVE_KEY_FRAGMENTS)


def redact(value: Any) -> Any:
    """
    Return a copy of ``value`` with sensitive keys masked.

    Dicts are walked recursively, lists and tuples element-wise.
    Non-container values are returned unchanged.
    """
    if isinstance(value, dict):
        return {
            k: (REDACTED if is_sensitive_key(k) else redact(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value

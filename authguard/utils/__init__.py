"""Shared helpers for authguard."""

from .clock import local_hour, utcnow, to_epoch_ms, to_naive_utc
from .redaction import redact

__all__ = ["local_hour", "utcnow", "to_epoch_ms", "to_naive_utc", "redact"]

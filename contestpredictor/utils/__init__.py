"""Shared utility functions and models for the Contest Predictor auth core.

This package provides convenience re-exports so that consumers can import
directly from ``contestpredictor.utils`` (e.g. ``from contestpredictor.utils
import username_from_email``) while full absolute imports remain supported.
"""

from contestpredictor.utils.audit import AuthAuditEvent, log_audit_event
from contestpredictor.utils.identity import (
    normalize_email,
    sanitize_email_key,
    username_from_email,
)

__all__ = [
    "AuthAuditEvent",
    "log_audit_event",
    "normalize_email",
    "sanitize_email_key",
    "username_from_email",
]

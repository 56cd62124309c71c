"""
Shared Enumerations for Contest Predictor Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents, so callers
that log or persist the raw value keep working unchanged.
"""

from __future__ import annotations
from enum import StrEnum


class AuthErrorKind(StrEnum):
    """Closed taxonomy of authentication failures.

    The first block is assigned at the remote-provider boundary by
    :func:`~contestpredictor.services.remote_identity.classify_provider_error`;
    ``UNKNOWN`` travels with the raw provider code in
    ``error_code``.  The ``LOCAL_*`` pair is produced by the local
    credential store, and ``VALIDATION_ERROR`` by client-side field
    checks before any backend is touched.
    """

    NETWORK_ERROR = "NETWORK_ERROR"
    EMAIL_EXISTS = "EMAIL_EXISTS"
    WEAK_PASSWORD = "WEAK_PASSWORD"
    EMAIL_NOT_FOUND = "EMAIL_NOT_FOUND"
    BAD_PASSWORD = "BAD_PASSWORD"
    INVALID_EMAIL_FORMAT = "INVALID_EMAIL_FORMAT"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    UNKNOWN = "UNKNOWN"

    LOCAL_NOT_FOUND = "LOCAL_NOT_FOUND"
    LOCAL_BAD_PASSWORD = "LOCAL_BAD_PASSWORD"

    VALIDATION_ERROR = "VALIDATION_ERROR"


class ResetState(StrEnum):
    """States of a single OTP-gated password-reset interaction.

    Transitions are strictly forward:
    ``NOT_STARTED -> OTP_ISSUED -> OTP_VERIFIED -> COMPLETED``.
    A wrong code leaves the flow in ``OTP_ISSUED``.
    """

    NOT_STARTED = "NOT_STARTED"
    OTP_ISSUED = "OTP_ISSUED"
    OTP_VERIFIED = "OTP_VERIFIED"
    COMPLETED = "COMPLETED"


class AuthBackend(StrEnum):
    """Which credential store satisfied an operation (for audit records)."""

    REMOTE = "REMOTE"
    LOCAL = "LOCAL"

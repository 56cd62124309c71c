"""
Data Models Package.

Re-exports all Pydantic models for short imports:
    from contestpredictor.models import LocalAccount, SessionRecord, AuthOutcome
    from contestpredictor.models import AuthErrorKind, ResetState
"""

from __future__ import annotations

from contestpredictor.models.enums import AuthBackend, AuthErrorKind, ResetState
from contestpredictor.models.account import LocalAccount
from contestpredictor.models.session import SessionRecord
from contestpredictor.models.auth_models import (
    PROVIDER_ERROR_MAP,
    AuthOutcome,
    OtpChallenge,
    PasswordResetOutcome,
    RemoteAuthResult,
    ValidationResult,
)

__all__ = [
    "AuthBackend",
    "AuthErrorKind",
    "ResetState",
    "LocalAccount",
    "SessionRecord",
    "PROVIDER_ERROR_MAP",
    "AuthOutcome",
    "OtpChallenge",
    "PasswordResetOutcome",
    "RemoteAuthResult",
    "ValidationResult",
]

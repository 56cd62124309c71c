"""
Authentication Pipeline Models.

Pydantic models for the request/response contracts between the auth
services and whatever front end drives them.

Every credential operation returns one of these structured results
rather than raising, so a caller can render the outcome without
inspecting exceptions.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from contestpredictor.models.account import LocalAccount
from contestpredictor.models.enums import AuthErrorKind
from contestpredictor.models.session import SessionRecord


# ---------------------------------------------------------------------------
# Remote provider error-code mapping
# ---------------------------------------------------------------------------

PROVIDER_ERROR_MAP: dict[str, tuple[AuthErrorKind, str]] = {
    "EMAIL_EXISTS": (
        AuthErrorKind.EMAIL_EXISTS,
        "This email is already registered. Please sign in or use a different email.",
    ),
    "INVALID_EMAIL": (
        AuthErrorKind.INVALID_EMAIL_FORMAT,
        "Invalid email format. Please enter a valid email address.",
    ),
    "WEAK_PASSWORD": (
        AuthErrorKind.WEAK_PASSWORD,
        "Password is too weak. Please use at least 6 characters.",
    ),
    "EMAIL_NOT_FOUND": (
        AuthErrorKind.EMAIL_NOT_FOUND,
        "No account found with this email. Please register first.",
    ),
    "INVALID_PASSWORD": (
        AuthErrorKind.BAD_PASSWORD,
        "Incorrect password. Please try again.",
    ),
    "INVALID_LOGIN_CREDENTIALS": (
        AuthErrorKind.BAD_PASSWORD,
        "Invalid email or password. Please check your credentials.",
    ),
    "USER_DISABLED": (
        AuthErrorKind.ACCOUNT_DISABLED,
        "This account has been disabled. Please contact support.",
    ),
    "TOO_MANY_ATTEMPTS_TRY_LATER": (
        AuthErrorKind.RATE_LIMITED,
        "Too many failed attempts. Please try again later.",
    ),
    "OPERATION_NOT_ALLOWED": (
        AuthErrorKind.UNKNOWN,
        "Email/password authentication is not enabled. Please contact admin.",
    ),
}

NOT_CONFIGURED_MESSAGE: str = "Remote authentication is not configured."


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Result of a single client-side field validation check.

    Attributes
    ----------
    is_valid:
        ``True`` when the value passes the validation rule.
    error_message:
        Human-readable description of the failure, or ``None`` on success.
    """

    is_valid: bool
    error_message: Optional[str] = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Remote provider result
# ---------------------------------------------------------------------------

class RemoteAuthResult(BaseModel):
    """Immutable result of one call to the remote identity provider.

    Each call builds its own instance, so concurrent callers never see
    each other's tokens.

    Attributes
    ----------
    success:
        ``True`` when the provider accepted the request.
    message:
        Human-readable summary (error text on failure).
    error_kind:
        Taxonomy entry for failures, ``None`` on success.
    error_code:
        Raw provider code, kept only when ``error_kind`` is ``UNKNOWN``.
    remote_uid, email, id_token, refresh_token:
        Identity and token material from a successful sign-in, sign-up,
        refresh or password update.
    expires_in:
        Lifetime of ``id_token`` in seconds.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str = ""
    error_kind: Optional[AuthErrorKind] = None
    error_code: Optional[str] = None
    remote_uid: Optional[str] = None
    email: Optional[str] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: int = 3600

    @classmethod
    def failure(
        cls,
        kind: AuthErrorKind,
        message: str,
        code: Optional[str] = None,
    ) -> "RemoteAuthResult":
        return cls(success=False, message=message, error_kind=kind, error_code=code)

    @classmethod
    def not_configured(cls) -> "RemoteAuthResult":
        return cls.failure(AuthErrorKind.NOT_CONFIGURED, NOT_CONFIGURED_MESSAGE)


# ---------------------------------------------------------------------------
# OTP challenge
# ---------------------------------------------------------------------------

DocumentValue = Union[str, int]


def _to_epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class OtpChallenge(BaseModel):
    """A short-lived one-time code gating a password reset.

    Stored as ``{otp, email, timestamp, expiresAt}`` with epoch
    milliseconds, the document shape the remote key-value store uses.
    """

    email: str
    otp: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def issue(cls, email: str, otp: str, ttl: timedelta, now: Optional[datetime] = None) -> "OtpChallenge":
        issued = now or datetime.now(tz=timezone.utc)
        return cls(email=email, otp=otp, issued_at=issued, expires_at=issued + ttl)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(tz=timezone.utc)) >= self.expires_at

    def to_document(self) -> dict[str, DocumentValue]:
        return {
            "otp": self.otp,
            "email": self.email,
            "timestamp": _to_epoch_ms(self.issued_at),
            "expiresAt": _to_epoch_ms(self.expires_at),
        }

    @classmethod
    def from_document(cls, document: dict[str, DocumentValue]) -> "OtpChallenge":
        """Parse a stored document.

        Raises
        ------
        KeyError, ValueError, TypeError
            If the document is missing fields or holds the wrong types.
        """
        return cls(
            email=str(document["email"]),
            otp=str(document["otp"]),
            issued_at=_from_epoch_ms(int(document["timestamp"])),
            expires_at=_from_epoch_ms(int(document["expiresAt"])),
        )


# ---------------------------------------------------------------------------
# Unified auth outcomes
# ---------------------------------------------------------------------------

class AuthOutcome(BaseModel):
    """Unified response for login, registration, resume and reset steps.

    The caller inspects ``success`` to choose the happy path and uses
    ``error_kind`` to decide on extra controls (e.g. offering the
    registration screen on ``EMAIL_NOT_FOUND``).

    Attributes
    ----------
    success:
        ``True`` when the operation completed without error.
    account:
        The local account involved, password blanked.
    session:
        The session written or resumed, when one exists.
    message:
        Human-readable description for display.
    error_kind:
        Structured error category (``None`` on success).
    error_code:
        Raw provider code, only for ``AuthErrorKind.UNKNOWN``.
    otp:
        The issued one-time code (password-reset request step only).
    """

    success: bool
    account: Optional[LocalAccount] = None
    session: Optional[SessionRecord] = None
    message: str = ""
    error_kind: Optional[AuthErrorKind] = None
    error_code: Optional[str] = None
    otp: Optional[str] = None

    model_config = {"from_attributes": True}

    @classmethod
    def failure(
        cls,
        kind: AuthErrorKind,
        message: str,
        code: Optional[str] = None,
    ) -> "AuthOutcome":
        return cls(success=False, message=message, error_kind=kind, error_code=code)

    @classmethod
    def from_remote_failure(cls, result: RemoteAuthResult) -> "AuthOutcome":
        return cls(
            success=False,
            message=result.message,
            error_kind=result.error_kind,
            error_code=result.error_code,
        )


class PasswordResetOutcome(AuthOutcome):
    """Composite result of a password reconciliation.

    ``success`` reflects the local update, which always happens once an
    account is found.  ``remote_synced`` reports whether the remote
    provider now holds the same password.
    """

    remote_synced: bool = False

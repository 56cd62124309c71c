"""
Authentication Coordinator.

Single orchestrator for every credential flow of the Contest Predictor:
login, registration, OTP-gated password reset, session resume and
logout.  Decides when to trust the remote identity provider and when to
fall back to the local credential store, and reconciles the two when
they disagree.

Sits between the front end and the stores so that screens stay thin
form handlers.  Every public method returns an
:class:`~contestpredictor.models.auth_models.AuthOutcome` (or
:class:`~contestpredictor.models.auth_models.PasswordResetOutcome`);
nothing raises across this boundary.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable, NamedTuple, Optional

from contestpredictor.database import DatabaseManager
from contestpredictor.logger import StructuredLogger
from contestpredictor.models.account import LocalAccount
from contestpredictor.models.auth_models import (
    AuthOutcome,
    PasswordResetOutcome,
    RemoteAuthResult,
    ValidationResult,
)
from contestpredictor.models.enums import AuthBackend, AuthErrorKind, ResetState
from contestpredictor.models.session import SessionRecord
from contestpredictor.outcome_guard import never_raises
from contestpredictor.repositories.account_repository import AccountExistsError, AccountRepository
from contestpredictor.services.base_service import BaseService
from contestpredictor.services.otp_store import OtpChallengeStore
from contestpredictor.services.remote_identity import RemoteIdentityClient
from contestpredictor.services.session_store import SessionStore
from contestpredictor.utils.audit import DetailValue, log_audit_event
from contestpredictor.utils.identity import normalize_email, username_from_email


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_RE: re.Pattern[str] = re.compile(r"^[A-Za-z0-9+_.-]+@(.+)$")

# Matches C0 controls (U+0000–U+001F), DEL (U+007F), and C1 controls (U+0080–U+009F).
_CONTROL_CHAR_RE: re.Pattern[str] = re.compile(r"[\x00-\x1f\x7f-\x9f]")

GENERIC_LOGIN_FAILURE: str = "Invalid username or password"

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class _RemoteSync(NamedTuple):
    """What the remote half of a password reconciliation achieved."""

    synced: bool
    message: str
    remote_uid: Optional[str] = None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AuthCoordinator(BaseService):
    """Centralised authentication orchestrator.

    Receives all collaborators via ``__init__`` and exposes pure
    request -> outcome methods.  Holds no per-user state, so one
    instance can serve concurrent calls from the task runner.

    Parameters
    ----------
    accounts:
        Local credential store.
    sessions:
        Persisted "remember me" sessions.
    remote:
        Remote identity provider client.
    otp_store:
        Password-reset challenge store.
    logger:
        Structured JSON logger for audit-grade logging.
    db:
        When given, audit events are also persisted to ``audit_log``.
    min_password_length:
        Local password policy (also used by the reset flow).
    local_session_days:
        Expiry of sessions created by a local login.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        sessions: SessionStore,
        remote: RemoteIdentityClient,
        otp_store: OtpChallengeStore,
        logger: StructuredLogger,
        db: Optional[DatabaseManager] = None,
        min_password_length: int = 6,
        local_session_days: int = 30,
        clock: Clock = _utc_now,
    ) -> None:
        super().__init__(logger)
        self._accounts: AccountRepository = accounts
        self._sessions: SessionStore = sessions
        self._remote: RemoteIdentityClient = remote
        self._otp_store: OtpChallengeStore = otp_store
        self._db: Optional[DatabaseManager] = db
        self._min_password_length: int = min_password_length
        self._local_session_ttl: timedelta = timedelta(days=local_session_days)
        self._clock: Clock = clock

    @property
    def remote_enabled(self) -> bool:
        return self._remote.is_enabled

    @property
    def min_password_length(self) -> int:
        return self._min_password_length

    @property
    def otp_store(self) -> OtpChallengeStore:
        return self._otp_store

    # ==================================================================
    # Validation helpers
    # ==================================================================

    @staticmethod
    def validate_email(email: str) -> ValidationResult:
        """Check *email* against the registration screen's pattern.

        Parameters
        ----------
        email:
            The raw email string to validate.

        Returns
        -------
        ValidationResult
            ``is_valid=True`` if the email matches, otherwise a
            human-readable ``error_message``.
        """
        if not email or not email.strip():
            return ValidationResult(is_valid=False, error_message="Email address is required.")
        if not _EMAIL_RE.match(email.strip()):
            return ValidationResult(
                is_valid=False, error_message="Please enter a valid email address.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_full_name(full_name: str) -> ValidationResult:
        """Require at least two printable characters.

        Control characters (including newlines and tabs) are rejected to
        keep log lines and rendered names intact.
        """
        stripped = full_name.strip()
        if not stripped:
            return ValidationResult(is_valid=False, error_message="Full name is required.")
        if len(stripped) < 2:
            return ValidationResult(
                is_valid=False, error_message="Full name must be at least 2 characters.",
            )
        if _CONTROL_CHAR_RE.search(stripped):
            return ValidationResult(
                is_valid=False,
                error_message=(
                    "Full name contains invalid characters. "
                    "Only printable characters are allowed."
                ),
            )
        return ValidationResult(is_valid=True)

    def validate_new_password(
        self,
        password: str,
        confirm_password: Optional[str] = None,
    ) -> ValidationResult:
        """Enforce the minimum length and, when given, the confirmation match."""
        if not password or confirm_password == "":
            return ValidationResult(
                is_valid=False,
                error_message="Please enter and confirm your new password",
            )
        if len(password) < self._min_password_length:
            return ValidationResult(
                is_valid=False,
                error_message=(
                    f"Password must be at least {self._min_password_length} characters."
                ),
            )
        if confirm_password is not None and password != confirm_password:
            return ValidationResult(is_valid=False, error_message="Passwords do not match!")
        return ValidationResult(is_valid=True)

    # ==================================================================
    # Login
    # ==================================================================

    @never_raises(AuthOutcome)
    def login(self, identifier: str, password: str, remember_me: bool = True) -> AuthOutcome:
        """Authenticate remotely when possible, else against the local store.

        Parameters
        ----------
        identifier:
            Username or email as typed by the user.
        password:
            The raw password.
        remember_me:
            Whether the written session is eligible for auto-login.

        Returns
        -------
        AuthOutcome
            On success carries the local account and the new session.
            On failure the message is the remote provider's when a
            remote attempt produced one, otherwise the generic
            ``"Invalid username or password"``.
        """
        identifier = identifier.strip()
        if not identifier or not password:
            return AuthOutcome.failure(
                AuthErrorKind.VALIDATION_ERROR, "Please enter both username and password.",
            )

        remote_failure: Optional[RemoteAuthResult] = None
        if self._remote.is_enabled:
            result = self._remote.sign_in(identifier, password)
            if result.success:
                return self._complete_remote_login(identifier, password, result, remember_me)
            remote_failure = result

        account = self._accounts.find_by_identifier(identifier)
        if account is not None and account.password == password:
            session = self._persist_session(self._local_session(account, remember_me))
            self._audit("LOGIN", account.username, AuthBackend.LOCAL)
            return AuthOutcome(
                success=True,
                account=account.public_view(),
                session=session,
                message="Login successful (local account).",
            )

        local_kind = (
            AuthErrorKind.LOCAL_NOT_FOUND if account is None else AuthErrorKind.LOCAL_BAD_PASSWORD
        )
        self._log_event(
            "LOGIN_FAILED",
            "Login failed for %s (local: %s, remote: %s).",
            identifier,
            local_kind,
            remote_failure.error_kind if remote_failure else "not attempted",
            level=logging.WARNING,
            error_kind=str(local_kind),
        )

        if remote_failure is not None and remote_failure.message:
            return AuthOutcome.from_remote_failure(remote_failure)
        return AuthOutcome.failure(AuthErrorKind.LOCAL_BAD_PASSWORD, GENERIC_LOGIN_FAILURE)

    def _complete_remote_login(
        self,
        identifier: str,
        password: str,
        result: RemoteAuthResult,
        remember_me: bool,
    ) -> AuthOutcome:
        """Mirror a successful remote sign-in locally and persist its session."""
        email = normalize_email(result.email or identifier)
        account = self._ensure_local_mirror(email, password, result.remote_uid)

        session = self._persist_session(
            SessionRecord(
                username=account.username,
                remote_uid=result.remote_uid,
                email=email,
                id_token=result.id_token,
                refresh_token=result.refresh_token,
                token_expiry=self._clock() + timedelta(seconds=result.expires_in),
                remember_me=remember_me,
                last_login=self._clock(),
                created_at=self._clock(),
            )
        )
        self._audit("LOGIN", account.username, AuthBackend.REMOTE)
        return AuthOutcome(
            success=True,
            account=account.public_view(),
            session=session,
            message="Login successful.",
        )

    def _ensure_local_mirror(
        self,
        email: str,
        password: str,
        remote_uid: Optional[str],
    ) -> LocalAccount:
        """Find the local account for a remote identity, creating it if absent.

        Existing accounts only get a missing ``remote_uid`` / ``email``
        backfilled.
        """
        username = username_from_email(email)
        account = self._accounts.get_by_email(email) or self._accounts.get_by_username(username)

        if account is None:
            try:
                return self._accounts.create(
                    LocalAccount(
                        username=username,
                        password=password,
                        email=email,
                        remote_uid=remote_uid,
                        full_name=username,
                    )
                )
            except AccountExistsError:
                account = self._accounts.get_by_username(username)
                if account is None:
                    raise

        if not account.remote_uid or not account.email:
            account = self._accounts.link_remote_identity(
                account.username, remote_uid, email,
            ) or account
        return account

    # ==================================================================
    # Registration
    # ==================================================================

    @never_raises(AuthOutcome)
    def register(
        self,
        email: str,
        password: str,
        full_name: str,
        remember_me: bool = True,
        confirm_password: Optional[str] = None,
    ) -> AuthOutcome:
        """Create an account, remotely first when the provider is enabled.

        The username is the part of *email* before ``@``.  If it is
        already taken locally the call fails before any remote request.
        With the provider enabled, a local account is created only after
        the remote sign-up succeeds, so the two stores never diverge;
        a remote-only account therefore blocks registration.

        Parameters
        ----------
        email:
            Email address; also the source of the username.
        password:
            The chosen password.
        full_name:
            Display name (at least two characters).
        remember_me:
            Whether the new session is eligible for auto-login.
        confirm_password:
            When given, must equal *password*.

        Returns
        -------
        AuthOutcome
        """
        for check in (
            self.validate_full_name(full_name),
            self.validate_email(email),
        ):
            if not check.is_valid:
                return AuthOutcome.failure(
                    AuthErrorKind.VALIDATION_ERROR, check.error_message or "Invalid input.",
                )
        if confirm_password is not None and password != confirm_password:
            return AuthOutcome.failure(AuthErrorKind.VALIDATION_ERROR, "Passwords do not match!")

        email = normalize_email(email)
        username = username_from_email(email)

        if self._accounts.exists(username) or self._accounts.get_by_email(email) is not None:
            self._log_event(
                "REGISTER_FAILED",
                "Registration refused: local account %s already exists.",
                username,
                level=logging.WARNING,
                username=username,
            )
            return AuthOutcome.failure(
                AuthErrorKind.VALIDATION_ERROR,
                f"Username '{username}' already exists. Please use a different email.",
            )

        if self._remote.is_enabled:
            result = self._remote.sign_up(email, password)
            if not result.success:
                self._log_event(
                    "REGISTER_FAILED",
                    "Remote sign-up failed for %s: %s",
                    email,
                    result.error_kind,
                    level=logging.WARNING,
                    error_kind=str(result.error_kind),
                )
                return AuthOutcome.from_remote_failure(result)

            account = self._accounts.create(
                LocalAccount(
                    username=username,
                    password=password,
                    email=email,
                    remote_uid=result.remote_uid,
                    full_name=full_name.strip(),
                )
            )
            session = self._persist_session(
                SessionRecord(
                    username=username,
                    remote_uid=result.remote_uid,
                    email=email,
                    id_token=result.id_token,
                    refresh_token=result.refresh_token,
                    token_expiry=self._clock() + timedelta(seconds=result.expires_in),
                    remember_me=remember_me,
                    last_login=self._clock(),
                    created_at=self._clock(),
                )
            )
            self._audit("REGISTER", username, AuthBackend.REMOTE)
            return AuthOutcome(
                success=True,
                account=account.public_view(),
                session=session,
                message="Registration successful.",
            )

        if len(password) < self._min_password_length:
            return AuthOutcome.failure(
                AuthErrorKind.WEAK_PASSWORD,
                f"Password must be at least {self._min_password_length} characters long.",
            )

        try:
            account = self._accounts.create(
                LocalAccount(
                    username=username,
                    password=password,
                    email=email,
                    full_name=full_name.strip(),
                )
            )
        except AccountExistsError as exc:
            return AuthOutcome.failure(AuthErrorKind.VALIDATION_ERROR, str(exc))

        session = self._persist_session(self._local_session(account, remember_me))
        self._audit("REGISTER", username, AuthBackend.LOCAL)
        return AuthOutcome(
            success=True,
            account=account.public_view(),
            session=session,
            message="Registration successful (local account).",
        )

    # ==================================================================
    # Password reset
    # ==================================================================

    def begin_password_reset(self) -> "PasswordResetFlow":
        """Start a new OTP-gated reset interaction."""
        return PasswordResetFlow(self)

    @never_raises(PasswordResetOutcome)
    def sync_and_update_password(
        self,
        email: str,
        new_password: str,
        old_password: Optional[str] = None,
    ) -> PasswordResetOutcome:
        """Set a new password locally and bring the remote account in line.

        The local password is always updated once the account is found,
        whatever happened remotely.  ``remote_synced`` reports whether
        the remote provider ended up with the new password, and the
        message chains the diagnostic of the last remote call.

        Parameters
        ----------
        email:
            Email (or username) identifying the local account.
        new_password:
            The password to set.
        old_password:
            Previous password for the remote sign-in; defaults to the
            stored local password.

        Returns
        -------
        PasswordResetOutcome
        """
        email = email.strip()
        account = self._accounts.find_by_identifier(email)
        if account is None:
            return PasswordResetOutcome.failure(
                AuthErrorKind.LOCAL_NOT_FOUND, f"User not found with email: {email}",
            )

        remote_email = normalize_email(email)
        sync = self._sync_remote_password(account, remote_email, new_password, old_password)

        updated = self._accounts.reset_password(
            account.username,
            new_password,
            email=remote_email if "@" in remote_email else None,
            remote_uid=sync.remote_uid,
        )

        self._audit(
            "PASSWORD_RESET",
            account.username,
            AuthBackend.REMOTE if sync.synced else AuthBackend.LOCAL,
            {"remote_synced": sync.synced},
        )
        return PasswordResetOutcome(
            success=True,
            remote_synced=sync.synced,
            account=(updated or account).public_view(),
            message=f"Password updated locally. {sync.message}",
        )

    def _sync_remote_password(
        self,
        account: LocalAccount,
        email: str,
        new_password: str,
        old_password: Optional[str],
    ) -> _RemoteSync:
        """Run the remote half of a reset and report what it achieved."""
        if not self._remote.is_enabled:
            return _RemoteSync(False, "Remote provider not enabled, updated locally only.")

        credential = old_password if old_password is not None else account.password

        if not account.has_remote_identity:
            created = self._remote.sign_up(email, new_password)
            if created.success:
                return _RemoteSync(True, "Remote account created and synced!", created.remote_uid)
            if created.error_kind != AuthErrorKind.EMAIL_EXISTS:
                return _RemoteSync(False, f"Remote sync failed: {created.message}")

            signed_in = self._remote.sign_in(email, credential)
            if signed_in.success:
                return self._update_remote_password(signed_in, new_password)
            return self._fall_back_to_reset_email(email)

        signed_in = self._remote.sign_in(email, credential)
        if signed_in.success:
            return self._update_remote_password(signed_in, new_password)

        created = self._remote.sign_up(email, new_password)
        if created.success:
            return _RemoteSync(True, "Remote account recreated!", created.remote_uid)
        if created.error_kind == AuthErrorKind.EMAIL_EXISTS:
            return self._fall_back_to_reset_email(email)
        return _RemoteSync(False, f"Remote sync failed: {created.message}")

    def _update_remote_password(
        self,
        signed_in: RemoteAuthResult,
        new_password: str,
    ) -> _RemoteSync:
        updated = self._remote.update_password(signed_in.id_token or "", new_password)
        if updated.success:
            return _RemoteSync(True, "Remote password updated!", signed_in.remote_uid)
        return _RemoteSync(False, f"Remote update failed: {updated.message}")

    def _fall_back_to_reset_email(self, email: str) -> _RemoteSync:
        result = self._remote.send_password_reset_email(email)
        if not result.success:
            self._logger.warning(
                "Password reset email for %s was not sent: %s", email, result.message,
            )
            return _RemoteSync(False, f"Password reset email failed: {result.message}")
        return _RemoteSync(
            False, "Password reset email sent. Please also reset via the email link.",
        )

    # ==================================================================
    # Session resume / logout
    # ==================================================================

    @never_raises(AuthOutcome)
    def resume_session(self) -> AuthOutcome:
        """Auto-login from the most recent remembered session, if still valid."""
        session = self._sessions.load_most_recent_remembered()
        if session is None:
            return AuthOutcome.failure(AuthErrorKind.LOCAL_NOT_FOUND, "No saved session.")

        if not self._sessions.is_valid(session):
            return AuthOutcome.failure(
                AuthErrorKind.LOCAL_NOT_FOUND, "Saved session has expired. Please sign in again.",
            )

        account = self._accounts.get_by_username(session.username)
        if account is None:
            self._logger.warning(
                "Saved session for %s has no matching local account.", session.username,
            )
            return AuthOutcome.failure(
                AuthErrorKind.LOCAL_NOT_FOUND, "No local account for the saved session.",
            )

        self._sessions.touch(account.username)
        self._audit(
            "AUTO_LOGIN",
            account.username,
            AuthBackend.REMOTE if session.remote_uid else AuthBackend.LOCAL,
        )
        return AuthOutcome(
            success=True,
            account=account.public_view(),
            session=self._sessions.load(account.username) or session,
            message=f"Welcome back, {account.full_name or account.username}!",
        )

    @never_raises(AuthOutcome)
    def logout(self, username: str) -> AuthOutcome:
        """Forget *username*'s session on this machine."""
        self._sessions.clear(username)
        self._audit("LOGOUT", username, AuthBackend.LOCAL)
        return AuthOutcome(success=True, message="Logged out.")

    @never_raises(AuthOutcome)
    def logout_all(self) -> AuthOutcome:
        """Forget every session stored on this machine."""
        self._sessions.clear_all()
        self._audit("LOGOUT_ALL", "*", AuthBackend.LOCAL)
        return AuthOutcome(success=True, message="All sessions cleared.")

    # ==================================================================
    # Private helpers
    # ==================================================================

    def _local_session(self, account: LocalAccount, remember_me: bool) -> SessionRecord:
        now = self._clock()
        return SessionRecord(
            username=account.username,
            email=account.email,
            token_expiry=now + self._local_session_ttl,
            remember_me=remember_me,
            last_login=now,
            created_at=now,
        )

    def _persist_session(self, session: SessionRecord) -> Optional[SessionRecord]:
        """Save *session*; a storage failure is logged and yields ``None``.

        The login itself still succeeds, but auto-login will not be
        available until the next successful save.
        """
        try:
            self._sessions.save(session)
            return session
        except (sqlite3.Error, OSError) as exc:
            self._logger.warning(
                "Session for %s was not persisted: %s", session.username, exc,
            )
            return None

    def _audit(
        self,
        event: str,
        username: str,
        backend: AuthBackend,
        details: Optional[dict[str, DetailValue]] = None,
    ) -> None:
        if self._db is None:
            log_audit_event(self._logger, event, username, backend, details)
            return
        with self._db.write_lock:
            log_audit_event(
                self._logger, event, username, backend, details, conn=self._db.sqlite,
            )


# ---------------------------------------------------------------------------
# Password-reset interaction
# ---------------------------------------------------------------------------

class PasswordResetFlow:
    """One OTP-gated password reset, driven step by step by a screen.

    ``NOT_STARTED -> OTP_ISSUED -> OTP_VERIFIED -> COMPLETED``.  A wrong
    code keeps the flow in ``OTP_ISSUED``; there is no retry limit.
    Requesting a new code restarts from ``OTP_ISSUED`` with the new
    code replacing the old one.

    The issued code is returned to the requester in the outcome; no
    email or SMS is sent.
    """

    def __init__(self, coordinator: AuthCoordinator) -> None:
        self._coordinator: AuthCoordinator = coordinator
        self._logger: StructuredLogger = coordinator._logger
        self._state: ResetState = ResetState.NOT_STARTED
        self._email: Optional[str] = None

    @property
    def state(self) -> ResetState:
        return self._state

    @property
    def email(self) -> Optional[str]:
        return self._email

    @never_raises(AuthOutcome)
    def request_otp(self, email: str) -> AuthOutcome:
        """Issue a code for *email* and hand it back in ``outcome.otp``."""
        email = email.strip()
        if not email:
            return AuthOutcome.failure(
                AuthErrorKind.VALIDATION_ERROR, "Please enter your email address",
            )
        if "@" not in email or "." not in email:
            return AuthOutcome.failure(
                AuthErrorKind.VALIDATION_ERROR, "Please enter a valid email address",
            )

        challenge = self._coordinator.otp_store.issue(email)
        self._email = challenge.email
        self._state = ResetState.OTP_ISSUED
        return AuthOutcome(
            success=True,
            otp=challenge.otp,
            message="OTP generated! Enter it below to continue.",
        )

    @never_raises(AuthOutcome)
    def verify_otp(self, code: str) -> AuthOutcome:
        """Advance to ``OTP_VERIFIED`` only on an exact match."""
        if self._state != ResetState.OTP_ISSUED or self._email is None:
            return AuthOutcome.failure(
                AuthErrorKind.VALIDATION_ERROR, "Please request an OTP first.",
            )
        code = code.strip()
        if not code:
            return AuthOutcome.failure(AuthErrorKind.VALIDATION_ERROR, "Please enter the OTP")

        if not self._coordinator.otp_store.verify(self._email, code):
            return AuthOutcome.failure(
                AuthErrorKind.VALIDATION_ERROR, "Invalid OTP! Please check and try again.",
            )

        self._state = ResetState.OTP_VERIFIED
        return AuthOutcome(success=True, message="OTP verified! Enter your new password.")

    @never_raises(PasswordResetOutcome)
    def complete(
        self,
        new_password: str,
        confirm_password: Optional[str] = None,
        old_password: Optional[str] = None,
    ) -> PasswordResetOutcome:
        """Reconcile the new password and consume the code on success."""
        if self._state != ResetState.OTP_VERIFIED or self._email is None:
            return PasswordResetOutcome.failure(
                AuthErrorKind.VALIDATION_ERROR, "Please verify the OTP first.",
            )

        check = self._coordinator.validate_new_password(new_password, confirm_password)
        if not check.is_valid:
            return PasswordResetOutcome.failure(
                AuthErrorKind.VALIDATION_ERROR, check.error_message or "Invalid password.",
            )

        outcome = self._coordinator.sync_and_update_password(
            self._email, new_password, old_password or None,
        )
        if outcome.success:
            self._coordinator.otp_store.consume(self._email)
            self._state = ResetState.COMPLETED
        return outcome

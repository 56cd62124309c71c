"""
Remote Identity Client.

Thin, stateless-per-call wrapper around the identity provider's REST
API: sign-up, sign-in, token refresh, password update and the
password-reset email.  Every call is a blocking ``httpx`` request with
a fixed timeout and returns its own immutable
:class:`~contestpredictor.models.auth_models.RemoteAuthResult`.

Provider error strings are translated into the closed
:class:`~contestpredictor.models.enums.AuthErrorKind` taxonomy in one
place, :func:`classify_provider_error`.  No raw provider code leaves
this module except as ``error_code`` on an ``UNKNOWN`` result.

When the provider is disabled or has no usable API key every method
returns ``NOT_CONFIGURED`` without touching the network.
"""

from __future__ import annotations

from typing import Optional, Union

import httpx

from contestpredictor.config import AppConfig
from contestpredictor.logger import StructuredLogger
from contestpredictor.models.auth_models import PROVIDER_ERROR_MAP, RemoteAuthResult
from contestpredictor.models.enums import AuthErrorKind
from contestpredictor.services.base_service import BaseService

JsonBody = dict[str, object]

_DEFAULT_EXPIRES_IN: int = 3600


# ---------------------------------------------------------------------------
# Error classification boundary
# ---------------------------------------------------------------------------

def _provider_code(body: object) -> Optional[str]:
    """Extract the leading provider code from an error body, if any.

    Handles ``{"error": {"message": "CODE : detail"}}`` and the token
    endpoint's ``{"error": "invalid_grant"}`` variant.
    """
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        raw = error.get("message")
    elif isinstance(error, str):
        raw = error
    else:
        return None
    if not isinstance(raw, str):
        return None
    tokens = raw.split(":", 1)[0].split()
    return tokens[0] if tokens else None


def classify_provider_error(
    response: Optional[httpx.Response] = None,
    exc: Optional[Exception] = None,
) -> RemoteAuthResult:
    """Translate a failed provider call into a ``RemoteAuthResult``.

    Parameters
    ----------
    response:
        The non-2xx HTTP response, when the provider answered.
    exc:
        The transport exception, when it did not.

    Returns
    -------
    RemoteAuthResult
        ``success=False`` with an :class:`AuthErrorKind`.  Transport
        failures map to ``NETWORK_ERROR``; unknown provider codes map
        to ``UNKNOWN`` and keep the raw code; an unreadable body maps
        to ``UNKNOWN`` with code ``HTTP_<status>``.
    """
    if response is None:
        detail = str(exc) if exc is not None else "no response"
        return RemoteAuthResult.failure(
            AuthErrorKind.NETWORK_ERROR, f"Network error: {detail}",
        )

    try:
        body: object = response.json()
    except ValueError:
        body = None

    code = _provider_code(body)
    if code is None:
        code = f"HTTP_{response.status_code}"
        return RemoteAuthResult.failure(
            AuthErrorKind.UNKNOWN, f"Authentication error: {code}", code,
        )

    mapped = PROVIDER_ERROR_MAP.get(code)
    if mapped is None:
        return RemoteAuthResult.failure(
            AuthErrorKind.UNKNOWN, f"Authentication error: {code}", code,
        )

    kind, message = mapped
    return RemoteAuthResult.failure(
        kind, message, code if kind == AuthErrorKind.UNKNOWN else None,
    )


def _parse_expires_in(value: object) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return _DEFAULT_EXPIRES_IN


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class RemoteIdentityClient(BaseService):
    """Blocking client for the remote identity provider.

    Holds no per-user state: identity and tokens only ever travel in the
    returned results.  The only shared object is the pooled
    ``httpx.Client``, which is thread-safe.

    Parameters
    ----------
    config:
        Application configuration (endpoints, API key, timeout).
    logger:
        Structured JSON logger.
    transport:
        Optional ``httpx`` transport; tests inject ``httpx.MockTransport``.
    """

    def __init__(
        self,
        config: AppConfig,
        logger: StructuredLogger,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(logger)
        self._enabled: bool = config.provider_configured
        self._api_key: str = config.PROVIDER_API_KEY.get_secret_value().strip()
        self._auth_base: str = config.PROVIDER_AUTH_BASE_URL.rstrip("/")
        self._token_url: str = config.PROVIDER_TOKEN_URL
        self._min_password_length: int = config.MIN_PASSWORD_LENGTH
        self._client: httpx.Client = httpx.Client(
            timeout=config.HTTP_TIMEOUT_S, transport=transport,
        )

    @property
    def is_enabled(self) -> bool:
        """``True`` when the provider is enabled and has a real API key."""
        return self._enabled

    # ------------------------------------------------------------------
    # Identity operations
    # ------------------------------------------------------------------

    def sign_up(self, email: str, password: str) -> RemoteAuthResult:
        """Create a remote account and return its first token pair."""
        return self._token_call(
            "accounts:signUp",
            {"email": email, "password": password, "returnSecureToken": True},
            success_message="Account created successfully.",
            operation="sign_up",
        )

    def sign_in(self, email: str, password: str) -> RemoteAuthResult:
        """Authenticate with email and password."""
        return self._token_call(
            "accounts:signInWithPassword",
            {"email": email, "password": password, "returnSecureToken": True},
            success_message="Signed in successfully.",
            operation="sign_in",
        )

    def refresh(self, refresh_token: str) -> RemoteAuthResult:
        """Exchange *refresh_token* for a new token pair.

        Any failure, transport errors included, means the session can no
        longer be trusted.  There is no automatic retry.
        """
        if not self._enabled:
            return RemoteAuthResult.not_configured()

        outcome = self._send(
            self._token_url,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            operation="refresh",
        )
        if isinstance(outcome, RemoteAuthResult):
            return outcome

        return RemoteAuthResult(
            success=True,
            message="Token refreshed.",
            remote_uid=self._str_or_none(outcome.get("user_id")),
            id_token=self._str_or_none(outcome.get("id_token")),
            refresh_token=self._str_or_none(outcome.get("refresh_token")) or refresh_token,
            expires_in=_parse_expires_in(outcome.get("expires_in")),
        )

    def update_password(self, id_token: str, new_password: str) -> RemoteAuthResult:
        """Change the password of the account owning *id_token*.

        Passwords shorter than ``MIN_PASSWORD_LENGTH`` are rejected with
        ``WEAK_PASSWORD`` before any request is made.
        """
        if not self._enabled:
            return RemoteAuthResult.not_configured()

        if len(new_password) < self._min_password_length:
            kind, message = PROVIDER_ERROR_MAP["WEAK_PASSWORD"]
            return RemoteAuthResult.failure(kind, message)

        return self._token_call(
            "accounts:update",
            {"idToken": id_token, "password": new_password, "returnSecureToken": True},
            success_message="Password updated successfully.",
            operation="update_password",
        )

    def send_password_reset_email(self, email: str) -> RemoteAuthResult:
        """Ask the provider to email a reset link.  Callers need not wait on it."""
        if not self._enabled:
            return RemoteAuthResult.not_configured()

        outcome = self._send(
            self._endpoint("accounts:sendOobCode"),
            json={"requestType": "PASSWORD_RESET", "email": email},
            operation="send_password_reset_email",
        )
        if isinstance(outcome, RemoteAuthResult):
            return outcome
        return RemoteAuthResult(
            success=True,
            message="Password reset email sent.",
            email=self._str_or_none(outcome.get("email")) or email,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def sign_out(self) -> None:
        """Drop any identity cached at the transport level (cookies)."""
        self._client.cookies.clear()
        self._logger.debug("Remote client transport state cleared.")

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _endpoint(self, name: str) -> str:
        return f"{self._auth_base}/{name}"

    def _token_call(
        self,
        endpoint: str,
        payload: JsonBody,
        *,
        success_message: str,
        operation: str,
    ) -> RemoteAuthResult:
        """POST an identity request whose success body carries a token pair."""
        if not self._enabled:
            return RemoteAuthResult.not_configured()

        outcome = self._send(self._endpoint(endpoint), json=payload, operation=operation)
        if isinstance(outcome, RemoteAuthResult):
            return outcome

        return RemoteAuthResult(
            success=True,
            message=success_message,
            remote_uid=self._str_or_none(outcome.get("localId")),
            email=self._str_or_none(outcome.get("email")),
            id_token=self._str_or_none(outcome.get("idToken")),
            refresh_token=self._str_or_none(outcome.get("refreshToken")),
            expires_in=_parse_expires_in(outcome.get("expiresIn")),
        )

    def _send(
        self,
        url: str,
        *,
        operation: str,
        json: Optional[JsonBody] = None,
        data: Optional[dict[str, str]] = None,
    ) -> Union[JsonBody, RemoteAuthResult]:
        """POST to *url* and return the decoded success body or a failure.

        The API key is passed as the ``key`` query parameter.
        """
        try:
            response = self._client.post(
                url, params={"key": self._api_key}, json=json, data=data,
            )
        except httpx.HTTPError as exc:
            failure = classify_provider_error(exc=exc)
            self._logger.warning(
                "Remote %s failed: %s", operation, failure.message,
                extra={"event": "REMOTE_NETWORK_ERROR", "operation": operation},
            )
            return failure

        if response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                return body
            return classify_provider_error(response=response)

        failure = classify_provider_error(response=response)
        self._logger.warning(
            "Remote %s rejected (%s): %s",
            operation,
            failure.error_kind,
            failure.message,
            extra={
                "event": "REMOTE_AUTH_FAILED",
                "operation": operation,
                "error_kind": str(failure.error_kind),
            },
        )
        return failure

    @staticmethod
    def _str_or_none(value: object) -> Optional[str]:
        if value is None:
            return None
        text = str(value)
        return text or None

"""
OTP Challenge Store.

Issues and verifies the six-digit one-time codes that gate a password
reset.  Challenges are keyed by sanitized email and stored as
``{otp, email, timestamp, expiresAt}`` documents.

Expiry is lazy: an expired challenge is deleted the next time it is
read.  There is no attempt counter; any number of guesses is accepted
until the code expires.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from contestpredictor.logger import StructuredLogger
from contestpredictor.models.auth_models import OtpChallenge
from contestpredictor.repositories.otp_repository import OtpChallengeRepository
from contestpredictor.services.base_service import BaseService
from contestpredictor.utils.identity import normalize_email, sanitize_email_key

OTP_DIGITS: int = 6

Clock = Callable[[], datetime]


def generate_otp() -> str:
    """Return a zero-padded six-digit code from the ``secrets`` CSPRNG."""
    return f"{secrets.randbelow(10 ** OTP_DIGITS):0{OTP_DIGITS}d}"


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class OtpChallengeStore(BaseService):
    """Issue / verify / consume password-reset codes.

    Parameters
    ----------
    repo:
        Storage for challenge documents (remote first, local fallback).
    logger:
        Structured logger.
    ttl_minutes:
        Lifetime of a challenge.
    code_factory:
        Produces new codes; defaults to :func:`generate_otp`.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        repo: OtpChallengeRepository,
        logger: StructuredLogger,
        ttl_minutes: int = 10,
        code_factory: Callable[[], str] = generate_otp,
        clock: Clock = _utc_now,
    ) -> None:
        super().__init__(logger)
        self._repo: OtpChallengeRepository = repo
        self._ttl: timedelta = timedelta(minutes=ttl_minutes)
        self._code_factory: Callable[[], str] = code_factory
        self._clock: Clock = clock

    def issue(self, email: str) -> OtpChallenge:
        """Create a new challenge for *email*, replacing any previous one."""
        email = normalize_email(email)
        challenge = OtpChallenge.issue(
            email=email,
            otp=self._code_factory(),
            ttl=self._ttl,
            now=self._clock(),
        )
        backend = self._repo.put(sanitize_email_key(email), challenge.to_document())
        self._log_event(
            "OTP_ISSUED",
            "Password-reset code issued for %s (%s store).",
            email,
            backend,
            backend=str(backend),
        )
        return challenge

    def load(self, email: str) -> Optional[OtpChallenge]:
        """Return the live challenge for *email*, deleting it if expired."""
        email = normalize_email(email)
        key = sanitize_email_key(email)
        document = self._repo.get(key)
        if document is None:
            return None

        try:
            challenge = OtpChallenge.from_document(document)
        except (KeyError, TypeError, ValueError) as exc:
            self._logger.warning("Discarding malformed OTP challenge for %s: %s", email, exc)
            self._repo.delete(key)
            return None

        if challenge.is_expired(self._clock()):
            self._logger.info("OTP challenge for %s expired; deleting.", email)
            self._repo.delete(key)
            return None
        return challenge

    def verify(self, email: str, submitted: str) -> bool:
        """``True`` only when a live challenge exists and matches exactly."""
        challenge = self.load(email)
        if challenge is None:
            return False
        matched = challenge.otp == submitted
        if not matched:
            self._log_event(
                "OTP_REJECTED",
                "Password-reset code mismatch for %s.",
                normalize_email(email),
            )
        return matched

    def consume(self, email: str) -> None:
        """Delete the challenge for *email* from every store."""
        self._repo.delete(sanitize_email_key(normalize_email(email)))

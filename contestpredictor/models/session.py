"""
Session Record Model.

A persisted "remember me" login.  At most one record exists per
username; a save replaces the previous one.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class SessionRecord(BaseModel):
    """Represents one resumable login.

    Attributes
    ----------
    username:
        Local account the session belongs to (unique key).
    remote_uid:
        Remote identity id, ``None`` for purely local logins.
    email:
        Email the session was established with, when known.
    id_token:
        Short-lived remote bearer token.  ``None`` for local logins.
    refresh_token:
        Remote refresh token.  ``None`` or empty for local logins.
    token_expiry:
        Absolute UTC instant after which ``id_token`` is stale.
    remember_me:
        Only remembered sessions are considered for auto-login.
    last_login:
        UTC instant of the most recent use; auto-login picks the newest.
    created_at:
        UTC instant the record was first written.
    """

    username: str
    remote_uid: Optional[str] = None
    email: Optional[str] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: datetime
    remember_me: bool = True
    last_login: datetime = Field(default_factory=_utc_now)
    created_at: datetime = Field(default_factory=_utc_now)

    model_config = {"from_attributes": True}

    @field_validator("token_expiry", "last_login", "created_at", mode="after")
    @classmethod
    def assume_utc(cls: type[SessionRecord], v: datetime) -> datetime:
        """Naive timestamps are taken as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """``True`` when *now* (default: current UTC time) is at or past expiry."""
        return (now or _utc_now()) >= self.token_expiry

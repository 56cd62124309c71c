"""
Session Store.

Persists "remember me" logins in the local ``sessions`` table so the
application can resume a login across restarts without asking for
credentials again.

Storage rules
-------------
- At most one row per username.  :meth:`SessionStore.save` deletes the
  existing row and then inserts the new one as two separately committed
  statements.  A crash between them leaves the user with no session
  (logged out), never with two.
- Auto-login only considers ``remember_me = 1`` rows and picks the most
  recent ``last_login``.
- Remote tokens are sealed with :class:`TokenCipher` when one is
  configured.  A row whose tokens cannot be opened is deleted and
  treated as absent.

Architecture Note
-----------------
This service reads and writes SQLite directly rather than through a
repository, because sessions are infrastructure state (auth tokens),
not domain data.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from contestpredictor.database import DatabaseManager
from contestpredictor.logger import StructuredLogger
from contestpredictor.models.session import SessionRecord
from contestpredictor.services.base_service import BaseService
from contestpredictor.services.remote_identity import RemoteIdentityClient
from contestpredictor.services.token_cipher import TokenCipher, TokenDecryptError

Clock = Callable[[], datetime]

_COLUMNS: str = (
    "username, remote_uid, email, id_token, refresh_token, "
    "token_expiry, remember_me, last_login, created_at"
)


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _to_iso(moment: datetime) -> str:
    """Serialise *moment* as a UTC ISO-8601 string (naive input is taken as UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class SessionStore(BaseService):
    """Save, load, validate and clear persisted sessions.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager``.
    remote:
        Remote client used to refresh expired tokens and to drop
        transport-level identity on clear.
    logger:
        Structured logger.
    cipher:
        Optional token cipher.  ``None`` stores tokens as received.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    TABLE: str = "sessions"

    def __init__(
        self,
        db: DatabaseManager,
        remote: RemoteIdentityClient,
        logger: StructuredLogger,
        cipher: Optional[TokenCipher] = None,
        clock: Clock = _utc_now,
    ) -> None:
        super().__init__(logger)
        self._db: DatabaseManager = db
        self._remote: RemoteIdentityClient = remote
        self._cipher: Optional[TokenCipher] = cipher
        self._clock: Clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, session: SessionRecord) -> None:
        """Replace any stored session for ``session.username`` with *session*.

        Two statements, each committed on its own; there is no
        surrounding transaction.

        Raises
        ------
        sqlite3.Error
            If either statement fails.
        OSError
            If token encryption is enabled but the key cannot be derived.
        """
        with self._db.write_lock:
            self._delete_row(session.username)
            self._insert_row(session)
        self._logger.info(
            "Session saved for %s (remember_me=%s).",
            session.username,
            session.remember_me,
            extra={"event": "SESSION_SAVED", "username": session.username},
        )

    def touch(self, username: str) -> None:
        """Record *now* as the last login of *username*'s session."""
        with self._db.write_lock:
            self._db.sqlite.execute(
                f"UPDATE {self.TABLE} SET last_login = ? WHERE username = ?",
                (_to_iso(self._clock()), username),
            )
            self._db.sqlite.commit()

    def clear(self, username: str) -> None:
        """Delete *username*'s session and drop remote transport state."""
        with self._db.write_lock:
            self._delete_row(username)
        self._remote.sign_out()
        self._logger.info(
            "Session cleared for %s.", username,
            extra={"event": "SESSION_CLEARED", "username": username},
        )

    def clear_all(self) -> None:
        """Delete every stored session and drop remote transport state."""
        with self._db.write_lock:
            self._db.sqlite.execute(f"DELETE FROM {self.TABLE}")
            self._db.sqlite.commit()
        self._remote.sign_out()
        self._logger.info("All sessions cleared.", extra={"event": "SESSIONS_CLEARED"})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self, username: str) -> Optional[SessionRecord]:
        row = self._db.sqlite.execute(
            f"SELECT {_COLUMNS} FROM {self.TABLE} WHERE username = ?", (username,)
        ).fetchone()
        return self._to_model(row) if row is not None else None

    def load_most_recent_remembered(self) -> Optional[SessionRecord]:
        """Return the remembered session with the newest ``last_login``.

        Unreadable rows are deleted and skipped.
        """
        rows = self._db.sqlite.execute(
            f"""
            SELECT {_COLUMNS} FROM {self.TABLE}
            WHERE remember_me = 1
            ORDER BY last_login DESC, id DESC
            """
        ).fetchall()
        for row in rows:
            session = self._to_model(row)
            if session is not None:
                return session
        return None

    def count(self) -> int:
        row = self._db.sqlite.execute(f"SELECT COUNT(*) FROM {self.TABLE}").fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def is_valid(self, session: SessionRecord) -> bool:
        """Decide whether *session* may be resumed.

        - Not yet expired: valid.
        - Expired with a refresh token: refresh remotely.  Success
          rewrites the stored row with the new tokens and expiry; any
          failure deletes the row and reports invalid.
        - Expired without a refresh token: still valid.  Local logins
          carry no tokens, and this keeps them resumable past their
          nominal expiry.
        """
        now = self._clock()
        if not session.is_expired(now):
            return True

        if not session.has_refresh_token:
            self._logger.info(
                "Session for %s is past expiry but has no refresh token; "
                "treating it as valid.",
                session.username,
            )
            return True

        result = self._remote.refresh(session.refresh_token or "")
        if not result.success:
            self._logger.warning(
                "Token refresh failed for %s (%s); deleting session.",
                session.username,
                result.error_kind,
                extra={"event": "SESSION_EXPIRED", "username": session.username},
            )
            with self._db.write_lock:
                self._delete_row(session.username)
            return False

        refreshed = session.model_copy(
            update={
                "id_token": result.id_token,
                "refresh_token": result.refresh_token or session.refresh_token,
                "remote_uid": session.remote_uid or result.remote_uid,
                "token_expiry": now + timedelta(seconds=result.expires_in),
            }
        )
        self.save(refreshed)
        self._logger.info(
            "Session token refreshed for %s.", session.username,
            extra={"event": "SESSION_REFRESHED", "username": session.username},
        )
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _delete_row(self, username: str) -> None:
        """Delete and commit.  Caller holds the write lock."""
        self._db.sqlite.execute(f"DELETE FROM {self.TABLE} WHERE username = ?", (username,))
        self._db.sqlite.commit()

    def _insert_row(self, session: SessionRecord) -> None:
        """Insert and commit.  Caller holds the write lock."""
        self._db.sqlite.execute(
            f"""
            INSERT INTO {self.TABLE} ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.username,
                session.remote_uid,
                session.email,
                self._seal(session.id_token),
                self._seal(session.refresh_token),
                _to_iso(session.token_expiry),
                1 if session.remember_me else 0,
                _to_iso(session.last_login),
                _to_iso(session.created_at),
            ),
        )
        self._db.sqlite.commit()

    def _seal(self, token: Optional[str]) -> Optional[str]:
        if not token or self._cipher is None:
            return token
        return self._cipher.encrypt(token)

    def _open(self, stored: Optional[str]) -> Optional[str]:
        if not stored or self._cipher is None or not TokenCipher.is_sealed(stored):
            return stored
        return self._cipher.decrypt(stored)

    def _to_model(self, row: sqlite3.Row) -> Optional[SessionRecord]:
        """Build a ``SessionRecord``; delete the row and return None if unreadable."""
        username: str = row["username"]
        try:
            return SessionRecord(
                username=username,
                remote_uid=row["remote_uid"],
                email=row["email"],
                id_token=self._open(row["id_token"]),
                refresh_token=self._open(row["refresh_token"]),
                token_expiry=_from_iso(row["token_expiry"]),
                remember_me=bool(row["remember_me"]),
                last_login=_from_iso(row["last_login"]),
                created_at=_from_iso(row["created_at"]),
            )
        except (TokenDecryptError, ValueError, OSError) as exc:
            self._logger.warning(
                "Discarding unreadable session for %s: %s", username, exc,
            )
            with self._db.write_lock:
                self._delete_row(username)
            return None

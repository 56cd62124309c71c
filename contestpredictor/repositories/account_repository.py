"""
Account Repository.

Handles all access to the local credential store (``accounts``).
The table is owned by the auth core: other subsystems may read the
rating columns but never write the authentication ones.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Optional

from contestpredictor.database import DatabaseManager
from contestpredictor.logger import StructuredLogger
from contestpredictor.models.account import LocalAccount
from contestpredictor.repositories.base_repository import BaseRepository, RepositoryError
from contestpredictor.utils.identity import normalize_email, username_from_email


class AccountExistsError(RepositoryError):
    """Raised when an insert collides with an existing username or email."""

    def __init__(self, username: str, field: str = "username") -> None:
        self.username = username
        self.field = field
        super().__init__(f"An account with this {field} already exists: {username}")


class AccountRepository(BaseRepository):
    """Data access layer for :class:`LocalAccount` rows.

    **No ``rename`` and no ``delete`` method.**  A username is immutable
    for the lifetime of the account; the rating history of other
    subsystems is keyed by it.
    """

    TABLE = "accounts"

    _COLUMNS = (
        "username, password, email, remote_uid, full_name, "
        "current_rating, contests_participated, created_at, updated_at"
    )

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        super().__init__(db, logger)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_username(self, username: str) -> Optional[LocalAccount]:
        """Fetch an account by its exact (case-sensitive) username."""
        row = self.sqlite.execute(
            f"SELECT {self._COLUMNS} FROM {self.TABLE} WHERE username = ?",
            (username,),
        ).fetchone()
        return self._to_model(row)

    def get_by_email(self, email: str) -> Optional[LocalAccount]:
        """Fetch an account by email address (case-insensitive).

        Args:
            email: The email to look up.  Blank input never matches.

        Returns:
            The account if found, or None.
        """
        normalized = normalize_email(email)
        if not normalized:
            return None
        row = self.sqlite.execute(
            f"SELECT {self._COLUMNS} FROM {self.TABLE} WHERE lower(email) = ?",
            (normalized,),
        ).fetchone()
        return self._to_model(row)

    def exists(self, username: str) -> bool:
        row = self.sqlite.execute(
            f"SELECT 1 FROM {self.TABLE} WHERE username = ?", (username,)
        ).fetchone()
        return row is not None

    def find_by_identifier(self, identifier: str) -> Optional[LocalAccount]:
        """Resolve a login or reset identifier to an account.

        Tried in order: exact username, email equality, then the
        username derived from *identifier* by dropping its domain.
        """
        identifier = identifier.strip()
        if not identifier:
            return None

        account = self.get_by_username(identifier)
        if account is not None:
            return account

        account = self.get_by_email(identifier)
        if account is not None:
            return account

        derived = username_from_email(identifier)
        if derived and derived != identifier:
            return self.get_by_username(derived)
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, account: LocalAccount) -> LocalAccount:
        """Insert a new account.

        Raises:
            AccountExistsError: If the username (or a non-empty email) is
                already taken.  The existing row is left untouched.
        """
        now = datetime.now(tz=timezone.utc)
        email = normalize_email(account.email) if account.email else None
        stored = account.model_copy(
            update={
                "email": email,
                "created_at": account.created_at or now,
                "updated_at": now,
            }
        )
        with self.write_lock:
            try:
                self.sqlite.execute(
                    f"""
                    INSERT INTO {self.TABLE} ({self._COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        stored.username,
                        stored.password,
                        stored.email,
                        stored.remote_uid,
                        stored.full_name,
                        stored.current_rating,
                        stored.contests_participated,
                        stored.created_at.isoformat(),
                        stored.updated_at.isoformat(),
                    ),
                )
                self._commit()
            except sqlite3.IntegrityError as exc:
                if not self._db.in_batch:
                    self.sqlite.rollback()
                field = "email" if "email" in str(exc) else "username"
                raise AccountExistsError(stored.username, field) from exc

        self._logger.info(
            "Local account created: %s", stored.username,
            extra={"event": "ACCOUNT_CREATED", "username": stored.username},
        )
        return stored

    def update_password(
        self,
        username: str,
        new_password: str,
        email: Optional[str] = None,
    ) -> Optional[LocalAccount]:
        """Overwrite the stored password and backfill a missing email.

        Returns:
            The updated account, or None if *username* does not exist.
        """
        with self.write_lock:
            cursor = self.sqlite.execute(
                f"UPDATE {self.TABLE} SET password = ?, updated_at = ? WHERE username = ?",
                (new_password, self._now_iso(), username),
            )
            if cursor.rowcount == 0:
                return None
            if email:
                self._backfill_email(username, email)
            self._commit()
        return self.get_by_username(username)

    def reset_password(
        self,
        username: str,
        new_password: str,
        email: Optional[str] = None,
        remote_uid: Optional[str] = None,
    ) -> Optional[LocalAccount]:
        """Store a reset password and relink the remote identity atomically.

        Runs :meth:`update_password` and, when *remote_uid* is given,
        :meth:`link_remote_identity` with ``replace_uid=True`` inside one
        :meth:`DatabaseManager.batch_write`.  If the link fails the
        password change is rolled back too.

        Returns:
            The updated account, or None if *username* does not exist.
        """
        with self._db.batch_write():
            updated = self.update_password(username, new_password, email=email)
            if updated is not None and remote_uid:
                updated = self.link_remote_identity(
                    username, remote_uid, email, replace_uid=True,
                ) or updated
        return updated

    def link_remote_identity(
        self,
        username: str,
        remote_uid: Optional[str],
        email: Optional[str],
        *,
        replace_uid: bool = False,
    ) -> Optional[LocalAccount]:
        """Attach a remote identity to an existing account.

        A missing ``remote_uid`` / ``email`` is backfilled.  With
        ``replace_uid=True`` an existing uid is overwritten too (the
        remote account was recreated).  An email already owned by a
        different account is left alone and logged.
        """
        with self.write_lock:
            if remote_uid:
                if replace_uid:
                    sql = f"UPDATE {self.TABLE} SET remote_uid = ?, updated_at = ? WHERE username = ?"
                else:
                    sql = (
                        f"UPDATE {self.TABLE} SET remote_uid = ?, updated_at = ? "
                        "WHERE username = ? AND (remote_uid IS NULL OR remote_uid = '')"
                    )
                self.sqlite.execute(sql, (remote_uid, self._now_iso(), username))
            if email:
                self._backfill_email(username, email)
            self._commit()
        return self.get_by_username(username)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _backfill_email(self, username: str, email: str) -> None:
        """Set ``email`` when it is empty and not owned by another account.

        Caller must hold the write lock.  Does not commit.
        """
        normalized = normalize_email(email)
        owner = self.get_by_email(normalized)
        if owner is not None and owner.username != username:
            self._logger.warning(
                "Email %s already belongs to %s; not attaching it to %s.",
                normalized,
                owner.username,
                username,
            )
            return
        self.sqlite.execute(
            f"""
            UPDATE {self.TABLE} SET email = ?, updated_at = ?
            WHERE username = ? AND (email IS NULL OR email = '')
            """,
            (normalized, self._now_iso(), username),
        )

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(tz=timezone.utc).isoformat()

    @staticmethod
    def _to_model(row: Optional[sqlite3.Row]) -> Optional[LocalAccount]:
        return LocalAccount(**dict(row)) if row else None

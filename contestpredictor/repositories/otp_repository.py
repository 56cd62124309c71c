"""
OTP Challenge Repository.

Stores password-reset challenge documents keyed by sanitized email.
The remote document store is primary when configured; the local
``otp_challenges`` table keeps the reset flow working offline.
"""

from __future__ import annotations

import json
from typing import Optional

from contestpredictor.database import DatabaseManager
from contestpredictor.logger import StructuredLogger
from contestpredictor.models.enums import AuthBackend
from contestpredictor.repositories.base_repository import BaseRepository
from contestpredictor.repositories.remote_documents import Document, RemoteDocumentStore


def _issued_at(document: Document) -> int:
    """Epoch-ms issue time of *document*; unreadable values sort first."""
    try:
        return int(document.get("timestamp", 0))
    except (TypeError, ValueError):
        return 0


class OtpChallengeRepository(BaseRepository):
    """Remote-first, SQLite-fallback storage for OTP challenge documents.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager``.
    logger:
        Structured logger.
    documents:
        Remote document store, or ``None`` when the provider database
        is not configured (local table only).
    """

    TABLE = "otp_challenges"
    REMOTE_ROOT = "password_reset_otps"

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        documents: Optional[RemoteDocumentStore] = None,
    ) -> None:
        super().__init__(db, logger)
        self._documents: Optional[RemoteDocumentStore] = documents

    @property
    def remote_enabled(self) -> bool:
        return self._documents is not None

    def get(self, key: str) -> Optional[Document]:
        """Fetch the challenge document for *key*.

        Both stores are read and the document with the newest
        ``timestamp`` wins.  A local copy exists only after a failed
        remote write, so it also wins a tie.
        """
        documents = self._documents
        remote_op = (lambda: documents.get(self._remote_path(key))) if documents else None

        remote_doc, local_doc = self._read_from_both(
            remote_op,
            lambda: self._get_local(key),
            operation_name=f"get ({self.TABLE})",
        )
        if remote_doc is None or local_doc is None:
            return local_doc if local_doc is not None else remote_doc
        if _issued_at(remote_doc) > _issued_at(local_doc):
            return remote_doc
        return local_doc

    def put(self, key: str, document: Document) -> AuthBackend:
        """Write *document* under *key*, overwriting any previous one.

        Returns the backend that now holds it.  A successful remote
        write removes any local copy so reads never see a stale code.
        """
        if self._documents is not None:
            try:
                self._documents.put(self._remote_path(key), document)
                self._delete_local(key)
                return AuthBackend.REMOTE
            except Exception as exc:
                self._logger.warning(
                    "Remote OTP write failed for %s; keeping it locally: %s", key, exc,
                )

        with self.write_lock:
            self.sqlite.execute(
                f"""
                INSERT INTO {self.TABLE} (key, document, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    document   = excluded.document,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, json.dumps(document)),
            )
            self._commit()
        return AuthBackend.LOCAL

    def delete(self, key: str) -> None:
        """Delete the challenge from both stores.  Remote failures are logged."""
        if self._documents is not None:
            try:
                self._documents.delete(self._remote_path(key))
            except Exception as exc:
                self._logger.warning("Remote OTP delete failed for %s: %s", key, exc)
        self._delete_local(key)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _remote_path(self, key: str) -> str:
        return f"{self.REMOTE_ROOT}/{key}"

    def _get_local(self, key: str) -> Optional[Document]:
        row = self.sqlite.execute(
            f"SELECT document FROM {self.TABLE} WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["document"])
        except json.JSONDecodeError as exc:
            self._logger.warning("Discarding malformed local OTP document for %s: %s", key, exc)
            return None

    def _delete_local(self, key: str) -> None:
        with self.write_lock:
            self.sqlite.execute(f"DELETE FROM {self.TABLE} WHERE key = ?", (key,))
            self._commit()

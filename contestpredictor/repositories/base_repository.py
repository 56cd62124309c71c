"""
Base Repository.

Provides shared infrastructure for all repositories:
- DatabaseManager reference (SQLite + write lock)
- Logger reference
- Dual-store read helper (remote + SQLite)
- Batch-aware commit
"""

from __future__ import annotations

import sqlite3
import threading
from typing import Callable, Optional, TypeVar

from contestpredictor.database import DatabaseManager
from contestpredictor.logger import StructuredLogger

T = TypeVar("T")


class RepositoryError(Exception):
    """Base class for domain errors raised by repositories."""


class BaseRepository:
    """Base class for all repositories. Receives dependencies via __init__."""

    TABLE: str = ""

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Returns the SQLite connection for local operations."""
        return self._db.sqlite

    @property
    def write_lock(self) -> threading.RLock:
        return self._db.write_lock

    def _read_from_both(
        self,
        remote_op: Optional[Callable[[], Optional[T]]],
        sqlite_op: Callable[[], Optional[T]],
        *,
        operation_name: str,
    ) -> tuple[Optional[T], Optional[T]]:
        """Read the same record from the remote store and from SQLite.

        Either side may be missing or unavailable; failures are logged
        and reported as ``None`` so the caller can pick a winner.

        Parameters
        ----------
        remote_op:
            Zero-argument callable querying the remote store, or ``None``
            when the remote store is not configured.
        sqlite_op:
            Zero-argument callable performing the SQLite query.
        operation_name:
            Human-readable label for log messages, e.g.
            ``"get (otp_challenges)"``.

        Returns
        -------
        tuple
            ``(remote_result, sqlite_result)``.
        """
        remote_result: Optional[T] = None
        if remote_op is not None:
            try:
                remote_result = remote_op()
            except Exception as exc:
                self._logger.warning(
                    "Remote store unavailable for %s: %s", operation_name, exc
                )

        sqlite_result: Optional[T] = None
        try:
            sqlite_result = sqlite_op()
        except sqlite3.Error as sqlite_exc:
            self._logger.error(
                "SQLite read failed for %s: %s", operation_name, sqlite_exc,
            )

        return remote_result, sqlite_result

    def _commit(self) -> None:
        """Commit the SQLite transaction unless a batch is active.

        Inside :meth:`DatabaseManager.batch_write` this is a no-op; the
        batch context manager issues a single commit (or rollback) when
        the ``with`` block exits.
        """
        if not self._db.in_batch:
            self.sqlite.commit()

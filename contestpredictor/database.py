"""
Database Abstraction Layer.

Owns the local SQLite connection that backs the authoritative credential
store (``accounts``), the remembered-session table (``sessions``), the
offline OTP fallback (``otp_challenges``) and the audit trail.

The remote identity provider is *not* a database from this module's
point of view; it is reached over HTTP by
:class:`~contestpredictor.services.remote_identity.RemoteIdentityClient`.

Data access is performed through repositories and services.  This module
only manages the raw connection; it contains no query logic.

Security Note
-------------
The database file is not encrypted.  Account passwords are stored in
cleartext to preserve the contract of the existing installations; session
tokens are encrypted per column by ``TokenCipher`` when enabled.

Usage::

    from contestpredictor.database import DatabaseManager
    from contestpredictor.logger import StructuredLogger

    db = DatabaseManager(
        sqlite_path=Path("contest_predictor.db"),
        logger=StructuredLogger(name="database"),
    )
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Union

from contestpredictor.logger import StructuredLogger


class DatabaseManager:
    """Manages the connection to the local SQLite database.

    Parameters
    ----------
    sqlite_path:
        Filesystem path for the database file, or ``":memory:"``.
        Parent directories must already exist.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    """

    def __init__(
        self,
        sqlite_path: Union[Path, str],
        logger: StructuredLogger,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._write_lock: threading.RLock = threading.RLock()
        self._in_batch: bool = False
        self._closed: bool = False
        self._sqlite_conn: sqlite3.Connection = self._connect_sqlite(sqlite_path)

    # ------------------------------------------------------------------
    # Public properties
    # ------------------------------------------------------------------

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Return the initialised SQLite connection."""
        return self._sqlite_conn

    @property
    def write_lock(self) -> threading.RLock:
        """Return the lock serialising SQLite writes across worker threads.

        Every INSERT / UPDATE / DELETE followed by ``commit()`` must run
        under this lock::

            with db.write_lock:
                db.sqlite.execute("DELETE FROM sessions WHERE username = ?", (name,))
                db.sqlite.commit()
        """
        return self._write_lock

    @property
    def in_batch(self) -> bool:
        """``True`` when a :meth:`batch_write` context is active."""
        return self._in_batch

    @contextmanager
    def batch_write(self) -> Generator[None, None, None]:
        """Defer commits until the block exits; roll back on exception.

        Holds the write lock for the whole block.  Re-entrant: a nested
        ``batch_write`` joins the outer one.
        """
        with self._write_lock:
            if self._in_batch:
                yield
                return

            self._in_batch = True
            try:
                yield
                self._sqlite_conn.commit()
            except Exception:
                self._sqlite_conn.rollback()
                self._logger.error(
                    "Batch write rolled back due to exception.", exc_info=True,
                )
                raise
            finally:
                self._in_batch = False

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the SQLite connection.  Safe to call more than once."""
        with self._write_lock:
            if self._closed:
                return
            try:
                self._sqlite_conn.close()
                self._logger.info("SQLite connection closed.")
            except sqlite3.ProgrammingError:
                pass
            self._closed = True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _connect_sqlite(self, path: Union[Path, str]) -> sqlite3.Connection:
        """Open (or create) the SQLite database.

        The connection is shared by the UI thread and the auth worker
        pool, hence ``check_same_thread=False`` plus :attr:`write_lock`.

        Raises
        ------
        PermissionError
            If the OS denies access to the database file or its directory.
        """
        try:
            conn = sqlite3.connect(str(path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            if str(path) != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys = ON;")
            self._logger.info("SQLite database opened at %s", path)
            return conn
        except PermissionError as exc:
            msg = (
                f"Cannot open the local database at '{path}'. "
                "The file or its directory may be read-only or locked by "
                "another process."
            )
            self._logger.error(msg)
            raise PermissionError(msg) from exc

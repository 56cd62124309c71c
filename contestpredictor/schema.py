"""
Centralized SQLite Schema Initialization.

Defines the canonical schema for the local database and provides a single
entry-point -- :func:`initialize_schema` -- that creates all required
tables idempotently.  A ``schema_version`` table tracks applied
migrations so installations created by older releases roll forward
without data loss.

Version history
~~~~~~~~~~~~~~~
1. ``accounts`` with username / password / profile columns only.
2. ``accounts`` gains ``email`` (unique once set) and ``remote_uid`` so a
   local row can mirror a remote identity.
3. ``sessions`` (remembered logins) and ``otp_challenges`` (offline
   password-reset codes).

Fresh databases (version 0) are created in one shot from
:data:`_TABLE_DEFINITIONS`; existing databases only run the migrations
registered in :data:`_MIGRATIONS`.  The whole upgrade is committed once;
on failure it is rolled back and retried at next startup.

Usage::

    from contestpredictor.schema import initialize_schema

    initialize_schema(db.sqlite, StructuredLogger(name="schema"))
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable

from contestpredictor.logger import StructuredLogger

__all__ = ["CURRENT_SCHEMA_VERSION", "initialize_schema"]

CURRENT_SCHEMA_VERSION: int = 3

_AUDIT_LOG_DDL: str = """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        event TEXT NOT NULL,
        username TEXT NOT NULL,
        backend TEXT NOT NULL,
        details TEXT DEFAULT '{}',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

_ACCOUNTS_DDL: str = """
    CREATE TABLE IF NOT EXISTS accounts (
        username TEXT PRIMARY KEY,
        password TEXT NOT NULL,
        email TEXT UNIQUE,
        remote_uid TEXT,
        full_name TEXT NOT NULL DEFAULT '',
        current_rating INTEGER NOT NULL DEFAULT 1000,
        contests_participated INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

_SESSIONS_DDL: str = """
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT UNIQUE NOT NULL,
        remote_uid TEXT,
        email TEXT,
        id_token TEXT,
        refresh_token TEXT,
        token_expiry TEXT NOT NULL,
        remember_me INTEGER NOT NULL DEFAULT 1,
        last_login TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
"""

_OTP_CHALLENGES_DDL: str = """
    CREATE TABLE IF NOT EXISTS otp_challenges (
        key TEXT PRIMARY KEY,
        document TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

_TABLE_DEFINITIONS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    _AUDIT_LOG_DDL,
    _ACCOUNTS_DDL,
    _SESSIONS_DDL,
    _OTP_CHALLENGES_DDL,
    "CREATE INDEX IF NOT EXISTS idx_sessions_remembered ON sessions(remember_me, last_login)",
]


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------

def _ensure_version_table(conn: sqlite3.Connection) -> None:
    """Create the ``schema_version`` table before any version check."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            version INTEGER NOT NULL,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.commit()


def _get_schema_version(conn: sqlite3.Connection) -> int:
    """Return the current schema version, or ``0`` if unset."""
    row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
    return row[0] if row is not None else 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    """Upsert the single-row version tracker.  Does not commit."""
    conn.execute(
        """
        INSERT INTO schema_version (id, version) VALUES (1, ?)
        ON CONFLICT(id) DO UPDATE SET version = excluded.version,
                                      applied_at = CURRENT_TIMESTAMP
        """,
        (version,),
    )


def _create_all_tables(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Execute every DDL statement in :data:`_TABLE_DEFINITIONS`.  Does not commit."""
    for ddl in _TABLE_DEFINITIONS:
        conn.execute(ddl)
    logger.info("All %d schema statements applied.", len(_TABLE_DEFINITIONS))


_ALLOWED_TABLES: frozenset[str] = frozenset({
    "schema_version",
    "audit_log",
    "accounts",
    "sessions",
    "otp_challenges",
})
"""Tables that may appear in dynamic PRAGMA queries (guards :func:`_column_exists`)."""


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """Check whether *column* already exists in *table*.

    Raises:
        ValueError: If *table* is not in :data:`_ALLOWED_TABLES`.
    """
    if table not in _ALLOWED_TABLES:
        raise ValueError(
            f"Invalid table name: {table!r}. "
            f"Allowed tables: {sorted(_ALLOWED_TABLES)}"
        )
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return any(row[1] == column for row in cursor.fetchall())


def _migrate_v1_to_v2(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Add ``email`` and ``remote_uid`` to ``accounts``.

    SQLite cannot add a UNIQUE column with ``ALTER TABLE``, so uniqueness
    of ``email`` is enforced by a unique index instead.  NULLs do not
    collide, which keeps email optional until it is first set.
    """
    if not _column_exists(conn, "accounts", "email"):
        conn.execute("ALTER TABLE accounts ADD COLUMN email TEXT")
    if not _column_exists(conn, "accounts", "remote_uid"):
        conn.execute("ALTER TABLE accounts ADD COLUMN remote_uid TEXT")
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_email ON accounts(email)"
    )
    logger.info("Migration v1→v2: added email and remote_uid to accounts.")


def _migrate_v2_to_v3(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create ``sessions``, ``otp_challenges`` and, if missing, ``audit_log``."""
    conn.execute(_SESSIONS_DDL)
    conn.execute(_OTP_CHALLENGES_DDL)
    conn.execute(_AUDIT_LOG_DDL)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sessions_remembered ON sessions(remember_me, last_login)"
    )
    logger.info("Migration v2→v3: created sessions and otp_challenges.")


MigrationFunc = Callable[[sqlite3.Connection, StructuredLogger], None]

# Maps *target* version to its migration function.
_MIGRATIONS: dict[int, MigrationFunc] = {
    2: _migrate_v1_to_v2,
    3: _migrate_v2_to_v3,
}


def _run_incremental_migrations(
    conn: sqlite3.Connection,
    logger: StructuredLogger,
    from_version: int,
    to_version: int,
) -> None:
    """Run migrations for versions in ``(from_version, to_version]``, ascending."""
    versions_to_apply: list[int] = sorted(
        v for v in _MIGRATIONS if from_version < v <= to_version
    )

    if not versions_to_apply:
        logger.info("No incremental migrations to apply.")
        return

    for version in versions_to_apply:
        logger.info("Running migration to version %d.", version)
        _MIGRATIONS[version](conn, logger)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Bring the local database to :data:`CURRENT_SCHEMA_VERSION`.

    Called on every startup; a database already at the current version
    is left untouched.

    Args:
        conn: An open SQLite connection.
        logger: Structured logger for progress output.
    """
    _ensure_version_table(conn)
    current: int = _get_schema_version(conn)

    if current >= CURRENT_SCHEMA_VERSION:
        logger.info("Schema is up to date (version %d).", current)
        return

    logger.info(
        "Upgrading schema from version %d to %d.", current, CURRENT_SCHEMA_VERSION,
    )

    try:
        if current == 0:
            _create_all_tables(conn, logger)
        else:
            _run_incremental_migrations(conn, logger, current, CURRENT_SCHEMA_VERSION)

        _set_schema_version(conn, CURRENT_SCHEMA_VERSION)
        conn.commit()
    except Exception:
        conn.rollback()
        logger.error("Schema migration failed; rolled back to version %d.", current)
        raise

    logger.info("Schema initialised at version %d.", CURRENT_SCHEMA_VERSION)

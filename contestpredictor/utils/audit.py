"""
Structured Audit Logging Utility.

Every credential state change (login, registration, password update,
logout) is logged as a structured JSON object.  Provides a
Pydantic-validated model and a single function for consistent audit
trail entries.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field

from contestpredictor.logger import StructuredLogger
from contestpredictor.models.enums import AuthBackend

__all__ = ["AuthAuditEvent", "log_audit_event", "persist_audit_event"]

# Flat scalars only; nested structures do not belong in the audit log.
DetailValue = Union[str, int, float, bool, None]


class AuthAuditEvent(BaseModel):
    """Schema-validated representation of a single audit trail entry."""

    timestamp: str
    event: str
    username: str
    backend: AuthBackend
    details: dict[str, DetailValue] = Field(default_factory=dict)


def _build_event(
    event: str,
    username: str,
    backend: AuthBackend,
    details: Optional[dict[str, DetailValue]],
) -> AuthAuditEvent:
    return AuthAuditEvent(
        timestamp=datetime.now(timezone.utc).isoformat(),
        event=event,
        username=username,
        backend=backend,
        details=details or {},
    )


def log_audit_event(
    logger: StructuredLogger,
    event: str,
    username: str,
    backend: AuthBackend,
    details: Optional[dict[str, DetailValue]] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> None:
    """Log a structured JSON audit event, with optional SQLite persistence.

    Always emits a JSON log line via *logger* carrying ``event`` in the
    record's ``extra`` fields.  When *conn* is provided, the event is
    also written to the ``audit_log`` table.  Persistence errors are
    logged and never propagated.

    Args:
        logger: The logger instance to write to.
        event: What happened (e.g. ``"LOGIN"``, ``"REGISTER"``,
            ``"PASSWORD_RESET"``, ``"LOGOUT"``).
        username: Local account the event concerns.
        backend: Which credential store satisfied the operation.
        details: Optional additional context (never passwords or tokens).
        conn: Optional SQLite connection for the ``audit_log`` table.
    """
    record = _build_event(event, username, backend, details)
    logger.info(
        "AUDIT: %s",
        json.dumps(record.model_dump(mode="json"), default=str),
        extra={"event": event, "username": username},
    )

    if conn is not None:
        try:
            persist_audit_event(
                conn=conn,
                event=event,
                username=username,
                backend=backend,
                details=details,
            )
        except Exception as db_err:
            logger.warning(
                "Failed to persist audit event to SQLite: %s", db_err
            )


def persist_audit_event(
    conn: sqlite3.Connection,
    event: str,
    username: str,
    backend: AuthBackend,
    details: Optional[dict[str, DetailValue]] = None,
) -> None:
    """Write an audit event to the SQLite ``audit_log`` table.

    A :class:`pydantic.ValidationError` propagates to the caller so
    that malformed audit data is never persisted.
    """
    record = _build_event(event, username, backend, details)

    conn.execute(
        """
        INSERT INTO audit_log (timestamp, event, username, backend, details)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            record.timestamp,
            record.event,
            record.username,
            str(record.backend),
            json.dumps(record.details, default=str),
        ),
    )
    conn.commit()

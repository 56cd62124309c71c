"""
Base Service Class.

Minimal base class standardizing the logger pattern for all services.
Services extend this and add their own dependencies via __init__.
"""

from __future__ import annotations

import logging

from contestpredictor.logger import StructuredLogger


class BaseService:
    """Base class for all service classes. Provides a logger."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger

    def _log_event(
        self,
        event: str,
        message: str,
        *args: object,
        level: int = logging.INFO,
        **fields: object,
    ) -> None:
        """Log *message* with ``event`` and *fields* as structured extras.

        Never pass passwords or tokens in *fields*.
        """
        self._logger.logger.log(level, message, *args, extra={"event": event, **fields})

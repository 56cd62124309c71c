"""
Outcome Guard Decorator.

Provides a factory that produces a decorator for the public methods of
the auth coordinator: whatever goes wrong inside, the caller receives
an outcome value and never an exception.

Usage::

    from contestpredictor.models.auth_models import AuthOutcome
    from contestpredictor.outcome_guard import never_raises

    class AuthCoordinator:
        @never_raises(AuthOutcome)
        def login(self, identifier: str, password: str) -> AuthOutcome:
            ...
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Callable, ParamSpec, TypeVar, cast

from contestpredictor.logger import StructuredLogger
from contestpredictor.models.auth_models import AuthOutcome
from contestpredictor.models.enums import AuthErrorKind

P = ParamSpec("P")
R = TypeVar("R", bound=AuthOutcome)

UNEXPECTED_ERROR_MESSAGE: str = "An unexpected error occurred. Please try again."

_fallback_logger = logging.getLogger("contestpredictor.outcome_guard")


def _logger_for(args: tuple[object, ...]) -> logging.Logger:
    """Use the bound service's ``StructuredLogger`` when there is one."""
    owner = args[0] if args else None
    structured = getattr(owner, "_logger", None)
    if isinstance(structured, StructuredLogger):
        return structured.logger
    return _fallback_logger


def never_raises(
    outcome_type: type[AuthOutcome] = AuthOutcome,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Return a decorator converting unexpected exceptions into outcomes.

    The wrapped callable's exceptions are logged with their traceback
    and replaced by ``outcome_type.failure(UNKNOWN, ...)`` carrying the
    exception class name as ``error_code``.

    Args:
        outcome_type: The ``AuthOutcome`` subclass the wrapped callable
            returns, so failures keep the declared type.

    Returns:
        A decorator suitable for wrapping coordinator methods.
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                _logger_for(args).error(
                    "Unhandled error in %s: %s",
                    func.__qualname__,
                    exc,
                    exc_info=True,
                    extra={"event": "AUTH_INTERNAL_ERROR"},
                )
                return cast(
                    R,
                    outcome_type.failure(
                        AuthErrorKind.UNKNOWN,
                        UNEXPECTED_ERROR_MESSAGE,
                        type(exc).__name__,
                    ),
                )

        return wrapper

    return decorator

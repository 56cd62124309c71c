"""
Auth Task Runner.

Runs credential operations off the UI thread on a bounded worker pool.

Each submission gets its own :class:`CancellationToken`.  Cancelling
does not interrupt a network call already in flight; the worker runs to
completion and its result is simply discarded, so a screen that has
been closed never receives a late callback.

Results are surfaced two ways: the ``concurrent.futures.Future`` on the
returned :class:`TaskHandle`, and an optional callback that is marshalled
through the injected ``dispatch`` callable (for a Tk front end,
``lambda fn: widget.after(0, fn)``).

Thread Safety
-------------
The coordinator methods submitted here are stateless per call; SQLite
writes inside them serialise on ``DatabaseManager.write_lock``.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Generic, Optional, TypeVar

from contestpredictor.logger import StructuredLogger
from contestpredictor.services.base_service import BaseService

R = TypeVar("R")

Dispatch = Callable[[Callable[[], None]], None]


def _call_inline(fn: Callable[[], None]) -> None:
    fn()


class CancellationToken:
    """One-shot flag shared between the submitter and a worker."""

    def __init__(self) -> None:
        self._event: threading.Event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class TaskHandle(Generic[R]):
    """Submitter's view of one running task."""

    def __init__(self, future: "Future[R]", token: CancellationToken, name: str) -> None:
        self.future: Future[R] = future
        self.token: CancellationToken = token
        self.name: str = name

    def cancel(self) -> None:
        """Discard the result.  A task not yet started will not run at all."""
        self.token.cancel()
        self.future.cancel()

    @property
    def cancelled(self) -> bool:
        return self.token.is_cancelled

    def result(self, timeout: Optional[float] = None) -> Optional[R]:
        """Block for the result; ``None`` when the task was cancelled."""
        if self.token.is_cancelled:
            return None
        value = self.future.result(timeout=timeout)
        return None if self.token.is_cancelled else value


class AuthTaskRunner(BaseService):
    """Bounded thread pool for auth operations.

    Parameters
    ----------
    logger:
        Structured logger.
    max_workers:
        Pool size (``WORKER_POOL_SIZE``).
    dispatch:
        Schedules a zero-argument callable on the consumer's thread.
        Defaults to calling it inline on the worker thread.
    """

    def __init__(
        self,
        logger: StructuredLogger,
        max_workers: int = 4,
        dispatch: Dispatch = _call_inline,
    ) -> None:
        super().__init__(logger)
        self._dispatch: Dispatch = dispatch
        self._executor: ThreadPoolExecutor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="auth-worker",
        )
        self._closed: bool = False

    def submit(
        self,
        task: Callable[[], R],
        on_result: Optional[Callable[[R], None]] = None,
        name: str = "auth-task",
    ) -> TaskHandle[R]:
        """Run *task* on the pool.

        Args:
            task: Zero-argument callable, typically a bound coordinator
                call such as ``lambda: coordinator.login(user, pw, True)``.
            on_result: Optional consumer of the result, invoked through
                ``dispatch`` unless the task was cancelled.
            name: Label for log lines.

        Raises:
            RuntimeError: If the runner has been shut down.
        """
        if self._closed:
            raise RuntimeError("AuthTaskRunner has been shut down.")

        token = CancellationToken()

        def run() -> R:
            value = task()
            if token.is_cancelled:
                self._logger.debug("Discarding result of cancelled task %s.", name)
            elif on_result is not None:
                self._dispatch(lambda: self._deliver(on_result, value, name))
            return value

        future: Future[R] = self._executor.submit(run)
        future.add_done_callback(lambda f: self._log_failure(f, name))
        return TaskHandle(future, token, name)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; optionally wait for running tasks.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)
        self._logger.info("Auth task runner stopped.")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _deliver(self, callback: Callable[[R], None], value: R, name: str) -> None:
        try:
            callback(value)
        except Exception:
            self._logger.error("Result callback for %s failed.", name, exc_info=True)

    def _log_failure(self, future: "Future[R]", name: str) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._logger.error(
                "Task %s raised %s: %s", name, type(exc).__name__, exc,
                extra={"event": "AUTH_TASK_FAILED"},
            )

"""
Contest Predictor Authentication Entry Point.

Bootstraps the dependency graph via constructor injection, initialises
the local SQLite schema, resumes a remembered session when one is
valid and otherwise runs a small console front end for login,
registration and password reset.  Every subsystem is wired here; there
are no module-level globals.

Usage::

    python main.py
"""

from __future__ import annotations

import atexit
import getpass
import sys
import traceback

from contestpredictor.config import get_config
from contestpredictor.database import DatabaseManager
from contestpredictor.logger import StructuredLogger, get_logger
from contestpredictor.models.auth_models import AuthOutcome
from contestpredictor.models.enums import AuthErrorKind
from contestpredictor.schema import initialize_schema
from contestpredictor.services import create_services
from contestpredictor.services.auth_coordinator import AuthCoordinator

_MENU: str = (
    "\n[1] Sign in\n"
    "[2] Create account\n"
    "[3] Forgot password\n"
    "[q] Quit\n"
)


def main() -> None:
    """Application entry point: wire dependencies and run the console."""
    config = get_config()
    logger: StructuredLogger = get_logger("main", log_file=config.LOG_FILE)
    logger.info("Starting Contest Predictor...")

    # ------------------------------------------------------------------
    # 1. Database Manager (SQLite is the authoritative local store)
    # ------------------------------------------------------------------
    db = DatabaseManager(
        sqlite_path=config.SQLITE_PATH,
        logger=StructuredLogger(name="database", log_file=config.LOG_FILE),
    )

    # close() is idempotent, so the atexit hook can coexist with the
    # explicit close below.
    atexit.register(db.close)

    # ------------------------------------------------------------------
    # 2. SQLite Schema Initialization (idempotent, versioned)
    # ------------------------------------------------------------------
    initialize_schema(db.sqlite, StructuredLogger(name="schema", log_file=config.LOG_FILE))

    # ------------------------------------------------------------------
    # 3. Service Container (repositories + services, single composition root)
    # ------------------------------------------------------------------
    services = create_services(db=db, config=config)
    coordinator = services["auth_coordinator"]
    runner = services["task_runner"]

    if not coordinator.remote_enabled:
        print("Remote sign-in is unavailable; using local accounts only.")

    # ------------------------------------------------------------------
    # 4. Auto-login, then the interactive loop
    # ------------------------------------------------------------------
    try:
        resumed = runner.submit(coordinator.resume_session, name="resume_session").result()
        if resumed is not None and resumed.success:
            _report(resumed)
        else:
            _run_console(coordinator)
    finally:
        runner.shutdown(wait=True)
        services["remote_identity"].close()
        document_store = services.get("document_store")
        if document_store is not None:
            document_store.close()
        db.close()
        logger.info("Contest Predictor shut down.")


def _run_console(coordinator: AuthCoordinator) -> None:
    """Prompt until the user signs in, registers or quits."""
    while True:
        choice = input(_MENU + "> ").strip().lower()
        if choice == "1":
            outcome = coordinator.login(
                input("Username or email: "),
                getpass.getpass("Password: "),
                remember_me=_ask_yes_no("Remember me? [Y/n] "),
            )
            _report(outcome)
            if outcome.success:
                return
            if outcome.error_kind == AuthErrorKind.EMAIL_NOT_FOUND:
                print("Choose [2] to create an account.")
        elif choice == "2":
            outcome = coordinator.register(
                email=input("Email: "),
                password=getpass.getpass("Password: "),
                full_name=input("Full name: "),
                confirm_password=getpass.getpass("Confirm password: "),
            )
            _report(outcome)
            if outcome.success:
                return
        elif choice == "3":
            _run_password_reset(coordinator)
        elif choice in ("q", "quit", "exit"):
            return


def _run_password_reset(coordinator: AuthCoordinator) -> None:
    flow = coordinator.begin_password_reset()

    requested = flow.request_otp(input("Email: "))
    _report(requested)
    if not requested.success:
        return
    # No mail transport: the code is shown to the requester.
    print(f"Your one-time code is {requested.otp}")

    while True:
        code = input("One-time code (blank to cancel): ").strip()
        if not code:
            return
        verified = flow.verify_otp(code)
        _report(verified)
        if verified.success:
            break

    completed = flow.complete(
        new_password=getpass.getpass("New password: "),
        confirm_password=getpass.getpass("Confirm new password: "),
        old_password=getpass.getpass("Old password (optional): "),
    )
    _report(completed)


def _ask_yes_no(prompt: str) -> bool:
    return input(prompt).strip().lower() not in ("n", "no")


def _report(outcome: AuthOutcome) -> None:
    prefix = "OK" if outcome.success else "ERROR"
    print(f"[{prefix}] {outcome.message}")


def _show_fatal_error(exc: BaseException) -> None:
    """Write the fatal error and its traceback to stderr."""
    detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    sys.stderr.write(
        "The application encountered an unexpected error and cannot continue.\n"
        f"FATAL: {type(exc).__name__}: {exc}\n{detail}"
    )


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        _show_fatal_error(exc)
        sys.exit(1)

"""
Authentication Services Package.

Services depend on the Repository layer for data access and on the
remote identity client for provider calls.

The ``create_services()`` factory wires every repository and service together,
returning a typed dict that the front end can consume without knowing
the internal dependency graph.
"""

from __future__ import annotations

from typing import Optional, TypedDict

import httpx

from contestpredictor.config import AppConfig
from contestpredictor.database import DatabaseManager
from contestpredictor.logger import get_logger
from contestpredictor.repositories.account_repository import AccountRepository
from contestpredictor.repositories.otp_repository import OtpChallengeRepository
from contestpredictor.repositories.remote_documents import RemoteDocumentStore
from contestpredictor.services.auth_coordinator import AuthCoordinator, PasswordResetFlow
from contestpredictor.services.otp_store import OtpChallengeStore
from contestpredictor.services.remote_identity import RemoteIdentityClient
from contestpredictor.services.session_store import SessionStore
from contestpredictor.services.task_runner import AuthTaskRunner, Dispatch, _call_inline
from contestpredictor.services.token_cipher import TokenCipher

__all__ = [
    "AuthCoordinator",
    "AuthTaskRunner",
    "OtpChallengeStore",
    "PasswordResetFlow",
    "RemoteIdentityClient",
    "ServiceContainer",
    "SessionStore",
    "TokenCipher",
    "create_services",
]


class ServiceContainer(TypedDict, total=False):
    """Typed container for all authentication services.

    ``document_store`` is ``None`` when the provider database URL is
    not configured; ``token_cipher`` is ``None`` when session token
    encryption is switched off.
    """

    # --- Data access ---
    account_repository: AccountRepository
    otp_repository: OtpChallengeRepository
    document_store: Optional[RemoteDocumentStore]

    # --- Leaf services ---
    remote_identity: RemoteIdentityClient
    token_cipher: Optional[TokenCipher]
    session_store: SessionStore
    otp_store: OtpChallengeStore

    # --- Orchestration ---
    auth_coordinator: AuthCoordinator
    task_runner: AuthTaskRunner


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    dispatch: Dispatch = _call_inline,
    transport: Optional[httpx.BaseTransport] = None,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    This is the single composition root for the service layer.  The
    application entry-point calls this once at startup.

    Args:
        db: Initialised DatabaseManager with the schema applied.
        config: Application configuration.
        dispatch: How task-runner callbacks reach the consumer's thread.
        transport: Optional ``httpx`` transport shared by every remote
            client (tests inject ``httpx.MockTransport``).

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("services", log_file=config.LOG_FILE)

    # ------------------------------------------------------------------
    # 1. Remote endpoints
    # ------------------------------------------------------------------
    remote_identity = RemoteIdentityClient(config=config, logger=logger, transport=transport)

    document_store: Optional[RemoteDocumentStore] = None
    if config.otp_store_configured:
        document_store = RemoteDocumentStore(
            database_url=config.PROVIDER_DATABASE_URL,
            api_key=config.PROVIDER_API_KEY,
            logger=logger,
            timeout=config.HTTP_TIMEOUT_S,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # 2. Repositories (data-access layer)
    # ------------------------------------------------------------------
    account_repo = AccountRepository(db=db, logger=logger)
    otp_repo = OtpChallengeRepository(db=db, logger=logger, documents=document_store)

    # ------------------------------------------------------------------
    # 3. Leaf services
    # ------------------------------------------------------------------
    token_cipher: Optional[TokenCipher] = None
    if config.SESSION_TOKEN_ENCRYPTION:
        token_cipher = TokenCipher(
            logger=logger,
            salt_path=config.SESSION_SALT_PATH,
            iterations=config.SESSION_KDF_ITERATIONS,
        )
    else:
        logger.warning("Session token encryption is disabled; tokens are stored as received.")

    session_store = SessionStore(
        db=db,
        remote=remote_identity,
        logger=logger,
        cipher=token_cipher,
    )
    otp_store = OtpChallengeStore(
        repo=otp_repo,
        logger=logger,
        ttl_minutes=config.OTP_TTL_MINUTES,
    )

    # ------------------------------------------------------------------
    # 4. Orchestration
    # ------------------------------------------------------------------
    auth_coordinator = AuthCoordinator(
        accounts=account_repo,
        sessions=session_store,
        remote=remote_identity,
        otp_store=otp_store,
        logger=logger,
        db=db,
        min_password_length=config.MIN_PASSWORD_LENGTH,
        local_session_days=config.LOCAL_SESSION_DAYS,
    )
    task_runner = AuthTaskRunner(
        logger=logger,
        max_workers=config.WORKER_POOL_SIZE,
        dispatch=dispatch,
    )

    return ServiceContainer(
        account_repository=account_repo,
        otp_repository=otp_repo,
        document_store=document_store,
        remote_identity=remote_identity,
        token_cipher=token_cipher,
        session_store=session_store,
        otp_store=otp_store,
        auth_coordinator=auth_coordinator,
        task_runner=task_runner,
    )

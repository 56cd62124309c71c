"""
Repository Layer Package.

Provides data-access abstractions over the local SQLite store and the
provider's remote document database.  Services never touch
``db.sqlite`` directly, except the session store which owns its table
as infrastructure state.

Usage:
    from contestpredictor.repositories import AccountRepository
"""

from contestpredictor.repositories.base_repository import BaseRepository, RepositoryError
from contestpredictor.repositories.account_repository import AccountExistsError, AccountRepository
from contestpredictor.repositories.otp_repository import OtpChallengeRepository
from contestpredictor.repositories.remote_documents import RemoteDocumentStore, RemoteStoreError

__all__ = [
    "BaseRepository",
    "RepositoryError",
    "AccountExistsError",
    "AccountRepository",
    "OtpChallengeRepository",
    "RemoteDocumentStore",
    "RemoteStoreError",
]

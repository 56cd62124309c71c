"""
Remote Document Store.

Minimal client for the provider's JSON key-value database.  Documents
live at ``{database_url}/{path}.json`` and are read, written and deleted
with plain HTTP verbs; the API key travels as the ``auth`` query
parameter.
"""

from __future__ import annotations

from typing import Optional, Union

import httpx
from pydantic import SecretStr

from contestpredictor.logger import StructuredLogger
from contestpredictor.repositories.base_repository import RepositoryError

JsonScalar = Union[str, int, float, bool, None]
Document = dict[str, JsonScalar]


class RemoteStoreError(RepositoryError):
    """Raised when the remote document store rejects or cannot serve a request."""


class RemoteDocumentStore:
    """Blocking document CRUD over ``httpx``.

    Parameters
    ----------
    database_url:
        Base URL of the provider database, without trailing ``/``.
    api_key:
        Provider API key, sent as ``?auth=``.
    logger:
        Structured logger.
    timeout:
        Connect/read timeout in seconds.
    transport:
        Optional ``httpx`` transport; tests inject ``httpx.MockTransport``.
    """

    def __init__(
        self,
        database_url: str,
        api_key: SecretStr,
        logger: StructuredLogger,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._base_url: str = database_url.rstrip("/")
        self._api_key: SecretStr = api_key
        self._logger: StructuredLogger = logger
        self._client: httpx.Client = httpx.Client(timeout=timeout, transport=transport)

    def get(self, path: str) -> Optional[Document]:
        """Return the document at *path*, or ``None`` when it does not exist."""
        response = self._request("GET", path)
        data = response.json()
        if data is None:
            return None
        if not isinstance(data, dict):
            raise RemoteStoreError(f"Unexpected document shape at {path}: {type(data).__name__}")
        return data

    def put(self, path: str, document: Document) -> None:
        """Create or overwrite the document at *path*."""
        self._request("PUT", path, json=document)

    def delete(self, path: str) -> None:
        self._request("DELETE", path)

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[Document] = None,
    ) -> httpx.Response:
        url = f"{self._base_url}/{path}.json"
        try:
            response = self._client.request(
                method,
                url,
                params={"auth": self._api_key.get_secret_value()},
                json=json,
            )
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"{method} {path} failed: {exc}") from exc

        if response.status_code != 200:
            raise RemoteStoreError(
                f"{method} {path} returned HTTP {response.status_code}"
            )
        return response

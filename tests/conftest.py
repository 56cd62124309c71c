"""Shared fixtures: a temporary database, a scripted identity provider and a manual clock."""

import itertools
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest
from pydantic import SecretStr

from contestpredictor.config import AppConfig
from contestpredictor.database import DatabaseManager
from contestpredictor.logger import StructuredLogger
from contestpredictor.repositories.account_repository import AccountRepository
from contestpredictor.repositories.otp_repository import OtpChallengeRepository
from contestpredictor.repositories.remote_documents import RemoteDocumentStore
from contestpredictor.schema import initialize_schema
from contestpredictor.services.auth_coordinator import AuthCoordinator
from contestpredictor.services.otp_store import OtpChallengeStore
from contestpredictor.services.remote_identity import RemoteIdentityClient
from contestpredictor.services.session_store import SessionStore

DATABASE_URL = "https://contest-predictor.test"


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider:
    """In-memory stand-in for the identity REST API and its document store."""

    def __init__(self) -> None:
        self.online = True
        self.accounts: dict[str, dict[str, str]] = {}
        self.documents: dict[str, dict] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.reset_emails: list[str] = []
        self.reset_email_error: str = ""
        self.calls: list[str] = []
        self._ids = itertools.count(1)

    # --- test helpers ---

    def add_account(self, email: str, password: str) -> str:
        uid = f"uid-{next(self._ids)}"
        self.accounts[email] = {"password": password, "uid": uid}
        return uid

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    # --- request handling ---

    def handle(self, request: httpx.Request) -> httpx.Response:
        if not self.online:
            raise httpx.ConnectError("provider unreachable", request=request)

        if request.url.host == "contest-predictor.test":
            return self._document(request)

        url = str(request.url)
        if "securetoken" in url:
            self.calls.append("refresh")
            return self._refresh(parse_qs(request.content.decode()))

        body = json.loads(request.content or b"{}")
        for name, handler in (
            ("signUp", self._sign_up),
            ("signInWithPassword", self._sign_in),
            ("update", self._update),
            ("sendOobCode", self._send_oob),
        ):
            if f"accounts:{name}" in url:
                self.calls.append(name)
                return handler(body)
        return httpx.Response(404)

    def _tokens(self, email: str) -> dict:
        uid = self.accounts[email]["uid"]
        n = next(self._ids)
        refresh = f"rt-{uid}-{n}"
        self.refresh_tokens[refresh] = uid
        return {
            "localId": uid,
            "email": email,
            "idToken": f"id-{uid}-{n}",
            "refreshToken": refresh,
            "expiresIn": "3600",
        }

    @staticmethod
    def _error(code: str) -> httpx.Response:
        return httpx.Response(400, json={"error": {"code": 400, "message": code}})

    def _sign_up(self, body: dict) -> httpx.Response:
        email = body["email"]
        if email in self.accounts:
            return self._error("EMAIL_EXISTS")
        if len(body["password"]) < 6:
            return self._error("WEAK_PASSWORD : Password should be at least 6 characters")
        self.add_account(email, body["password"])
        return httpx.Response(200, json=self._tokens(email))

    def _sign_in(self, body: dict) -> httpx.Response:
        email = body["email"]
        if "@" not in email:
            return self._error("INVALID_EMAIL")
        account = self.accounts.get(email)
        if account is None:
            return self._error("EMAIL_NOT_FOUND")
        if account["password"] != body["password"]:
            return self._error("INVALID_PASSWORD")
        return httpx.Response(200, json=self._tokens(email))

    def _update(self, body: dict) -> httpx.Response:
        uid = body["idToken"].split("-")[1:3]
        for email, account in self.accounts.items():
            if account["uid"] == "-".join(uid):
                account["password"] = body["password"]
                return httpx.Response(200, json=self._tokens(email))
        return self._error("INVALID_ID_TOKEN")

    def _send_oob(self, body: dict) -> httpx.Response:
        if self.reset_email_error:
            return httpx.Response(400, json={"error": {"message": self.reset_email_error}})
        self.reset_emails.append(body["email"])
        return httpx.Response(200, json={"email": body["email"]})

    def _refresh(self, form: dict) -> httpx.Response:
        token = form.get("refresh_token", [""])[0]
        uid = self.refresh_tokens.pop(token, None)
        if uid is None:
            return httpx.Response(400, json={"error": {"message": "INVALID_REFRESH_TOKEN"}})
        n = next(self._ids)
        refresh = f"rt-{uid}-{n}"
        self.refresh_tokens[refresh] = uid
        return httpx.Response(
            200,
            json={
                "id_token": f"id-{uid}-{n}",
                "refresh_token": refresh,
                "expires_in": "3600",
                "user_id": uid,
            },
        )

    def _document(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removesuffix(".json").lstrip("/")
        if request.method == "GET":
            return httpx.Response(200, content=json.dumps(self.documents.get(path)).encode())
        if request.method == "PUT":
            self.documents[path] = json.loads(request.content)
            return httpx.Response(200, content=request.content)
        if request.method == "DELETE":
            self.documents.pop(path, None)
            return httpx.Response(200, content=b"null")
        return httpx.Response(405)


def make_config(**overrides) -> AppConfig:
    settings = {
        "PROVIDER_ENABLED": True,
        "PROVIDER_API_KEY": "test-api-key",
        "PROVIDER_DATABASE_URL": "",
        "SESSION_TOKEN_ENCRYPTION": False,
        "LOG_FILE": "",
    }
    settings.update(overrides)
    return AppConfig(_env_file=None, **settings)


@pytest.fixture
def logger(request):
    return StructuredLogger(name=f"test.{request.node.nodeid}", log_file="")


@pytest.fixture
def db(tmp_path, logger):
    manager = DatabaseManager(sqlite_path=tmp_path / "test.db", logger=logger)
    initialize_schema(manager.sqlite, logger)
    yield manager
    manager.close()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def remote(config, logger, provider):
    client = RemoteIdentityClient(config=config, logger=logger, transport=provider.transport())
    yield client
    client.close()


@pytest.fixture
def accounts(db, logger):
    return AccountRepository(db=db, logger=logger)


@pytest.fixture
def sessions(db, remote, logger, clock):
    return SessionStore(db=db, remote=remote, logger=logger, clock=clock)


@pytest.fixture
def otp_codes():
    """Codes handed out by the OTP store, in order."""
    return iter(f"{n:06d}" for n in itertools.count(123456))


@pytest.fixture
def otp_store(db, logger, clock, otp_codes):
    repo = OtpChallengeRepository(db=db, logger=logger)
    return OtpChallengeStore(
        repo=repo, logger=logger, ttl_minutes=10, code_factory=lambda: next(otp_codes), clock=clock,
    )


@pytest.fixture
def coordinator(accounts, sessions, remote, otp_store, logger, db, clock):
    return AuthCoordinator(
        accounts=accounts,
        sessions=sessions,
        remote=remote,
        otp_store=otp_store,
        logger=logger,
        db=db,
        clock=clock,
    )


@pytest.fixture
def local_coordinator(accounts, db, logger, otp_store, clock, provider):
    """Coordinator whose remote provider is switched off."""
    offline_remote = RemoteIdentityClient(
        config=make_config(PROVIDER_ENABLED=False),
        logger=logger,
        transport=provider.transport(),
    )
    store = SessionStore(db=db, remote=offline_remote, logger=logger, clock=clock)
    yield AuthCoordinator(
        accounts=accounts,
        sessions=store,
        remote=offline_remote,
        otp_store=otp_store,
        logger=logger,
        db=db,
        clock=clock,
    )
    offline_remote.close()


@pytest.fixture
def document_store(logger, provider):
    store = RemoteDocumentStore(
        database_url=DATABASE_URL,
        api_key=SecretStr("test-api-key"),
        logger=logger,
        transport=provider.transport(),
    )
    yield store
    store.close()

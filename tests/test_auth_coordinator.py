"""AuthCoordinator tests: login fallback, registration, password sync and session resume."""

import sqlite3
from datetime import timedelta

from contestpredictor.models.account import LocalAccount
from contestpredictor.models.enums import AuthErrorKind, ResetState

EMAIL = "alice@example.com"


def _audit_events(db) -> list[tuple[str, str]]:
    rows = db.sqlite.execute("SELECT event, backend FROM audit_log ORDER BY id").fetchall()
    return [(row["event"], row["backend"]) for row in rows]


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------

def test_remote_login_creates_local_mirror(coordinator, provider, accounts, db, clock):
    uid = provider.add_account(EMAIL, "secret99")

    outcome = coordinator.login(EMAIL, "secret99", remember_me=True)

    assert outcome.success
    assert outcome.account.username == "alice"
    assert outcome.account.password == ""
    mirror = accounts.get_by_username("alice")
    assert mirror.remote_uid == uid
    assert mirror.email == EMAIL
    assert mirror.password == "secret99"
    assert outcome.session.refresh_token
    assert outcome.session.token_expiry == clock() + timedelta(seconds=3600)
    assert _audit_events(db) == [("LOGIN", "REMOTE")]


def test_remote_login_backfills_existing_account(coordinator, provider, accounts):
    accounts.create(LocalAccount(username="alice", password="secret99"))
    uid = provider.add_account(EMAIL, "secret99")

    assert coordinator.login(EMAIL, "secret99").success

    account = accounts.get_by_username("alice")
    assert account.remote_uid == uid
    assert account.email == EMAIL


def test_local_fallback_when_provider_is_down(coordinator, provider, accounts, clock, db):
    accounts.create(LocalAccount(username="alice", password="pw123456", email=EMAIL))
    provider.online = False

    outcome = coordinator.login("alice", "pw123456")

    assert outcome.success
    assert outcome.session.refresh_token is None
    assert outcome.session.token_expiry == clock() + timedelta(days=30)
    assert _audit_events(db) == [("LOGIN", "LOCAL")]


def test_local_login_by_email(local_coordinator, accounts):
    accounts.create(LocalAccount(username="alice", password="pw123456", email=EMAIL))
    assert local_coordinator.login(EMAIL.upper(), "pw123456").success


def test_remote_message_wins_when_both_backends_refuse(coordinator, provider, accounts):
    provider.add_account(EMAIL, "secret99")
    accounts.create(LocalAccount(username="alice", password="secret99", email=EMAIL))

    outcome = coordinator.login(EMAIL, "wrong-password")

    assert not outcome.success
    assert outcome.error_kind == AuthErrorKind.BAD_PASSWORD
    assert outcome.message == "Incorrect password. Please try again."


def test_generic_message_without_remote(local_coordinator, accounts):
    accounts.create(LocalAccount(username="alice", password="pw123456"))

    for identifier in ("alice", "nobody"):
        outcome = local_coordinator.login(identifier, "wrong")
        assert not outcome.success
        assert outcome.message == "Invalid username or password"


def test_login_requires_both_fields(coordinator, provider):
    outcome = coordinator.login("  ", "x")
    assert outcome.error_kind == AuthErrorKind.VALIDATION_ERROR
    assert provider.calls == []


def test_login_survives_session_write_failure(local_coordinator, accounts, monkeypatch):
    accounts.create(LocalAccount(username="alice", password="pw123456"))

    def broken_save(_session):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(local_coordinator._sessions, "save", broken_save)

    outcome = local_coordinator.login("alice", "pw123456")
    assert outcome.success
    assert outcome.session is None


def test_unexpected_error_becomes_outcome(local_coordinator, accounts, monkeypatch):
    def boom(_identifier):
        raise RuntimeError("boom")

    monkeypatch.setattr(accounts, "find_by_identifier", boom)

    outcome = local_coordinator.login("alice", "pw123456")
    assert not outcome.success
    assert outcome.error_kind == AuthErrorKind.UNKNOWN
    assert outcome.error_code == "RuntimeError"


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def test_register_remote_first(coordinator, provider, accounts):
    outcome = coordinator.register(EMAIL, "secret99", "Alice Liddell")

    assert outcome.success
    account = accounts.get_by_username("alice")
    assert account.remote_uid == provider.accounts[EMAIL]["uid"]
    assert account.full_name == "Alice Liddell"
    assert outcome.session is not None


def test_register_with_remote_email_taken_creates_nothing_locally(coordinator, provider, accounts):
    provider.add_account(EMAIL, "someone-else")

    outcome = coordinator.register(EMAIL, "secret99", "Alice")

    assert outcome.error_kind == AuthErrorKind.EMAIL_EXISTS
    assert accounts.get_by_username("alice") is None


def test_register_while_offline_creates_nothing_locally(coordinator, provider, accounts):
    provider.online = False

    outcome = coordinator.register(EMAIL, "secret99", "Alice")

    assert outcome.error_kind == AuthErrorKind.NETWORK_ERROR
    assert accounts.get_by_username("alice") is None


def test_register_refuses_taken_local_username(coordinator, provider, accounts):
    accounts.create(LocalAccount(username="alice", password="pw123456"))

    outcome = coordinator.register("alice@other.org", "secret99", "Alice")

    assert outcome.error_kind == AuthErrorKind.VALIDATION_ERROR
    assert "already exists" in outcome.message
    assert provider.calls == []


def test_register_local_only(local_coordinator, accounts, db):
    weak = local_coordinator.register(EMAIL, "abc", "Alice")
    assert weak.error_kind == AuthErrorKind.WEAK_PASSWORD

    outcome = local_coordinator.register(EMAIL, "secret99", "Alice")
    assert outcome.success
    assert accounts.get_by_username("alice").remote_uid is None
    assert ("REGISTER", "LOCAL") in _audit_events(db)


def test_local_registration_then_login_by_username(local_coordinator, provider):
    registered = local_coordinator.register("a@b.com", "abcdef", "Ann Lee")
    assert registered.success
    assert registered.account.username == "a"

    outcome = local_coordinator.login("a", "abcdef")

    assert outcome.success
    assert outcome.account.username == "a"
    assert outcome.message == "Login successful (local account)."
    assert provider.calls == []


def test_register_validates_input(coordinator, provider):
    assert coordinator.register("not-an-email", "secret99", "Alice").error_kind == (
        AuthErrorKind.VALIDATION_ERROR
    )
    assert coordinator.register(EMAIL, "secret99", "A").error_kind == AuthErrorKind.VALIDATION_ERROR
    assert coordinator.register(EMAIL, "secret99", "Al\nice").error_kind == (
        AuthErrorKind.VALIDATION_ERROR
    )
    mismatch = coordinator.register(EMAIL, "secret99", "Alice", confirm_password="secret98")
    assert mismatch.message == "Passwords do not match!"
    assert provider.calls == []


# ---------------------------------------------------------------------------
# Password synchronisation
# ---------------------------------------------------------------------------

def test_sync_with_remote_disabled(local_coordinator, accounts):
    accounts.create(LocalAccount(username="alice", password="old-pass", email=EMAIL))

    outcome = local_coordinator.sync_and_update_password(EMAIL, "new-pass")

    assert outcome.success
    assert not outcome.remote_synced
    assert outcome.message == (
        "Password updated locally. Remote provider not enabled, updated locally only."
    )
    assert accounts.get_by_username("alice").password == "new-pass"


def test_sync_creates_missing_remote_account(coordinator, provider, accounts):
    accounts.create(LocalAccount(username="alice", password="old-pass", email=EMAIL))

    outcome = coordinator.sync_and_update_password(EMAIL, "new-pass")

    assert outcome.remote_synced
    assert outcome.message.endswith("Remote account created and synced!")
    assert provider.accounts[EMAIL]["password"] == "new-pass"
    assert accounts.get_by_username("alice").remote_uid == provider.accounts[EMAIL]["uid"]


def test_sync_updates_existing_remote_password(coordinator, provider, accounts):
    accounts.create(LocalAccount(username="alice", password="old-pass", email=EMAIL))
    uid = provider.add_account(EMAIL, "old-pass")

    outcome = coordinator.sync_and_update_password(EMAIL, "new-pass")

    assert outcome.remote_synced
    assert outcome.message.endswith("Remote password updated!")
    assert provider.accounts[EMAIL]["password"] == "new-pass"
    assert accounts.get_by_username("alice").remote_uid == uid


def test_sync_linked_account_uses_given_old_password(coordinator, provider, accounts):
    uid = provider.add_account(EMAIL, "remote-old")
    accounts.create(
        LocalAccount(username="alice", password="local-old", email=EMAIL, remote_uid=uid)
    )

    outcome = coordinator.sync_and_update_password(EMAIL, "new-pass", old_password="remote-old")

    assert outcome.remote_synced
    assert provider.accounts[EMAIL]["password"] == "new-pass"


def test_sync_falls_back_to_reset_email(coordinator, provider, accounts):
    uid = provider.add_account(EMAIL, "remote-old")
    accounts.create(
        LocalAccount(username="alice", password="local-old", email=EMAIL, remote_uid=uid)
    )

    outcome = coordinator.sync_and_update_password(EMAIL, "new-pass")

    assert outcome.success
    assert not outcome.remote_synced
    assert "Password reset email sent" in outcome.message
    assert provider.reset_emails == [EMAIL]
    assert accounts.get_by_username("alice").password == "new-pass"


def test_sync_reports_failed_reset_email(coordinator, provider, accounts):
    uid = provider.add_account(EMAIL, "remote-old")
    accounts.create(
        LocalAccount(username="alice", password="local-old", email=EMAIL, remote_uid=uid)
    )
    provider.reset_email_error = "EMAIL_NOT_FOUND"

    outcome = coordinator.sync_and_update_password(EMAIL, "new-pass")

    assert outcome.success
    assert not outcome.remote_synced
    assert "Password reset email failed: No account found" in outcome.message
    assert "email sent" not in outcome.message
    assert accounts.get_by_username("alice").password == "new-pass"


def test_sync_rolls_back_local_change_when_link_fails(coordinator, provider, accounts, monkeypatch):
    accounts.create(LocalAccount(username="alice", password="old-pass", email=EMAIL))

    def broken_link(*_args, **_kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(accounts, "link_remote_identity", broken_link)

    outcome = coordinator.sync_and_update_password(EMAIL, "new-pass")

    assert not outcome.success
    assert outcome.error_kind == AuthErrorKind.UNKNOWN
    stored = accounts.get_by_username("alice")
    assert stored.password == "old-pass"
    assert stored.remote_uid is None


def test_sync_recreates_deleted_remote_account(coordinator, provider, accounts):
    accounts.create(
        LocalAccount(username="alice", password="old-pass", email=EMAIL, remote_uid="uid-gone")
    )

    outcome = coordinator.sync_and_update_password(EMAIL, "new-pass")

    assert outcome.remote_synced
    assert outcome.message.endswith("Remote account recreated!")
    assert accounts.get_by_username("alice").remote_uid == provider.accounts[EMAIL]["uid"]


def test_sync_with_provider_down_still_updates_locally(coordinator, provider, accounts):
    accounts.create(LocalAccount(username="alice", password="old-pass", email=EMAIL))
    provider.online = False

    outcome = coordinator.sync_and_update_password(EMAIL, "new-pass")

    assert outcome.success
    assert not outcome.remote_synced
    assert "Remote sync failed: Network error" in outcome.message
    assert accounts.get_by_username("alice").password == "new-pass"


def test_sync_unknown_account(coordinator, provider):
    outcome = coordinator.sync_and_update_password("ghost@example.com", "new-pass")

    assert not outcome.success
    assert outcome.message == "User not found with email: ghost@example.com"
    assert provider.calls == []


# ---------------------------------------------------------------------------
# OTP-gated reset flow
# ---------------------------------------------------------------------------

def test_reset_flow_happy_path(local_coordinator, accounts, otp_store):
    accounts.create(LocalAccount(username="alice", password="old-pass", email=EMAIL))
    flow = local_coordinator.begin_password_reset()
    assert flow.state == ResetState.NOT_STARTED

    requested = flow.request_otp(EMAIL)
    assert requested.success
    assert requested.otp == "123456"
    assert flow.state == ResetState.OTP_ISSUED

    wrong = flow.verify_otp("654321")
    assert wrong.message == "Invalid OTP! Please check and try again."
    assert flow.state == ResetState.OTP_ISSUED

    assert flow.verify_otp(" 123456 ").success
    assert flow.state == ResetState.OTP_VERIFIED

    completed = flow.complete("new-pass", confirm_password="new-pass")
    assert completed.success
    assert flow.state == ResetState.COMPLETED
    assert accounts.get_by_username("alice").password == "new-pass"
    assert otp_store.load(EMAIL) is None


def test_reset_flow_step_guards(local_coordinator):
    flow = local_coordinator.begin_password_reset()

    assert flow.request_otp("not-an-email").message == "Please enter a valid email address"
    assert not flow.verify_otp("123456").success
    assert not flow.complete("new-pass").success
    assert flow.state == ResetState.NOT_STARTED


def test_reset_flow_password_checks(local_coordinator, accounts):
    accounts.create(LocalAccount(username="alice", password="old-pass", email=EMAIL))
    flow = local_coordinator.begin_password_reset()
    flow.request_otp(EMAIL)
    flow.verify_otp("123456")

    assert flow.complete("abc", "abc").message == "Password must be at least 6 characters."
    assert flow.complete("new-pass", "new-pasS").message == "Passwords do not match!"
    assert flow.state == ResetState.OTP_VERIFIED
    assert accounts.get_by_username("alice").password == "old-pass"


def test_reset_for_unknown_account_keeps_code(local_coordinator, otp_store):
    flow = local_coordinator.begin_password_reset()
    flow.request_otp("ghost@example.com")
    flow.verify_otp("123456")

    outcome = flow.complete("new-pass", "new-pass")

    assert not outcome.success
    assert flow.state == ResetState.OTP_VERIFIED
    assert otp_store.load("ghost@example.com") is not None


def test_expired_code_cannot_be_verified(local_coordinator, clock):
    flow = local_coordinator.begin_password_reset()
    flow.request_otp(EMAIL)
    clock.advance(minutes=11)

    assert not flow.verify_otp("123456").success
    assert flow.state == ResetState.OTP_ISSUED


# ---------------------------------------------------------------------------
# Session resume and logout
# ---------------------------------------------------------------------------

def test_resume_after_remote_login(coordinator, provider):
    provider.add_account(EMAIL, "secret99")
    coordinator.login(EMAIL, "secret99", remember_me=True)

    resumed = coordinator.resume_session()

    assert resumed.success
    assert resumed.account.username == "alice"
    assert resumed.session.username == "alice"


def test_no_resume_without_remember_me(local_coordinator, accounts):
    accounts.create(LocalAccount(username="alice", password="pw123456"))
    local_coordinator.login("alice", "pw123456", remember_me=False)

    assert not local_coordinator.resume_session().success


def test_resume_after_expired_refresh_fails(coordinator, provider, sessions, clock):
    provider.add_account(EMAIL, "secret99")
    coordinator.login(EMAIL, "secret99")
    clock.advance(hours=2)
    provider.refresh_tokens.clear()

    outcome = coordinator.resume_session()

    assert not outcome.success
    assert sessions.count() == 0


def test_resume_refreshes_expired_tokens(coordinator, provider, clock):
    provider.add_account(EMAIL, "secret99")
    first = coordinator.login(EMAIL, "secret99")
    clock.advance(hours=2)

    resumed = coordinator.resume_session()

    assert resumed.success
    assert resumed.session.id_token != first.session.id_token
    assert provider.calls[-1] == "refresh"


def test_logout_forgets_session(coordinator, provider, db):
    provider.add_account(EMAIL, "secret99")
    coordinator.login(EMAIL, "secret99")

    assert coordinator.logout("alice").success
    assert not coordinator.resume_session().success
    assert ("LOGOUT", "LOCAL") in _audit_events(db)


def test_logout_all(local_coordinator, accounts, sessions):
    accounts.create(LocalAccount(username="alice", password="pw123456"))
    accounts.create(LocalAccount(username="bob", password="pw123456"))
    local_coordinator.login("alice", "pw123456")
    local_coordinator.login("bob", "pw123456")

    assert local_coordinator.logout_all().success
    assert sessions.count() == 0

"""RemoteIdentityClient tests against an in-memory provider."""

import httpx

from contestpredictor.models.enums import AuthErrorKind
from contestpredictor.services.remote_identity import RemoteIdentityClient, classify_provider_error


def _response(status, **kwargs):
    return httpx.Response(status, request=httpx.Request("POST", "https://idp.test"), **kwargs)


def test_known_code_maps_to_taxonomy_without_raw_code():
    result = classify_provider_error(
        response=_response(400, json={"error": {"message": "EMAIL_EXISTS"}})
    )
    assert result.error_kind == AuthErrorKind.EMAIL_EXISTS
    assert result.error_code is None
    assert "already registered" in result.message


def test_code_with_detail_suffix_is_recognised():
    result = classify_provider_error(
        response=_response(
            400, json={"error": {"message": "WEAK_PASSWORD : Password should be at least 6 characters"}}
        )
    )
    assert result.error_kind == AuthErrorKind.WEAK_PASSWORD


def test_unknown_code_keeps_raw_code():
    result = classify_provider_error(
        response=_response(400, json={"error": {"message": "SOMETHING_NEW"}})
    )
    assert result.error_kind == AuthErrorKind.UNKNOWN
    assert result.error_code == "SOMETHING_NEW"
    assert result.message == "Authentication error: SOMETHING_NEW"


def test_unreadable_body_uses_http_status():
    result = classify_provider_error(response=_response(503, content=b"<html>down</html>"))
    assert result.error_kind == AuthErrorKind.UNKNOWN
    assert result.error_code == "HTTP_503"


def test_transport_failure_is_network_error():
    result = classify_provider_error(exc=httpx.ConnectTimeout("timed out"))
    assert result.error_kind == AuthErrorKind.NETWORK_ERROR
    assert result.message.startswith("Network error:")


def test_sign_up_then_sign_in(remote, provider):
    created = remote.sign_up("dana@example.com", "secret99")
    assert created.success
    assert created.remote_uid == provider.accounts["dana@example.com"]["uid"]
    assert created.refresh_token

    signed_in = remote.sign_in("dana@example.com", "secret99")
    assert signed_in.success
    assert signed_in.remote_uid == created.remote_uid
    assert signed_in.expires_in == 3600


def test_sign_in_failures_are_classified(remote, provider):
    provider.add_account("dana@example.com", "secret99")

    assert remote.sign_in("dana@example.com", "wrong").error_kind == AuthErrorKind.BAD_PASSWORD
    assert remote.sign_in("eve@example.com", "x").error_kind == AuthErrorKind.EMAIL_NOT_FOUND


def test_offline_provider_reports_network_error(remote, provider):
    provider.online = False
    result = remote.sign_in("dana@example.com", "secret99")
    assert not result.success
    assert result.error_kind == AuthErrorKind.NETWORK_ERROR


def test_disabled_client_never_touches_network(logger, provider, config_factory):
    client = RemoteIdentityClient(
        config=config_factory(PROVIDER_ENABLED=False), logger=logger, transport=provider.transport(),
    )
    assert not client.is_enabled
    for result in (
        client.sign_in("a@b.co", "x"),
        client.sign_up("a@b.co", "x"),
        client.refresh("rt"),
        client.update_password("id", "longenough"),
        client.send_password_reset_email("a@b.co"),
    ):
        assert result.error_kind == AuthErrorKind.NOT_CONFIGURED
    assert provider.calls == []
    client.close()


def test_placeholder_api_key_counts_as_not_configured(logger, provider, config_factory):
    client = RemoteIdentityClient(
        config=config_factory(PROVIDER_API_KEY="YOUR_API_KEY_HERE"),
        logger=logger,
        transport=provider.transport(),
    )
    assert not client.is_enabled
    client.close()


def test_update_password_rejects_short_password_locally(remote, provider):
    result = remote.update_password("id-token", "abc")
    assert result.error_kind == AuthErrorKind.WEAK_PASSWORD
    assert provider.calls == []


def test_update_password(remote, provider):
    provider.add_account("dana@example.com", "secret99")
    signed_in = remote.sign_in("dana@example.com", "secret99")

    updated = remote.update_password(signed_in.id_token, "brand-new")

    assert updated.success
    assert provider.accounts["dana@example.com"]["password"] == "brand-new"


def test_refresh(remote, provider):
    provider.add_account("dana@example.com", "secret99")
    signed_in = remote.sign_in("dana@example.com", "secret99")

    refreshed = remote.refresh(signed_in.refresh_token)

    assert refreshed.success
    assert refreshed.id_token != signed_in.id_token
    assert refreshed.remote_uid == signed_in.remote_uid
    assert not remote.refresh("rt-unknown").success


def test_send_password_reset_email(remote, provider):
    result = remote.send_password_reset_email("dana@example.com")
    assert result.success
    assert provider.reset_emails == ["dana@example.com"]

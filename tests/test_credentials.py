from datetime import timedelta

import pytest
from google.auth.exceptions import RefreshError

from core.credentials import CredentialRefresher, get_valid_credential, is_auth_error, run_token_refresh
from core.database import CALENDAR_CONNECTIONS
from core.errors import CredentialRefreshError, PermanentAuthError
from models.credential import OAuthCredential, TokenGrant
from tests.conftest import Clock, FakeOAuthProvider, utc

NOW = utc(2024, 6, 1, 12, 0)


async def _connect(store, expires_at, enabled=True):
    await store.insert(CALENDAR_CONNECTIONS, {
        "user_id": "u1",
        "access_token": "old-access",
        "refresh_token": "refresh-1",
        "expires_at": expires_at,
        "enabled": enabled,
    })
    rows = await store.find(CALENDAR_CONNECTIONS, {"user_id": "u1"})
    return OAuthCredential.model_validate(rows[0])


def _refresher(store, provider):
    sleeps = []

    async def sleep(delay):
        sleeps.append(delay)

    refresher = CredentialRefresher(store, provider, clock=Clock(NOW), sleep=sleep)
    return refresher, sleeps


async def test_transient_failures_keep_connection_enabled(store):
    credential = await _connect(store, NOW + timedelta(minutes=1))
    provider = FakeOAuthProvider(errors=[ConnectionError("timeout")] * 3)
    refresher, sleeps = _refresher(store, provider)

    with pytest.raises(CredentialRefreshError):
        await refresher.refresh_if_needed(credential)

    assert provider.calls == 3
    assert sleeps == [1.0, 2.0]
    row = await store.find_one(CALENDAR_CONNECTIONS, {"user_id": "u1"})
    assert row["enabled"] is True


async def test_invalid_grant_disables_without_retry(store):
    credential = await _connect(store, NOW - timedelta(minutes=10))
    provider = FakeOAuthProvider(errors=[RefreshError("invalid_grant: Token has been expired or revoked.")])
    refresher, sleeps = _refresher(store, provider)

    with pytest.raises(PermanentAuthError) as excinfo:
        await refresher.refresh_if_needed(credential)

    assert excinfo.value.action == "reauthorize"
    assert provider.calls == 1
    assert sleeps == []
    row = await store.find_one(CALENDAR_CONNECTIONS, {"user_id": "u1"})
    assert row["enabled"] is False


async def test_recovers_after_one_transient_failure(store):
    credential = await _connect(store, NOW + timedelta(minutes=2))
    grant = TokenGrant(access_token="fresh", refresh_token="refresh-2", expires_at=NOW + timedelta(hours=1))
    provider = FakeOAuthProvider(grant=grant, errors=[ConnectionError("reset")])
    refresher, sleeps = _refresher(store, provider)

    refreshed = await refresher.refresh_if_needed(credential)

    assert refreshed.access_token == "fresh"
    assert sleeps == [1.0]
    row = await store.find_one(CALENDAR_CONNECTIONS, {"user_id": "u1"})
    assert row["access_token"] == "fresh"
    assert row["refresh_token"] == "refresh-2"


async def test_refresh_token_kept_when_not_rotated(store):
    credential = await _connect(store, None)
    refresher, _ = _refresher(store, FakeOAuthProvider(grant=TokenGrant(access_token="fresh")))

    refreshed = await refresher.refresh_if_needed(credential)

    assert refreshed.expires_at == NOW + timedelta(hours=1)
    row = await store.find_one(CALENDAR_CONNECTIONS, {"user_id": "u1"})
    assert row["refresh_token"] == "refresh-1"


async def test_token_outside_buffer_is_returned_as_is(store):
    credential = await _connect(store, NOW + timedelta(minutes=30))
    provider = FakeOAuthProvider()
    refresher, _ = _refresher(store, provider)

    assert await refresher.refresh_if_needed(credential) == credential
    assert provider.calls == 0


async def test_disabled_connection_never_calls_provider(store):
    credential = await _connect(store, NOW - timedelta(hours=1), enabled=False)
    provider = FakeOAuthProvider()
    refresher, _ = _refresher(store, provider)

    with pytest.raises(PermanentAuthError):
        await refresher.refresh_if_needed(credential)
    assert provider.calls == 0


async def test_get_valid_credential_without_connection(store):
    refresher, _ = _refresher(store, FakeOAuthProvider())
    assert await get_valid_credential(store, refresher, "u1") is None


async def test_run_token_refresh_counts_outcomes(store):
    await _connect(store, NOW + timedelta(minutes=1))
    await store.insert(CALENDAR_CONNECTIONS, {
        "user_id": "u2", "refresh_token": "r", "expires_at": NOW + timedelta(hours=2), "enabled": True,
    })
    refresher, _ = _refresher(store, FakeOAuthProvider())

    summary = await run_token_refresh(store, refresher)

    assert summary.connections == 2
    assert summary.refreshed == 1
    assert summary.revoked == 0


def test_auth_error_detection():
    assert is_auth_error(RefreshError("invalid_grant", {"error": "invalid_grant"}))
    assert is_auth_error(Exception("Token has been revoked"))
    assert not is_auth_error(ConnectionError("Connection reset by peer"))

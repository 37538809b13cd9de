from __future__ import annotations

from datetime import timedelta

import pytest

from analytics_backfill.app.errors import AuthError
from analytics_backfill.app.repositories.credential_repository import CredentialRepository
from analytics_backfill.app.repositories.database import Database
from analytics_backfill.app.services.http_client import HttpResponse, HttpTransportError
from analytics_backfill.app.services.token_refresher import TokenRefresher
from tests.fakes import (
    FIXED_NOW,
    FakeClock,
    FakeTransport,
    RecordedCall,
    error_response,
    json_response,
)


def _refresher(
    repository: CredentialRepository,
    transport: FakeTransport,
    clock: FakeClock | None = None,
) -> TokenRefresher:
    return TokenRefresher(
        repository,
        client_id="client-id",
        client_secret="client-secret",
        token_url="https://oauth.test/token",
        timeout_seconds=7,
        transport=transport,
        clock=clock or FakeClock(),
    )


def _unexpected_call(call: RecordedCall) -> HttpResponse:
    raise AssertionError(f"token endpoint must not be called: {call}")


def _save(
    repository: CredentialRepository,
    *,
    expires_in_seconds: int | None,
    refresh_token: str | None = "refresh-1",
) -> None:
    repository.save(
        account_id="acct-1",
        scope_id="UC123",
        access_token="access-old",
        refresh_token=refresh_token,
        expires_at=(
            FIXED_NOW + timedelta(seconds=expires_in_seconds)
            if expires_in_seconds is not None
            else None
        ),
    )


def test_fresh_token_is_returned_without_network_call(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=3600)
    transport = FakeTransport(_unexpected_call)

    token = _refresher(repository, transport).get_valid_token("acct-1")

    assert token.token == "access-old"
    assert token.scope_id == "UC123"
    assert transport.calls == []


def test_expired_token_is_refreshed_once_and_persisted(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=-60)
    before = repository.get("acct-1")
    assert before is not None
    transport = FakeTransport(
        lambda _: json_response(200, {"access_token": "access-new", "expires_in": 3600})
    )

    token = _refresher(repository, transport).get_valid_token("acct-1")

    assert token.token == "access-new"
    assert len(transport.calls) == 1
    call = transport.calls[0]
    assert call.method == "POST"
    assert call.url == "https://oauth.test/token"
    assert call.timeout_seconds == 7
    assert call.form == {
        "client_id": "client-id",
        "client_secret": "client-secret",
        "refresh_token": "refresh-1",
        "grant_type": "refresh_token",
    }

    stored = repository.get("acct-1")
    assert stored is not None
    assert stored.access_token == "access-new"
    assert stored.expires_at == FIXED_NOW + timedelta(seconds=3600)
    assert stored.refresh_token == "refresh-1"
    assert stored.version == before.version + 1


def test_token_inside_refresh_margin_is_refreshed(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=200)
    transport = FakeTransport(
        lambda _: json_response(200, {"access_token": "access-new", "expires_in": 3600})
    )

    token = _refresher(repository, transport).get_valid_token("acct-1")

    assert token.token == "access-new"
    assert len(transport.calls) == 1


def test_unknown_expiry_is_treated_as_expired(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=None)
    transport = FakeTransport(lambda _: json_response(200, {"access_token": "access-new"}))

    token = _refresher(repository, transport).get_valid_token("acct-1")

    assert token.token == "access-new"
    stored = repository.get("acct-1")
    assert stored is not None
    assert stored.expires_at == FIXED_NOW + timedelta(seconds=3600)


def test_refreshed_token_is_reused_until_it_nears_expiry(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=-1)
    clock = FakeClock()
    transport = FakeTransport(
        lambda _: json_response(200, {"access_token": "access-new", "expires_in": 3600})
    )
    refresher = _refresher(repository, transport, clock)

    refresher.get_valid_token("acct-1")
    clock.advance(3000)
    refresher.get_valid_token("acct-1")
    assert len(transport.calls) == 1

    clock.advance(400)
    refresher.get_valid_token("acct-1")
    assert len(transport.calls) == 2


def test_missing_credential_raises_auth_error(database: Database) -> None:
    transport = FakeTransport(_unexpected_call)

    with pytest.raises(AuthError, match="Connect the account"):
        _refresher(CredentialRepository(database), transport).get_valid_token("acct-1")


def test_expired_token_without_refresh_token_raises(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=-60, refresh_token=None)

    with pytest.raises(AuthError, match="no refresh token"):
        _refresher(repository, FakeTransport(_unexpected_call)).get_valid_token("acct-1")


def test_revoked_refresh_token_asks_for_reconnect(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=-60)
    transport = FakeTransport(
        lambda _: error_response(
            400, '{"error": "invalid_grant", "error_description": "Token has been expired or revoked."}'
        )
    )

    with pytest.raises(AuthError, match="Reconnect the account"):
        _refresher(repository, transport).get_valid_token("acct-1")

    stored = repository.get("acct-1")
    assert stored is not None
    assert stored.access_token == "access-old"


def test_other_token_endpoint_errors_include_status(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=-60)
    transport = FakeTransport(lambda _: error_response(503, "upstream unavailable"))

    with pytest.raises(AuthError, match="503"):
        _refresher(repository, transport).get_valid_token("acct-1")


def test_unreachable_token_endpoint_raises_auth_error(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=-60)

    def _fail(_: RecordedCall) -> HttpResponse:
        raise HttpTransportError("connection refused")

    with pytest.raises(AuthError, match="connection refused"):
        _refresher(repository, FakeTransport(_fail)).get_valid_token("acct-1")


def test_response_without_access_token_raises(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=-60)
    transport = FakeTransport(lambda _: json_response(200, {"expires_in": 3600}))

    with pytest.raises(AuthError, match="no access_token"):
        _refresher(repository, transport).get_valid_token("acct-1")


def test_lost_refresh_race_uses_winning_token(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=-60)

    def _concurrent_refresh(_: RecordedCall) -> HttpResponse:
        repository.save(
            account_id="acct-1",
            scope_id="UC123",
            access_token="access-winner",
            refresh_token=None,
            expires_at=FIXED_NOW + timedelta(hours=1),
        )
        return json_response(200, {"access_token": "access-loser", "expires_in": 3600})

    token = _refresher(repository, FakeTransport(_concurrent_refresh)).get_valid_token("acct-1")

    assert token.token == "access-winner"
    stored = repository.get("acct-1")
    assert stored is not None
    assert stored.access_token == "access-winner"


def test_lost_refresh_race_with_stale_winner_raises(database: Database) -> None:
    repository = CredentialRepository(database)
    _save(repository, expires_in_seconds=-60)

    def _concurrent_write(_: RecordedCall) -> HttpResponse:
        repository.save(
            account_id="acct-1",
            scope_id="UC123",
            access_token="access-stale",
            refresh_token=None,
            expires_at=FIXED_NOW - timedelta(minutes=5),
        )
        return json_response(200, {"access_token": "access-loser", "expires_in": 3600})

    with pytest.raises(AuthError, match="changed during token refresh"):
        _refresher(repository, FakeTransport(_concurrent_write)).get_valid_token("acct-1")

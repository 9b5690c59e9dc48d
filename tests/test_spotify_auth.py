"""Tests for the refresh-token grant."""

import base64
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from botm.spotify.auth import SpotifyAuthClient, TokenGrant
from botm.spotify.errors import ErrorKind, InvalidGrantError, SpotifyApiError


def make_auth(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SpotifyAuthClient(
        http,
        accounts_url="https://accounts.test",
        client_id="cid",
        client_secret="secret",
    )


@pytest.mark.asyncio
async def test_refresh_returns_grant_and_sends_client_credentials():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200,
            json={"access_token": "new", "token_type": "Bearer", "expires_in": 3600},
        )

    before = datetime.now(timezone.utc)
    grant = await make_auth(handler).refresh("r1")

    assert grant.access_token == "new"
    assert grant.refresh_token is None
    assert before + timedelta(seconds=3590) < grant.expires_at < before + timedelta(seconds=3700)

    request = seen[0]
    assert str(request.url) == "https://accounts.test/api/token"
    assert parse_qs(request.content.decode()) == {
        "grant_type": ["refresh_token"],
        "refresh_token": ["r1"],
    }
    expected = base64.b64encode(b"cid:secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"


@pytest.mark.asyncio
async def test_refresh_keeps_rotated_refresh_token():
    def handler(request):
        return httpx.Response(
            200, json={"access_token": "new", "expires_in": 60, "refresh_token": "r2"}
        )

    grant = await make_auth(handler).refresh("r1")

    assert grant.refresh_token == "r2"


@pytest.mark.asyncio
async def test_invalid_grant_is_permanent():
    def handler(request):
        return httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Refresh token revoked"}
        )

    with pytest.raises(InvalidGrantError) as excinfo:
        await make_auth(handler).refresh("revoked")

    assert excinfo.value.kind is ErrorKind.PERMANENT
    assert "revoked" in str(excinfo.value)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, kind",
    [
        (500, ErrorKind.TRANSIENT),
        (503, ErrorKind.TRANSIENT),
        (429, ErrorKind.RATE_LIMITED),
        (400, ErrorKind.PERMANENT),
        (401, ErrorKind.PERMANENT),
    ],
)
async def test_refresh_failures_are_classified(status, kind):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status, json={"error": "invalid_client"})

    with pytest.raises(SpotifyApiError) as excinfo:
        await make_auth(handler).refresh("r1")

    assert not isinstance(excinfo.value, InvalidGrantError)
    assert excinfo.value.kind is kind
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_network_failure_is_transient_and_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused")

    with pytest.raises(SpotifyApiError) as excinfo:
        await make_auth(handler).refresh("r1")

    assert excinfo.value.kind is ErrorKind.TRANSIENT
    assert len(calls) == 1


def test_token_grant_requires_access_token():
    with pytest.raises(SpotifyApiError):
        TokenGrant.from_response({"expires_in": 3600})

"""Refresh-token grant against the Spotify accounts service.

Only the refresh half of OAuth lives here; the authorization-code handshake
that first produces a refresh token belongs to the web connect flow.

Refresh is attempted exactly once per call. Failures are classified and
raised; retrying is the orchestrator's job.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from botm.config import settings
from botm.spotify.client import error_message, parse_retry_after
from botm.spotify.errors import ErrorKind, InvalidGrantError, SpotifyApiError


@dataclass(frozen=True)
class TokenGrant:
    """Access token minted by a refresh."""

    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None  # set when Spotify rotates it

    @staticmethod
    def from_response(payload: dict[str, Any], *, now: Optional[datetime] = None) -> "TokenGrant":
        access_token = payload.get("access_token")
        if not access_token:
            raise SpotifyApiError(
                ErrorKind.PERMANENT,
                "token response has no access_token",
                operation="refresh_token",
            )
        now = now or datetime.now(timezone.utc)
        try:
            expires_in = int(payload.get("expires_in", 0))
        except (TypeError, ValueError):
            expires_in = 0
        return TokenGrant(
            access_token=str(access_token),
            expires_at=now + timedelta(seconds=expires_in),
            refresh_token=payload.get("refresh_token") or None,
        )


class SpotifyAuthClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        accounts_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> None:
        self.http = http
        self.token_url = f"{(accounts_url or settings.spotify_accounts_url).rstrip('/')}/api/token"
        self.client_id = client_id if client_id is not None else settings.spotify_client_id
        self.client_secret = (
            client_secret
            if client_secret is not None
            else settings.spotify_client_secret.get_secret_value()
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange ``refresh_token`` for a new access token.

        Raises:
            InvalidGrantError: the refresh token was revoked (permanent)
            SpotifyApiError: TRANSIENT for network/5xx, RATE_LIMITED for 429,
                PERMANENT for any other rejection
        """
        try:
            resp = await self.http.post(
                self.token_url,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                auth=(self.client_id, self.client_secret),
            )
        except httpx.TransportError as exc:
            raise SpotifyApiError(
                ErrorKind.TRANSIENT, f"network error: {exc!r}", operation="refresh_token"
            ) from exc

        status = resp.status_code
        if status == 200:
            try:
                payload = resp.json()
            except ValueError as exc:
                raise SpotifyApiError(
                    ErrorKind.PERMANENT,
                    "token response is not JSON",
                    operation="refresh_token",
                    status_code=status,
                ) from exc
            return TokenGrant.from_response(payload)

        if status == 400 and self._error_code(resp) == "invalid_grant":
            raise InvalidGrantError(error_message(resp))
        if status == 429:
            raise SpotifyApiError(
                ErrorKind.RATE_LIMITED,
                "rate limited",
                operation="refresh_token",
                status_code=status,
                retry_after=parse_retry_after(resp.headers.get("Retry-After")),
            )
        kind = ErrorKind.TRANSIENT if status >= 500 else ErrorKind.PERMANENT
        raise SpotifyApiError(
            kind, error_message(resp), operation="refresh_token", status_code=status
        )

    @staticmethod
    def _error_code(resp: httpx.Response) -> Optional[str]:
        try:
            body = resp.json()
        except ValueError:
            return None
        if isinstance(body, dict) and isinstance(body.get("error"), str):
            return body["error"]
        return None

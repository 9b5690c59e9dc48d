"""HTTP client for the Spotify Web API.

SpotifyClient wraps a process-wide httpx.AsyncClient and exposes the three
operations the monthly run needs. Every call goes through ``_request``, which
applies the retry policy:

- network errors and timeouts, 5xx: exponential backoff with full jitter
- 429: wait for ``Retry-After`` (capped), or backoff when the header is absent
- 401: raised immediately as ``ErrorKind.UNAUTHORIZED`` (the token is stale,
  retrying with it is pointless)
- any other 4xx: raised immediately as ``ErrorKind.PERMANENT``

When the retry budget is spent the last failure is raised as TRANSIENT or
RATE_LIMITED; whether to retry the whole user job is the caller's decision.
"""

import asyncio
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog

from botm.config import settings
from botm.metrics import SPOTIFY_LATENCY, SPOTIFY_REQUESTS, SPOTIFY_RETRIES
from botm.spotify.errors import ErrorKind, SpotifyApiError

log = structlog.get_logger(__name__)

# Spotify accepts at most 100 URIs per playlist-items request
MAX_URIS_PER_REQUEST = 100


def create_http_client(
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Build the pooled AsyncClient shared by the auth and API clients."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout or settings.spotify_timeout),
        limits=httpx.Limits(
            max_connections=settings.worker_count * 2,
            max_keepalive_connections=settings.worker_count,
        ),
        transport=transport,
    )


def backoff_delay(
    attempt: int, base: float, cap: float, rng: Optional[random.Random] = None
) -> float:
    """Full-jitter exponential backoff: uniform(0, min(cap, base * 2**attempt))."""
    rng = rng or random
    return rng.uniform(0, min(cap, base * (2 ** attempt)))


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given either as seconds or as an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def error_message(resp: httpx.Response) -> str:
    """Best-effort extraction of Spotify's ``{"error": {"message": ...}}``."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or resp.reason_phrase)
    if isinstance(error, str):
        return body.get("error_description") or error
    return resp.reason_phrase


class SpotifyClient:
    """Thin, retrying wrapper around the Spotify Web API.

    Holds no per-user state: the bearer token is passed to every call, so one
    instance serves all concurrent user jobs.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        base_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        max_retry_after: Optional[float] = None,
        sleep=asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.http = http
        self.base_url = (base_url or settings.spotify_api_base_url).rstrip("/")
        self.max_retries = (
            settings.spotify_max_retries if max_retries is None else max_retries
        )
        self.backoff_base = (
            settings.spotify_backoff_base if backoff_base is None else backoff_base
        )
        self.backoff_max = settings.spotify_backoff_max if backoff_max is None else backoff_max
        self.max_retry_after = (
            settings.spotify_max_retry_after_seconds
            if max_retry_after is None
            else max_retry_after
        )
        self._sleep = sleep
        self._rng = rng

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        token: str,
        *,
        params: Optional[dict] = None,
        json: Any = None,
    ) -> httpx.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {token}"}
        attempt = 0

        while True:
            started = time.monotonic()
            try:
                resp = await self.http.request(
                    method, url, params=params, json=json, headers=headers
                )
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    raise SpotifyApiError(
                        ErrorKind.TRANSIENT,
                        f"network error after {attempt + 1} attempts: {exc!r}",
                        operation=operation,
                    ) from exc
                reason = "timeout" if isinstance(exc, httpx.TimeoutException) else "network"
                delay = self._backoff(attempt)
            else:
                SPOTIFY_LATENCY.labels(operation).observe(time.monotonic() - started)
                SPOTIFY_REQUESTS.labels(operation, str(resp.status_code)).inc()
                status = resp.status_code

                if status < 400:
                    return resp

                if status == 401:
                    raise SpotifyApiError(
                        ErrorKind.UNAUTHORIZED,
                        error_message(resp),
                        operation=operation,
                        status_code=status,
                    )

                if status == 429:
                    retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                    if attempt >= self.max_retries:
                        raise SpotifyApiError(
                            ErrorKind.RATE_LIMITED,
                            "rate limited",
                            operation=operation,
                            status_code=status,
                            retry_after=retry_after,
                        )
                    reason = "rate_limited"
                    if retry_after is None:
                        delay = self._backoff(attempt)
                    else:
                        delay = min(retry_after, self.max_retry_after)
                elif status >= 500:
                    if attempt >= self.max_retries:
                        raise SpotifyApiError(
                            ErrorKind.TRANSIENT,
                            error_message(resp),
                            operation=operation,
                            status_code=status,
                        )
                    reason = "server_error"
                    delay = self._backoff(attempt)
                else:
                    raise SpotifyApiError(
                        ErrorKind.PERMANENT,
                        error_message(resp),
                        operation=operation,
                        status_code=status,
                    )

            SPOTIFY_RETRIES.labels(operation, reason).inc()
            log.warning(
                "spotify_request_retry",
                operation=operation,
                attempt=attempt + 1,
                reason=reason,
                delay=round(delay, 3),
            )
            await self._sleep(delay)
            attempt += 1

    def _backoff(self, attempt: int) -> float:
        return backoff_delay(attempt, self.backoff_base, self.backoff_max, self._rng)

    @staticmethod
    def _json(resp: httpx.Response, operation: str) -> dict:
        try:
            body = resp.json()
        except ValueError as exc:
            raise SpotifyApiError(
                ErrorKind.PERMANENT,
                "response body is not JSON",
                operation=operation,
                status_code=resp.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise SpotifyApiError(
                ErrorKind.PERMANENT,
                f"expected a JSON object, got {type(body).__name__}",
                operation=operation,
                status_code=resp.status_code,
            )
        return body

    async def fetch_top_tracks(
        self, token: str, *, time_range: str = "short_term", limit: int = 50
    ) -> dict:
        """GET /me/top/tracks. Returns the raw response object (``items`` etc.)."""
        resp = await self._request(
            "fetch_top_tracks",
            "GET",
            "me/top/tracks",
            token,
            params={"time_range": time_range, "limit": min(limit, 50)},
        )
        return self._json(resp, "fetch_top_tracks")

    async def create_playlist(
        self, token: str, user_id: str, name: str, description: str
    ) -> str:
        """POST /users/{user_id}/playlists and return the new playlist id."""
        resp = await self._request(
            "create_playlist",
            "POST",
            f"users/{quote(user_id, safe='')}/playlists",
            token,
            json={"name": name, "description": description},
        )
        body = self._json(resp, "create_playlist")
        playlist_id = body.get("id")
        if not playlist_id:
            raise SpotifyApiError(
                ErrorKind.PERMANENT,
                "create playlist response has no id",
                operation="create_playlist",
                status_code=resp.status_code,
            )
        return str(playlist_id)

    async def replace_tracks(self, token: str, playlist_id: str, uris: list[str]) -> None:
        """Replace the playlist's items with ``uris``.

        The first chunk is a PUT (replace), so replaying the call after a
        partial failure yields the same playlist; further chunks are appended.
        """
        path = f"playlists/{quote(playlist_id, safe='')}/tracks"
        first, rest = uris[:MAX_URIS_PER_REQUEST], uris[MAX_URIS_PER_REQUEST:]
        await self._request("replace_tracks", "PUT", path, token, json={"uris": first})
        for start in range(0, len(rest), MAX_URIS_PER_REQUEST):
            await self._request(
                "replace_tracks",
                "POST",
                path,
                token,
                json={"uris": rest[start:start + MAX_URIS_PER_REQUEST]},
            )

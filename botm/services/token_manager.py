"""Access-token lifecycle for enrolled users.

``TokenManager.get_valid_access_token`` returns a token that is good for at
least ``token_expiry_margin_seconds`` more, refreshing it first when needed.

Design notes:
- Refreshes for one user are serialised twice over: an in-process keyed
  asyncio lock (so concurrent jobs never issue two refresh calls), and a
  ``SELECT ... FOR UPDATE`` on the user row held for the duration of the
  refresh (so the new token is written in the same transaction as the read
  that decided to refresh).
- Other users never contend: both locks are per user.
- ``invalid_grant`` deactivates the user and raises ``TokenRevokedError``.
  Every other refresh failure propagates as the ``SpotifyApiError`` it is,
  without an internal retry.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botm.config import settings
from botm.metrics import TOKEN_REFRESHES
from botm.services import token_store
from botm.spotify.auth import SpotifyAuthClient
from botm.spotify.errors import InvalidGrantError, SpotifyApiError

log = structlog.get_logger(__name__)


class TokenRevokedError(Exception):
    """The user's refresh token was revoked; the user has been deactivated."""

    def __init__(self, spotify_id: str, reason: str = "refresh token revoked"):
        super().__init__(f"{spotify_id}: {reason}")
        self.spotify_id = spotify_id


class UserDataError(Exception):
    """The stored user record cannot be used (missing, no refresh token)."""


class KeyedLock:
    """One asyncio.Lock per key, discarded once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: defaultdict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class TokenManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        auth_client: SpotifyAuthClient,
        *,
        margin_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.session_factory = session_factory
        self.auth = auth_client
        self.margin = timedelta(
            seconds=settings.token_expiry_margin_seconds
            if margin_seconds is None
            else margin_seconds
        )
        self._clock = clock
        self._locks = KeyedLock()

    def is_fresh(self, expires_at: datetime) -> bool:
        return self._clock() < token_store.as_utc(expires_at) - self.margin

    async def get_valid_access_token(
        self,
        spotify_id: str,
        *,
        force_refresh: bool = False,
        stale_token: Optional[str] = None,
    ) -> str:
        """Return a usable access token for ``spotify_id``.

        Args:
            force_refresh: refresh even if the stored token looks valid (the
                API rejected it with 401).
            stale_token: the token the API rejected. If the stored token
                already differs, another job refreshed it and it is returned
                without a second refresh call.

        Raises:
            TokenRevokedError: invalid_grant; the user is now inactive
            UserDataError: no such user, or no refresh token stored
            SpotifyApiError: any other refresh failure (not retried here)
        """
        async with self._locks.hold(spotify_id):
            revoked: Optional[InvalidGrantError] = None

            async with self.session_factory() as session:
                async with session.begin():
                    user = await token_store.get_user(session, spotify_id, for_update=True)
                    if user is None:
                        raise UserDataError(f"unknown user {spotify_id}")
                    if not user.refresh_token:
                        raise UserDataError(f"user {spotify_id} has no refresh token")
                    if not user.active:
                        raise TokenRevokedError(spotify_id, "user is inactive")

                    if not self._needs_refresh(user, force_refresh, stale_token):
                        return user.access_token

                    log.debug("access_token_refresh", spotify_id=spotify_id, forced=force_refresh)
                    try:
                        grant = await self.auth.refresh(user.refresh_token)
                    except InvalidGrantError as exc:
                        await token_store.deactivate(session, spotify_id)
                        revoked = exc
                    except SpotifyApiError:
                        TOKEN_REFRESHES.labels("error").inc()
                        raise
                    else:
                        saved = await token_store.save_access_token(
                            session,
                            spotify_id,
                            access_token=grant.access_token,
                            expires_at=grant.expires_at,
                            previous_access_token=user.access_token,
                            refresh_token=grant.refresh_token,
                        )
                        if not saved:
                            log.warning("access_token_row_changed", spotify_id=spotify_id)
                        TOKEN_REFRESHES.labels("success").inc()
                        log.info(
                            "access_token_refreshed",
                            spotify_id=spotify_id,
                            expires_at=grant.expires_at.isoformat(),
                            rotated_refresh_token=grant.refresh_token is not None,
                        )
                        return grant.access_token

        TOKEN_REFRESHES.labels("revoked").inc()
        log.warning("refresh_token_revoked", spotify_id=spotify_id, error=str(revoked))
        raise TokenRevokedError(spotify_id) from revoked

    def _needs_refresh(self, user, force_refresh: bool, stale_token: Optional[str]) -> bool:
        fresh = bool(user.access_token) and self.is_fresh(user.expiry_timestamp)
        if not force_refresh:
            return not fresh
        if stale_token is not None and user.access_token != stale_token and fresh:
            return False
        return True

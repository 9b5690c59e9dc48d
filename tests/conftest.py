"""Shared fixtures: a throwaway SQLite database and fake Spotify clients."""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from botm.models import Base, BotmRun, User, UserBotmRun
from botm.spotify.auth import TokenGrant


def top_tracks_payload(ids):
    """A /me/top/tracks response with one item per id, in the given order."""
    return {
        "items": [
            {"id": track_id, "uri": f"spotify:track:{track_id}", "name": f"Song {track_id}"}
            for track_id in ids
        ],
        "total": len(ids),
    }


class FakeAuthClient:
    """Stands in for SpotifyAuthClient; hands out access-1, access-2, ..."""

    def __init__(self):
        self.calls = []
        self.script = []
        self.gates = {}

    def then(self, *results):
        """Queue TokenGrants or exceptions for the next refresh calls."""
        self.script.extend(results)

    async def refresh(self, refresh_token):
        self.calls.append(refresh_token)
        number = len(self.calls)
        gate = self.gates.get(refresh_token)
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        if self.script:
            result = self.script.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return TokenGrant(
            access_token=f"access-{number}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )


class FakeSpotifyClient:
    """Stands in for SpotifyClient and records every call.

    Failures are scripted per operation, or per (operation, key) where key is
    the token for fetch_top_tracks, the user id for create_playlist and the
    playlist id for replace_tracks.
    """

    def __init__(self, payload=None):
        self.payload = payload if payload is not None else top_tracks_payload(["a", "b", "c"])
        self.payload_by_token = {}
        self.script = defaultdict(list)
        self.calls = []
        self.created = []
        self.playlists = {}
        self.delay = 0
        self.in_flight = 0
        self.max_in_flight = 0

    def fail(self, operation, *errors, key=None):
        self.script[(operation, key) if key is not None else operation].extend(errors)

    async def _enter(self, operation, token, key):
        self.calls.append((operation, token, key))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        queue = self.script.get((operation, key)) or self.script.get(operation)
        if queue:
            raise queue.pop(0)

    def count(self, operation):
        return sum(1 for call in self.calls if call[0] == operation)

    async def fetch_top_tracks(self, token, *, time_range="short_term", limit=50):
        await self._enter("fetch_top_tracks", token, token)
        return self.payload_by_token.get(token, self.payload)

    async def create_playlist(self, token, user_id, name, description):
        await self._enter("create_playlist", token, user_id)
        playlist_id = f"pl-{user_id}-{len(self.created) + 1}"
        self.created.append((user_id, name, description))
        self.playlists[playlist_id] = []
        return playlist_id

    async def replace_tracks(self, token, playlist_id, uris):
        await self._enter("replace_tracks", token, playlist_id)
        self.playlists[playlist_id] = list(uris)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'botm.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def auth_client():
    return FakeAuthClient()


@pytest.fixture
def spotify():
    return FakeSpotifyClient()


@pytest.fixture
def add_user(session_factory):
    async def _add(
        spotify_id,
        *,
        active=True,
        refresh_token="refresh",
        access_token="",
        expires_at=None,
    ):
        async with session_factory() as session:
            session.add(
                User(
                    spotify_id=spotify_id,
                    active=active,
                    refresh_token=refresh_token,
                    access_token=access_token,
                    expiry_timestamp=expires_at or datetime(2000, 1, 1, tzinfo=timezone.utc),
                )
            )
            await session.commit()

    return _add


@pytest.fixture
def load_user(session_factory):
    async def _load(spotify_id):
        async with session_factory() as session:
            return await session.get(User, spotify_id)

    return _load


@pytest.fixture
def ledger_rows(session_factory):
    async def _rows():
        async with session_factory() as session:
            result = await session.execute(
                select(BotmRun.date, UserBotmRun.spotify_id)
                .join(UserBotmRun, UserBotmRun.botm_run_id == BotmRun.id)
                .order_by(UserBotmRun.spotify_id)
            )
            return [tuple(row) for row in result.all()]

    return _rows

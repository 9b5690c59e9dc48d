"""Persistence for user credentials.

Plain reads and writes against ``users``; no refresh logic lives here.
Writes are guarded by the previously read access token, so an update based
on a stale read affects no rows instead of clobbering a newer token.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from botm.models.user import User


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (SQLite drops tzinfo) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def get_user(
    session: AsyncSession, spotify_id: str, *, for_update: bool = False
) -> Optional[User]:
    stmt = select(User).where(User.spotify_id == spotify_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def active_user_ids(
    session: AsyncSession, spotify_id: Optional[str] = None
) -> list[str]:
    """Ids of every active user, optionally narrowed to a single user."""
    stmt = select(User.spotify_id).where(User.active.is_(True))
    if spotify_id is not None:
        stmt = stmt.where(User.spotify_id == spotify_id)
    result = await session.execute(stmt.order_by(User.spotify_id))
    return list(result.scalars().all())


async def save_access_token(
    session: AsyncSession,
    spotify_id: str,
    *,
    access_token: str,
    expires_at: datetime,
    previous_access_token: str,
    refresh_token: Optional[str] = None,
) -> bool:
    """Store a refreshed token. Returns False if the row changed since it was read."""
    values = {"access_token": access_token, "expiry_timestamp": expires_at}
    if refresh_token:
        values["refresh_token"] = refresh_token
    result = await session.execute(
        update(User)
        .where(User.spotify_id == spotify_id)
        .where(User.access_token == previous_access_token)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def deactivate(session: AsyncSession, spotify_id: str) -> int:
    """Exclude a user from future runs until they reconnect."""
    result = await session.execute(
        update(User)
        .where(User.spotify_id == spotify_id)
        .values(active=False)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount

"""Run ledger: which runs happened and which users completed each one.

Both writes are insert-if-absent on a unique key (``botm_runs.date`` and the
``user_botm_runs`` primary key), so concurrent or repeated calls can never
produce duplicate rows.
"""

import datetime
import enum
from dataclasses import dataclass

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botm.models.botm_run import BotmRun, UserBotmRun

log = structlog.get_logger(__name__)


class CommitResult(str, enum.Enum):
    COMMITTED = "committed"
    ALREADY_COMMITTED = "already_committed"


@dataclass(frozen=True)
class RunSummary:
    id: int
    date: datetime.date
    committed_users: int


def _insert_for(session: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT DO NOTHING."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


class RunLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def start_run(self, run_date: datetime.date) -> int:
        """Return the id of the run for ``run_date``, creating it if absent."""
        async with self.session_factory() as session:
            async with session.begin():
                insert = _insert_for(session)
                result = await session.execute(
                    insert(BotmRun)
                    .values(date=run_date)
                    .on_conflict_do_nothing(index_elements=[BotmRun.date])
                )
                run_id = (
                    await session.execute(select(BotmRun.id).where(BotmRun.date == run_date))
                ).scalar_one()

        created = result.rowcount == 1
        log.info("run_started" if created else "run_resumed", run_id=run_id, run_date=run_date.isoformat())
        return run_id

    async def is_committed(self, run_id: int, spotify_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(UserBotmRun.spotify_id).where(
                    UserBotmRun.botm_run_id == run_id,
                    UserBotmRun.spotify_id == spotify_id,
                )
            )
            return result.first() is not None

    async def committed_user_ids(self, run_id: int) -> set[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(UserBotmRun.spotify_id).where(UserBotmRun.botm_run_id == run_id)
            )
            return set(result.scalars().all())

    async def commit(self, run_id: int, spotify_id: str) -> CommitResult:
        """Record that ``spotify_id`` completed ``run_id``.

        Must only be called after the playlist has been published. A second
        call for the same pair inserts nothing and reports ALREADY_COMMITTED.
        """
        async with self.session_factory() as session:
            async with session.begin():
                insert = _insert_for(session)
                result = await session.execute(
                    insert(UserBotmRun)
                    .values(spotify_id=spotify_id, botm_run_id=run_id)
                    .on_conflict_do_nothing(
                        index_elements=[UserBotmRun.spotify_id, UserBotmRun.botm_run_id]
                    )
                )

        if result.rowcount == 1:
            return CommitResult.COMMITTED
        log.info("user_run_already_committed", run_id=run_id, spotify_id=spotify_id)
        return CommitResult.ALREADY_COMMITTED

    async def latest_runs(self, limit: int = 12) -> list[RunSummary]:
        """Most recent runs with their committed-user counts, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(BotmRun.id, BotmRun.date, func.count(UserBotmRun.spotify_id))
                .outerjoin(UserBotmRun, UserBotmRun.botm_run_id == BotmRun.id)
                .group_by(BotmRun.id, BotmRun.date)
                .order_by(BotmRun.date.desc())
                .limit(limit)
            )
            return [RunSummary(id=row[0], date=row[1], committed_users=row[2]) for row in result.all()]

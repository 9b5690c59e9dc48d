"""Monthly run orchestrator.

One call to ``RunOrchestrator.run`` drives a run through

    CREATED -> SELECTING -> DISPATCHING -> FINALIZED

and every selected user through

    PENDING -> IN_PROGRESS -> COMMITTED | FAILED

Per-user pipeline (strictly sequential):
    token -> fetch top tracks -> build -> create (or reuse) playlist
    -> replace tracks -> ledger commit

- Users run concurrently, at most ``worker_count`` at a time.
- Retryable failures (network, 5xx, 429, a 401 that survives a forced
  refresh, database hiccups) restart the whole pipeline, up to
  ``max_user_attempts``. The playlist id from an earlier attempt is reused,
  so a user gets at most one new playlist per invocation.
- Permanent failures fail that user only. Nothing a single user does can
  abort the run, with one exception: if the ledger cannot record a commit,
  no further users are dispatched.
- Users already committed for the run are never selected again, which makes
  re-invoking a run for the same date a resume rather than a repeat.
"""

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botm.config import settings
from botm.metrics import RUNS, USERS_COMMITTED, USERS_FAILED
from botm.services import playlist_builder, token_store
from botm.services.playlist_builder import MalformedTracksError
from botm.services.run_ledger import CommitResult, RunLedger
from botm.services.token_manager import TokenManager, TokenRevokedError, UserDataError
from botm.spotify.client import SpotifyClient, backoff_delay
from botm.spotify.errors import ErrorKind, SpotifyApiError

log = structlog.get_logger(__name__)

T = TypeVar("T")

# Upper bound for the pause between two attempts of one user's pipeline
_MAX_USER_BACKOFF = 120.0


class RunState(str, enum.Enum):
    CREATED = "created"
    SELECTING = "selecting"
    DISPATCHING = "dispatching"
    FINALIZED = "finalized"


class JobState(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMMITTED = "committed"
    FAILED = "failed"


class RunStartError(Exception):
    """The run could not be created or its users could not be selected."""


class LedgerUnavailableError(Exception):
    """A published playlist could not be committed to the ledger."""


class NoTopTracksError(Exception):
    """Spotify returned no top tracks for the user; nothing to publish."""


@dataclass
class UserJob:
    spotify_id: str
    state: JobState = JobState.PENDING
    attempts: int = 0
    playlist_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class RunOutcome:
    run_id: int
    run_date: date
    state: RunState
    committed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    not_attempted: list[str] = field(default_factory=list)
    already_committed: int = 0
    stopped: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.not_attempted

    def as_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "run_date": self.run_date.isoformat(),
            "state": self.state.value,
            "committed": len(self.committed),
            "failed": self.failed,
            "not_attempted": self.not_attempted,
            "already_committed": self.already_committed,
            "stopped": self.stopped,
        }


def classify_failure(exc: Exception) -> tuple[bool, str]:
    """Map a pipeline exception to (retryable, reason)."""
    match exc:
        case TokenRevokedError():
            return False, "token_revoked"
        case UserDataError():
            return False, "user_data"
        case MalformedTracksError():
            return False, "malformed_tracks"
        case NoTopTracksError():
            return False, "no_top_tracks"
        case SpotifyApiError(kind=ErrorKind.PERMANENT):
            return False, "api_permanent"
        case SpotifyApiError(kind=kind):
            return True, kind.value
        case SQLAlchemyError() | OSError():
            return True, "database"
        case _:
            return False, "unexpected"


class RunOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        token_manager: TokenManager,
        client: SpotifyClient,
        ledger: RunLedger,
        *,
        worker_count: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        track_limit: Optional[int] = None,
        time_range: Optional[str] = None,
        sleep=asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.session_factory = session_factory
        self.tokens = token_manager
        self.client = client
        self.ledger = ledger
        self.worker_count = worker_count or settings.worker_count
        self.max_attempts = max_attempts or settings.max_user_attempts
        self.retry_backoff = settings.user_retry_backoff if retry_backoff is None else retry_backoff
        self.track_limit = track_limit or settings.playlist_track_limit
        self.time_range = time_range or settings.top_tracks_time_range
        self._sleep = sleep
        self._clock = clock
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        """Stop dispatching new users; in-flight pipelines run to completion."""
        if not self._stop.is_set():
            log.warning("run_stop_requested")
        self._stop.set()

    async def run(self, run_date: date, *, spotify_id: Optional[str] = None) -> RunOutcome:
        """Execute (or resume) the run for ``run_date``.

        Args:
            run_date: the run's calendar date; one run row exists per date.
            spotify_id: restrict the run to a single user.

        Raises:
            RunStartError: the run row could not be created or users could
                not be selected. Nothing was dispatched.
        """
        self._stop = asyncio.Event()

        # CREATED
        try:
            run_id = await self.ledger.start_run(run_date)
        except (SQLAlchemyError, OSError) as exc:
            RUNS.labels("start_failed").inc()
            log.error("run_start_failed", run_date=run_date.isoformat(), error=str(exc))
            raise RunStartError(f"could not start run for {run_date}: {exc}") from exc
        run_log = log.bind(run_id=run_id, run_date=run_date.isoformat())

        # SELECTING
        try:
            async with self.session_factory() as session:
                eligible = await token_store.active_user_ids(session, spotify_id)
            done = await self.ledger.committed_user_ids(run_id)
        except (SQLAlchemyError, OSError) as exc:
            RUNS.labels("start_failed").inc()
            run_log.error("run_selection_failed", error=str(exc))
            raise RunStartError(f"could not select users for run {run_id}: {exc}") from exc

        jobs = [UserJob(uid) for uid in eligible if uid not in done]
        already = len(eligible) - len(jobs)
        run_log.info("run_users_selected", eligible=len(eligible), already_committed=already, pending=len(jobs))

        # DISPATCHING
        semaphore = asyncio.Semaphore(self.worker_count)
        await asyncio.gather(
            *(self._run_job(run_id, run_date, job, semaphore) for job in jobs)
        )

        # FINALIZED
        outcome = RunOutcome(
            run_id=run_id,
            run_date=run_date,
            state=RunState.FINALIZED,
            committed=[j.spotify_id for j in jobs if j.state is JobState.COMMITTED],
            failed={
                j.spotify_id: j.failure_reason or "unknown"
                for j in jobs
                if j.state is JobState.FAILED
            },
            not_attempted=[j.spotify_id for j in jobs if j.state is JobState.PENDING],
            already_committed=already,
            stopped=self._stop.is_set(),
        )
        RUNS.labels("ok" if outcome.ok else "incomplete").inc()
        finalize_log = run_log.info if outcome.ok else run_log.warning
        finalize_log(
            "run_finalized",
            committed=len(outcome.committed),
            failed=len(outcome.failed),
            not_attempted=len(outcome.not_attempted),
            already_committed=already,
            stopped=outcome.stopped,
        )
        return outcome

    async def _run_job(
        self, run_id: int, run_date: date, job: UserJob, semaphore: asyncio.Semaphore
    ) -> None:
        async with semaphore:
            if self._stop.is_set():
                return
            job.state = JobState.IN_PROGRESS
            job_log = log.bind(run_id=run_id, spotify_id=job.spotify_id)

            while True:
                job.attempts += 1
                try:
                    await self._pipeline(run_id, run_date, job, job_log)
                except LedgerUnavailableError as exc:
                    self._fail(job, "ledger_unavailable", exc, job_log)
                    self.request_stop()
                    return
                except Exception as exc:
                    retryable, reason = classify_failure(exc)
                    if reason == "unexpected":
                        job_log.exception("user_job_unexpected_error")
                    if not retryable or job.attempts >= self.max_attempts or self._stop.is_set():
                        self._fail(job, reason, exc, job_log)
                        return
                    delay = self._retry_delay(job.attempts, exc)
                    job_log.warning(
                        "user_job_retry",
                        attempt=job.attempts,
                        max_attempts=self.max_attempts,
                        reason=reason,
                        error=str(exc),
                        delay=round(delay, 3),
                    )
                    await self._sleep(delay)
                else:
                    job.state = JobState.COMMITTED
                    USERS_COMMITTED.inc()
                    return

    async def _pipeline(self, run_id: int, run_date: date, job: UserJob, job_log) -> None:
        token = await self.tokens.get_valid_access_token(job.spotify_id)

        token, raw = await self._authorized(
            job.spotify_id,
            token,
            lambda tok: self.client.fetch_top_tracks(
                tok, time_range=self.time_range, limit=self.track_limit
            ),
        )
        tracks = playlist_builder.build(raw, self.track_limit)
        if not tracks:
            raise NoTopTracksError(f"no top tracks for {job.spotify_id}")
        job_log.debug("top_tracks_built", tracks=len(tracks))

        if job.playlist_id is None:
            name = playlist_builder.playlist_name(run_date)
            description = playlist_builder.playlist_description(run_date, self._clock().date())
            token, job.playlist_id = await self._authorized(
                job.spotify_id,
                token,
                lambda tok: self.client.create_playlist(tok, job.spotify_id, name, description),
            )
            job_log.info("playlist_created", playlist_id=job.playlist_id, name=name)
        else:
            job_log.info("playlist_reused", playlist_id=job.playlist_id)

        uris = [track.uri for track in tracks]
        await self._authorized(
            job.spotify_id,
            token,
            lambda tok: self.client.replace_tracks(tok, job.playlist_id, uris),
        )

        try:
            result = await self.ledger.commit(run_id, job.spotify_id)
        except (SQLAlchemyError, OSError) as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        job_log.info(
            "user_committed",
            playlist_id=job.playlist_id,
            tracks=len(uris),
            attempts=job.attempts,
            already=result is CommitResult.ALREADY_COMMITTED,
        )

    async def _authorized(
        self, spotify_id: str, token: str, call: Callable[[str], Awaitable[T]]
    ) -> tuple[str, T]:
        """Run ``call`` with ``token``; on 401 force one refresh and retry once."""
        try:
            return token, await call(token)
        except SpotifyApiError as exc:
            if exc.kind is not ErrorKind.UNAUTHORIZED:
                raise
            log.info("access_token_rejected", spotify_id=spotify_id, operation=exc.operation)
        token = await self.tokens.get_valid_access_token(
            spotify_id, force_refresh=True, stale_token=token
        )
        return token, await call(token)

    def _retry_delay(self, attempts: int, exc: Exception) -> float:
        delay = backoff_delay(attempts - 1, self.retry_backoff, _MAX_USER_BACKOFF)
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            delay = max(delay, min(retry_after, _MAX_USER_BACKOFF))
        return delay

    @staticmethod
    def _fail(job: UserJob, reason: str, exc: Exception, job_log) -> None:
        job.state = JobState.FAILED
        job.failure_reason = reason
        USERS_FAILED.labels(reason).inc()
        job_log.error(
            "user_job_failed",
            reason=reason,
            error=str(exc),
            attempts=job.attempts,
            playlist_id=job.playlist_id,
        )

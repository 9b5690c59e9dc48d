"""Wiring for a monthly run outside the web app.

Builds the process-scoped collaborators (one pooled httpx client, the
Spotify clients, token manager, ledger) and runs the orchestrator once.
SIGINT/SIGTERM stop dispatching; in-flight users finish before exit.
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botm.services.orchestrator import RunOrchestrator, RunOutcome
from botm.services.run_ledger import RunLedger
from botm.services.token_manager import TokenManager
from botm.spotify.auth import SpotifyAuthClient
from botm.spotify.client import SpotifyClient, create_http_client

log = structlog.get_logger(__name__)


def build_orchestrator(
    http: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
) -> RunOrchestrator:
    """Assemble an orchestrator around a shared HTTP client and session factory."""
    token_manager = TokenManager(session_factory, SpotifyAuthClient(http))
    return RunOrchestrator(
        session_factory,
        token_manager,
        SpotifyClient(http),
        RunLedger(session_factory),
    )


@asynccontextmanager
async def _stop_on_signals(orchestrator: RunOrchestrator) -> AsyncIterator[None]:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_stop)
        except (NotImplementedError, RuntimeError):
            continue  # not supported on this platform / thread
        installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def run_monthly(
    run_date: date,
    spotify_id: Optional[str] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> RunOutcome:
    if session_factory is None:
        from botm.database import async_session_factory

        session_factory = async_session_factory

    async with create_http_client() as http:
        orchestrator = build_orchestrator(http, session_factory)
        async with _stop_on_signals(orchestrator):
            log.info("monthly_run_invoked", run_date=run_date.isoformat(), spotify_id=spotify_id)
            return await orchestrator.run(run_date, spotify_id=spotify_id)

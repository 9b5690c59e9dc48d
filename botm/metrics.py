"""Prometheus metrics for runs and Spotify traffic."""

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

SPOTIFY_REQUESTS = Counter(
    "botm_spotify_requests_total",
    "Spotify API responses by operation and status code",
    ["operation", "status"],
)
SPOTIFY_RETRIES = Counter(
    "botm_spotify_retries_total",
    "Spotify API calls retried inside the client",
    ["operation", "reason"],
)
SPOTIFY_LATENCY = Histogram(
    "botm_spotify_request_seconds",
    "Spotify API request latency",
    ["operation"],
)
TOKEN_REFRESHES = Counter(
    "botm_token_refreshes_total",
    "Access token refresh attempts by outcome",
    ["outcome"],
)
USERS_COMMITTED = Counter(
    "botm_users_committed_total",
    "Users whose playlist was published and committed to the ledger",
)
USERS_FAILED = Counter(
    "botm_users_failed_total",
    "Users that failed a run, by failure reason",
    ["reason"],
)
RUNS = Counter(
    "botm_runs_total",
    "Orchestrator runs by outcome",
    ["outcome"],
)


async def metrics_endpoint() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

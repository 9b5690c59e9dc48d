import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response

from botm.logging_config import configure_logging
from botm.metrics import metrics_endpoint
from botm.routers import generate
from botm.spotify.client import create_http_client
from botm.worker.monthly_run import build_orchestrator

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure structured logging before anything else
    configure_logging()

    from botm.database import async_session_factory

    # One pooled HTTP client for every Spotify call made by this process
    app.state.http = create_http_client()
    app.state.orchestrator = build_orchestrator(app.state.http, async_session_factory)
    app.state.run_lock = asyncio.Lock()
    log.info("botm_started")
    try:
        yield
    finally:
        app.state.orchestrator.request_stop()
        await app.state.http.aclose()


app = FastAPI(title="BOTM", version="0.1.0", lifespan=lifespan)

app.include_router(generate.router)

# Prometheus metrics endpoint
app.get("/metrics")(metrics_endpoint)


@app.get("/health")
async def health_check(response: Response):
    """Health check: database connectivity and run status.

    Returns 200 if the database is reachable, 503 otherwise.
    """
    from botm.database import async_session_factory
    from sqlalchemy import text

    checks = {}
    overall_healthy = True

    try:
        async with async_session_factory() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy"}
    except Exception as e:
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        overall_healthy = False

    try:
        running = app.state.run_lock.locked()
        checks["orchestrator"] = {"status": "healthy", "run_in_progress": running}
    except AttributeError:
        checks["orchestrator"] = {
            "status": "unhealthy",
            "error": "Orchestrator not initialized",
        }
        overall_healthy = False

    response.status_code = 200 if overall_healthy else 503
    return {"status": "healthy" if overall_healthy else "unhealthy", "checks": checks}

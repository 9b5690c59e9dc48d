"""Run trigger endpoints.

GET/POST /generate -- run (or resume) today's BOTM run for all active users,
                      or a single user with ?spotify_id=...
GET /runs          -- recent runs with committed-user counts

Both are protected with HTTP basic auth, since the caller is an external
cron service rather than a logged-in user.
"""

from datetime import datetime, timezone
from secrets import compare_digest
from typing import Annotated, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from botm.config import settings
from botm.services.orchestrator import RunStartError

log = structlog.get_logger(__name__)

router = APIRouter(tags=["generate"])

security = HTTPBasic(realm="publish")


def require_trigger_credentials(
    credentials: Annotated[HTTPBasicCredentials, Depends(security)],
) -> None:
    username = settings.generate_username
    password = settings.generate_password.get_secret_value()
    if not username or not password:
        log.error("trigger_credentials_not_configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Trigger credentials are not configured",
        )

    username_ok = compare_digest(credentials.username.encode(), username.encode())
    password_ok = compare_digest(credentials.password.encode(), password.encode())
    if not (username_ok and password_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": 'Basic realm="publish"'},
        )


TriggerAuth = Annotated[None, Depends(require_trigger_credentials)]


@router.api_route("/generate", methods=["GET", "POST"])
async def generate(
    request: Request,
    response: Response,
    _auth: TriggerAuth,
    spotify_id: Optional[str] = None,
) -> dict:
    """Run the orchestrator for today's date.

    Returns 200 when every selected user was committed, 500 when any user
    failed or was not attempted, 409 if a run is already in progress and
    503 if the run could not be started at all.
    """
    run_lock = request.app.state.run_lock
    if run_lock.locked():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="A run is already in progress"
        )

    run_date = datetime.now(timezone.utc).date()
    if spotify_id:
        log.info("generate_single_user", spotify_id=spotify_id)

    async with run_lock:
        try:
            outcome = await request.app.state.orchestrator.run(run_date, spotify_id=spotify_id)
        except RunStartError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
            ) from exc

    response.status_code = 200 if outcome.ok else 500
    return outcome.as_dict()


@router.get("/runs")
async def list_runs(request: Request, _auth: TriggerAuth, limit: int = 12) -> dict:
    """Most recent runs, newest first."""
    runs = await request.app.state.orchestrator.ledger.latest_runs(min(max(limit, 1), 100))
    return {
        "runs": [
            {"id": run.id, "date": run.date.isoformat(), "committed_users": run.committed_users}
            for run in runs
        ]
    }

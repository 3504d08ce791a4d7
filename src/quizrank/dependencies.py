"""Shared FastAPI dependencies."""

import secrets

from fastapi import Depends, Header, HTTPException, Request

from quizrank.container import ServiceContainer
from quizrank.database import get_session as _get_session
from quizrank.leaderboard.service import LeaderboardService

get_db = _get_session


def get_container(request: Request) -> ServiceContainer:
    """Return the service container created at startup."""
    return request.app.state.container


def get_leaderboards(container: ServiceContainer = Depends(get_container)) -> LeaderboardService:  # noqa: B008
    return container.leaderboards


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> None:
    """Reject admin calls without the configured X-Admin-Token."""
    if not x_admin_token or not secrets.compare_digest(x_admin_token, container.settings.admin_api_token):
        raise HTTPException(status_code=401, detail="Invalid admin token")

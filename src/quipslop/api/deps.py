"""FastAPI dependencies: the engine handles on app.state and the admin gate."""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from quipslop.config import Settings
from quipslop.core.round_runner import RoundRunner
from quipslop.core.runtime import Runtime

logger = logging.getLogger(__name__)

ADMIN_SECRET_HEADER = "x-admin-secret"


async def get_runtime(request: Request) -> Runtime:
    """Get the engine runtime from app state."""
    return request.app.state.runtime


async def get_runner(request: Request) -> RoundRunner:
    return request.app.state.runner


async def require_admin(
    request: Request,
    x_admin_secret: Annotated[str | None, Header()] = None,
) -> None:
    """Reject the request unless it carries the configured admin secret.

    With no secret configured, admin routes are open in development and
    closed everywhere else.
    """
    settings: Settings = request.app.state.settings
    expected = settings.admin_secret
    if not expected:
        if settings.quipslop_env == "development":
            return
        raise HTTPException(status_code=401, detail="Admin secret is not configured")
    if not x_admin_secret or not secrets.compare_digest(x_admin_secret, expected):
        logger.warning("admin_auth_failed path=%s", request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")


RuntimeDep = Annotated[Runtime, Depends(get_runtime)]
RunnerDep = Annotated[RoundRunner, Depends(get_runner)]

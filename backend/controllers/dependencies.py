"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from backend.services.gateway import RepositoryScheduleGateway
from backend.services.scheduler_service import SchedulerSession
from backend.utils.config import get_settings


def get_scheduler_session(request: Request) -> SchedulerSession:
    session = getattr(request.app.state, "scheduler_session", None)
    if session is None:
        repository = getattr(request.app.state, "repository", None)
        if repository is not None:
            session = SchedulerSession(
                gateway=RepositoryScheduleGateway(repository),
                settings=get_settings(),
            )
            request.app.state.scheduler_session = session
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler session is not initialized",
        )
    return session

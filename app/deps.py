"""Shared FastAPI dependencies."""

from fastapi import Request

from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.logging import bind_user
from app.core.security import load_access_token, parse_bearer
from app.services.job_status import JobStatusRegistry
from app.services.notifications import LiveNotificationHub
from app.services.video_jobs import VideoJobService
from app.storage.base import LedgerStore, UserRecord


def get_store(request: Request) -> LedgerStore:
    return request.app.state.store


def get_job_status_registry(request: Request) -> JobStatusRegistry:
    return request.app.state.job_status


def get_hub(request: Request) -> LiveNotificationHub:
    return request.app.state.hub


def get_video_jobs(request: Request) -> VideoJobService:
    return request.app.state.video_jobs


async def get_current_user(request: Request) -> UserRecord:
    """Dependency: verify the bearer token and return the user it names."""
    token = parse_bearer(request.headers.get("Authorization"))
    if not token:
        raise UnauthorizedError("Access token required")
    payload = load_access_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired token")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid token")
    user = await get_store(request).get_user(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    bind_user(user.id)
    return user


async def require_admin(request: Request) -> UserRecord:
    """Dependency: require current user to have role admin."""
    user = await get_current_user(request)
    if user.role != "admin":
        raise ForbiddenError("Admin only")
    return user

from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import AliasChoices, BaseModel, Field, field_validator
from starlette.background import BackgroundTask

from app.deps import get_current_user, get_hub, get_video_jobs
from app.services.notifications import LiveNotificationHub
from app.services.video_jobs import VideoJobService
from app.storage.base import UserRecord

router = APIRouter()


class GenerateRequest(BaseModel):
    product: Any = None
    prompt_config: Any = None
    callback_url: str | None = None


class CompletionCallback(BaseModel):
    """Sent by the workflow engine. Identifiers are checked by the service so errors stay structured."""
    user_id: str | None = None
    job_id: str | None = Field(default=None, validation_alias=AliasChoices("job_id", "video_id"))
    status: str | None = None
    points_to_deduct: int | None = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _user_id_as_str(cls, v):
        return str(v) if isinstance(v, int) else v


class PlatformTarget(BaseModel):
    platform: str = Field(min_length=1, validation_alias=AliasChoices("platform", "plataforma"))
    account_id: str | None = None


class PublishRequest(BaseModel):
    social_platforms: list[PlatformTarget] = Field(min_length=1)
    message: str = ""


@router.get("/check-points")
async def check_points(
    user: UserRecord = Depends(get_current_user),
    jobs: VideoJobService = Depends(get_video_jobs),
):
    """Advisory balance check before starting a generation."""
    return await jobs.check_points(user.id)


@router.post("/generate")
async def generate(
    body: GenerateRequest,
    user: UserRecord = Depends(get_current_user),
    jobs: VideoJobService = Depends(get_video_jobs),
):
    """Start a video generation. Rejected with current/required points when the balance is short."""
    out = await jobs.initiate(user, body.product, body.prompt_config, body.callback_url)
    return {"success": True, "message": "Video generation started", **out}


@router.get("/stream")
async def stream(
    user: UserRecord = Depends(get_current_user),
    hub: LiveNotificationHub = Depends(get_hub),
):
    """Server-Sent Events: `connected` first, then video_completed / video_failed for this user."""
    handle = hub.register(user.id)
    return StreamingResponse(
        hub.stream(handle),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
        # covers responses that end before the generator ever runs
        background=BackgroundTask(hub.unregister, user.id, handle),
    )


@router.post("/confirm")
async def confirm(body: CompletionCallback, jobs: VideoJobService = Depends(get_video_jobs)):
    """Workflow engine completion callback. Unauthenticated: reachable only from the engine's network."""
    result = await jobs.handle_completion(body.user_id, body.job_id, body.status, body.points_to_deduct)
    return result.model_dump()


@router.get("/status/{job_id}")
async def job_status(
    job_id: str,
    user_id: str | None = Query(None),
    jobs: VideoJobService = Depends(get_video_jobs),
):
    """Polling fallback. Unknown job ids report `processing`."""
    return jobs.job_status(job_id, user_id)


@router.post("/{job_id}/publish")
async def publish(
    job_id: str,
    body: PublishRequest,
    user: UserRecord = Depends(get_current_user),
    jobs: VideoJobService = Depends(get_video_jobs),
):
    """Send a generated video to the user's publishing workflow."""
    platforms = [p.model_dump() for p in body.social_platforms]
    return await jobs.publish(user, job_id, platforms, body.message)

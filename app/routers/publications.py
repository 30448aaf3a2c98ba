from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field, field_validator

from app.deps import get_store
from app.services import publications as publications_service
from app.storage.base import LedgerStore

router = APIRouter()


class PublicationCallback(BaseModel):
    user_id: str | None = None
    job_id: str | None = Field(default=None, validation_alias=AliasChoices("job_id", "video_id"))
    platform: str | None = None
    error_message: str | None = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _user_id_as_str(cls, v):
        return str(v) if isinstance(v, int) else v


async def _record(store: LedgerStore, body: PublicationCallback, platform: str | None, succeeded: bool, source: str = "engine") -> dict:
    entry = await publications_service.record_outcome(
        store,
        body.user_id,
        body.job_id,
        platform,
        succeeded,
        error_message=None if succeeded else body.error_message,
        source=source,
    )
    message = "Publication recorded" if succeeded else "Publication error recorded"
    return {"success": True, "message": message, "transaction_id": entry.id}


@router.post("/success")
async def publish_success(body: PublicationCallback, store: LedgerStore = Depends(get_store)):
    """Engine reports a successful cross-post (platform in body)."""
    return await _record(store, body, body.platform, True)


@router.post("/success/{platform}")
async def publish_success_platform(
    platform: Literal["instagram", "tiktok", "facebook"],
    body: PublicationCallback,
    store: LedgerStore = Depends(get_store),
):
    return await _record(store, body, platform, True)


@router.post("/error")
async def publish_error(body: PublicationCallback, store: LedgerStore = Depends(get_store)):
    """Engine reports a failed cross-post; platform optional."""
    return await _record(store, body, body.platform, False)


@router.post("/error/{platform}")
async def publish_error_platform(
    platform: Literal["instagram", "tiktok", "facebook", "external"],
    body: PublicationCallback,
    store: LedgerStore = Depends(get_store),
):
    """`external` is used when the engine's own webhook could not be reached."""
    if platform == "external":
        return await _record(store, body, None, False, source="external")
    return await _record(store, body, platform, False)

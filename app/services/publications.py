"""Cross-posting outcomes as zero-point ledger entries (audit only, balance untouched)."""

from typing import Literal

from app.core.exceptions import ValidationError
from app.core.logging import get_logger
from app.storage.base import LedgerEntry, LedgerStore

log = get_logger(__name__)

PLATFORM_LABELS = {
    "instagram": "Instagram",
    "tiktok": "TikTok",
    "facebook": "Facebook",
}


def clean_job_id(job_id: str) -> str:
    """Engines sometimes report the file name; strip a trailing .mp4."""
    return job_id[: -len(".mp4")] if job_id.endswith(".mp4") else job_id


def _describe(job_id: str, platform: str | None, succeeded: bool, error_message: str | None, source: str) -> str:
    label = PLATFORM_LABELS.get(platform or "", platform)
    if succeeded:
        return f"Video {job_id} published on {label}"
    if source == "external":
        text = f"Video {job_id} could not be dispatched to the workflow engine"
    else:
        text = f"Video {job_id} failed to publish" + (f" on {label}" if label else "")
    if error_message:
        text += f" - Error: {error_message}"
    return text


async def record_outcome(
    store: LedgerStore,
    user_id: str,
    job_id: str,
    platform: str | None,
    succeeded: bool,
    error_message: str | None = None,
    source: Literal["engine", "external"] = "engine",
) -> LedgerEntry:
    """Append a zero-delta penalty entry describing one publication attempt. Store errors propagate."""
    if not user_id or not job_id:
        raise ValidationError("user_id and job_id are required")
    if succeeded and not platform:
        raise ValidationError("platform is required for a successful publication")
    job_id = clean_job_id(job_id)
    platform = platform.lower() if platform else None
    entry = await store.append_entry(
        LedgerEntry(
            user_id=str(user_id),
            kind="penalty",
            description=_describe(job_id, platform, succeeded, error_message, source),
            points_delta=0,
            event="publication",
            job_id=job_id,
            platform=platform,
            succeeded=succeeded,
            error_message=error_message,
        )
    )
    log.info(
        "publication_outcome",
        user_id=str(user_id),
        job_id=job_id,
        platform=platform,
        succeeded=succeeded,
        source=source,
        transaction_id=entry.id,
    )
    return entry

"""Video generation jobs: balance-gated initiation, completion callbacks and status polling.

Job lifecycle: requested (pre-check only) -> processing -> completed | failed.
The workflow engine's completion callback is the only transition trigger; there
is no timeout that fails a job on our side.

Completion handling per job:
  1. resolve the user (NotFoundError otherwise)
  2. success: conditional debit + penalty entry carrying the job id
     failure: no balance change
  3. record the outcome in the JobStatusRegistry
  4. push video_completed / video_failed to the user's live streams
Status is always written before the event is pushed, so a client reacting to
the event can poll and see the same result. A store error aborts at step 2.
"""

import asyncio
import uuid
import weakref
from typing import Any, Literal

from pydantic import BaseModel

from app.core.config import Settings, get_settings
from app.core.exceptions import (
    AppError,
    BadRequestError,
    InsufficientBalanceError,
    UpstreamTimeoutError,
    UpstreamUnreachableError,
    ValidationError,
)
from app.core.logging import get_logger
from app.services import credits as credits_service
from app.services import publications as publications_service
from app.services.job_status import JobStatusRecord, JobStatusRegistry, status_payload
from app.services.notifications import LiveNotificationHub
from app.services.webhooks import WebhookDispatcher
from app.storage.base import LedgerStore, UserRecord

log = get_logger(__name__)

SUCCESS_STATUSES = ("success", "completed")


class DebitResult(BaseModel):
    success: bool = True
    message: str
    job_id: str
    status: Literal["completed", "failed"]
    video_url: str | None = None
    points_deducted: int
    new_balance: int
    replayed: bool = False


class VideoJobService:
    def __init__(
        self,
        store: LedgerStore,
        registry: JobStatusRegistry,
        hub: LiveNotificationHub,
        dispatcher: WebhookDispatcher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.hub = hub
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher or WebhookDispatcher(self.settings.webhook_timeout_seconds)
        # Completions are serialized per user and per job id; always taken user first, then job
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @property
    def cost(self) -> int:
        return self.settings.video_generation_cost

    async def check_points(self, user_id: str) -> dict:
        allowed, balance = await credits_service.precheck(self.store, user_id, self.cost)
        return {"points": balance, "canGenerate": allowed}

    async def initiate(self, user: UserRecord, product: Any, prompt_config: Any, callback_url: str | None) -> dict:
        """Pre-check the balance, mint a job id and hand the job to the user's workflow engine."""
        if not product or not prompt_config or not callback_url:
            raise ValidationError("product, prompt_config and callback_url are required")
        allowed, balance = await credits_service.precheck(self.store, user.id, self.cost)
        if not allowed:
            raise InsufficientBalanceError(balance, self.cost, "Not enough points to generate a video")

        job_id = f"video_{uuid.uuid4().hex}"
        prefs = await self.store.get_preferences(user.id)
        webhook_url = prefs.generation_webhook_url if prefs else None
        if webhook_url:
            payload = {
                "user_id": user.id,
                "job_id": job_id,
                "product": product,
                "prompt_config": prompt_config,
                "callback_url": callback_url,
            }
            try:
                await self.dispatcher.post(webhook_url, payload, purpose="generation")
            except (UpstreamTimeoutError, UpstreamUnreachableError) as e:
                await self._relay_dispatch_failure(user.id, job_id, e)
                raise
        log.info("video_job_initiated", user_id=user.id, job_id=job_id, dispatched=bool(webhook_url))
        return {"job_id": job_id, "callback_url": callback_url, "dispatched": bool(webhook_url)}

    async def _relay_dispatch_failure(self, user_id: str, job_id: str, error: AppError) -> None:
        """Best effort: make the ledger and job status reflect a job the engine never accepted."""
        try:
            await publications_service.record_outcome(
                self.store, user_id, job_id, None, False, error_message=error.message, source="external"
            )
            await self.handle_completion(user_id, job_id, "failed")
        except Exception:
            log.exception("dispatch_failure_relay_failed", user_id=user_id, job_id=job_id)

    async def handle_completion(
        self,
        user_id: Any,
        job_id: str | None,
        status: str | None,
        points_to_deduct: int | None = None,
    ) -> DebitResult:
        if not user_id or not job_id:
            raise ValidationError("user_id and job_id are required")
        points = self.cost if points_to_deduct is None else points_to_deduct
        if points < 0:
            raise ValidationError("points_to_deduct must be zero or positive", details={"points_to_deduct": points})
        user_id = str(user_id)
        await credits_service.require_user(self.store, user_id)
        succeeded = str(status or "").lower() in SUCCESS_STATUSES
        log.info("video_callback", user_id=user_id, job_id=job_id, status=status, points_to_deduct=points)

        async with self._lock(f"user:{user_id}"), self._lock(f"job:{job_id}"):
            if succeeded:
                return await self._complete(user_id, job_id, points)
            return await self._fail(user_id, job_id)

    async def _already_completed(self, user_id: str, job_id: str) -> JobStatusRecord | None:
        """Completed record for this job id, from the registry or (after a restart) the ledger.

        A job id is billed at most once whoever the callback names; a callback naming
        a different user than the one billed is rejected.
        """
        record = self.registry.get(job_id)
        if record is None or record.status != "completed":
            entry = await self.store.find_job_entry(job_id, "video_generation")
            if entry is None:
                return None
            balance = entry.balance_after
            if balance is None:
                balance = await self.store.get_balance(entry.user_id)
            record = JobStatusRecord(
                status="completed",
                user_id=entry.user_id,
                completed_at=entry.created_at,
                points_deducted=abs(entry.points_delta),
                new_balance=balance,
                video_url=credits_service.video_url(job_id),
            )
            self.registry.put(job_id, record)
        if record.user_id != user_id:
            log.warning("video_callback_user_mismatch", user_id=user_id, job_id=job_id, billed_user_id=record.user_id)
            raise ValidationError(
                "Job already completed for another user",
                details={"job_id": job_id, "user_id": user_id},
            )
        return record

    async def _complete(self, user_id: str, job_id: str, points: int) -> DebitResult:
        previous = await self._already_completed(user_id, job_id)
        if previous:
            log.info("video_callback_replayed", user_id=user_id, job_id=job_id)
            return DebitResult(
                message="Job already billed; no points deducted again",
                job_id=job_id,
                status="completed",
                video_url=previous.video_url,
                points_deducted=previous.points_deducted,
                new_balance=previous.new_balance,
                replayed=True,
            )

        try:
            _, new_balance = await credits_service.apply_adjustment(
                self.store,
                user_id,
                -points,
                "penalty",
                f"Video generation {job_id} - {points} points",
                event="video_generation",
                job_id=job_id,
            )
        except InsufficientBalanceError as e:
            # The engine already produced the video; it stays unbilled
            log.warning(
                "video_unbilled",
                user_id=user_id,
                job_id=job_id,
                current_points=e.current_points,
                required_points=e.required_points,
            )
            raise InsufficientBalanceError(e.current_points, e.required_points, "User does not have enough points") from e

        video_url = credits_service.video_url(job_id)
        self.registry.put(
            job_id,
            JobStatusRecord(
                status="completed",
                user_id=user_id,
                points_deducted=points,
                new_balance=new_balance,
                video_url=video_url,
            ),
        )
        self.hub.push(
            user_id,
            {
                "type": "video_completed",
                "job_id": job_id,
                "video_url": video_url,
                "status": "success",
                "points_deducted": points,
                "new_balance": new_balance,
                "message": "Your video has been generated successfully!",
            },
        )
        log.info("points_debited", user_id=user_id, job_id=job_id, points=points, new_balance=new_balance)
        return DebitResult(
            message="Points deducted successfully",
            job_id=job_id,
            status="completed",
            video_url=video_url,
            points_deducted=points,
            new_balance=new_balance,
        )

    async def _fail(self, user_id: str, job_id: str) -> DebitResult:
        previous = await self._already_completed(user_id, job_id)
        if previous:
            log.warning("video_failure_after_completion_ignored", user_id=user_id, job_id=job_id)
            return DebitResult(
                message="Job already completed; failure ignored",
                job_id=job_id,
                status="completed",
                video_url=previous.video_url,
                points_deducted=previous.points_deducted,
                new_balance=previous.new_balance,
                replayed=True,
            )

        balance = await self.store.get_balance(user_id)
        self.registry.put(
            job_id,
            JobStatusRecord(status="failed", user_id=user_id, points_deducted=0, new_balance=balance),
        )
        self.hub.push(
            user_id,
            {
                "type": "video_failed",
                "job_id": job_id,
                "status": "failed",
                "points_deducted": 0,
                "new_balance": balance,
                "message": "Video generation failed. No points were deducted.",
            },
        )
        log.info("video_failed", user_id=user_id, job_id=job_id, balance=balance)
        return DebitResult(
            message="Video failed, no points deducted",
            job_id=job_id,
            status="failed",
            points_deducted=0,
            new_balance=balance,
        )

    def job_status(self, job_id: str, user_id: str | None) -> dict:
        if not user_id:
            raise ValidationError("user_id is required")
        return status_payload(job_id, user_id, self.registry.get(job_id))

    async def publish(self, user: UserRecord, job_id: str, platforms: list[dict], message: str = "") -> dict:
        """Hand a finished video to the user's publishing workflow (one field per target platform)."""
        if not platforms:
            raise ValidationError("Select at least one social platform")
        prefs = await self.store.get_preferences(user.id)
        webhook_url = prefs.publish_webhook_url if prefs else None
        if not webhook_url:
            raise BadRequestError("No publishing webhook is configured. Set it in your preferences.")
        file_name = publications_service.clean_job_id(job_id)
        payload: dict[str, Any] = {"fileName": file_name, "user_id": user.id, "message": message or ""}
        for p in platforms:
            payload[f"{p['platform']}_platform"] = {"name": p["platform"], "account_id": p.get("account_id")}
        try:
            result = await self.dispatcher.post(webhook_url, payload, purpose="publication")
        except (UpstreamTimeoutError, UpstreamUnreachableError) as e:
            try:
                await publications_service.record_outcome(
                    self.store, user.id, file_name, None, False, error_message=e.message, source="external"
                )
            except Exception:
                log.exception("publication_failure_relay_failed", user_id=user.id, job_id=file_name)
            raise
        log.info("publication_dispatched", user_id=user.id, job_id=file_name, platforms=[p["platform"] for p in platforms])
        return {
            "success": True,
            "message": "Publication sent",
            "data": {"fileName": file_name, "social_platforms": platforms, "webhook_response": result},
        }

"""Debit protocol: completion callbacks, status registry, live events."""

import asyncio
import json

import httpx
import pytest

from app.core.exceptions import (
    InsufficientBalanceError,
    NotFoundError,
    StoreError,
    UpstreamUnreachableError,
    ValidationError,
)
from app.services import credits as credits_service
from app.services.job_status import JobStatusRegistry
from app.services.video_jobs import VideoJobService
from app.services.webhooks import WebhookDispatcher
from app.storage.memory import MemoryLedgerStore

pytestmark = pytest.mark.asyncio


def drain(handle) -> list[dict]:
    events = []
    while not handle.queue.empty():
        events.append(handle.queue.get_nowait())
    return events


async def test_success_debits_records_and_notifies(service, store, registry, hub):
    user = await store.add_user("ana", initial_points=50)
    handle = hub.register(user.id)

    result = await service.handle_completion(user.id, "J1", "success", 10)

    assert result.success is True
    assert result.status == "completed"
    assert result.points_deducted == 10
    assert result.new_balance == 40
    assert result.replayed is False
    assert await store.get_balance(user.id) == 40

    entry = await store.find_job_entry("J1", "video_generation", user_id=user.id)
    assert entry.kind == "penalty"
    assert entry.points_delta == -10
    assert entry.description == "Video generation J1 - 10 points"

    record = registry.get("J1")
    assert record.status == "completed"
    assert record.new_balance == 40

    connected, completed = drain(handle)
    assert connected["type"] == "connected"
    assert completed["type"] == "video_completed"
    assert completed["job_id"] == "J1"
    assert completed["points_deducted"] == 10
    assert completed["new_balance"] == 40
    assert completed["video_url"] == record.video_url


async def test_insufficient_balance_leaves_everything_untouched(service, store, registry, hub):
    user = await store.add_user("ana", initial_points=5)
    handle = hub.register(user.id)

    with pytest.raises(InsufficientBalanceError) as exc:
        await service.handle_completion(user.id, "J2", "success", 10)

    assert exc.value.details == {"current_points": 5, "required_points": 10}
    assert await store.get_balance(user.id) == 5
    assert await store.find_job_entry("J2", "video_generation", user_id=user.id) is None
    assert registry.get("J2") is None
    assert [e["type"] for e in drain(handle)] == ["connected"]


async def test_failure_status_never_debits(service, store, registry, hub):
    user = await store.add_user("ana", initial_points=50)
    handle = hub.register(user.id)

    result = await service.handle_completion(user.id, "J3", "failed")

    assert result.status == "failed"
    assert result.points_deducted == 0
    assert result.new_balance == 50
    assert await store.get_balance(user.id) == 50
    assert registry.get("J3").status == "failed"
    events = drain(handle)
    assert events[-1]["type"] == "video_failed"
    assert events[-1]["new_balance"] == 50


async def test_unknown_status_counts_as_failure(service, store):
    user = await store.add_user("ana", initial_points=50)
    result = await service.handle_completion(user.id, "J3b", "cancelled")
    assert result.status == "failed"
    assert await store.get_balance(user.id) == 50


@pytest.mark.parametrize("status", ["success", "completed", "COMPLETED"])
async def test_success_statuses(service, store, status):
    user = await store.add_user("ana", initial_points=10)
    result = await service.handle_completion(user.id, "J", status)
    assert result.status == "completed"


async def test_unknown_user(service):
    with pytest.raises(NotFoundError):
        await service.handle_completion("nobody", "J4", "success", 10)


@pytest.mark.parametrize("user_id,job_id", [(None, "J"), ("u", None), ("", "J"), ("u", "")])
async def test_missing_identifiers(service, user_id, job_id):
    with pytest.raises(ValidationError):
        await service.handle_completion(user_id, job_id, "success", 10)


async def test_negative_points_rejected(service, store):
    user = await store.add_user("ana", initial_points=10)
    with pytest.raises(ValidationError):
        await service.handle_completion(user.id, "J", "success", -5)
    assert await store.get_balance(user.id) == 10


async def test_default_cost_applies(service, store, settings):
    user = await store.add_user("ana", initial_points=100)
    result = await service.handle_completion(user.id, "J", "success")
    assert result.points_deducted == settings.video_generation_cost


async def test_exact_balance_boundary(service, store):
    rich = await store.add_user("rich", initial_points=10)
    poor = await store.add_user("poor", initial_points=9)

    result = await service.handle_completion(rich.id, "Jb1", "success", 10)
    assert result.new_balance == 0

    with pytest.raises(InsufficientBalanceError):
        await service.handle_completion(poor.id, "Jb2", "success", 10)
    assert await store.get_balance(poor.id) == 9


async def test_retried_success_callback_debits_once(service, store, hub):
    """A duplicate success callback for the same job is answered from the first result.

    Without the job id check the second callback would charge the user again.
    """
    user = await store.add_user("ana", initial_points=30)
    handle = hub.register(user.id)

    first = await service.handle_completion(user.id, "J5", "success", 10)
    second = await service.handle_completion(user.id, "J5", "success", 10)

    assert second.replayed is True
    assert second.new_balance == first.new_balance == 20
    assert await store.get_balance(user.id) == 20
    entries, total = await store.list_entries(user.id, event="video_generation")
    assert total == 1
    assert [e["type"] for e in drain(handle)] == ["connected", "video_completed"]


async def test_replay_survives_registry_loss(store, hub, settings):
    user = await store.add_user("ana", initial_points=30)
    first = VideoJobService(store, JobStatusRegistry(), hub, settings=settings)
    await first.handle_completion(user.id, "J6", "success", 10)

    # new process: empty registry, same durable ledger
    restarted = VideoJobService(store, JobStatusRegistry(), hub, settings=settings)
    result = await restarted.handle_completion(user.id, "J6", "success", 10)

    assert result.replayed is True
    assert await store.get_balance(user.id) == 20
    assert restarted.registry.get("J6").status == "completed"


async def test_failure_after_completion_is_ignored(service, store, registry):
    user = await store.add_user("ana", initial_points=30)
    await service.handle_completion(user.id, "J7", "success", 10)
    result = await service.handle_completion(user.id, "J7", "failed")
    assert result.status == "completed"
    assert registry.get("J7").status == "completed"
    assert await store.get_balance(user.id) == 20


async def test_status_matches_callback_result(service, store):
    user = await store.add_user("ana", initial_points=30)
    result = await service.handle_completion(user.id, "J8", "success", 10)
    polled = service.job_status("J8", user.id)
    assert polled["status"] == result.status
    assert polled["new_balance"] == result.new_balance
    assert polled["points_deducted"] == result.points_deducted
    assert polled["video_url"] == result.video_url


async def test_status_unknown_job_is_processing(service):
    assert service.job_status("never-seen", "u1") == {
        "job_id": "never-seen",
        "user_id": "u1",
        "status": "processing",
        "message": "Video is processing",
    }


async def test_status_requires_user_id(service):
    with pytest.raises(ValidationError):
        service.job_status("J", None)


async def test_concurrent_completions_cannot_overdraw(service, store):
    user = await store.add_user("ana", initial_points=15)
    results = await asyncio.gather(
        service.handle_completion(user.id, "Jc1", "success", 10),
        service.handle_completion(user.id, "Jc2", "success", 10),
        return_exceptions=True,
    )
    succeeded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientBalanceError)]
    assert len(succeeded) == 1
    assert len(rejected) == 1
    assert await store.get_balance(user.id) == 5
    report = await credits_service.reconcile(store, user.id)
    assert report["consistent"] is True


async def test_store_failure_aborts_before_status_and_event(hub, settings):
    class FailingStore(MemoryLedgerStore):
        fail_appends = False

        async def append_entry(self, entry):
            if self.fail_appends:
                raise StoreError("write failed")
            return await super().append_entry(entry)

    store = FailingStore()
    registry = JobStatusRegistry()
    service = VideoJobService(store, registry, hub, settings=settings)
    user = await store.add_user("ana", initial_points=15)
    handle = hub.register(user.id)
    store.fail_appends = True

    with pytest.raises(StoreError):
        await service.handle_completion(user.id, "J9", "success", 10)

    assert await store.get_balance(user.id) == 15
    assert registry.get("J9") is None
    assert [e["type"] for e in drain(handle)] == ["connected"]


async def test_check_points(service, store, settings):
    user = await store.add_user("ana", initial_points=settings.video_generation_cost)
    assert await service.check_points(user.id) == {
        "points": settings.video_generation_cost,
        "canGenerate": True,
    }


async def test_initiate_rejects_short_balance(service, store):
    user = await store.add_user("ana", initial_points=3)
    with pytest.raises(InsufficientBalanceError) as exc:
        await service.initiate(user, {"name": "mug"}, {"style": "fun"}, "https://cb.test/confirm")
    assert exc.value.current_points == 3


async def test_initiate_requires_fields(service, store):
    user = await store.add_user("ana", initial_points=30)
    with pytest.raises(ValidationError):
        await service.initiate(user, None, {"style": "fun"}, "https://cb.test/confirm")


async def test_initiate_without_webhook_only_mints_job(service, store):
    user = await store.add_user("ana", initial_points=30)
    out = await service.initiate(user, {"name": "mug"}, {"style": "fun"}, "https://cb.test/confirm")
    assert out["job_id"].startswith("video_")
    assert out["dispatched"] is False
    assert await store.get_balance(user.id) == 30


async def test_initiate_dispatches_to_engine(store, registry, hub, settings):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    service = VideoJobService(
        store, registry, hub,
        dispatcher=WebhookDispatcher(5, transport=httpx.MockTransport(handler)),
        settings=settings,
    )
    user = await store.add_user("ana", initial_points=30)
    await store.set_preferences(user.id, generation_webhook_url="https://engine.test/hook")

    out = await service.initiate(user, {"name": "mug"}, {"style": "fun"}, "https://cb.test/confirm")

    assert out["dispatched"] is True
    assert len(seen) == 1
    assert str(seen[0].url) == "https://engine.test/hook"
    body = json.loads(seen[0].content)
    assert body["job_id"] == out["job_id"]
    assert body["user_id"] == user.id
    assert body["callback_url"] == "https://cb.test/confirm"


async def test_initiate_relays_unreachable_engine(store, registry, hub, settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    service = VideoJobService(
        store, registry, hub,
        dispatcher=WebhookDispatcher(5, transport=httpx.MockTransport(handler)),
        settings=settings,
    )
    user = await store.add_user("ana", initial_points=30)
    await store.set_preferences(user.id, generation_webhook_url="http://localhost:5678/webhook/video")
    handle = hub.register(user.id)

    with pytest.raises(UpstreamUnreachableError) as exc:
        await service.initiate(user, {"name": "mug"}, {"style": "fun"}, "https://cb.test/confirm")

    assert "host.docker.internal" in exc.value.hint
    assert await store.get_balance(user.id) == 30
    outcomes, _ = await store.list_entries(user.id, event="publication")
    assert len(outcomes) == 1
    assert outcomes[0].succeeded is False
    assert outcomes[0].points_delta == 0
    job_id = outcomes[0].job_id
    assert registry.get(job_id).status == "failed"
    assert drain(handle)[-1]["type"] == "video_failed"


async def test_completed_job_is_not_billed_to_another_user(service, store, registry):
    owner = await store.add_user("ana", initial_points=50)
    other = await store.add_user("bea", initial_points=50)
    await service.handle_completion(owner.id, "J10", "success", 10)

    with pytest.raises(ValidationError):
        await service.handle_completion(other.id, "J10", "success", 10)

    assert await store.get_balance(owner.id) == 40
    assert await store.get_balance(other.id) == 50
    assert registry.get("J10").user_id == owner.id


async def test_completed_job_is_not_billed_to_another_user_after_restart(store, hub, settings):
    owner = await store.add_user("ana", initial_points=50)
    other = await store.add_user("bea", initial_points=50)
    await VideoJobService(store, JobStatusRegistry(), hub, settings=settings).handle_completion(
        owner.id, "J11", "success", 10
    )

    restarted = VideoJobService(store, JobStatusRegistry(), hub, settings=settings)
    with pytest.raises(ValidationError):
        await restarted.handle_completion(other.id, "J11", "success", 10)
    with pytest.raises(ValidationError):
        await restarted.handle_completion(other.id, "J11", "failed")

    assert await store.get_balance(other.id) == 50
    assert restarted.registry.get("J11").user_id == owner.id
    entries, total = await store.list_entries(other.id, event="video_generation")
    assert total == 0


async def test_replay_after_restart_reports_original_balance(store, hub, settings):
    user = await store.add_user("ana", initial_points=50)
    first = await VideoJobService(store, JobStatusRegistry(), hub, settings=settings).handle_completion(
        user.id, "J12", "success", 10
    )
    await credits_service.apply_adjustment(store, user.id, -10, "sale", "later purchase")

    restarted = VideoJobService(store, JobStatusRegistry(), hub, settings=settings)
    replay = await restarted.handle_completion(user.id, "J12", "success", 10)

    assert first.new_balance == 40
    assert replay.replayed is True
    assert replay.new_balance == 40
    assert await store.get_balance(user.id) == 30


async def test_relay_crash_does_not_mask_upstream_error(hub, settings):
    class BrokenStore(MemoryLedgerStore):
        broken = False

        async def append_entry(self, entry):
            if self.broken:
                raise RuntimeError("driver bug")
            return await super().append_entry(entry)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store = BrokenStore()
    service = VideoJobService(
        store, JobStatusRegistry(), hub,
        dispatcher=WebhookDispatcher(5, transport=httpx.MockTransport(handler)),
        settings=settings,
    )
    user = await store.add_user("ana", initial_points=30)
    await store.set_preferences(user.id, generation_webhook_url="https://engine.test/hook")
    store.broken = True

    with pytest.raises(UpstreamUnreachableError):
        await service.initiate(user, {"name": "mug"}, {"style": "fun"}, "https://cb.test/confirm")
    assert await store.get_balance(user.id) == 30

"""Points ledger: balance pre-checks, adjustments with an audit entry, history and reconciliation."""

import math
from datetime import datetime

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, InsufficientBalanceError, NotFoundError, StoreError
from app.core.logging import get_logger
from app.core.pagination import paginate
from app.storage.base import KINDS, LedgerEntry, LedgerStore

log = get_logger(__name__)


async def require_user(store: LedgerStore, user_id: str):
    user = await store.get_user(user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


async def get_balance(store: LedgerStore, user_id: str) -> int:
    """Return current balance for user (0 if no record)."""
    return await store.get_balance(user_id)


async def precheck(store: LedgerStore, user_id: str, required_points: int | None = None) -> tuple[bool, int]:
    """Advisory sufficiency check. Nothing is reserved; a later debit can still fail."""
    await require_user(store, user_id)
    if required_points is None:
        required_points = get_settings().video_generation_cost
    balance = await store.get_balance(user_id)
    return balance >= required_points, balance


async def apply_adjustment(
    store: LedgerStore,
    user_id: str,
    points_delta: int,
    kind: str,
    description: str,
    **fields,
) -> tuple[LedgerEntry, int]:
    """
    Move the balance by points_delta and append the matching ledger entry.
    Returns (ledger_entry, balance_after).
    Debits use the store's conditional decrement, so the balance never goes below zero.
    If the entry cannot be written the balance move is reverted and StoreError is raised.
    """
    if kind not in KINDS:
        raise BadRequestError(f"Invalid kind: {kind}")
    await require_user(store, user_id)
    entry = LedgerEntry(
        user_id=user_id,
        kind=kind,
        description=description,
        points_delta=points_delta,
        **fields,
    )

    if points_delta < 0:
        balance_after = await store.debit_if_sufficient(user_id, -points_delta)
        if balance_after is None:
            current = await store.get_balance(user_id)
            raise InsufficientBalanceError(current, -points_delta)
    elif points_delta > 0:
        balance_after = await store.credit(user_id, points_delta)
    else:
        balance_after = await store.get_balance(user_id)

    try:
        entry = await store.append_entry(entry.model_copy(update={"balance_after": balance_after}))
    except StoreError:
        if points_delta:
            await _revert(store, user_id, points_delta)
        raise
    log.info("ledger_entry", user_id=user_id, kind=kind, points_delta=points_delta, balance_after=balance_after)
    return entry, balance_after


async def _revert(store: LedgerStore, user_id: str, points_delta: int) -> None:
    try:
        if points_delta < 0:
            await store.credit(user_id, -points_delta)
        elif await store.debit_if_sufficient(user_id, points_delta) is None:
            # credited points already spent by a concurrent debit
            log.error("ledger_revert_failed", user_id=user_id, points_delta=points_delta, reason="insufficient_balance")
            return
        log.warning("ledger_balance_reverted", user_id=user_id, points_delta=points_delta)
    except StoreError:
        # Reconciliation will report the drift
        log.exception("ledger_revert_failed", user_id=user_id, points_delta=points_delta)


async def reconcile(store: LedgerStore, user_id: str) -> dict:
    """Compare the denormalized balance with the sum of the user's ledger deltas."""
    await require_user(store, user_id)
    balance = await store.get_balance(user_id)
    ledger_sum = await store.sum_deltas(user_id)
    report = {
        "user_id": user_id,
        "balance": balance,
        "ledger_sum": ledger_sum,
        "consistent": balance == ledger_sum,
        "drift": balance - ledger_sum,
    }
    if not report["consistent"]:
        log.warning("ledger_drift", **report)
    return report


async def history(
    store: LedgerStore,
    user_id: str,
    kind: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    if kind and kind not in KINDS:
        raise BadRequestError(f"Invalid kind: {kind}")
    limit, offset = paginate(limit, offset)
    entries, total = await store.list_entries(user_id, kind=kind, since=since, until=until, limit=limit, offset=offset)
    return {
        "entries": [serialize_entry(e) for e in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


async def stats(store: LedgerStore, user_id: str) -> dict:
    return await store.entry_stats(user_id)


def video_url(job_id: str) -> str:
    base = get_settings().video_base_url.rstrip("/")
    return f"{base}/{job_id}.mp4"


async def generated_videos(store: LedgerStore, user_id: str, page: int = 1, per_page: int = 12) -> dict:
    """Billed video generations, newest first."""
    page = max(1, page)
    per_page, _ = paginate(per_page, 0, max_limit=100)
    entries, total = await store.list_entries(
        user_id,
        kind="penalty",
        event="video_generation",
        limit=per_page,
        offset=(page - 1) * per_page,
    )
    videos = [
        {
            "id": e.id,
            "video_id": e.job_id,
            "video_url": video_url(e.job_id),
            "created_at": e.created_at.isoformat(),
            "points_deducted": abs(e.points_delta),
        }
        for e in entries
        if e.job_id
    ]
    return {
        "videos": videos,
        "total": total,
        "totalPages": math.ceil(total / per_page) if total else 0,
        "currentPage": page,
    }


async def publications(store: LedgerStore, user_id: str) -> list[dict]:
    """Successful cross-posts recorded by the publication callbacks."""
    entries, _ = await store.list_entries(user_id, event="publication", limit=0)
    return [
        {
            "id": e.id,
            "video_id": e.job_id,
            "video_url": video_url(e.job_id),
            "platform": e.platform,
            "created_at": e.created_at.isoformat(),
            "description": e.description,
        }
        for e in entries
        if e.succeeded and e.job_id and e.platform
    ]


def serialize_entry(e: LedgerEntry) -> dict:
    return {
        "id": e.id,
        "user_id": e.user_id,
        "kind": e.kind,
        "description": e.description,
        "points_delta": e.points_delta,
        "balance_after": e.balance_after,
        "event": e.event,
        "job_id": e.job_id,
        "platform": e.platform,
        "created_at": e.created_at.isoformat(),
    }

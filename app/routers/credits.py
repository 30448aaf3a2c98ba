from datetime import datetime

from fastapi import APIRouter, Depends, Query

from app.deps import get_current_user, get_store
from app.services import credits as credits_service
from app.storage.base import LedgerStore, UserRecord

router = APIRouter()


@router.get("/balance")
async def points_balance(user: UserRecord = Depends(get_current_user), store: LedgerStore = Depends(get_store)):
    """Return current points balance."""
    balance = await credits_service.get_balance(store, user.id)
    return {"balance": balance}


@router.get("/transactions")
async def points_transactions(
    user: UserRecord = Depends(get_current_user),
    store: LedgerStore = Depends(get_store),
    kind: str | None = Query(None),
    since: datetime | None = Query(None),
    until: datetime | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    return await credits_service.history(store, user.id, kind=kind, since=since, until=until, limit=limit, offset=offset)


@router.get("/stats")
async def points_stats(user: UserRecord = Depends(get_current_user), store: LedgerStore = Depends(get_store)):
    stats = await credits_service.stats(store, user.id)
    return {"stats": stats}


@router.get("/videos")
async def points_videos(
    user: UserRecord = Depends(get_current_user),
    store: LedgerStore = Depends(get_store),
    page: int = Query(1, ge=1),
    per_page: int = Query(12, ge=1, le=100),
):
    """Generated (billed) videos, paginated."""
    return await credits_service.generated_videos(store, user.id, page=page, per_page=per_page)


@router.get("/publications")
async def points_publications(user: UserRecord = Depends(get_current_user), store: LedgerStore = Depends(get_store)):
    return {"publications": await credits_service.publications(store, user.id)}

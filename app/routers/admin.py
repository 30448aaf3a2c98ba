from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.deps import get_store, require_admin
from app.services import credits as credits_service
from app.storage.base import LedgerStore, UserRecord

router = APIRouter()


class AdjustPointsRequest(BaseModel):
    points_delta: int
    kind: Literal["purchase", "sale", "bonus", "penalty", "refund"]
    description: str = Field(min_length=1, max_length=500)


@router.post("/users/{user_id}/points")
async def admin_adjust_points(
    user_id: str,
    body: AdjustPointsRequest,
    admin: UserRecord = Depends(require_admin),
    store: LedgerStore = Depends(get_store),
):
    """Admin: credit or debit a user's points with a ledger entry."""
    entry, balance = await credits_service.apply_adjustment(
        store, user_id, body.points_delta, body.kind, body.description
    )
    return {"entry": credits_service.serialize_entry(entry), "balance": balance}


@router.get("/users/{user_id}/reconcile")
async def admin_reconcile(
    user_id: str,
    admin: UserRecord = Depends(require_admin),
    store: LedgerStore = Depends(get_store),
):
    """Admin: compare stored balance with the sum of ledger deltas."""
    return await credits_service.reconcile(store, user_id)

from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field


class Transaction(Document):
    """Immutable ledger entry. points_delta is the source of truth for balance changes."""
    user_id: PydanticObjectId
    kind: str  # purchase, sale, bonus, penalty, refund
    description: str
    points_delta: int  # positive = credit, negative = debit, 0 = audit record
    balance_after: int | None = None
    event: str = "adjustment"  # adjustment, video_generation, publication
    job_id: str | None = None
    platform: str | None = None
    succeeded: bool | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("job_id", 1), ("event", 1)],
        ]

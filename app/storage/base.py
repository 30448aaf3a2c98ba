from abc import ABC, abstractmethod
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.core.config import get_settings

TransactionKind = Literal["purchase", "sale", "bonus", "penalty", "refund"]
LedgerEvent = Literal["adjustment", "video_generation", "publication"]

KINDS: tuple[str, ...] = ("purchase", "sale", "bonus", "penalty", "refund")


class UserRecord(BaseModel):
    id: str
    username: str
    email: str = ""
    role: str = "user"


class PreferencesRecord(BaseModel):
    user_id: str
    generation_webhook_url: str | None = None
    publish_webhook_url: str | None = None


class LedgerEntry(BaseModel):
    id: str | None = None
    user_id: str
    kind: TransactionKind
    description: str
    points_delta: int
    balance_after: int | None = None
    event: LedgerEvent = "adjustment"
    job_id: str | None = None
    platform: str | None = None
    succeeded: bool | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class LedgerStore(ABC):
    """Durable user balances and the append-only transaction log."""

    @abstractmethod
    async def get_user(self, user_id: str) -> UserRecord | None:
        ...

    @abstractmethod
    async def get_balance(self, user_id: str) -> int:
        """Current balance (0 if the user has no balance record)."""
        ...

    @abstractmethod
    async def debit_if_sufficient(self, user_id: str, amount: int) -> int | None:
        """Decrement by amount only if balance >= amount, in one step.

        Returns the new balance, or None when the balance was insufficient.
        """
        ...

    @abstractmethod
    async def credit(self, user_id: str, amount: int) -> int:
        """Increment (creating the balance record if needed); return new balance."""
        ...

    @abstractmethod
    async def append_entry(self, entry: LedgerEntry) -> LedgerEntry:
        ...

    @abstractmethod
    async def find_job_entry(self, job_id: str, event: LedgerEvent, user_id: str | None = None) -> LedgerEntry | None:
        ...

    @abstractmethod
    async def list_entries(
        self,
        user_id: str,
        kind: str | None = None,
        event: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[LedgerEntry], int]:
        """Entries newest first plus the total matching count."""
        ...

    @abstractmethod
    async def sum_deltas(self, user_id: str) -> int:
        ...

    @abstractmethod
    async def get_preferences(self, user_id: str) -> PreferencesRecord | None:
        ...

    async def entry_stats(self, user_id: str) -> dict:
        entries, _ = await self.list_entries(user_id, limit=0)
        earned = sum(e.points_delta for e in entries if e.points_delta > 0)
        spent = sum(-e.points_delta for e in entries if e.points_delta < 0)
        return {
            "total_transactions": len(entries),
            "total_points_earned": earned,
            "total_points_spent": spent,
            "balance": earned - spent,
        }

    async def close(self) -> None:
        return None


async def get_ledger_store() -> LedgerStore:
    settings = get_settings()
    if settings.ledger_backend == "memory":
        from app.storage.memory import MemoryLedgerStore
        return MemoryLedgerStore()
    from app.storage.mongo import MongoLedgerStore
    return await MongoLedgerStore.connect()

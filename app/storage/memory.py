"""In-process ledger backend for local runs and tests. Nothing survives a restart."""

import threading
import uuid
from datetime import datetime

from app.core.exceptions import NotFoundError
from app.storage.base import LedgerEntry, LedgerEvent, LedgerStore, PreferencesRecord, UserRecord


class MemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.users: dict[str, UserRecord] = {}
        self.balances: dict[str, int] = {}
        self.entries: list[LedgerEntry] = []
        self.preferences: dict[str, PreferencesRecord] = {}

    async def add_user(
        self,
        username: str,
        email: str = "",
        role: str = "user",
        initial_points: int = 0,
        user_id: str | None = None,
    ) -> UserRecord:
        """Seed a user; a starting balance is written as a bonus entry so the ledger reconciles."""
        user = UserRecord(id=user_id or uuid.uuid4().hex, username=username, email=email, role=role)
        with self._lock:
            self.users[user.id] = user
            self.balances.setdefault(user.id, 0)
        if initial_points:
            await self.credit(user.id, initial_points)
            await self.append_entry(
                LedgerEntry(user_id=user.id, kind="bonus", description="Initial points", points_delta=initial_points)
            )
        return user

    async def set_preferences(
        self,
        user_id: str,
        generation_webhook_url: str | None = None,
        publish_webhook_url: str | None = None,
    ) -> PreferencesRecord:
        if user_id not in self.users:
            raise NotFoundError("User not found")
        prefs = PreferencesRecord(
            user_id=user_id,
            generation_webhook_url=generation_webhook_url,
            publish_webhook_url=publish_webhook_url,
        )
        self.preferences[user_id] = prefs
        return prefs

    async def get_user(self, user_id: str) -> UserRecord | None:
        return self.users.get(str(user_id))

    async def get_balance(self, user_id: str) -> int:
        return self.balances.get(str(user_id), 0)

    async def debit_if_sufficient(self, user_id: str, amount: int) -> int | None:
        with self._lock:
            current = self.balances.get(user_id, 0)
            if current < amount:
                return None
            self.balances[user_id] = current - amount
            return self.balances[user_id]

    async def credit(self, user_id: str, amount: int) -> int:
        with self._lock:
            self.balances[user_id] = self.balances.get(user_id, 0) + amount
            return self.balances[user_id]

    async def append_entry(self, entry: LedgerEntry) -> LedgerEntry:
        stored = entry.model_copy(update={"id": uuid.uuid4().hex})
        with self._lock:
            self.entries.append(stored)
        return stored

    async def find_job_entry(self, job_id: str, event: LedgerEvent, user_id: str | None = None) -> LedgerEntry | None:
        with self._lock:
            for entry in self.entries:
                if entry.job_id == job_id and entry.event == event and user_id in (None, entry.user_id):
                    return entry
        return None

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
        with self._lock:
            rows = [e for e in self.entries if e.user_id == user_id]
        if kind:
            rows = [e for e in rows if e.kind == kind]
        if event:
            rows = [e for e in rows if e.event == event]
        if since:
            rows = [e for e in rows if e.created_at >= since]
        if until:
            rows = [e for e in rows if e.created_at <= until]
        # append order breaks timestamp ties
        rows = [e for _, e in sorted(enumerate(rows), key=lambda p: (p[1].created_at, p[0]), reverse=True)]
        total = len(rows)
        if limit > 0:
            rows = rows[offset : offset + limit]
        else:
            rows = rows[offset:]
        return rows, total

    async def sum_deltas(self, user_id: str) -> int:
        with self._lock:
            return sum(e.points_delta for e in self.entries if e.user_id == user_id)

    async def get_preferences(self, user_id: str) -> PreferencesRecord | None:
        return self.preferences.get(str(user_id))

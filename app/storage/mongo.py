"""MongoDB ledger backend (beanie documents on motor)."""

import functools
from datetime import datetime

from beanie import PydanticObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from app.core.exceptions import StoreError
from app.core.logging import get_logger
from app.models.points_balance import PointsBalance
from app.models.preferences import UserPreferences
from app.models.transaction import Transaction
from app.models.user import User
from app.storage.base import LedgerEntry, LedgerEvent, LedgerStore, PreferencesRecord, UserRecord

log = get_logger(__name__)


def _oid(user_id: str) -> PydanticObjectId | None:
    try:
        return PydanticObjectId(str(user_id))
    except (InvalidId, TypeError):
        return None


def _store_errors(fn):
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except PyMongoError as e:
            log.error("ledger_store_error", op=fn.__name__, error=str(e))
            raise StoreError(f"Ledger store error during {fn.__name__}") from e
    return wrapper


def _to_entry(doc: Transaction) -> LedgerEntry:
    return LedgerEntry(
        id=str(doc.id),
        user_id=str(doc.user_id),
        kind=doc.kind,
        description=doc.description,
        points_delta=doc.points_delta,
        balance_after=doc.balance_after,
        event=doc.event,
        job_id=doc.job_id,
        platform=doc.platform,
        succeeded=doc.succeeded,
        error_message=doc.error_message,
        created_at=doc.created_at,
    )


class MongoLedgerStore(LedgerStore):
    def __init__(self, client=None) -> None:
        self._client = client

    @classmethod
    async def connect(cls) -> "MongoLedgerStore":
        from app.db.init import init_db
        try:
            client = await init_db()
        except PyMongoError as e:
            raise StoreError("Could not connect to MongoDB") from e
        return cls(client)

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()

    @_store_errors
    async def get_user(self, user_id: str) -> UserRecord | None:
        oid = _oid(user_id)
        if oid is None:
            return None
        user = await User.get(oid)
        if not user:
            return None
        return UserRecord(id=str(user.id), username=user.username, email=user.email, role=user.role)

    @_store_errors
    async def get_balance(self, user_id: str) -> int:
        bal = await PointsBalance.find_one(PointsBalance.user_id == _oid(user_id))
        return bal.balance if bal else 0

    @_store_errors
    async def debit_if_sufficient(self, user_id: str, amount: int) -> int | None:
        # Guarded $inc: the balance check and decrement are one server-side operation
        doc = await PointsBalance.get_motor_collection().find_one_and_update(
            {"user_id": _oid(user_id), "balance": {"$gte": amount}},
            {"$inc": {"balance": -amount}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None
        return doc["balance"]

    @_store_errors
    async def credit(self, user_id: str, amount: int) -> int:
        doc = await PointsBalance.get_motor_collection().find_one_and_update(
            {"user_id": _oid(user_id)},
            {"$inc": {"balance": amount}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc["balance"]

    @_store_errors
    async def append_entry(self, entry: LedgerEntry) -> LedgerEntry:
        user_oid = _oid(entry.user_id)
        if user_oid is None:
            raise StoreError("Invalid user id for ledger entry", details={"user_id": entry.user_id})
        doc = Transaction(
            user_id=user_oid,
            kind=entry.kind,
            description=entry.description,
            points_delta=entry.points_delta,
            balance_after=entry.balance_after,
            event=entry.event,
            job_id=entry.job_id,
            platform=entry.platform,
            succeeded=entry.succeeded,
            error_message=entry.error_message,
            created_at=entry.created_at,
        )
        await doc.insert()
        return _to_entry(doc)

    @_store_errors
    async def find_job_entry(self, job_id: str, event: LedgerEvent, user_id: str | None = None) -> LedgerEntry | None:
        conditions = [Transaction.job_id == job_id, Transaction.event == event]
        if user_id is not None:
            conditions.append(Transaction.user_id == _oid(user_id))
        doc = await Transaction.find_one(*conditions)
        return _to_entry(doc) if doc else None

    @_store_errors
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
        conditions = [Transaction.user_id == _oid(user_id)]
        if kind:
            conditions.append(Transaction.kind == kind)
        if event:
            conditions.append(Transaction.event == event)
        if since:
            conditions.append(Transaction.created_at >= since)
        if until:
            conditions.append(Transaction.created_at <= until)
        total = await Transaction.find(*conditions).count()
        query = Transaction.find(*conditions).sort(-Transaction.created_at).skip(offset)
        if limit > 0:
            query = query.limit(limit)
        docs = await query.to_list()
        return [_to_entry(d) for d in docs], total

    @_store_errors
    async def sum_deltas(self, user_id: str) -> int:
        total = await Transaction.find(Transaction.user_id == _oid(user_id)).sum(Transaction.points_delta)
        return int(total or 0)

    @_store_errors
    async def entry_stats(self, user_id: str) -> dict:
        pipeline = [
            {
                "$group": {
                    "_id": None,
                    "total_transactions": {"$sum": 1},
                    "total_points_earned": {"$sum": {"$cond": [{"$gt": ["$points_delta", 0]}, "$points_delta", 0]}},
                    "total_points_spent": {
                        "$sum": {"$cond": [{"$lt": ["$points_delta", 0]}, {"$abs": "$points_delta"}, 0]}
                    },
                    "balance": {"$sum": "$points_delta"},
                }
            }
        ]
        rows = await Transaction.find(Transaction.user_id == _oid(user_id)).aggregate(pipeline).to_list()
        row = rows[0] if rows else {}
        return {
            "total_transactions": int(row.get("total_transactions", 0)),
            "total_points_earned": int(row.get("total_points_earned", 0)),
            "total_points_spent": int(row.get("total_points_spent", 0)),
            "balance": int(row.get("balance", 0)),
        }

    @_store_errors
    async def get_preferences(self, user_id: str) -> PreferencesRecord | None:
        prefs = await UserPreferences.find_one(UserPreferences.user_id == _oid(user_id))
        if not prefs:
            return None
        return PreferencesRecord(
            user_id=str(prefs.user_id),
            generation_webhook_url=prefs.generation_webhook_url,
            publish_webhook_url=prefs.publish_webhook_url,
        )

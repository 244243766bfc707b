from datetime import datetime, timezone
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel, field_validator
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from errors import PersistenceError


# ── Schemas ─────────────────────────────────────────────────────────────

class DropMatch(BaseModel):
    user_id: str
    score: float
    reasons: list[str] = []
    starters: list[str] = []


class WeeklyDrop(BaseModel):
    """One user's curated matches for one ISO week."""
    user_id: str
    drop_number: int
    matched_user_ids: list[str] = []
    match_data: list[DropMatch] = []
    status: str = "delivered"
    delivered_at: datetime
    expires_at: datetime
    opened_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("matched_user_ids")
    @classmethod
    def _dedupe_and_bound(cls, v: list[str]) -> list[str]:
        ids = list(dict.fromkeys(v))
        if ids and not (config.DROP_MIN_MATCHES <= len(ids) <= config.DROP_MAX_MATCHES):
            raise ValueError(
                f"a drop holds 0 or {config.DROP_MIN_MATCHES}-{config.DROP_MAX_MATCHES} matches, got {len(ids)}"
            )
        return ids


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive UTC datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _drop_from_doc(doc: dict) -> WeeklyDrop:
    for key in ("delivered_at", "expires_at", "opened_at", "created_at", "updated_at"):
        if key in doc:
            doc[key] = _as_utc(doc[key])
    return WeeklyDrop(**doc)


# ── Store ────────────────────────────────────────────────────────────────

class WeeklyDropStore:
    async def upsert_drop(self, drop: WeeklyDrop) -> WeeklyDrop:
        """Insert or refresh the snapshot for (user_id, drop_number)."""
        raise NotImplementedError

    async def open_current_drop(self, user_id: str, now: datetime) -> tuple[Optional[WeeklyDrop], bool]:
        """Latest unexpired drop, marked opened on first read. Returns (drop, just_opened)."""
        raise NotImplementedError

    async def get_drop_history(self, user_id: str, limit: int = 10) -> list[WeeklyDrop]:
        raise NotImplementedError


class MongoWeeklyDropStore(WeeklyDropStore):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def _write(self, drop: WeeklyDrop, now: datetime) -> None:
        await self.db.weekly_drops.update_one(
            {"user_id": drop.user_id, "drop_number": drop.drop_number},
            {
                "$set": {
                    "matched_user_ids": drop.matched_user_ids,
                    "match_data": [m.model_dump() for m in drop.match_data],
                    "status": "delivered",
                    "delivered_at": drop.delivered_at,
                    "expires_at": drop.expires_at,
                    "opened_at": None,
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )

    async def upsert_drop(self, drop: WeeklyDrop) -> WeeklyDrop:
        now = datetime.now(timezone.utc)
        try:
            try:
                await self._write(drop, now)
            except DuplicateKeyError:
                # Lost an upsert race on the unique key; the row exists now
                await self._write(drop, now)
            doc = await self.db.weekly_drops.find_one(
                {"user_id": drop.user_id, "drop_number": drop.drop_number}, {"_id": 0}
            )
        except PyMongoError as exc:
            raise PersistenceError(f"Weekly drop write failed for {drop.user_id}: {exc}") from exc
        return _drop_from_doc(doc)

    async def open_current_drop(self, user_id: str, now: datetime) -> tuple[Optional[WeeklyDrop], bool]:
        doc = await self.db.weekly_drops.find_one(
            {"user_id": user_id, "expires_at": {"$gte": now}},
            {"_id": 0},
            sort=[("drop_number", DESCENDING)],
        )
        if doc is None:
            return None, False
        if doc.get("opened_at") is not None:
            return _drop_from_doc(doc), False

        opened = await self.db.weekly_drops.find_one_and_update(
            {"user_id": user_id, "drop_number": doc["drop_number"], "opened_at": None},
            {"$set": {"opened_at": now, "status": "opened"}},
            return_document=True,
            projection={"_id": 0},
        )
        if opened is None:
            # Another request opened it first
            current = await self.db.weekly_drops.find_one(
                {"user_id": user_id, "drop_number": doc["drop_number"]}, {"_id": 0}
            )
            return _drop_from_doc(current), False
        return _drop_from_doc(opened), True

    async def get_drop_history(self, user_id: str, limit: int = 10) -> list[WeeklyDrop]:
        cursor = self.db.weekly_drops.find({"user_id": user_id}, {"_id": 0}).sort("drop_number", DESCENDING)
        docs = await cursor.to_list(length=limit)
        return [_drop_from_doc(doc) for doc in docs]

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

import config

AGENT_EVENTS = ("agent_search", "agent_refine")


@dataclass
class QuotaStatus:
    used: int
    limit: int
    remaining: int
    resets_at: datetime

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0


def utc_day_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class SearchQuota:
    """Per-user daily cap on interactive agent searches."""

    def __init__(self, limit: int = config.AGENT_DAILY_SEARCH_LIMIT):
        self.limit = limit

    async def count_between(self, user_id: str, start: datetime, end: datetime) -> int:
        raise NotImplementedError

    async def track(self, user_id: str, event_type: str, metadata: Optional[dict] = None) -> None:
        raise NotImplementedError

    async def status(self, user_id: str, now: Optional[datetime] = None) -> QuotaStatus:
        now = now or datetime.now(timezone.utc)
        start, end = utc_day_bounds(now)
        used = await self.count_between(user_id, start, end)
        return QuotaStatus(used=used, limit=self.limit, remaining=max(self.limit - used, 0), resets_at=end)


class MongoSearchQuota(SearchQuota):
    def __init__(self, db: AsyncIOMotorDatabase, limit: int = config.AGENT_DAILY_SEARCH_LIMIT):
        super().__init__(limit)
        self.db = db

    async def count_between(self, user_id: str, start: datetime, end: datetime) -> int:
        return await self.db.agent_usage.count_documents({
            "user_id": user_id,
            "event_type": {"$in": list(AGENT_EVENTS)},
            "created_at": {"$gte": start, "$lt": end},
        })

    async def track(self, user_id: str, event_type: str, metadata: Optional[dict] = None) -> None:
        await self.db.agent_usage.insert_one({
            "user_id": user_id,
            "event_type": event_type,
            "metadata": metadata or {},
            "created_at": datetime.now(timezone.utc),
        })

from datetime import datetime, timezone
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel

import config

MAX_QUERY_HISTORY = 20
MAX_MATCHED_IDS = 10
MAX_FEEDBACK_HISTORY = 50
PRUNE_BELOW = 0.02


# ── Schemas ─────────────────────────────────────────────────────────────

class QueryRecord(BaseModel):
    query: str
    timestamp: datetime
    matched_ids: list[str] = []


class FeedbackRecord(BaseModel):
    matched_user_id: str
    outcome: str
    date: datetime


class AgentContext(BaseModel):
    """The wingman's memory of one user."""
    user_id: str
    learned_preferences: dict[str, float] = {}
    recent_queries: list[QueryRecord] = []
    match_feedback: list[FeedbackRecord] = []
    last_agent_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ── Preference learning ─────────────────────────────────────────────────

def apply_feedback(
    preferences: dict[str, float],
    traits: list[str],
    outcome: str,
    rates: Optional[dict[str, float]] = None,
    bound: float = config.PREFERENCE_WEIGHT_BOUND,
) -> dict[str, float]:
    """Nudge each trait's weight by the outcome's rate, clamped to [-bound, bound].

    Returns a new map; weights that end up near zero are dropped.
    """
    rates = rates if rates is not None else config.FEEDBACK_RATES
    if outcome not in rates:
        raise ValueError(f"Unknown feedback outcome: {outcome}")
    step = rates[outcome]

    updated = dict(preferences)
    for trait in dict.fromkeys(traits):
        updated[trait] = min(bound, max(-bound, updated.get(trait, 0.0) + step))
    return {k: round(v, 6) for k, v in updated.items() if abs(v) >= PRUNE_BELOW}


def wingman_stats(ctx: AgentContext) -> dict:
    """What the wingman has learned, for the context endpoints."""
    prefs = ctx.learned_preferences
    likes = sorted(((k, v) for k, v in prefs.items() if v > 0.1), key=lambda kv: (-kv[1], kv[0]))[:10]
    dislikes = sorted(((k, v) for k, v in prefs.items() if v < -0.1), key=lambda kv: (kv[1], kv[0]))[:5]

    outcomes: dict[str, int] = {}
    for fb in ctx.match_feedback:
        outcomes[fb.outcome] = outcomes.get(fb.outcome, 0) + 1

    return {
        "likes": [{"trait": k.replace("_", " "), "weight": round(v * 100)} for k, v in likes],
        "dislikes": [{"trait": k.replace("_", " "), "weight": round(v * 100)} for k, v in dislikes],
        "feedback": {"total": len(ctx.match_feedback), **outcomes},
        "total_queries": len(ctx.recent_queries),
        "learned_traits": len(prefs),
        "recent_queries": [
            {"query": q.query, "timestamp": q.timestamp.isoformat(), "match_count": len(q.matched_ids)}
            for q in ctx.recent_queries[:5]
        ],
        "last_message": ctx.last_agent_message,
        "has_memory": bool(ctx.recent_queries or ctx.match_feedback),
    }


# ── Store ────────────────────────────────────────────────────────────────

class AgentContextStore:
    async def get_agent_context(self, user_id: str) -> AgentContext:
        """Existing context, or a freshly created default one."""
        raise NotImplementedError

    async def record_query(self, user_id: str, query: str, matched_ids: list[str]) -> None:
        raise NotImplementedError

    async def record_feedback(self, user_id: str, matched_user_id: str, traits: list[str], outcome: str) -> AgentContext:
        raise NotImplementedError

    async def save_agent_message(self, user_id: str, message: str) -> None:
        raise NotImplementedError

    async def reset_agent_context(self, user_id: str) -> None:
        raise NotImplementedError


class MongoAgentContextStore(AgentContextStore):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_agent_context(self, user_id: str) -> AgentContext:
        now = datetime.now(timezone.utc)
        doc = await self.db.agent_contexts.find_one_and_update(
            {"user_id": user_id},
            {
                "$setOnInsert": {
                    "user_id": user_id,
                    "learned_preferences": {},
                    "recent_queries": [],
                    "match_feedback": [],
                    "last_agent_message": None,
                    "created_at": now,
                }
            },
            upsert=True,
            return_document=True,
            projection={"_id": 0},
        )
        return AgentContext(**doc)

    async def record_query(self, user_id: str, query: str, matched_ids: list[str]) -> None:
        entry = QueryRecord(
            query=query,
            timestamp=datetime.now(timezone.utc),
            matched_ids=matched_ids[:MAX_MATCHED_IDS],
        )
        # Newest first, capped server-side
        await self.db.agent_contexts.update_one(
            {"user_id": user_id},
            {
                "$push": {
                    "recent_queries": {
                        "$each": [entry.model_dump()],
                        "$position": 0,
                        "$slice": MAX_QUERY_HISTORY,
                    }
                },
                "$set": {"updated_at": entry.timestamp},
            },
            upsert=True,
        )

    async def record_feedback(self, user_id: str, matched_user_id: str, traits: list[str], outcome: str) -> AgentContext:
        ctx = await self.get_agent_context(user_id)
        prefs = apply_feedback(ctx.learned_preferences, traits, outcome)
        now = datetime.now(timezone.utc)
        record = FeedbackRecord(matched_user_id=matched_user_id, outcome=outcome, date=now)

        doc = await self.db.agent_contexts.find_one_and_update(
            {"user_id": user_id},
            {
                "$set": {"learned_preferences": prefs, "updated_at": now},
                "$push": {
                    "match_feedback": {
                        "$each": [record.model_dump()],
                        "$position": 0,
                        "$slice": MAX_FEEDBACK_HISTORY,
                    }
                },
            },
            return_document=True,
            projection={"_id": 0},
        )
        return AgentContext(**doc)

    async def save_agent_message(self, user_id: str, message: str) -> None:
        await self.db.agent_contexts.update_one(
            {"user_id": user_id},
            {"$set": {"last_agent_message": message, "updated_at": datetime.now(timezone.utc)}},
        )

    async def reset_agent_context(self, user_id: str) -> None:
        await self.db.agent_contexts.update_one(
            {"user_id": user_id},
            {
                "$set": {
                    "learned_preferences": {},
                    "recent_queries": [],
                    "match_feedback": [],
                    "last_agent_message": None,
                    "updated_at": datetime.now(timezone.utc),
                }
            },
        )

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

import config

client: AsyncIOMotorClient | None = None
db: AsyncIOMotorDatabase | None = None


async def connect_db() -> AsyncIOMotorDatabase:
    global client, db
    client = AsyncIOMotorClient(config.MONGODB_URL)
    db = client[config.MONGODB_DB]

    # Uniqueness backs the upsert semantics of contexts and weekly drops
    await db.profiles.create_index("uid", unique=True)
    await db.profiles.create_index([("is_visible", ASCENDING), ("last_active", DESCENDING)])
    await db.blocks.create_index([("blocker_uid", ASCENDING), ("blocked_uid", ASCENDING)], unique=True)
    await db.blocks.create_index("blocked_uid")
    await db.agent_contexts.create_index("user_id", unique=True)
    await db.agent_usage.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db.weekly_drops.create_index(
        [("user_id", ASCENDING), ("drop_number", ASCENDING)], unique=True
    )
    await db.weekly_drops.create_index([("user_id", ASCENDING), ("expires_at", DESCENDING)])

    return db


async def close_db() -> None:
    global client
    if client:
        client.close()


def get_db() -> AsyncIOMotorDatabase:
    assert db is not None, "Database not connected. Call connect_db() first."
    return db

import re
from datetime import datetime, timezone
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel

from models.intent import HardFilters


# ── Nested models ────────────────────────────────────────────────────────

class ProfilePrompt(BaseModel):
    prompt_id: str
    response: str


class Profile(BaseModel):
    """Profile document as stored in MongoDB. Read-only to the agent pipeline."""
    uid: str
    first_name: str = ""
    last_name: str = ""
    age: Optional[int] = None
    gender: Optional[str] = None
    interested_in: list[str] = []
    university: Optional[str] = None
    course: Optional[str] = None
    year_of_study: Optional[int] = None
    bio: Optional[str] = None
    about_me: Optional[str] = None
    interests: list[str] = []
    qualities: list[str] = []
    personality_type: Optional[str] = None
    personality_summary: Optional[str] = None
    communication_style: Optional[str] = None
    love_language: Optional[str] = None
    looking_for: Optional[str] = None
    smoking: Optional[str] = None
    drinking_preference: Optional[str] = None
    religion: Optional[str] = None
    workout_frequency: Optional[str] = None
    prompts: list[ProfilePrompt] = []
    photos: list[str] = []
    profile_photo: Optional[str] = None
    embedding: list[float] = []
    embedding_updated_at: Optional[datetime] = None
    is_visible: bool = True
    last_active: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    fcm_token: Optional[str] = None

    def traits(self) -> list[str]:
        """Trait keys used for preference learning and scoring."""
        out: list[str] = []
        if self.personality_type:
            out.append(f"personality_{_slug(self.personality_type)}")
        if self.communication_style:
            out.append(f"communication_{_slug(self.communication_style)}")
        if self.love_language:
            out.append(f"love_language_{_slug(self.love_language)}")
        for interest in self.interests[:5]:
            out.append(f"interest_{_slug(interest)}")
        if self.smoking:
            out.append(f"smoking_{_slug(self.smoking)}")
        if self.drinking_preference:
            out.append(f"drinking_{_slug(self.drinking_preference)}")
        if self.workout_frequency:
            out.append(f"workout_{_slug(self.workout_frequency)}")
        if self.course:
            out.append(f"course_{_slug(self.course)}")
        if self.year_of_study:
            out.append(f"year_{self.year_of_study}")
        return out

    def embedding_text(self) -> str:
        """Descriptive text embedded for vector search."""
        parts = [
            self.personality_summary,
            self.about_me or self.bio,
            f"Studies {self.course}" if self.course else None,
            f"Interests: {', '.join(self.interests)}" if self.interests else None,
            f"Qualities: {', '.join(self.qualities)}" if self.qualities else None,
            f"Personality: {self.personality_type}" if self.personality_type else None,
            f"Looking for: {self.looking_for}" if self.looking_for else None,
        ]
        parts.extend(p.response for p in self.prompts)
        return ". ".join(p for p in parts if p) or "none"

    def public_dict(self) -> dict:
        """Strip storage-only and sensitive fields before sending to a client."""
        return self.model_dump(
            mode="json",
            exclude={"embedding", "embedding_updated_at", "is_visible", "deleted_at", "fcm_token"},
        )


def _slug(value: str) -> str:
    return re.sub(r"\s+", "_", str(value).strip().lower())


SUPPORTED_GENDERS = ("female", "male", "other")
_GENDER_ALIASES = {"men": "male", "man": "male", "women": "female", "woman": "female"}
_ALL_GENDERS = {"both", "all", "everyone", "anyone"}


def target_genders(gender: Optional[str], interested_in: list[str]) -> list[str]:
    """Genders a user wants to see.

    Stated interests win; "both"/"all"/"everyone" mean every gender. With
    nothing stated, male and female users default to the opposite gender.
    """
    wanted = [str(g).strip().lower() for g in interested_in or [] if g and str(g).strip()]
    if any(g in _ALL_GENDERS for g in wanted):
        return list(SUPPORTED_GENDERS)
    targets = sorted({_GENDER_ALIASES.get(g, g) for g in wanted} & set(SUPPORTED_GENDERS))
    if targets:
        return targets

    own = (gender or "").strip().lower()
    if own == "male":
        return ["female"]
    if own == "female":
        return ["male"]
    return list(SUPPORTED_GENDERS)


def _same_text(value: Optional[str], wanted: str) -> bool:
    return bool(value) and value.strip().lower() == wanted


def matches_filters(profile: Profile, filters: HardFilters) -> bool:
    """Python mirror of the Mongo hard-filter query."""
    if filters.age_min is not None and (profile.age is None or profile.age < filters.age_min):
        return False
    if filters.age_max is not None and (profile.age is None or profile.age > filters.age_max):
        return False
    if filters.university and (
        not profile.university or profile.university.lower() != filters.university.lower()
    ):
        return False
    if filters.course and (
        not profile.course or filters.course.lower() not in profile.course.lower()
    ):
        return False
    if filters.gender and (profile.gender or "").lower() not in filters.gender:
        return False
    if filters.year_of_study and profile.year_of_study not in filters.year_of_study:
        return False
    if filters.religion and not _same_text(profile.religion, filters.religion):
        return False
    if filters.smoking and not _same_text(profile.smoking, filters.smoking):
        return False
    if filters.drinking and not _same_text(profile.drinking_preference, filters.drinking):
        return False
    return True


# ── Store ────────────────────────────────────────────────────────────────

class ProfileStore:
    """Read access to profiles and block relationships."""

    async def get_profile(self, uid: str) -> Optional[Profile]:
        raise NotImplementedError

    async def get_profiles(self, uids: list[str]) -> list[Profile]:
        raise NotImplementedError

    async def get_blocked_ids(self, uid: str) -> set[str]:
        """Users blocked by `uid` and users who blocked `uid`."""
        raise NotImplementedError

    async def find_candidates(
        self,
        exclude_ids: set[str],
        filters: HardFilters,
        require_embedding: bool,
    ) -> list[Profile]:
        """Visible, non-deleted profiles that satisfy `filters`."""
        raise NotImplementedError

    async def find_active_users(self, since: datetime, limit: Optional[int] = None) -> list[Profile]:
        raise NotImplementedError

    async def set_embedding(self, uid: str, embedding: list[float]) -> bool:
        raise NotImplementedError


class MongoProfileStore(ProfileStore):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_profile(self, uid: str) -> Optional[Profile]:
        doc = await self.db.profiles.find_one({"uid": uid}, {"_id": 0})
        if doc is None:
            return None
        return Profile(**doc)

    async def get_profiles(self, uids: list[str]) -> list[Profile]:
        if not uids:
            return []
        cursor = self.db.profiles.find({"uid": {"$in": uids}}, {"_id": 0})
        docs = await cursor.to_list(length=None)
        return [Profile(**doc) for doc in docs]

    async def get_blocked_ids(self, uid: str) -> set[str]:
        cursor = self.db.blocks.find(
            {"$or": [{"blocker_uid": uid}, {"blocked_uid": uid}]},
            {"_id": 0},
        )
        docs = await cursor.to_list(length=None)
        blocked: set[str] = set()
        for doc in docs:
            other = doc["blocked_uid"] if doc["blocker_uid"] == uid else doc["blocker_uid"]
            blocked.add(other)
        return blocked

    async def find_candidates(
        self,
        exclude_ids: set[str],
        filters: HardFilters,
        require_embedding: bool,
    ) -> list[Profile]:
        query: dict = {
            "is_visible": True,
            "deleted_at": None,
            "uid": {"$nin": sorted(exclude_ids)},
        }
        if require_embedding:
            query["embedding.0"] = {"$exists": True}

        age: dict = {}
        if filters.age_min is not None:
            age["$gte"] = filters.age_min
        if filters.age_max is not None:
            age["$lte"] = filters.age_max
        if age:
            query["age"] = age
        if filters.university:
            query["university"] = {"$regex": f"^{re.escape(filters.university)}$", "$options": "i"}
        if filters.course:
            query["course"] = {"$regex": re.escape(filters.course), "$options": "i"}
        if filters.gender:
            query["gender"] = {"$in": filters.gender}
        if filters.year_of_study:
            query["year_of_study"] = {"$in": filters.year_of_study}
        for field, value in (
            ("religion", filters.religion),
            ("smoking", filters.smoking),
            ("drinking_preference", filters.drinking),
        ):
            if value:
                query[field] = {"$regex": f"^{re.escape(value)}$", "$options": "i"}

        cursor = self.db.profiles.find(query, {"_id": 0}).sort("uid", 1)
        docs = await cursor.to_list(length=None)
        return [Profile(**doc) for doc in docs]

    async def find_active_users(self, since: datetime, limit: Optional[int] = None) -> list[Profile]:
        cursor = self.db.profiles.find(
            {"last_active": {"$gte": since}, "deleted_at": None},
            {"_id": 0, "embedding": 0},
        ).sort("uid", 1)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=None)
        return [Profile(**doc) for doc in docs]

    async def set_embedding(self, uid: str, embedding: list[float]) -> bool:
        result = await self.db.profiles.update_one(
            {"uid": uid},
            {
                "$set": {
                    "embedding": embedding,
                    "embedding_updated_at": datetime.now(timezone.utc),
                }
            },
        )
        return result.matched_count > 0

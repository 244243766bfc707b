"""In-memory stand-ins for the stores and providers, shared by the tests."""
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

import config
from errors import PersistenceError
from models.agent_context import AgentContext, AgentContextStore, FeedbackRecord, QueryRecord, apply_feedback
from models.intent import HardFilters
from models.profile import Profile, ProfileStore, matches_filters
from models.weekly_drop import WeeklyDrop, WeeklyDropStore
from services.embedder import EmbeddingProvider
from services.events import EventSink
from services.llm_client import LLMClient
from services.push_notification import NotificationSender
from services.search_quota import SearchQuota

NOW = datetime(2026, 10, 14, 9, 30, tzinfo=timezone.utc)


class FakeProfileStore(ProfileStore):
    def __init__(self, profiles: Optional[list[Profile]] = None, blocks: Optional[list[tuple[str, str]]] = None):
        self.profiles = {p.uid: p for p in profiles or []}
        self.blocks = list(blocks or [])
        self.fail_vector = False
        self.fail_filter = False
        self.calls: list[bool] = []

    async def get_profile(self, uid: str) -> Optional[Profile]:
        return self.profiles.get(uid)

    async def get_profiles(self, uids: list[str]) -> list[Profile]:
        return [self.profiles[u] for u in uids if u in self.profiles]

    async def get_blocked_ids(self, uid: str) -> set[str]:
        blocked = set()
        for blocker, target in self.blocks:
            if blocker == uid:
                blocked.add(target)
            elif target == uid:
                blocked.add(blocker)
        return blocked

    async def find_candidates(self, exclude_ids: set[str], filters: HardFilters, require_embedding: bool) -> list[Profile]:
        self.calls.append(require_embedding)
        if require_embedding and self.fail_vector:
            raise RuntimeError("vector index offline")
        if not require_embedding and self.fail_filter:
            raise RuntimeError("profile store offline")
        return [
            p for uid, p in sorted(self.profiles.items())
            if uid not in exclude_ids
            and p.is_visible
            and p.deleted_at is None
            and (p.embedding or not require_embedding)
            and matches_filters(p, filters)
        ]

    async def find_active_users(self, since: datetime, limit: Optional[int] = None) -> list[Profile]:
        users = [
            p for _, p in sorted(self.profiles.items())
            if p.last_active is not None and p.last_active >= since and p.deleted_at is None
        ]
        return users[:limit] if limit else users

    async def set_embedding(self, uid: str, embedding: list[float]) -> bool:
        if uid not in self.profiles:
            return False
        self.profiles[uid] = self.profiles[uid].model_copy(update={"embedding": embedding})
        return True


class FakeContextStore(AgentContextStore):
    def __init__(self):
        self.contexts: dict[str, AgentContext] = {}
        self.fail_for: set[str] = set()
        self.messages: dict[str, str] = {}

    async def get_agent_context(self, user_id: str) -> AgentContext:
        if user_id in self.fail_for:
            raise RuntimeError(f"context read failed for {user_id}")
        if user_id not in self.contexts:
            self.contexts[user_id] = AgentContext(user_id=user_id, created_at=NOW)
        return self.contexts[user_id]

    async def record_query(self, user_id: str, query: str, matched_ids: list[str]) -> None:
        ctx = await self.get_agent_context(user_id)
        entry = QueryRecord(query=query, timestamp=NOW, matched_ids=matched_ids[:10])
        self.contexts[user_id] = ctx.model_copy(update={"recent_queries": [entry, *ctx.recent_queries][:20]})

    async def record_feedback(self, user_id: str, matched_user_id: str, traits: list[str], outcome: str) -> AgentContext:
        ctx = await self.get_agent_context(user_id)
        record = FeedbackRecord(matched_user_id=matched_user_id, outcome=outcome, date=NOW)
        ctx = ctx.model_copy(
            update={
                "learned_preferences": apply_feedback(ctx.learned_preferences, traits, outcome),
                "match_feedback": [record, *ctx.match_feedback][:50],
            }
        )
        self.contexts[user_id] = ctx
        return ctx

    async def save_agent_message(self, user_id: str, message: str) -> None:
        self.messages[user_id] = message

    async def reset_agent_context(self, user_id: str) -> None:
        self.contexts[user_id] = AgentContext(user_id=user_id, created_at=NOW)


class FakeDropStore(WeeklyDropStore):
    def __init__(self):
        self.rows: dict[tuple[str, int], WeeklyDrop] = {}
        self.fail_for: set[str] = set()

    async def upsert_drop(self, drop: WeeklyDrop) -> WeeklyDrop:
        if drop.user_id in self.fail_for:
            raise PersistenceError(f"write failed for {drop.user_id}")
        key = (drop.user_id, drop.drop_number)
        existing = self.rows.get(key)
        stored = drop.model_copy(
            update={
                "status": "delivered",
                "opened_at": None,
                "created_at": existing.created_at if existing else drop.delivered_at,
            }
        )
        self.rows[key] = stored
        return stored

    async def open_current_drop(self, user_id: str, now: datetime) -> tuple[Optional[WeeklyDrop], bool]:
        live = sorted(
            (d for (uid, _), d in self.rows.items() if uid == user_id and d.expires_at >= now),
            key=lambda d: d.drop_number,
            reverse=True,
        )
        if not live:
            return None, False
        drop = live[0]
        if drop.opened_at is not None:
            return drop, False
        opened = drop.model_copy(update={"opened_at": now, "status": "opened"})
        self.rows[(user_id, drop.drop_number)] = opened
        return opened, True

    async def get_drop_history(self, user_id: str, limit: int = 10) -> list[WeeklyDrop]:
        drops = sorted((d for (uid, _), d in self.rows.items() if uid == user_id), key=lambda d: -d.drop_number)
        return drops[:limit]


class FakeEmbeddingProvider(EmbeddingProvider):
    def __init__(self, vector: Optional[list[float]] = None):
        self.vector = vector or [1.0, 0.0, 0.0]
        self.texts: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.texts.append(text)
        return list(self.vector)


class FailingEmbeddingProvider(EmbeddingProvider):
    def __init__(self):
        self.attempts = 0

    async def embed(self, text: str) -> list[float]:
        self.attempts += 1
        raise RuntimeError("embedding quota exhausted")


class FakeLLM(LLMClient):
    def __init__(self, payload: Optional[dict] = None, error: Optional[Exception] = None):
        self.payload = payload or {}
        self.error = error
        self.prompts: list[str] = []

    async def complete_json(self, prompt: str, temperature: float = 0.1) -> dict:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return dict(self.payload)


class RecordingNotifier(NotificationSender):
    def __init__(self):
        self.sent: list[tuple[str, str, str, dict]] = []

    async def send(self, token: str, title: str, body: str, data: Optional[dict] = None) -> bool:
        self.sent.append((token, title, body, data or {}))
        return True


class RecordingEventSink(EventSink):
    """Holds submitted jobs until the test drains them."""

    def __init__(self):
        self.jobs: list[tuple[str, object]] = []

    def submit(self, label, job) -> None:
        self.jobs.append((label, job))

    @property
    def labels(self) -> list[str]:
        return [label for label, _ in self.jobs]

    async def drain(self) -> None:
        jobs, self.jobs = self.jobs, []
        for _, job in jobs:
            await job


class FakeQuota(SearchQuota):
    def __init__(self, limit: int = config.AGENT_DAILY_SEARCH_LIMIT):
        super().__init__(limit)
        self.events: list[tuple[str, str, datetime]] = []

    async def count_between(self, user_id: str, start: datetime, end: datetime) -> int:
        return sum(1 for uid, _, at in self.events if uid == user_id and start <= at < end)

    async def track(self, user_id: str, event_type: str, metadata: Optional[dict] = None) -> None:
        self.events.append((user_id, event_type, datetime.now(timezone.utc)))


def _make_profile(uid: str, **fields) -> Profile:
    defaults = {
        "first_name": uid.capitalize(),
        "age": 21,
        "university": "Strathmore University",
        "course": "Computer Science",
        "year_of_study": 2,
        "interests": ["music"],
        "embedding": [1.0, 0.0, 0.0],
        "last_active": NOW - timedelta(days=1),
    }
    defaults.update(fields)
    return Profile(uid=uid, **defaults)


@pytest.fixture(autouse=True)
def no_retry_backoff(monkeypatch):
    monkeypatch.setattr(config, "PROVIDER_RETRY_BACKOFF_SECONDS", 0.0)


@pytest.fixture
def make_profile():
    return _make_profile


@pytest.fixture
def profile_store():
    return FakeProfileStore()


@pytest.fixture
def context_store():
    return FakeContextStore()


@pytest.fixture
def drop_store():
    return FakeDropStore()


@pytest.fixture
def embedding_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def failing_embedding_provider():
    return FailingEmbeddingProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def event_sink():
    return RecordingEventSink()


@pytest.fixture
def quota():
    return FakeQuota()


@pytest.fixture
def fake_llm():
    return FakeLLM


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_store():
    return FakeProfileStore

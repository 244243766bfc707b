"""Weekly Drop batch: curated matches for every recently active user.

Each user runs the same chain as an interactive search, driven by learned
preferences instead of free text. Users are processed by a bounded pool of
workers; a failure is recorded against that user and the batch moves on.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import config
from errors import AgentError, EmbeddingUnavailable
from models.agent_context import AgentContextStore
from models.profile import Profile, ProfileStore
from models.weekly_drop import DropMatch, WeeklyDrop, WeeklyDropStore
from services.embedder import EmbeddingProvider, IntentEmbedder
from services.events import EventSink
from services.explanations import generate_quick_explanations
from services.intent_parser import IntentParser, intent_query_from_preferences
from services.push_notification import NotificationSender
from services.ranker import Weights, rank_candidates
from services.retriever import CandidateRetriever

logger = logging.getLogger(__name__)

PROCESSED = "processed"
EMPTY = "empty"
FAILED = "failed"

DROP_TITLE = "Your weekly matches are here! 🎯"


def drop_number_for(now: datetime, tz_name: str = config.DROP_TIMEZONE) -> int:
    """ISO year * 100 + ISO week, e.g. 202642, in the drop timezone."""
    local = now.astimezone(ZoneInfo(tz_name))
    iso_year, iso_week, _ = local.isocalendar()
    return iso_year * 100 + iso_week


@dataclass
class UserOutcome:
    user_id: str
    status: str
    stage: Optional[str] = None
    error: Optional[str] = None
    match_count: int = 0
    notified: bool = False


@dataclass
class BatchSummary:
    drop_number: int
    expires_at: datetime
    active_users: int = 0
    processed: int = 0
    failed: int = 0
    empty_results: int = 0
    notifications_sent: int = 0
    failures: list[tuple[str, str, str]] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, drop_number: int, expires_at: datetime, outcomes: list[UserOutcome]) -> "BatchSummary":
        summary = cls(drop_number=drop_number, expires_at=expires_at, active_users=len(outcomes))
        for outcome in outcomes:
            if outcome.status == PROCESSED:
                summary.processed += 1
                summary.notifications_sent += int(outcome.notified)
            elif outcome.status == EMPTY:
                summary.empty_results += 1
            else:
                summary.failed += 1
                summary.failures.append((outcome.user_id, outcome.stage or "unknown", outcome.error or ""))
        return summary


class WeeklyDropRunner:
    def __init__(
        self,
        profiles: ProfileStore,
        contexts: AgentContextStore,
        parser: IntentParser,
        embedding_provider: EmbeddingProvider,
        drops: WeeklyDropStore,
        notifier: NotificationSender,
        events: EventSink,
        weights: Optional[Weights] = None,
        concurrency: int = config.WEEKLY_DROP_CONCURRENCY,
    ):
        self.profiles = profiles
        self.contexts = contexts
        self.parser = parser
        self.embedding_provider = embedding_provider
        self.retriever = CandidateRetriever(profiles)
        self.drops = drops
        self.notifier = notifier
        self.events = events
        self.weights = weights or Weights()
        self.concurrency = max(1, min(concurrency, 10))

    async def run(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> BatchSummary:
        now = now or datetime.now(timezone.utc)
        limit = min(limit, config.DROP_MAX_RUN_LIMIT) if limit else config.DROP_MAX_RUN_LIMIT
        drop_number = drop_number_for(now)
        expires_at = now + timedelta(hours=config.DROP_TTL_HOURS)

        since = now - timedelta(days=config.DROP_ACTIVE_WINDOW_DAYS)
        users = await self.profiles.find_active_users(since, limit)
        logger.info("Weekly drop %d: %d eligible users", drop_number, len(users))

        # One embedder per run so identical preference queries embed once
        embedder = IntentEmbedder(self.embedding_provider)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(profile: Profile) -> UserOutcome:
            async with semaphore:
                return await self._run_user(profile, embedder, drop_number, now, expires_at)

        outcomes = await asyncio.gather(*(guarded(p) for p in users))
        summary = BatchSummary.from_outcomes(drop_number, expires_at, list(outcomes))
        logger.info(
            "Weekly drop %d done: processed=%d failed=%d empty=%d notified=%d",
            drop_number,
            summary.processed,
            summary.failed,
            summary.empty_results,
            summary.notifications_sent,
        )
        return summary

    async def _run_user(
        self,
        profile: Profile,
        embedder: IntentEmbedder,
        drop_number: int,
        now: datetime,
        expires_at: datetime,
    ) -> UserOutcome:
        user_id = profile.uid
        step = "agent_context"
        try:
            ctx = await self.contexts.get_agent_context(user_id)
            prefs = ctx.learned_preferences

            step = "parse_intent"
            intent = await self.parser.parse_intent(intent_query_from_preferences(prefs), None, prefs)

            step = "embed_intent"
            try:
                embedding = await embedder.embed_intent(intent)
            except EmbeddingUnavailable as exc:
                logger.warning("Embedding unavailable for %s, using filters: %s", user_id, exc)
                embedding = None

            step = "agent_search"
            found = await self.retriever.agent_search(user_id, intent, embedding, limit=config.DROP_SEARCH_LIMIT)

            step = "rank"
            ranked = rank_candidates(found.candidates, intent, prefs, self.weights, now=now)
            selected = ranked[:config.DROP_MAX_MATCHES]
            if len(selected) < config.DROP_MIN_MATCHES:
                return UserOutcome(user_id, EMPTY, match_count=len(selected))

            step = "explanations"
            explanations = generate_quick_explanations(selected, intent)

            step = "persist"
            await self.drops.upsert_drop(
                WeeklyDrop(
                    user_id=user_id,
                    drop_number=drop_number,
                    matched_user_ids=[r.candidate.uid for r in selected],
                    match_data=[
                        DropMatch(
                            user_id=r.candidate.uid,
                            score=r.scores.total,
                            reasons=r.match_reasons[:3],
                            starters=explanations[i].conversation_starters[:3],
                        )
                        for i, r in enumerate(selected)
                    ],
                    status="delivered",
                    delivered_at=now,
                    expires_at=expires_at,
                )
            )
        except Exception as exc:
            if isinstance(exc, AgentError) and exc.stage:
                step = exc.stage
            logger.error("Weekly drop failed for %s at %s: %s", user_id, step, exc)
            return UserOutcome(user_id, FAILED, stage=step, error=str(exc))

        notified = self._queue_push(profile, drop_number, len(selected))
        return UserOutcome(user_id, PROCESSED, match_count=len(selected), notified=notified)

    def _queue_push(self, profile: Profile, drop_number: int, count: int) -> bool:
        """Hand the push to the event sink so delivery never holds a worker slot."""
        if not profile.fcm_token:
            return False
        self.events.submit("weekly_drop_push", self._push(profile.uid, profile.fcm_token, drop_number, count))
        return True

    async def _push(self, user_id: str, token: str, drop_number: int, count: int) -> None:
        sent = await self.notifier.send(
            token,
            DROP_TITLE,
            f"{count} people picked for you this week. They expire in {config.DROP_TTL_HOURS}h.",
            {"type": "weekly_drop", "drop_number": drop_number},
        )
        if not sent:
            logger.warning("Weekly drop push not delivered to %s", user_id)

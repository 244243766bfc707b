"""Interactive wingman search: context → intent → embedding → retrieval →
ranking → explanations, run sequentially for one request.

Every stage is tagged so a failure reports where it happened. Only input
validation and exhausted retrieval fail the request; everything else
degrades to a best-effort result.
"""
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from errors import AgentError, AgentValidationError, EmbeddingUnavailable, PipelineStageError
from models.agent import (
    AgentMatch,
    AgentSearchResponse,
    ExplainResponse,
    ExplanationOut,
    FeedbackResponse,
    IntentSummary,
    MatchScores,
    SearchMeta,
)
from models.agent_context import AgentContextStore
from models.intent import Intent
from models.profile import ProfileStore
from services.embedder import EmbeddingProvider, IntentEmbedder
from services.events import EventSink
from services.explanations import (
    DEFAULT_COMMENTARY,
    MatchExplanation,
    generate_quick_explanations,
    generate_result_commentary,
    generate_rich_explanation,
)
from services.guardrails import evaluate_query
from services.intent_parser import IntentParser, intent_query_from_preferences, keyword_intent
from services.llm_client import LLMClient
from services.ranker import RankedResult, Weights, rank_candidates
from services.retriever import Candidate, CandidateRetriever, cosine_sim

logger = logging.getLogger(__name__)

BASE_REFINEMENT_HINTS = [
    "more outgoing",
    "same course",
    "different personality type",
    "more academically focused",
    "more spontaneous",
]
MAX_REFINEMENT_HINTS = 4


@contextmanager
def stage(name: str) -> Iterator[None]:
    """Tag unexpected failures inside the block with the stage name."""
    try:
        yield
    except AgentError:
        raise
    except Exception as exc:
        raise PipelineStageError(name, exc) from exc


def build_refinement_hints(effective_query: str, intent: Intent) -> list[str]:
    """Suggested follow-ups, minus any whose key word is already covered."""
    lowered = effective_query.lower()
    traits = " ".join(intent.traits)
    hints = []
    for hint in BASE_REFINEMENT_HINTS:
        key = hint.split(" ")[1]
        if key in lowered or key in traits:
            continue
        if key == "course" and intent.hard_filters.same_course:
            continue
        hints.append(hint)
    return hints[:MAX_REFINEMENT_HINTS]


def _guard(text: str) -> None:
    decision = evaluate_query(text)
    if not decision.allowed:
        raise AgentValidationError(decision.user_message, code=decision.code)


def _scores(result: RankedResult) -> MatchScores:
    return MatchScores(
        total=result.scores.total,
        vector=round(result.scores.vector * 100),
        alignment=round(result.scores.alignment * 100),
        preference=round(result.scores.preference * 100),
        filter_match=result.scores.filter_match,
        completeness=round(result.scores.completeness * 100),
        recency=round(result.scores.recency * 100),
    )


def _explanation_out(explanation: MatchExplanation) -> ExplanationOut:
    return ExplanationOut(
        tagline=explanation.tagline,
        explanation=explanation.explanation,
        conversation_starters=explanation.conversation_starters,
        vibe_emoji=explanation.vibe_emoji,
        match_percentage=explanation.match_percentage,
    )


class AgentPipeline:
    def __init__(
        self,
        profiles: ProfileStore,
        contexts: AgentContextStore,
        parser: IntentParser,
        embedding_provider: EmbeddingProvider,
        events: EventSink,
        weights: Optional[Weights] = None,
        llm: Optional[LLMClient] = None,
    ):
        self.profiles = profiles
        self.contexts = contexts
        self.parser = parser
        self.embedding_provider = embedding_provider
        self.retriever = CandidateRetriever(profiles)
        self.events = events
        self.weights = weights or Weights()
        self.llm = llm

    async def search(
        self,
        user_id: str,
        query: str,
        limit: int = 20,
        offset: int = 0,
        exclude_ids: Optional[list[str]] = None,
    ) -> AgentSearchResponse:
        started = time.monotonic()
        _guard(query)

        with stage("agent_context"):
            ctx = await self.contexts.get_agent_context(user_id)

        with stage("parse_intent"):
            intent = await self.parser.parse_intent(query, None, ctx.learned_preferences)

        return await self._run(
            user_id,
            intent,
            ctx.learned_preferences,
            record_text=intent.raw_query,
            limit=limit,
            offset=offset,
            exclude_ids=exclude_ids or [],
            started=started,
        )

    async def refine(
        self,
        user_id: str,
        original_query: str,
        refinement: str,
        previous_match_ids: Optional[list[str]] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> AgentSearchResponse:
        """Re-run a search with a follow-up, excluding what was already shown."""
        started = time.monotonic()
        if not (original_query or "").strip():
            raise AgentValidationError("original_query is required", code="empty")
        _guard(refinement)

        with stage("agent_context"):
            ctx = await self.contexts.get_agent_context(user_id)

        with stage("parse_intent"):
            # The original's filters come from a provider-free reading
            previous = keyword_intent(original_query)
            intent = await self.parser.parse_intent(refinement, previous, ctx.learned_preferences)

        effective_query = f"{previous.raw_query}, but {refinement.strip()}"
        response = await self._run(
            user_id,
            intent,
            ctx.learned_preferences,
            record_text=effective_query,
            limit=limit,
            offset=offset,
            exclude_ids=previous_match_ids or [],
            started=started,
        )
        response.effective_query = effective_query
        return response

    async def _run(
        self,
        user_id: str,
        intent: Intent,
        learned_preferences: dict[str, float],
        record_text: str,
        limit: int,
        offset: int,
        exclude_ids: list[str],
        started: float,
    ) -> AgentSearchResponse:
        embedding: Optional[list[float]] = None
        with stage("embed_intent"):
            try:
                embedding = await IntentEmbedder(self.embedding_provider).embed_intent(intent)
            except EmbeddingUnavailable as exc:
                logger.warning("Embedding unavailable for %s, searching by filters: %s", user_id, exc)

        with stage("agent_search"):
            found = await self.retriever.agent_search(
                user_id, intent, embedding, limit=limit, offset=offset, exclude_ids=exclude_ids
            )

        with stage("rank"):
            ranked = rank_candidates(
                found.candidates,
                intent,
                learned_preferences,
                self.weights,
                now=datetime.now(timezone.utc),
            )

        with stage("explanations"):
            explanations = generate_quick_explanations(ranked, intent)

        try:
            commentary = generate_result_commentary(len(ranked), intent, ranked[0] if ranked else None)
        except Exception:
            logger.exception("Commentary failed for %s", user_id)
            commentary = DEFAULT_COMMENTARY

        matches = [
            AgentMatch(
                profile=r.profile.public_dict(),
                explanation=_explanation_out(explanations[i]),
                scores=_scores(r),
                match_reasons=r.match_reasons,
            )
            for i, r in enumerate(ranked)
        ]

        matched_ids = [r.candidate.uid for r in ranked]
        self.events.submit("record_query", self.contexts.record_query(user_id, record_text, matched_ids))
        self.events.submit("save_agent_message", self.contexts.save_agent_message(user_id, commentary))

        next_offset = offset + len(matches)
        return AgentSearchResponse(
            commentary=commentary,
            matches=matches,
            refinement_hints=build_refinement_hints(record_text, intent),
            intent_summary=IntentSummary(
                vibe=intent.vibe.value,
                confidence=intent.confidence,
                semantic_query=intent.semantic_query,
                is_refinement=intent.is_refinement,
            ),
            meta=SearchMeta(
                total_found=found.total_found,
                has_more=next_offset < found.total_found,
                next_offset=next_offset,
                search_method=found.search_method,
                latency_ms=int((time.monotonic() - started) * 1000),
            ),
        )

    async def record_feedback(self, user_id: str, matched_user_id: str, outcome: str) -> Optional[FeedbackResponse]:
        """Learn from a reaction to a match. Returns None if the match is unknown."""
        matched = await self.profiles.get_profile(matched_user_id)
        if matched is None:
            return None
        ctx = await self.contexts.record_feedback(user_id, matched_user_id, matched.traits(), outcome)
        return FeedbackResponse(
            learned_traits=len(ctx.learned_preferences),
            feedback_total=len(ctx.match_feedback),
        )

    async def explain(self, user_id: str, matched_user_id: str, query: Optional[str] = None) -> Optional[ExplainResponse]:
        """Detailed explanation for one match. None if it isn't visible to the user."""
        excluded = await self.retriever.exclusion_set(user_id, [])
        matched = await self.profiles.get_profile(matched_user_id)
        if matched is None or matched_user_id in excluded or not matched.is_visible or matched.deleted_at:
            return None

        ctx = await self.contexts.get_agent_context(user_id)
        text = query or intent_query_from_preferences(ctx.learned_preferences)
        intent = await self.parser.parse_intent(text, None, ctx.learned_preferences)

        vector_score = 0.0
        if matched.embedding:
            try:
                embedding = await IntentEmbedder(self.embedding_provider).embed_intent(intent)
                vector_score = max(0.0, min(1.0, cosine_sim(embedding, matched.embedding)))
            except EmbeddingUnavailable as exc:
                logger.warning("Embedding unavailable for explanation: %s", exc)

        candidate = Candidate(matched, vector_score, not intent.hard_filters.is_empty())
        result = rank_candidates(
            [candidate], intent, ctx.learned_preferences, self.weights, now=datetime.now(timezone.utc)
        )[0]

        requester = await self.profiles.get_profile(user_id)
        user_name = requester.first_name if requester and requester.first_name else "Someone"
        explanation = await generate_rich_explanation(self.llm, result, intent, user_name)
        return ExplainResponse(
            matched_user_id=matched_user_id,
            explanation=_explanation_out(explanation),
            scores=_scores(result),
            match_reasons=result.match_reasons,
        )

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from errors import RetrievalUnavailable
from models.intent import HardFilters, Intent
from models.profile import SUPPORTED_GENDERS, Profile, ProfileStore, matches_filters, target_genders
from services.llm_client import call_with_retry

logger = logging.getLogger(__name__)

SEARCH_VECTOR = "vector"
SEARCH_FILTER = "filter"

# ── Helpers ──────────────────────────────────────────────────────────────

def cosine_sim(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    mag_a = math.sqrt(sum(x * x for x in a))
    mag_b = math.sqrt(sum(x * x for x in b))
    if mag_a == 0.0 or mag_b == 0.0:
        return 0.0
    return dot / (mag_a * mag_b)


@dataclass
class Candidate:
    profile: Profile
    vector_score: float
    filter_match: bool

    @property
    def uid(self) -> str:
        return self.profile.uid


@dataclass
class SearchResult:
    candidates: list[Candidate] = field(default_factory=list)
    total_found: int = 0
    search_method: str = SEARCH_FILTER
    excluded_count: int = 0


# ── Retrieval ────────────────────────────────────────────────────────────

class CandidateRetriever:
    def __init__(self, store: ProfileStore):
        self.store = store

    async def exclusion_set(self, user_id: str, exclude_ids: list[str]) -> set[str]:
        blocked = await call_with_retry(lambda: self.store.get_blocked_ids(user_id), label="block lookup")
        return {user_id, *exclude_ids, *blocked}

    def resolve_filters(self, filters: HardFilters, requester: Optional[Profile]) -> HardFilters:
        """Bind requester-relative filters (same course, default gender targeting)."""
        update: dict = {}
        if filters.same_course:
            update["same_course"] = False
            if requester and requester.course and not filters.course:
                update["course"] = requester.course
        if not filters.gender and requester:
            targets = target_genders(requester.gender, requester.interested_in)
            # Open to everyone: leave profiles without a stated gender in play
            if len(targets) < len(SUPPORTED_GENDERS):
                update["gender"] = targets
        return filters.model_copy(update=update) if update else filters

    async def agent_search(
        self,
        user_id: str,
        intent: Intent,
        embedding: Optional[list[float]],
        limit: int = 20,
        offset: int = 0,
        exclude_ids: Optional[list[str]] = None,
    ) -> SearchResult:
        """Return one page of candidates, most similar first.

        Vector mode needs an embedding; without one, or when the vector
        query fails, the same filters run without similarity ordering.
        Raises RetrievalUnavailable once every fallback is exhausted.
        """
        limit = max(1, min(limit, 50))
        offset = max(0, offset)

        try:
            excluded = await self.exclusion_set(user_id, exclude_ids or [])
            requester = await call_with_retry(lambda: self.store.get_profile(user_id), label="requester lookup")
        except Exception as exc:
            raise RetrievalUnavailable(f"Could not build exclusion list: {exc}") from exc

        filters = self.resolve_filters(intent.hard_filters, requester)
        filter_match = not intent.hard_filters.is_empty()

        scored: Optional[list[Candidate]] = None
        method = SEARCH_FILTER
        if embedding:
            try:
                profiles = await call_with_retry(
                    lambda: self.store.find_candidates(excluded, filters, require_embedding=True),
                    label="vector search",
                )
                scored = [
                    Candidate(p, max(0.0, min(1.0, cosine_sim(embedding, p.embedding))), filter_match)
                    for p in self._admissible(profiles, excluded, filters)
                ]
                method = SEARCH_VECTOR
            except Exception as exc:
                logger.warning("Vector search failed for %s, falling back to filters: %s", user_id, exc)

        if scored is None:
            try:
                profiles = await call_with_retry(
                    lambda: self.store.find_candidates(excluded, filters, require_embedding=False),
                    label="filter search",
                )
            except Exception as exc:
                raise RetrievalUnavailable(f"Candidate retrieval failed: {exc}") from exc
            scored = [Candidate(p, 0.0, filter_match) for p in self._admissible(profiles, excluded, filters)]

        scored.sort(key=lambda c: (-c.vector_score, c.uid))
        page = scored[offset:offset + limit]
        return SearchResult(
            candidates=page,
            total_found=len(scored),
            search_method=method,
            excluded_count=len(excluded),
        )

    @staticmethod
    def _admissible(profiles: list[Profile], excluded: set[str], filters: HardFilters) -> list[Profile]:
        seen: set[str] = set()
        out: list[Profile] = []
        for p in profiles:
            if p.uid in excluded or p.uid in seen:
                continue
            if not p.is_visible or p.deleted_at is not None:
                continue
            if not matches_filters(p, filters):
                continue
            seen.add(p.uid)
            out.append(p)
        return out

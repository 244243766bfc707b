from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

import config


# ── Requests ────────────────────────────────────────────────────────────

class AgentSearchRequest(BaseModel):
    query: str
    limit: int = Field(config.DEFAULT_SEARCH_LIMIT, ge=1, le=config.MAX_SEARCH_LIMIT)
    offset: int = Field(0, ge=0)
    exclude_ids: list[str] = []


class RefineRequest(BaseModel):
    original_query: str
    refinement: str
    previous_match_ids: list[str] = []
    limit: int = Field(config.DEFAULT_SEARCH_LIMIT, ge=1, le=config.MAX_SEARCH_LIMIT)
    offset: int = Field(0, ge=0)


class FeedbackRequest(BaseModel):
    matched_user_id: str
    outcome: str

    @field_validator("outcome")
    @classmethod
    def _known_outcome(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in config.FEEDBACK_RATES:
            raise ValueError(f"outcome must be one of {sorted(config.FEEDBACK_RATES)}")
        return v


class ExplainRequest(BaseModel):
    matched_user_id: str
    query: Optional[str] = None


# ── Responses ───────────────────────────────────────────────────────────

class MatchScores(BaseModel):
    total: float
    vector: int
    alignment: int
    preference: int
    filter_match: bool
    completeness: int
    recency: int


class ExplanationOut(BaseModel):
    tagline: str
    explanation: str
    conversation_starters: list[str] = []
    vibe_emoji: str
    match_percentage: float


class AgentMatch(BaseModel):
    profile: dict
    explanation: ExplanationOut
    scores: MatchScores
    match_reasons: list[str] = []


class IntentSummary(BaseModel):
    vibe: str
    confidence: float
    semantic_query: str
    is_refinement: bool


class SearchMeta(BaseModel):
    total_found: int
    has_more: bool
    next_offset: int
    search_method: str
    latency_ms: int


class AgentSearchResponse(BaseModel):
    commentary: str
    matches: list[AgentMatch]
    refinement_hints: list[str] = []
    intent_summary: IntentSummary
    meta: SearchMeta
    effective_query: Optional[str] = None


class ExplainResponse(BaseModel):
    matched_user_id: str
    explanation: ExplanationOut
    scores: MatchScores
    match_reasons: list[str] = []


class FeedbackResponse(BaseModel):
    status: str = "ok"
    learned_traits: int
    feedback_total: int


class DropMatchOut(BaseModel):
    user_id: str
    score: float
    reasons: list[str] = []
    starters: list[str] = []
    profile: Optional[dict] = None


class DropOut(BaseModel):
    drop_number: int
    status: str
    delivered_at: datetime
    expires_at: datetime
    opened_at: Optional[datetime] = None
    remaining_seconds: int = 0
    match_count: int = 0
    matches: list[DropMatchOut] = []


class CurrentDropResponse(BaseModel):
    drop: Optional[DropOut] = None
    just_opened: bool = False


class DropHistoryResponse(BaseModel):
    drops: list[DropOut]


class FailureTag(BaseModel):
    user_id: str
    stage: str
    error: str


class BatchSummaryResponse(BaseModel):
    drop_number: int
    active_users: int
    processed: int
    failed: int
    empty_results: int
    notifications_sent: int
    expires_at: datetime
    failures: list[FailureTag] = []

import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query

import config
from db import close_db, connect_db, get_db
from errors import (
    AgentError,
    AgentValidationError,
    QuotaExceeded,
    UpstreamUnavailable,
)
from models.agent import (
    AgentSearchRequest,
    AgentSearchResponse,
    BatchSummaryResponse,
    CurrentDropResponse,
    DropHistoryResponse,
    DropMatchOut,
    DropOut,
    ExplainRequest,
    ExplainResponse,
    FailureTag,
    FeedbackRequest,
    FeedbackResponse,
    RefineRequest,
)
from models.agent_context import AgentContextStore, MongoAgentContextStore, wingman_stats
from models.profile import MongoProfileStore, Profile, ProfileStore
from models.weekly_drop import MongoWeeklyDropStore, WeeklyDrop, WeeklyDropStore
from services.agent_pipeline import AgentPipeline
from services.embedder import EmbeddingProvider, GeminiEmbeddingProvider, sync_profile_embedding
from services.events import BackgroundEventSink, EventSink
from services.intent_parser import IntentParser
from services.llm_client import LLMClient, OpenRouterClient
from services.push_notification import FcmNotificationSender, NotificationSender
from services.search_quota import MongoSearchQuota, SearchQuota
from services.weekly_drop import WeeklyDropRunner

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

background_events = BackgroundEventSink()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await connect_db()
    yield
    await background_events.drain()
    await close_db()


app = FastAPI(title="Campus Wingman API", lifespan=lifespan)


# ── Dependencies ───────────────────────────────────────────────────────


def get_profile_store() -> ProfileStore:
    return MongoProfileStore(get_db())


def get_context_store() -> AgentContextStore:
    return MongoAgentContextStore(get_db())


def get_drop_store() -> WeeklyDropStore:
    return MongoWeeklyDropStore(get_db())


def get_search_quota() -> SearchQuota:
    return MongoSearchQuota(get_db())


def get_event_sink() -> EventSink:
    return background_events


def get_embedding_provider() -> EmbeddingProvider:
    return GeminiEmbeddingProvider()


def get_llm() -> Optional[LLMClient]:
    if not config.OPENROUTER_API_KEY:
        return None
    return OpenRouterClient()


@lru_cache
def get_notifier() -> NotificationSender:
    # Cached so the OAuth access token is reused across cron runs
    return FcmNotificationSender()


def get_pipeline(
    profiles: ProfileStore = Depends(get_profile_store),
    contexts: AgentContextStore = Depends(get_context_store),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
    events: EventSink = Depends(get_event_sink),
    llm: Optional[LLMClient] = Depends(get_llm),
) -> AgentPipeline:
    return AgentPipeline(profiles, contexts, IntentParser(llm), provider, events, llm=llm)


def get_drop_runner(
    profiles: ProfileStore = Depends(get_profile_store),
    contexts: AgentContextStore = Depends(get_context_store),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
    drops: WeeklyDropStore = Depends(get_drop_store),
    notifier: NotificationSender = Depends(get_notifier),
    events: EventSink = Depends(get_event_sink),
    llm: Optional[LLMClient] = Depends(get_llm),
) -> WeeklyDropRunner:
    return WeeklyDropRunner(profiles, contexts, IntentParser(llm), provider, drops, notifier, events)


# ── Error mapping ──────────────────────────────────────────────────────


def _http_error(exc: AgentError) -> HTTPException:
    if isinstance(exc, AgentValidationError):
        return HTTPException(status_code=400, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, QuotaExceeded):
        return HTTPException(
            status_code=429,
            detail={"message": str(exc), "limit": exc.limit, "resets_at": exc.resets_at},
        )
    if isinstance(exc, UpstreamUnavailable):
        return HTTPException(status_code=503, detail={"stage": exc.stage, "message": str(exc)})
    logger.error("Agent request failed at %s: %s", exc.stage, exc)
    return HTTPException(status_code=500, detail={"stage": exc.stage, "message": str(exc)})


async def _check_quota(quota: SearchQuota, uid: str) -> None:
    status = await quota.status(uid)
    if status.exhausted:
        raise QuotaExceeded(status.limit, status.resets_at.isoformat())


# ── Agent endpoints ────────────────────────────────────────────────────


@app.post("/students/{uid}/agent/search", response_model=AgentSearchResponse)
async def agent_search(
    uid: str,
    body: AgentSearchRequest,
    pipeline: AgentPipeline = Depends(get_pipeline),
    quota: SearchQuota = Depends(get_search_quota),
    events: EventSink = Depends(get_event_sink),
):
    try:
        await _check_quota(quota, uid)
        response = await pipeline.search(uid, body.query, body.limit, body.offset, body.exclude_ids)
    except AgentError as exc:
        raise _http_error(exc) from exc

    events.submit(
        "track_usage",
        quota.track(uid, "agent_search", {"results": len(response.matches), "method": response.meta.search_method}),
    )
    return response


@app.post("/students/{uid}/agent/refine", response_model=AgentSearchResponse)
async def agent_refine(
    uid: str,
    body: RefineRequest,
    pipeline: AgentPipeline = Depends(get_pipeline),
    quota: SearchQuota = Depends(get_search_quota),
    events: EventSink = Depends(get_event_sink),
):
    try:
        await _check_quota(quota, uid)
        response = await pipeline.refine(
            uid,
            body.original_query,
            body.refinement,
            body.previous_match_ids,
            body.limit,
            body.offset,
        )
    except AgentError as exc:
        raise _http_error(exc) from exc

    events.submit(
        "track_usage",
        quota.track(uid, "agent_refine", {"results": len(response.matches), "method": response.meta.search_method}),
    )
    return response


@app.post("/students/{uid}/agent/feedback", response_model=FeedbackResponse)
async def agent_feedback(uid: str, body: FeedbackRequest, pipeline: AgentPipeline = Depends(get_pipeline)):
    result = await pipeline.record_feedback(uid, body.matched_user_id, body.outcome)
    if result is None:
        raise HTTPException(status_code=404, detail="Matched student not found")
    return result


@app.post("/students/{uid}/agent/explain", response_model=ExplainResponse)
async def agent_explain(uid: str, body: ExplainRequest, pipeline: AgentPipeline = Depends(get_pipeline)):
    try:
        result = await pipeline.explain(uid, body.matched_user_id, body.query)
    except AgentError as exc:
        raise _http_error(exc) from exc
    if result is None:
        raise HTTPException(status_code=404, detail="Matched student not found")
    return result


@app.get("/students/{uid}/agent/context")
async def read_agent_context(
    uid: str,
    contexts: AgentContextStore = Depends(get_context_store),
    quota: SearchQuota = Depends(get_search_quota),
):
    ctx = await contexts.get_agent_context(uid)
    status = await quota.status(uid)
    return {
        **wingman_stats(ctx),
        "usage": {"used": status.used, "limit": status.limit, "remaining": status.remaining},
    }


@app.delete("/students/{uid}/agent/context", status_code=204)
async def clear_agent_context(uid: str, contexts: AgentContextStore = Depends(get_context_store)):
    await contexts.reset_agent_context(uid)


@app.post("/students/{uid}/embedding")
async def refresh_embedding(
    uid: str,
    profiles: ProfileStore = Depends(get_profile_store),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
):
    try:
        dims = await sync_profile_embedding(profiles, provider, uid)
    except AgentError as exc:
        raise _http_error(exc) from exc
    if dims is None:
        raise HTTPException(status_code=404, detail="Student not found")
    return {"uid": uid, "dimensions": dims}


# ── Weekly drop endpoints ──────────────────────────────────────────────


def _drop_out(drop: WeeklyDrop, now: datetime, profiles: Optional[dict] = None) -> DropOut:
    profiles = profiles or {}
    return DropOut(
        drop_number=drop.drop_number,
        status=drop.status,
        delivered_at=drop.delivered_at,
        expires_at=drop.expires_at,
        opened_at=drop.opened_at,
        remaining_seconds=max(0, int((drop.expires_at - now).total_seconds())),
        match_count=len(drop.match_data),
        matches=[
            DropMatchOut(**m.model_dump(), profile=profiles.get(m.user_id))
            for m in drop.match_data
        ],
    )


def _profile_preview(profile: Profile) -> dict:
    return {
        "first_name": profile.first_name,
        "last_name": profile.last_name,
        "age": profile.age,
        "course": profile.course,
        "year_of_study": profile.year_of_study,
        "profile_photo": profile.profile_photo,
        "photos": profile.photos,
    }


@app.get("/students/{uid}/drops/current", response_model=CurrentDropResponse)
async def current_drop(
    uid: str,
    drops: WeeklyDropStore = Depends(get_drop_store),
    profiles: ProfileStore = Depends(get_profile_store),
):
    now = datetime.now(timezone.utc)
    drop, just_opened = await drops.open_current_drop(uid, now)
    if drop is None:
        return CurrentDropResponse()

    matched = await profiles.get_profiles(drop.matched_user_ids)
    previews = {p.uid: _profile_preview(p) for p in matched}
    return CurrentDropResponse(drop=_drop_out(drop, now, previews), just_opened=just_opened)


@app.get("/students/{uid}/drops/history", response_model=DropHistoryResponse)
async def drop_history(
    uid: str,
    limit: int = Query(10, ge=1, le=52),
    drops: WeeklyDropStore = Depends(get_drop_store),
):
    now = datetime.now(timezone.utc)
    history = await drops.get_drop_history(uid, limit)
    return DropHistoryResponse(drops=[_drop_out(d, now) for d in history])


def _authorized_cron(authorization: Optional[str], x_cron_secret: Optional[str]) -> bool:
    if not config.CRON_SECRET:
        return False
    expected = config.CRON_SECRET.encode()
    bearer = authorization[7:] if authorization and authorization.startswith("Bearer ") else None
    return any(
        hmac.compare_digest(expected, candidate.encode())
        for candidate in (bearer, x_cron_secret)
        if candidate is not None
    )


@app.api_route("/cron/weekly-drop", methods=["GET", "POST"], response_model=BatchSummaryResponse)
async def weekly_drop_cron(
    limit: Optional[int] = Query(None, ge=1, le=config.DROP_MAX_RUN_LIMIT),
    authorization: Optional[str] = Header(None),
    x_cron_secret: Optional[str] = Header(None),
    runner: WeeklyDropRunner = Depends(get_drop_runner),
):
    if not _authorized_cron(authorization, x_cron_secret):
        raise HTTPException(status_code=401, detail="Unauthorized cron request")

    summary = await runner.run(limit=limit)
    return BatchSummaryResponse(
        drop_number=summary.drop_number,
        active_users=summary.active_users,
        processed=summary.processed,
        failed=summary.failed,
        empty_results=summary.empty_results,
        notifications_sent=summary.notifications_sent,
        expires_at=summary.expires_at,
        failures=[FailureTag(user_id=u, stage=s, error=e) for u, s, e in summary.failures],
    )

import logging
from dataclasses import dataclass, field
from typing import Optional

from models.intent import Intent, Vibe
from services.llm_client import LLMClient
from services.ranker import RankedResult

logger = logging.getLogger(__name__)

DEFAULT_COMMENTARY = "Here are some people you might vibe with."

VIBE_WORDS = {
    Vibe.chill: "chill souls",
    Vibe.adventurous: "adventure seekers",
    Vibe.intellectual: "big brain matches",
    Vibe.social: "social butterflies",
    Vibe.creative: "creative spirits",
    Vibe.romantic: "hopeless romantics",
    Vibe.ambitious: "goal-getters",
    Vibe.unspecified: "matches",
}

VIBE_EMOJIS = {
    Vibe.chill: "😌",
    Vibe.adventurous: "🏄",
    Vibe.intellectual: "🧠",
    Vibe.social: "🎉",
    Vibe.creative: "🎨",
    Vibe.romantic: "💕",
    Vibe.ambitious: "🚀",
    Vibe.unspecified: "💫",
}

FALLBACK_STARTERS = [
    "What's one thing about campus that surprised you?",
    "Hot take: best food spot on campus?",
]


@dataclass
class MatchExplanation:
    tagline: str
    explanation: str
    conversation_starters: list[str] = field(default_factory=list)
    vibe_emoji: str = "💫"
    match_percentage: float = 0.0


# ── Quick, rule-based explanations ──────────────────────────────────────

def _tagline(result: RankedResult, intent: Intent) -> str:
    score = result.scores.total
    if score >= 80:
        if intent.vibe != Vibe.unspecified:
            return f"Your {intent.vibe.value} match"
        return "Strong connection potential"
    if score >= 60:
        if result.profile.course:
            return f"{result.profile.course} student"
        return "Worth checking out"
    return "Discovered for you"


def _starters(result: RankedResult, intent: Intent) -> list[str]:
    profile = result.profile
    starters: list[str] = []

    shared = [i for i in intent.interests if any(i in pi.lower() for pi in profile.interests)]
    if shared:
        starters.append(f"I see you're into {shared[0]}. What got you started?")
    if profile.course:
        starters.append(f"How's {profile.course} treating you this semester?")
    if profile.prompts:
        snippet = profile.prompts[0].response[:40]
        starters.append(f'Loved your answer about "{snippet}..." Tell me more!')
    if profile.personality_type:
        starters.append(f"Are you really a {profile.personality_type}?")

    return (starters or list(FALLBACK_STARTERS))[:3]


def _emoji(intent: Intent, score: float) -> str:
    if score >= 85:
        return "🔥"
    if score >= 70:
        return "✨"
    return VIBE_EMOJIS[intent.vibe]


def generate_quick_explanations(ranked: list[RankedResult], intent: Intent) -> list[MatchExplanation]:
    """One explanation per result, index-aligned with `ranked`."""
    return [
        MatchExplanation(
            tagline=_tagline(r, intent),
            explanation=". ".join(r.match_reasons[:2]) + ".",
            conversation_starters=_starters(r, intent),
            vibe_emoji=_emoji(intent, r.scores.total),
            match_percentage=r.scores.total,
        )
        for r in ranked
    ]


def generate_result_commentary(count: int, intent: Intent, top_result: Optional[RankedResult]) -> str:
    if count == 0:
        return "Couldn't find anyone matching that vibe right now. Try broadening it a bit?"
    if count <= 3:
        noun = "person" if count == 1 else "people"
        return f"Found {count} {noun} matching your vibe. Quality over quantity 💎"

    summary = f"Found {count} {VIBE_WORDS[intent.vibe]} for you."
    if top_result is not None:
        summary += f" Top match: {top_result.scores.total:.0f}% 🎯"
    return summary


# ── Rich, LLM-written explanation ───────────────────────────────────────

RICH_PROMPT = """You're a friendly campus dating app wingman. Write a match explanation.

SEARCHER: {user_name}
SEARCHED FOR: "{semantic_query}"
VIBE: {vibe}

MATCH PROFILE:
- Name: {first_name}
- Age: {age}
- Course: {course}
- Year: {year}
- Interests: {interests}
- About: {about}
- Personality: {personality}
- Looking for: {looking_for}

MATCH SCORE: {score}/100
MATCH REASONS: {reasons}

Return ONLY valid JSON with EXACTLY these keys. No markdown fences.
{{"tagline": "max 6 words", "summary": "1-2 warm, specific sentences",
"starters": ["3 conversation starters referencing real profile details"], "emoji": "one emoji"}}"""


async def generate_rich_explanation(
    llm: Optional[LLMClient],
    result: RankedResult,
    intent: Intent,
    user_name: str,
) -> MatchExplanation:
    """LLM explanation for one match. Falls back to the quick explanation."""
    quick = generate_quick_explanations([result], intent)[0]
    if llm is None:
        return quick

    p = result.profile
    prompt = RICH_PROMPT.format(
        user_name=user_name,
        semantic_query=intent.semantic_query,
        vibe=intent.vibe.value,
        first_name=p.first_name or "?",
        age=p.age or "?",
        course=p.course or "?",
        year=p.year_of_study or "?",
        interests=", ".join(p.interests) or "not listed",
        about=p.about_me or p.bio or "not listed",
        personality=p.personality_summary or "not available",
        looking_for=p.looking_for or "?",
        score=f"{result.scores.total:.0f}",
        reasons="; ".join(result.match_reasons),
    )
    try:
        data = await llm.complete_json(prompt, temperature=0.7)
    except Exception:
        logger.exception("Rich explanation failed for %s", p.uid)
        return quick

    starters = [str(s) for s in data.get("starters") or [] if s][:3]
    return MatchExplanation(
        tagline=str(data.get("tagline") or quick.tagline),
        explanation=str(data.get("summary") or quick.explanation),
        conversation_starters=starters or quick.conversation_starters,
        vibe_emoji=str(data.get("emoji") or quick.vibe_emoji),
        match_percentage=result.scores.total,
    )

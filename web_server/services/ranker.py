from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Optional

import config
from models.intent import Intent
from models.profile import Profile
from services.retriever import Candidate

FALLBACK_REASON = "Recommended by your wingman"
RECENTLY_ACTIVE = timedelta(days=3)
UNKNOWN_RECENCY = 0.3

# (days since last active, score), first bound that holds wins
RECENCY_STEPS = ((1, 1.0), (3, 0.9), (7, 0.7), (14, 0.5), (30, 0.3))


@dataclass(frozen=True)
class Weights:
    vector: float = config.RANK_WEIGHT_VECTOR
    alignment: float = config.RANK_WEIGHT_ALIGNMENT
    preference: float = config.RANK_WEIGHT_PREFERENCE
    filter: float = config.RANK_WEIGHT_FILTER
    completeness: float = config.RANK_WEIGHT_COMPLETENESS
    recency: float = config.RANK_WEIGHT_RECENCY

    def normalized(self) -> "Weights":
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        total = sum(values.values())
        if total <= 0:
            raise ValueError("All weights cannot be zero")
        return Weights(**{name: value / total for name, value in values.items()})


@dataclass(frozen=True)
class ScoreBreakdown:
    vector: float
    alignment: float
    preference: float
    filter_match: bool
    completeness: float
    recency: float
    total: float


@dataclass
class RankedResult:
    candidate: Candidate
    scores: ScoreBreakdown
    match_reasons: list[str] = field(default_factory=list)

    @property
    def profile(self) -> Profile:
        return self.candidate.profile


# ── Scoring ──────────────────────────────────────────────────────────────

def score_total(
    weights: Weights,
    vector: float,
    alignment: float = 0.5,
    preference: float = 0.5,
    filter_match: bool = False,
    completeness: float = 0.0,
    recency: float = UNKNOWN_RECENCY,
) -> float:
    """Weighted total on a 0-100 scale."""
    w = weights.normalized()
    raw = (
        w.vector * vector
        + w.alignment * alignment
        + w.preference * preference
        + w.filter * (1.0 if filter_match else 0.0)
        + w.completeness * completeness
        + w.recency * recency
    )
    return round(max(0.0, min(1.0, raw)) * 100, 2)


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower().replace("_", " ")


def _share(terms: list[str], text: str) -> float:
    return sum(1 for t in terms if _norm(t) in text) / len(terms)


def alignment_score(profile: Profile, intent: Intent) -> float:
    """How well the profile fits the traits, interests and soft preferences asked for.

    0.5 when the intent asks for none of them.
    """
    score = 0.0
    possible = 0.0

    if intent.interests:
        possible += 1
        profile_interests = [_norm(i) for i in profile.interests]
        shared = [
            i for i in intent.interests
            if any(_norm(i) in pi or pi in _norm(i) for pi in profile_interests if pi)
        ]
        score += len(shared) / len(intent.interests)

    if intent.traits:
        possible += 1
        text = " ".join([_profile_text(profile), _norm(profile.personality_type), _norm(profile.communication_style)])
        score += _share(intent.traits, text)

    for wanted, actual, weight in (
        (intent.looking_for, profile.looking_for, 0.5),
        (intent.communication_style, profile.communication_style, 0.3),
        (intent.love_language, profile.love_language, 0.3),
    ):
        if wanted:
            possible += weight
            if actual and _norm(wanted) in _norm(actual):
                score += weight

    if possible == 0:
        return 0.5
    return min(1.0, score / possible)


def completeness_score(profile: Profile) -> float:
    """Share of the profile sections that are filled in."""
    sections = [
        profile.first_name,
        profile.bio or profile.about_me,
        profile.age,
        profile.gender,
        profile.course,
        profile.year_of_study,
        profile.photos,
        profile.profile_photo,
        profile.interests,
        profile.personality_summary,
        profile.personality_type,
        profile.looking_for,
        profile.qualities,
        profile.prompts,
        profile.communication_style,
        profile.love_language,
    ]
    return sum(1 for s in sections if s) / len(sections)


def recency_score(profile: Profile, now: Optional[datetime]) -> float:
    if now is None or profile.last_active is None:
        return UNKNOWN_RECENCY
    last_active = profile.last_active
    if last_active.tzinfo is None:
        last_active = last_active.replace(tzinfo=timezone.utc)
    days = (now - last_active) / timedelta(days=1)
    for bound, score in RECENCY_STEPS:
        if days <= bound:
            return score
    return 0.1


def preference_score(profile: Profile, learned_preferences: Optional[dict[str, float]]) -> float:
    """Learned weights of the traits this profile exhibits, normalized to [0, 1].

    0.5 is neutral: no learned preferences, or nothing the user has an
    opinion about.
    """
    if not learned_preferences:
        return 0.5
    total_weight = sum(abs(w) for w in learned_preferences.values())
    if total_weight == 0:
        return 0.5
    matched = sum(learned_preferences.get(t, 0.0) for t in set(profile.traits()))
    return max(0.0, min(1.0, 0.5 + 0.5 * matched / total_weight))


def _profile_text(profile: Profile) -> str:
    return " ".join(
        filter(None, [profile.personality_summary, profile.about_me, profile.bio, " ".join(profile.qualities)])
    ).lower()


def match_reasons(
    profile: Profile,
    intent: Intent,
    vector: float,
    learned_preferences: Optional[dict[str, float]],
    now: Optional[datetime] = None,
) -> list[str]:
    """Top three human-readable signals, strongest first."""
    signals: list[tuple[float, str]] = []

    if vector > 0.7:
        signals.append((vector, "Strong match for what you're looking for"))
    elif vector > 0.5:
        signals.append((vector, "Good fit for your vibe"))

    profile_interests = [i.lower() for i in profile.interests]
    shared = [i for i in intent.interests if any(i in pi or pi in i for pi in profile_interests)]
    if shared:
        signals.append((0.6 + 0.05 * len(shared), f"Shared interests: {', '.join(shared[:3])}"))

    about = _profile_text(profile)
    traits = [t for t in intent.traits if t in about]
    if traits:
        signals.append((0.55, f"{traits[0].capitalize()} energy"))

    if learned_preferences:
        liked = sorted(
            ((learned_preferences[t], t) for t in set(profile.traits()) if learned_preferences.get(t, 0) > 0),
            key=lambda wt: (-wt[0], wt[1]),
        )
        if liked:
            weight, trait = liked[0]
            label = trait.split("_", 1)[-1].replace("_", " ")
            signals.append((0.4 + weight * 0.2, f"Similar to people you've liked: {label}"))

    course = intent.hard_filters.course
    if profile.course and (intent.hard_filters.same_course or (course and course.lower() in profile.course.lower())):
        signals.append((0.5, f"Studies {profile.course}"))

    if now is not None and profile.last_active is not None:
        last_active = profile.last_active
        if last_active.tzinfo is None:
            last_active = last_active.replace(tzinfo=timezone.utc)
        if now - last_active <= RECENTLY_ACTIVE:
            signals.append((0.3, "Active on campus this week"))

    if profile.personality_type:
        signals.append((0.1, f"{profile.personality_type} personality type"))

    signals.sort(key=lambda s: (-s[0], s[1]))
    reasons = [reason for _, reason in signals[:3]]
    return reasons or [FALLBACK_REASON]


# ── Main entry point ────────────────────────────────────────────────────

def rank_candidates(
    candidates: list[Candidate],
    intent: Intent,
    learned_preferences: Optional[dict[str, float]] = None,
    weights: Optional[Weights] = None,
    now: Optional[datetime] = None,
) -> list[RankedResult]:
    """Score and sort candidates. Pure: same inputs, same order and scores.

    `now` feeds the recency signal and the recent-activity reason; without
    it every profile gets the same neutral recency.
    """
    weights = weights or Weights()
    results: list[RankedResult] = []
    for cand in candidates:
        signals = {
            "vector": cand.vector_score,
            "alignment": alignment_score(cand.profile, intent),
            "preference": preference_score(cand.profile, learned_preferences),
            "filter_match": cand.filter_match,
            "completeness": completeness_score(cand.profile),
            "recency": recency_score(cand.profile, now),
        }
        scores = ScoreBreakdown(**signals, total=score_total(weights, **signals))
        results.append(
            RankedResult(
                candidate=cand,
                scores=scores,
                match_reasons=match_reasons(cand.profile, intent, cand.vector_score, learned_preferences, now),
            )
        )

    results.sort(key=lambda r: (-r.scores.total, r.candidate.uid))
    return results

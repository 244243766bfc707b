"""Free text to a validated, immutable Intent.

The text-understanding provider is asked for a JSON reading of the query. Its
payload is validated here, at the parse boundary, so downstream stages never
see raw provider output. When the provider is unreachable the parser degrades
to a keyword reading over a fixed vocabulary and never raises.
"""
import json
import logging
import re
from typing import Optional

from pydantic import ValidationError

import config
from errors import AgentValidationError
from models.intent import HardFilters, Intent, Vibe
from services.guardrails import normalize_query
from services.llm_client import LLMClient, call_with_retry

logger = logging.getLogger(__name__)

DEFAULT_BATCH_QUERY = "find me compatible people"

# ── Vocabulary for the keyword fallback ─────────────────────────────────

VIBE_KEYWORDS: dict[Vibe, list[str]] = {
    Vibe.chill: ["chill", "relaxed", "laid back", "calm", "easygoing", "low key"],
    Vibe.adventurous: ["adventurous", "adventure", "spontaneous", "travel", "hiking", "outdoorsy"],
    Vibe.intellectual: ["smart", "intellectual", "nerdy", "deep talks", "academic", "studious", "bookworm"],
    Vibe.social: ["outgoing", "social", "extrovert", "party", "fun", "bubbly"],
    Vibe.creative: ["creative", "artsy", "artistic", "music", "design", "writer", "photography"],
    Vibe.romantic: ["romantic", "relationship", "serious", "love", "sweet", "caring"],
    Vibe.ambitious: ["ambitious", "driven", "hustler", "goal", "entrepreneur", "career"],
}

TRAIT_VOCABULARY = [
    "outgoing", "extrovert", "introvert", "funny", "kind", "ambitious", "creative",
    "spontaneous", "chill", "adventurous", "romantic", "sporty", "studious", "calm",
    "confident", "caring", "honest", "driven", "artsy", "nerdy", "academically focused",
]

INTEREST_VOCABULARY = [
    "music", "movies", "fitness", "gym", "hiking", "football", "basketball", "art",
    "reading", "gaming", "cooking", "travel", "dancing", "photography", "fashion",
    "faith", "coffee", "anime", "tech", "poetry",
]

_FEMALE = re.compile(r"\b(girls?|women|woman|ladies|lady|female)\b", re.IGNORECASE)
_MALE = re.compile(r"\b(guys?|men|man|boys?|male)\b", re.IGNORECASE)
_SAME_COURSE = re.compile(r"\bsame\s+(course|program|programme|major)\b", re.IGNORECASE)
_YEAR_NUM = re.compile(r"\b([1-7])(?:st|nd|rd|th)[\s-]+years?\b", re.IGNORECASE)
_YEAR_WORDS = {"first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5}
_YEAR_WORD = re.compile(r"\b(first|second|third|fourth|fifth)[\s-]+years?\b", re.IGNORECASE)
_AGE_RANGE = re.compile(r"\b(?:aged?|between|ages)\s*(\d{2})\s*(?:-|to|and)\s*(\d{2})\b", re.IGNORECASE)
_NON_SMOKER = re.compile(
    r"\b(non[\s-]?smok\w*|(?:doesn'?t|does not|don'?t|do not|never) smoke)\b", re.IGNORECASE
)
_NON_DRINKER = re.compile(
    r"\b(non[\s-]?drink\w*|sober|(?:doesn'?t|does not|don'?t|do not|never) drinks?)\b", re.IGNORECASE
)
_SOCIAL_DRINKER = re.compile(r"\b(social drinker|drinks? socially)\b", re.IGNORECASE)
_RELIGION = re.compile(r"\b(christian|catholic|muslim|hindu|adventist)s?\b", re.IGNORECASE)

LOOKING_FOR_KEYWORDS = {
    "relationship": ["relationship", "something serious", "long term"],
    "friends": ["friends", "friendship"],
    "casual": ["casual", "nothing serious"],
}
COMMUNICATION_KEYWORDS = {
    "deep_talks": ["deep talks", "deep conversations"],
    "memes": ["memes"],
    "calls": ["calls", "phone calls"],
}
LOVE_LANGUAGE_KEYWORDS = {
    "words": ["words of affirmation"],
    "touch": ["physical touch"],
    "time": ["quality time"],
    "gifts": ["gifts", "gift giving"],
    "acts": ["acts of service"],
}

INTENT_PROMPT = """You are the intent parser for a university dating app's AI matchmaker.
Parse the user's query into JSON used to search student profiles.

RULES:
- Extract hard filters ONLY if explicitly mentioned. Never invent filters.
- "same course" means same_course=true, not a course name.
- Extract soft traits and interests from implied meaning.
- looking_for, communication_style and love_language are soft preferences, never filters.
- semantic_query: 2-3 sentences describing the ideal match as a person.
- confidence: 0 to 1, how well you understood the query.
- vibe: one of chill, adventurous, intellectual, social, creative, romantic, ambitious, unspecified.{hints}

User query: "{query}"

Return ONLY valid JSON with this structure. No markdown fences.
{{
  "vibe": "string",
  "filters": {{
    "gender": ["string"] | null,
    "year_of_study": [number] | null,
    "course": "string" | null,
    "same_course": boolean,
    "university": "string" | null,
    "age_min": number | null,
    "age_max": number | null,
    "religion": "string" | null,
    "smoking": "yes" | "no" | "sometimes" | null,
    "drinking": "never" | "socially" | "regularly" | null
  }},
  "refinement_filters": {{same keys as filters}} | null,
  "traits": ["string"],
  "interests": ["string"],
  "looking_for": "relationship" | "friends" | "casual" | null,
  "communication_style": "deep_talks" | "memes" | "calls" | null,
  "love_language": "words" | "touch" | "time" | "gifts" | "acts" | null,
  "semantic_query": "string",
  "confidence": number
}}"""


# ── Keyword reading ──────────────────────────────────────────────────────

def extract_keyword_filters(text: str) -> HardFilters:
    """Regex extraction of the hard filters a query states outright."""
    fields: dict = {}
    genders = []
    if _FEMALE.search(text):
        genders.append("female")
    if _MALE.search(text):
        genders.append("male")
    if len(genders) == 1:
        fields["gender"] = genders
    if _SAME_COURSE.search(text):
        fields["same_course"] = True

    years = {int(m) for m in _YEAR_NUM.findall(text)}
    years |= {_YEAR_WORDS[w.lower()] for w in _YEAR_WORD.findall(text)}
    if years:
        fields["year_of_study"] = sorted(years)

    age = _AGE_RANGE.search(text)
    if age:
        low, high = sorted(int(a) for a in age.groups())
        fields["age_min"], fields["age_max"] = low, high

    if _NON_SMOKER.search(text):
        fields["smoking"] = "no"
    if _NON_DRINKER.search(text):
        fields["drinking"] = "never"
    elif _SOCIAL_DRINKER.search(text):
        fields["drinking"] = "socially"
    religion = _RELIGION.search(text)
    if religion:
        fields["religion"] = religion.group(1)

    try:
        return HardFilters(**fields)
    except ValidationError:
        return HardFilters()


def _contains_term(text: str, term: str) -> bool:
    return re.search(rf"\b{re.escape(term)}\b", text) is not None


def _first_match(lowered: str, vocabulary: dict[str, list[str]]) -> Optional[str]:
    for value, phrases in vocabulary.items():
        if any(_contains_term(lowered, p) for p in phrases):
            return value
    return None


def keyword_intent(text: str, is_refinement: bool = False) -> Intent:
    """Build an Intent from the fixed vocabulary alone. Never calls a provider."""
    normalized = normalize_query(text)
    lowered = normalized.lower()

    best_vibe, best_hits = Vibe.unspecified, 0
    for vibe, words in VIBE_KEYWORDS.items():
        hits = sum(1 for w in words if _contains_term(lowered, w))
        if hits > best_hits:
            best_vibe, best_hits = vibe, hits

    traits = [t for t in TRAIT_VOCABULARY if _contains_term(lowered, t)]
    interests = [i for i in INTEREST_VOCABULARY if _contains_term(lowered, i)]
    filters = extract_keyword_filters(normalized)
    soft = {
        "looking_for": _first_match(lowered, LOOKING_FOR_KEYWORDS),
        "communication_style": _first_match(lowered, COMMUNICATION_KEYWORDS),
        "love_language": _first_match(lowered, LOVE_LANGUAGE_KEYWORDS),
    }

    signals = (
        len(traits)
        + len(interests)
        + len(filters.set_fields())
        + sum(1 for v in soft.values() if v)
        + (1 if best_hits else 0)
    )
    confidence = min(0.6, 0.2 + 0.1 * signals)

    return Intent(
        raw_query=normalized,
        semantic_query=normalized,
        vibe=best_vibe,
        hard_filters=filters,
        traits=traits,
        interests=interests,
        **soft,
        confidence=confidence,
        is_refinement=is_refinement,
    )


# ── Provider payload → Intent ────────────────────────────────────────────

def _coerce_filters(raw: object, text: str) -> HardFilters:
    if not isinstance(raw, dict):
        return extract_keyword_filters(text)
    fields = {k: v for k, v in raw.items() if v is not None and k in HardFilters.model_fields}
    try:
        return HardFilters(**fields)
    except ValidationError as exc:
        logger.warning("Discarding invalid provider filters %s: %s", fields, exc)
        return extract_keyword_filters(text)


def _as_terms(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def _as_text(value: object) -> Optional[str]:
    return str(value) if isinstance(value, str) and value.strip() else None


def refinement_filters_from_payload(payload: dict) -> HardFilters:
    """Filters the provider read from the refinement part of the text only."""
    raw = payload.get("refinement_filters")
    if not isinstance(raw, dict):
        return HardFilters()
    fields = {k: v for k, v in raw.items() if v is not None and k in HardFilters.model_fields}
    try:
        return HardFilters(**fields)
    except ValidationError as exc:
        logger.warning("Discarding invalid refinement filters %s: %s", fields, exc)
        return HardFilters()


def intent_from_payload(payload: dict, text: str, is_refinement: bool = False) -> Intent:
    """Validate a provider payload. Low confidence degrades to the raw text."""
    normalized = normalize_query(text)

    try:
        confidence = float(payload.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    confidence = max(0.0, min(1.0, confidence))

    try:
        vibe = Vibe(str(payload.get("vibe", "unspecified")).strip().lower())
    except ValueError:
        vibe = Vibe.unspecified

    semantic_query = str(payload.get("semantic_query") or "").strip() or normalized
    if confidence < config.LOW_CONFIDENCE_THRESHOLD:
        vibe = Vibe.unspecified
        semantic_query = normalized

    return Intent(
        raw_query=normalized,
        semantic_query=semantic_query,
        vibe=vibe,
        hard_filters=_coerce_filters(payload.get("filters"), normalized),
        traits=_as_terms(payload.get("traits")) + _as_terms(payload.get("personality")),
        interests=_as_terms(payload.get("interests")),
        looking_for=_as_text(payload.get("looking_for")),
        communication_style=_as_text(payload.get("communication_style")),
        love_language=_as_text(payload.get("love_language")),
        confidence=confidence,
        is_refinement=is_refinement,
    )


def merge_refinement(previous: Intent, refined: Intent, overrides: Optional[HardFilters] = None) -> Intent:
    """Combine a refinement with the intent it refines.

    `refined` is the reading of the combined "<previous>, but <refinement>"
    text, so its filters still carry the previous constraints. `overrides`
    are the filters stated in the refinement text alone. Per field, most
    recent wins: overrides replace the previous value, the previous value
    replaces the combined reading, and the combined reading only fills
    fields neither of them sets.
    """
    overrides = overrides or HardFilters()
    merged_fields = {
        **refined.hard_filters.set_fields(),
        **previous.hard_filters.set_fields(),
        **overrides.set_fields(),
    }
    try:
        filters = HardFilters(**merged_fields)
    except ValidationError:
        filters = overrides if not overrides.is_empty() else previous.hard_filters

    return refined.model_copy(
        update={
            "vibe": refined.vibe if refined.vibe != Vibe.unspecified else previous.vibe,
            "hard_filters": filters,
            "traits": list(dict.fromkeys(previous.traits + refined.traits)),
            "interests": list(dict.fromkeys(previous.interests + refined.interests)),
            "looking_for": refined.looking_for or previous.looking_for,
            "communication_style": refined.communication_style or previous.communication_style,
            "love_language": refined.love_language or previous.love_language,
            "is_refinement": True,
        }
    )


def _describe_trait(trait: str) -> str:
    for prefix, label in (
        ("interest_", "into "),
        ("course_", "studying "),
        ("personality_", ""),
        ("communication_", "who like "),
    ):
        if trait.startswith(prefix):
            return label + trait[len(prefix):].replace("_", " ")
    return trait.replace("_", " ")


def intent_query_from_preferences(learned_preferences: Optional[dict[str, float]]) -> str:
    """Batch query text built from the three strongest positive learned traits."""
    positive = [(k, w) for k, w in (learned_preferences or {}).items() if w > 0]
    if not positive:
        return DEFAULT_BATCH_QUERY
    top = sorted(positive, key=lambda kv: (-kv[1], kv[0]))[:3]
    return f"{DEFAULT_BATCH_QUERY} who are {', '.join(_describe_trait(k) for k, _ in top)}"


# ── Parser ───────────────────────────────────────────────────────────────

class IntentParser:
    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm

    def _prompt(self, text: str, learned_preferences: dict[str, float], is_refinement: bool = False) -> str:
        hints = ""
        if is_refinement:
            hints += (
                "\n- This is a refinement. The text after the last \", but\" is the newest request;"
                " put the constraints it states in refinement_filters, leave refinement_filters null if none."
            )
        if learned_preferences:
            strongest = sorted(learned_preferences.items(), key=lambda kv: (-abs(kv[1]), kv[0]))[:8]
            hints += f"\n- Learned preferences (trait: weight): {json.dumps(dict(strongest))}"
        return INTENT_PROMPT.format(hints=hints, query=text.replace('"', "'"))

    async def parse_intent(
        self,
        query: str,
        previous_intent: Optional[Intent] = None,
        learned_preferences: Optional[dict[str, float]] = None,
    ) -> Intent:
        """Parse `query`, or refine `previous_intent` with it.

        Raises AgentValidationError for empty or oversized text. Provider
        failures never propagate.
        """
        query = normalize_query(query or "")
        if not query:
            raise AgentValidationError("Query is required", code="empty")

        is_refinement = previous_intent is not None
        text = f"{previous_intent.raw_query}, but {query}" if is_refinement else query
        if len(text) > config.MAX_QUERY_LENGTH:
            raise AgentValidationError(
                f"Query too long (max {config.MAX_QUERY_LENGTH} chars)", code="too_long"
            )

        intent, provider_overrides = await self._read(text, is_refinement, learned_preferences or {})
        if previous_intent is not None:
            overrides = _combine_filters(provider_overrides, extract_keyword_filters(query))
            intent = merge_refinement(previous_intent, intent, overrides)
        return intent

    async def _read(
        self, text: str, is_refinement: bool, learned_preferences: dict[str, float]
    ) -> tuple[Intent, HardFilters]:
        """Intent for `text`, plus the filters read from the refinement part alone."""
        if self.llm is None:
            return keyword_intent(text, is_refinement), HardFilters()

        prompt = self._prompt(text, learned_preferences, is_refinement)
        try:
            payload = await call_with_retry(
                lambda: self.llm.complete_json(prompt, temperature=0.1),
                label="intent provider",
            )
        except Exception as exc:
            logger.warning("Intent provider unavailable, using keyword reading: %s", exc)
            return keyword_intent(text, is_refinement), HardFilters()

        try:
            intent = intent_from_payload(payload, text, is_refinement)
        except ValidationError as exc:
            logger.warning("Intent payload failed validation, using keyword reading: %s", exc)
            return keyword_intent(text, is_refinement), HardFilters()
        overrides = refinement_filters_from_payload(payload) if is_refinement else HardFilters()
        return intent, overrides


def _combine_filters(provider: HardFilters, keywords: HardFilters) -> HardFilters:
    """Keyword matches on the refinement text win over the provider's reading."""
    try:
        return HardFilters(**{**provider.set_fields(), **keywords.set_fields()})
    except ValidationError:
        return keywords

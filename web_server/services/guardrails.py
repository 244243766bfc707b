import re
from dataclasses import dataclass
from typing import Optional

HELP_MESSAGE = (
    "I can only help with campus match requests. "
    "Try something like: 'someone funny, ambitious, and into music'."
)

PROMPT_INJECTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"ignore\s+(all\s+)?(previous|prior|above)\s+instructions",
        r"system\s+prompt",
        r"developer\s+mode",
        r"jailbreak",
        r"reveal\s+(your\s+)?(prompt|instructions|rules)",
        r"show\s+me\s+your\s+(prompt|chain[- ]of[- ]thought)",
        r"(api\s*key|access\s*token|secret|password)",
        r"(drop\s+table|select\s+\*\s+from|union\s+select)",
        r"<script|javascript:",
    ]
]

OFFTOPIC_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"\b(code|debug|compile|deploy|backend|server|database|sql|javascript|python|typescript|aws|azure|linux|windows|hack|exploit|phish|malware)\b",
        r"\b(stock|crypto|bitcoin|forex|bet|casino|lottery|trading)\b",
        r"\b(homework|exam\s+answers?|assignment\s+solutions?)\b",
        r"https?://",
    ]
]

DATING_CONTEXT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"\b(match|dating|date|relationship|partner|girlfriend|boyfriend|campus|student)\b",
        r"\b(looking\s+for|someone\s+who|person\s+who|people\s+who|vibe|chemistry|connection)\b",
        r"\b(funny|kind|ambitious|creative|sporty|introvert|extrovert|outgoing|music|movies|study|faith|fitness)\b",
    ]
]

_ZERO_WIDTH = re.compile("[\u200b-\u200d\ufeff]")


@dataclass
class GuardrailDecision:
    allowed: bool
    normalized_query: str
    code: Optional[str] = None
    user_message: Optional[str] = None


def normalize_query(text: str) -> str:
    return re.sub(r"\s+", " ", _ZERO_WIDTH.sub("", text)).strip()


def _looks_like_gibberish(text: str) -> bool:
    if re.fullmatch(r"(.)\1{6,}", text):
        return True
    letters = len(re.findall(r"[a-z]", text, re.IGNORECASE))
    digits = len(re.findall(r"\d", text))
    symbols = len(re.findall(r"[^a-z0-9\s]", text, re.IGNORECASE))
    total = len(text)
    if total == 0:
        return True
    return letters / total < 0.25 or (digits + symbols) / total > 0.65


def evaluate_query(raw: str) -> GuardrailDecision:
    query = normalize_query(raw or "")

    def reject(code: str) -> GuardrailDecision:
        return GuardrailDecision(False, query, code, HELP_MESSAGE)

    if not query:
        return reject("empty")
    if len(query) < 3:
        return reject("too_short")
    if _looks_like_gibberish(query):
        return reject("gibberish")
    if any(p.search(query) for p in PROMPT_INJECTION_PATTERNS):
        return reject("prompt_injection")

    offtopic = any(p.search(query) for p in OFFTOPIC_PATTERNS)
    dating = any(p.search(query) for p in DATING_CONTEXT_PATTERNS)
    if offtopic and not dating:
        return reject("out_of_scope")

    return GuardrailDecision(True, query)

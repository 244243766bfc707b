import os

from dotenv import load_dotenv

load_dotenv()


def _positive_int(name: str, fallback: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return fallback
    try:
        value = int(float(raw))
    except ValueError:
        return fallback
    return value if value > 0 else fallback


def _float(name: str, fallback: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return fallback
    try:
        return float(raw)
    except ValueError:
        return fallback


# ── Storage ─────────────────────────────────────────────────────────────
MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "wingman")

# ── Providers ───────────────────────────────────────────────────────────
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
INTENT_MODEL = os.getenv("INTENT_MODEL", "google/gemini-2.0-flash-001")

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "models/gemini-embedding-001")

PROVIDER_RETRY_BACKOFF_SECONDS = _float("PROVIDER_RETRY_BACKOFF_SECONDS", 0.5)

# ── Push ────────────────────────────────────────────────────────────────
GOOGLE_SERVICE_ACCOUNT_JSON = os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON")
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")

# ── Agent ───────────────────────────────────────────────────────────────
MAX_QUERY_LENGTH = 700
MAX_SEARCH_LIMIT = 50
DEFAULT_SEARCH_LIMIT = 20
AGENT_DAILY_SEARCH_LIMIT = _positive_int("AGENT_DAILY_SEARCH_LIMIT", 10)
LOW_CONFIDENCE_THRESHOLD = _float("LOW_CONFIDENCE_THRESHOLD", 0.35)

# Ranking weights, normalized in services.ranker.Weights
RANK_WEIGHT_VECTOR = _float("RANK_WEIGHT_VECTOR", 0.35)
RANK_WEIGHT_ALIGNMENT = _float("RANK_WEIGHT_ALIGNMENT", 0.20)
RANK_WEIGHT_PREFERENCE = _float("RANK_WEIGHT_PREFERENCE", 0.15)
RANK_WEIGHT_FILTER = _float("RANK_WEIGHT_FILTER", 0.10)
RANK_WEIGHT_COMPLETENESS = _float("RANK_WEIGHT_COMPLETENESS", 0.10)
RANK_WEIGHT_RECENCY = _float("RANK_WEIGHT_RECENCY", 0.10)

# Learned-preference nudges per feedback outcome
FEEDBACK_RATES = {
    "connect": 0.3,
    "amazing": 0.3,
    "like": 0.1,
    "nice": 0.1,
    "meh": -0.05,
    "pass": -0.05,
    "not_for_me": -0.2,
}
PREFERENCE_WEIGHT_BOUND = 1.0

# ── Weekly drop ─────────────────────────────────────────────────────────
CRON_SECRET = os.getenv("CRON_SECRET")
DROP_TIMEZONE = os.getenv("DROP_TIMEZONE", "Africa/Nairobi")
DROP_ACTIVE_WINDOW_DAYS = 14
DROP_TTL_HOURS = 48
DROP_MIN_MATCHES = 3
DROP_MAX_MATCHES = 7
DROP_SEARCH_LIMIT = 20
DROP_MAX_RUN_LIMIT = 1000
WEEKLY_DROP_CONCURRENCY = min(_positive_int("WEEKLY_DROP_CONCURRENCY", 5), 10)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

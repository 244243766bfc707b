import hashlib
import logging
from typing import Optional

import httpx

import config
from errors import EmbeddingUnavailable
from models.intent import Intent
from models.profile import ProfileStore
from services.llm_client import call_with_retry

logger = logging.getLogger(__name__)


class EmbeddingProvider:
    """Text to a fixed-length vector."""

    async def embed(self, text: str) -> list[float]:
        raise NotImplementedError


class GeminiEmbeddingProvider(EmbeddingProvider):
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, timeout: float = 15.0):
        self.api_key = api_key if api_key is not None else config.GEMINI_API_KEY
        self.model = model or config.EMBEDDING_MODEL
        self.timeout = timeout

    async def embed(self, text: str) -> list[float]:
        if not self.api_key:
            raise RuntimeError("GEMINI_API_KEY is not set")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                f"https://generativelanguage.googleapis.com/v1beta/{self.model}:embedContent",
                params={"key": self.api_key},
                json={"model": self.model, "content": {"parts": [{"text": text}]}},
            )
            resp.raise_for_status()

        values = resp.json()["embedding"]["values"]
        if not values:
            raise ValueError("Provider returned an empty embedding")
        return [float(v) for v in values]


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class IntentEmbedder:
    """Embeds intents, caching by content hash for the lifetime of one run."""

    def __init__(self, provider: EmbeddingProvider):
        self.provider = provider
        self._cache: dict[str, list[float]] = {}

    async def embed_intent(self, intent: Intent) -> list[float]:
        key = content_hash(intent.content_key())
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        text = intent.semantic_query
        if intent.vibe.value != "unspecified":
            text = f"{text} Vibe: {intent.vibe.value}."
        try:
            vector = await call_with_retry(lambda: self.provider.embed(text), label="embedding provider")
        except Exception as exc:
            raise EmbeddingUnavailable(f"Embedding provider failed: {exc}") from exc

        self._cache[key] = vector
        return vector


async def sync_profile_embedding(store: ProfileStore, provider: EmbeddingProvider, uid: str) -> Optional[int]:
    """Re-embed one profile's descriptive text. Returns the vector size, or None if missing."""
    profile = await store.get_profile(uid)
    if profile is None:
        return None
    try:
        vector = await call_with_retry(lambda: provider.embed(profile.embedding_text()), label="embedding provider")
    except Exception as exc:
        raise EmbeddingUnavailable(f"Embedding provider failed: {exc}") from exc
    await store.set_embedding(uid, vector)
    logger.info("Updated embedding for %s (%d dims)", uid, len(vector))
    return len(vector)

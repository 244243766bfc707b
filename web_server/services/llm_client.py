import asyncio
import json
import logging
import re
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

import config

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    label: str,
    attempts: int = 2,
    backoff: Optional[float] = None,
) -> T:
    """Await `func()`, retrying with linear backoff. Re-raises the last error."""
    delay = config.PROVIDER_RETRY_BACKOFF_SECONDS if backoff is None else backoff
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except Exception as exc:
            if attempt == attempts:
                raise
            logger.warning("%s failed (attempt %d/%d): %s", label, attempt, attempts, exc)
            await asyncio.sleep(delay * attempt)
    raise RuntimeError("unreachable")


def strip_fences(content: str) -> str:
    """Remove markdown code fences an LLM may wrap around JSON."""
    content = re.sub(r"^```(?:json)?\s*", "", content.strip())
    content = re.sub(r"\s*```$", "", content.strip())
    return content.strip()


class LLMClient:
    """Text-understanding provider: prompt in, JSON object out."""

    async def complete_json(self, prompt: str, temperature: float = 0.1) -> dict:
        raise NotImplementedError


class OpenRouterClient(LLMClient):
    """Chat completions via OpenRouter. Raises on transport, HTTP or JSON errors."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 20.0,
    ):
        self.api_key = api_key if api_key is not None else config.OPENROUTER_API_KEY
        self.model = model or config.INTENT_MODEL
        self.timeout = timeout

    async def complete_json(self, prompt: str, temperature: float = 0.1) -> dict:
        if not self.api_key:
            raise RuntimeError("OPENROUTER_API_KEY is not set")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                config.OPENROUTER_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "temperature": temperature,
                },
            )
            resp.raise_for_status()

        content = resp.json()["choices"][0]["message"]["content"]
        data = json.loads(strip_fences(content))
        if not isinstance(data, dict):
            raise ValueError("Expected a JSON object from the model")
        return data

import logging
from typing import Any, List, Optional

import openai
from openai import AsyncOpenAI

from prreview.common.config import (
    CHAT_MODEL, EMBED_MODEL, LLM_MAX_RETRIES, LLM_MAX_TOKENS,
    LLM_RETRY_BASE_DELAY, LLM_TEMPERATURE
)
from prreview.common.errors import ErrorKind, ReviewError, upstream_error
from prreview.common.retry import with_backoff

logger = logging.getLogger(__name__)


def _translate(exc: Exception) -> ReviewError:
    """Turn an OpenAI SDK exception into a ReviewError with status."""
    if isinstance(exc, openai.APIStatusError):
        return upstream_error(f"OpenAI API error: {exc.message}", exc.status_code)
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return ReviewError(ErrorKind.UPSTREAM, f"OpenAI connection error: {exc}", retryable=True)
    return upstream_error(f"OpenAI API error: {exc}")


class OpenAIProvider:
    """Chat completion and embedding calls with rate-limit backoff."""

    def __init__(
        self,
        client: Optional[Any] = None,
        chat_model: str = CHAT_MODEL,
        embed_model: str = EMBED_MODEL,
        max_retries: int = LLM_MAX_RETRIES,
        base_delay: float = LLM_RETRY_BASE_DELAY,
    ) -> None:
        self.client = client or AsyncOpenAI()
        self.chat_model = chat_model
        self.embed_model = embed_model
        self.max_retries = max_retries
        self.base_delay = base_delay

    async def _retrying(self, call, label: str):
        async def attempt():
            try:
                return await call()
            except openai.OpenAIError as e:
                raise _translate(e) from e

        return await with_backoff(
            attempt,
            attempts=self.max_retries,
            base_delay=self.base_delay,
            label=label
        )

    async def complete(self, prompt: str) -> str:
        """Single-turn completion; empty responses are upstream errors."""
        async def call():
            resp = await self.client.chat.completions.create(
                model=self.chat_model,
                messages=[{"role": "user", "content": prompt}],
                temperature=LLM_TEMPERATURE,
                max_tokens=LLM_MAX_TOKENS
            )
            text = resp.choices[0].message.content if resp.choices else None
            if not text:
                raise upstream_error("Empty response from language model")
            return text

        return await self._retrying(call, "chat completion")

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        """Embed several documents in one request, preserving order."""
        async def call():
            resp = await self.client.embeddings.create(model=self.embed_model, input=texts)
            data = sorted(resp.data, key=lambda d: d.index)
            return [d.embedding for d in data]

        return await self._retrying(call, "embedding")

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Rough token estimate, ~4 characters per token."""
        return (len(text) + 3) // 4

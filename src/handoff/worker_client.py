"""Async chat-completions client used by the default workers.

Talks to any OpenAI-compatible endpoint (Ollama by default). Transient
failures are retried with exponential backoff; everything else surfaces
to the orchestrator, which turns it into an unavailable worker response.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
from typing import Any

import httpx

from .config import WorkerClientConfig

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({429, 502, 503, 504})


def backoff_delay(attempt: int, base: float = 0.5, jitter: bool = True) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    delay = base * (2**attempt)
    if jitter:
        delay += random.uniform(0, 0.1 * delay)
    return delay


class WorkerClient:
    """
    Shared HTTP client for all workers.

    A semaphore caps in-flight requests across every worker that holds
    this client. ``HANDOFF_RETRY_MAX`` bounds the attempts per request.
    """

    def __init__(self, config: WorkerClientConfig):
        self.config = config
        self.semaphore = asyncio.Semaphore(config.max_concurrency)
        self.retry_max = max(1, int(os.getenv("HANDOFF_RETRY_MAX", "4")))

    def _headers(self) -> dict[str, str]:
        token = os.getenv(self.config.api_key_env, "") if self.config.api_key_env else ""
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def chat_completion(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
    ) -> dict[str, Any]:
        """
        POST one chat-completions request.

        Raises:
            RuntimeError: Network disabled, or every attempt failed
            httpx.HTTPStatusError: A non-retryable error status
        """
        if os.getenv("HANDOFF_DISABLE_NETWORK") == "1":
            raise RuntimeError("Network access disabled (HANDOFF_DISABLE_NETWORK=1)")

        body = {
            "model": self.config.model_id,
            "messages": messages,
            "temperature": self.config.temperature if temperature is None else temperature,
        }
        url = f"{self.config.base_url.rstrip('/')}/chat/completions"
        last_failure = "no attempt made"

        async with self.semaphore:
            for attempt in range(self.retry_max):
                final = attempt == self.retry_max - 1
                try:
                    async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as http:
                        response = await http.post(url, json=body, headers=self._headers())
                except (httpx.NetworkError, httpx.TimeoutException) as e:
                    last_failure = type(e).__name__
                    if final:
                        raise RuntimeError(
                            f"Network error after {self.retry_max} attempts: {last_failure}"
                        ) from e
                    await asyncio.sleep(backoff_delay(attempt, jitter=False))
                    continue

                if response.status_code == 200:
                    return response.json()
                if response.status_code not in RETRYABLE_STATUS:
                    response.raise_for_status()

                last_failure = f"HTTP {response.status_code}"
                logger.debug("Worker endpoint returned %s (attempt %d)", last_failure, attempt + 1)
                if not final:
                    await asyncio.sleep(backoff_delay(attempt))

        raise RuntimeError(f"Gave up after {self.retry_max} attempts (last: {last_failure})")

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        """Return the assistant message text for a two-message exchange."""
        response = await self.chat_completion(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ]
        )
        try:
            return str(response["choices"][0]["message"]["content"] or "")
        except (KeyError, IndexError, TypeError):
            # The contract layer turns an empty answer into a malformed response.
            return ""

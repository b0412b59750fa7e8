"""Language-model capability: system prompt + transcript -> text + token usage."""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Optional

import anthropic
from anthropic import Anthropic

from backend.errors import LLMNotConfiguredError, TransientUpstreamError, UpstreamError

logger = logging.getLogger(__name__)

# Provider statuses that mean "try again shortly"
TRANSIENT_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504, 529}


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class Completion:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    duration_ms: int = 0


class LLMClient:
    """Interface of the model capability; tests substitute a scripted fake."""

    async def complete(
        self,
        system: str,
        messages: list[dict],
        model: str,
        max_tokens: int,
        temperature: float = 1.0,
    ) -> Completion:
        raise NotImplementedError


class AnthropicLLM(LLMClient):
    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self._api_key = api_key
        self._timeout = timeout if timeout is not None else float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
        self._client: Optional[Anthropic] = None

    def _get_client(self) -> Anthropic:
        if self._client is None:
            api_key = self._api_key or os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                raise LLMNotConfiguredError()
            # Retries happen one level up so they never re-run a charge
            self._client = Anthropic(api_key=api_key, timeout=self._timeout, max_retries=0)
        return self._client

    async def complete(
        self,
        system: str,
        messages: list[dict],
        model: str,
        max_tokens: int,
        temperature: float = 1.0,
    ) -> Completion:
        client = self._get_client()
        started = time.monotonic()
        try:
            response = await asyncio.to_thread(
                client.messages.create,
                model=model,
                max_tokens=max_tokens,
                system=system,
                messages=messages,
                temperature=temperature,
            )
        except anthropic.APIConnectionError as e:
            # Includes APITimeoutError
            logger.warning(f"Model call to {model} failed to connect: {e}")
            raise TransientUpstreamError("The AI service is unreachable right now. Please try again.") from e
        except anthropic.APIStatusError as e:
            if e.status_code in TRANSIENT_STATUS_CODES:
                logger.warning(f"Model call to {model} returned {e.status_code}")
                raise TransientUpstreamError("The AI service is busy right now. Please try again.") from e
            logger.error(f"Model call to {model} rejected with status {e.status_code}: {e}")
            raise UpstreamError(f"The AI service rejected the request (status {e.status_code}).") from e

        text = "".join(block.text for block in response.content if getattr(block, "type", None) == "text")
        usage = TokenUsage(
            input_tokens=getattr(response.usage, "input_tokens", 0) or 0,
            output_tokens=getattr(response.usage, "output_tokens", 0) or 0,
        )
        return Completion(
            text=text,
            usage=usage,
            model=model,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

# backend/docchat/core/llm/llm_client.py
"""Generation Invoker: Anthropic Claude chat completion with bounded retries.

Two layers:
- ChatLLMClient: one request/response against the Messages API. The SDK's own
  retries are disabled so the retry budget lives in one place.
- GenerationInvoker: per-attempt timeout, transient-error classification and
  exponential backoff (2s, 4s, ...) up to `max_retries` extra attempts.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import anthropic
from anthropic import AsyncAnthropic
from httpx import Timeout

from docchat.config import settings
from docchat.core.rag.context_assembler import AssembledContext
from docchat.core.rag.prompt_builder import PromptBuilder
from docchat.errors import ConfigurationError, GenerationError, TransientIOError
from docchat.utils.logging import logger
from docchat.utils.metrics import GENERATION_ATTEMPTS, GENERATION_LATENCY_SECONDS

# 408 timeout, 409 lock conflict, 429 rate limit, 5xx/529 overloaded
_RETRYABLE_STATUS = {408, 409, 429}


@dataclass
class GenerationResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: Optional[str] = None
    attempts: int = 1


class GenerationClient(Protocol):
    """Single-attempt completion. Raises TransientIOError or GenerationError."""

    async def complete(
        self,
        *,
        system: List[Dict[str, Any]],
        messages: List[Dict[str, str]],
    ) -> GenerationResult:
        ...


def classify_api_error(error: Exception) -> Exception:
    """Map an anthropic SDK error onto the pipeline taxonomy."""
    if isinstance(error, anthropic.APIConnectionError):  # includes APITimeoutError
        return TransientIOError(f"Generation connection error: {error}", stage="generation")
    if isinstance(error, anthropic.APIStatusError):
        status = error.status_code
        if status in _RETRYABLE_STATUS or status >= 500:
            return TransientIOError(f"Generation unavailable (HTTP {status}): {error}", stage="generation")
        return GenerationError(f"Generation rejected (HTTP {status}): {error}", stage="generation")
    return GenerationError(f"Generation failed: {error}", stage="generation")


class ChatLLMClient:
    """Anthropic Messages API client for chat replies."""

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int,
        timeout_seconds: int = 60,
        temperature: float = 0.2,
    ):
        if not api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is not set", stage="generation")
        # read timeout is the important one for long-running API calls
        timeout = Timeout(timeout=float(timeout_seconds), read=float(timeout_seconds), write=10.0, connect=5.0)
        self.async_client = AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def complete(
        self,
        *,
        system: List[Dict[str, Any]],
        messages: List[Dict[str, str]],
    ) -> GenerationResult:
        try:
            message = await self.async_client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system,
                messages=messages,
            )
        except anthropic.APIError as api_error:
            raise classify_api_error(api_error) from api_error

        text = "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        ).strip()
        if not text:
            raise GenerationError("Generation returned an empty answer", stage="generation")

        usage = getattr(message, "usage", None)
        return GenerationResult(
            text=text,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            model=getattr(message, "model", self.model),
        )


def create_chat_llm_client() -> ChatLLMClient:
    return ChatLLMClient(
        api_key=settings.anthropic_api_key,
        model=settings.chat_llm_model,
        max_tokens=settings.chat_llm_max_tokens,
        timeout_seconds=settings.chat_llm_timeout_seconds,
        temperature=settings.chat_llm_temperature,
    )


class GenerationInvoker:
    """Obtain an answer for a user message with bounded retries."""

    def __init__(
        self,
        client: GenerationClient,
        prompt_builder: Optional[PromptBuilder] = None,
        max_retries: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        retry_base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.max_retries = max_retries if max_retries is not None else settings.chat_llm_max_retries
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.chat_llm_timeout_seconds
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.chat_llm_retry_base_delay_seconds
        )
        self._sleep = sleep

    async def generate(self, context: AssembledContext, user_message: str) -> GenerationResult:
        """
        Ask the model to answer `user_message` grounded in `context`.

        Raises:
            TransientIOError: retry budget exhausted on timeouts/rate limits/overload
            GenerationError: non-retryable rejection (no retry attempted)
        """
        system = self.prompt_builder.build_system(context.text)
        messages = self.prompt_builder.build_messages(context.history, user_message)
        total_attempts = self.max_retries + 1

        logger.info(
            f"Requesting chat answer (context: {len(context.text)} chars, history: {len(context.history)} turns)",
            extra={"session_id": context.session_id, "grounded": context.grounded, "timeout": self.timeout_seconds}
        )

        for attempt in range(total_attempts):
            start = time.perf_counter()
            try:
                result = await asyncio.wait_for(
                    self.client.complete(system=system, messages=messages),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                error: Exception = TransientIOError(
                    f"Generation timed out after {self.timeout_seconds}s", stage="generation"
                )
                error.__cause__ = e
            except (TransientIOError, GenerationError) as e:
                error = e
            else:
                GENERATION_LATENCY_SECONDS.observe(time.perf_counter() - start)
                GENERATION_ATTEMPTS.labels(outcome="success").inc()
                result.attempts = attempt + 1
                return result

            if not isinstance(error, TransientIOError):
                GENERATION_ATTEMPTS.labels(outcome="rejected").inc()
                logger.error(
                    f"Generation rejected, not retrying: {error}",
                    extra={"session_id": context.session_id, "attempt": attempt + 1}
                )
                raise error

            GENERATION_ATTEMPTS.labels(outcome="transient").inc()
            if attempt + 1 >= total_attempts:
                logger.error(
                    f"Generation failed after {total_attempts} attempts: {error}",
                    extra={"session_id": context.session_id, "attempts": total_attempts}
                )
                raise error

            wait_time = self.retry_base_delay * (2 ** attempt)
            logger.warning(
                f"Generation transient failure, retrying in {wait_time}s (attempt {attempt + 1}/{total_attempts})",
                extra={"session_id": context.session_id, "error": str(error)}
            )
            await self._sleep(wait_time)

        raise TransientIOError("Generation retry loop exited unexpectedly", stage="generation")

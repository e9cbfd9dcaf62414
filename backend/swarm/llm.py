"""LLM client utilities used by the reasoning oracle.

This module provides:
- LLMClient: LiteLLM wrapper that retries transient failures with
  exponential backoff, then tries an optional fallback model once
- MockLLMClient: Scripted client for tests
- extract_json_payload: Pull a JSON object or array out of free-form model text
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from events.bus import EventBus
from events.types import ClusterEvent, EventType, LLMMetrics

logger = structlog.get_logger()

# Failures worth retrying on the same model.
TRANSIENT_ERRORS = (RateLimitError, ServiceUnavailableError, Timeout)
# Failures that no retry or fallback can fix.
FATAL_ERRORS = (AuthenticationError, BadRequestError)

MAX_RETRY_DELAY_SECONDS = 4.0


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before retry ``attempt`` (0-based): base * 2^attempt, capped."""
    return min(base_delay * (2 ** attempt), MAX_RETRY_DELAY_SECONDS)


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        finish_reason: Why the model stopped (stop, length, etc.)
        metrics: Token usage and latency metrics
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """LiteLLM wrapper shared by every oracle call of a cluster.

    Attributes:
        event_bus: Optional EventBus receiving LLM_CALL_COMPLETE events
        cluster_id: Cluster the emitted events are keyed by
        default_model: Model used when a call does not name one
        fallback_model: Model tried once after the primary exhausts its retries
        retry_attempts: Retries after the first attempt on transient failures
        retry_delay: Base backoff delay in seconds
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        cluster_id: str | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        self.event_bus = event_bus
        self.cluster_id = cluster_id or settings.cluster_id
        self.default_model = default_model or settings.default_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.llm_max_retries
        )
        self.retry_delay = retry_delay

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        node_id: str | None = None,
    ) -> LLMResponse:
        """Complete ``messages``, retrying and falling back as configured.

        Rate-limit, service-unavailable and timeout errors are retried on the
        same model; authentication and bad-request errors are raised at once.

        Args:
            messages: Chat messages with 'role' and 'content'
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature
            max_tokens: Maximum tokens in the response
            node_id: Node on whose behalf the call is made, for events

        Returns:
            LLMResponse with content and metrics

        Raises:
            AuthenticationError: If the API key is invalid
            BadRequestError: If the request is malformed
            Exception: The last transient error once retries and fallback fail
        """
        model = model or self.default_model
        started = time.time()
        last_error: Exception | None = None

        for attempt in range(self.retry_attempts + 1):
            try:
                return await self._complete(
                    messages, model, temperature, max_tokens, node_id, started
                )
            except FATAL_ERRORS as e:
                logger.error(
                    "llm_call_rejected",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise
            except TRANSIENT_ERRORS as e:
                last_error = e
                if attempt == self.retry_attempts:
                    logger.error(
                        "llm_call_retries_exhausted",
                        model=model,
                        attempts=attempt + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    break
                delay = backoff_delay(self.retry_delay, attempt)
                logger.warning(
                    "llm_call_retry",
                    model=model,
                    attempt=attempt + 1,
                    retry_delay=delay,
                    error_type=type(e).__name__,
                )
                await self._async_sleep(delay)

        if self.fallback_model and self.fallback_model != model:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=self.fallback_model,
                primary_error=str(last_error),
            )
            try:
                return await self._complete(
                    messages, self.fallback_model, temperature, max_tokens, node_id, started
                )
            except Exception as e:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error_type=type(e).__name__,
                    error=str(e),
                )

        raise last_error or RuntimeError("LLM call failed after all retries")

    async def _complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
        node_id: str | None,
        started: float,
    ) -> LLMResponse:
        """One request against ``model``, parsed, measured and announced."""
        raw = await self._make_request(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        response = self._parse_response(raw, model, int((time.time() - started) * 1000))
        await self._emit_metrics_event(response.metrics, node_id)
        logger.info(
            "llm_call_complete",
            model=model,
            node_id=node_id,
            total_tokens=response.metrics.total_tokens,
            latency_ms=response.metrics.latency_ms,
        )
        return response

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        """Send the raw LiteLLM request."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        return await acompletion(**kwargs)

    def _parse_response(self, raw: ModelResponse, model: str, latency_ms: int) -> LLMResponse:
        choice = raw.choices[0]
        usage = getattr(raw, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason or "unknown",
            metrics=LLMMetrics(
                model=model,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                latency_ms=latency_ms,
            ),
            raw_response=raw,
        )

    async def _emit_metrics_event(self, metrics: LLMMetrics, node_id: str | None) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            ClusterEvent(
                type=EventType.LLM_CALL_COMPLETE,
                cluster_id=self.cluster_id,
                node_id=node_id,
                data=metrics.model_dump(),
            )
        )

    async def _async_sleep(self, seconds: float) -> None:
        """Backoff sleep, kept as a method so tests can patch it out."""
        await asyncio.sleep(seconds)


# -----------------------------------------------------------------------------
# Response parsing
# -----------------------------------------------------------------------------

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_CLOSERS = {"{": "}", "[": "]"}


def _balanced_spans(text: str) -> list[str]:
    """Every balanced ``{...}`` or ``[...]`` span of ``text``, quote-aware."""
    spans: list[str] = []
    for start, opener in enumerate(text):
        closer = _CLOSERS.get(opener)
        if closer is None:
            continue

        depth = 0
        in_string = escaped = False
        for end in range(start, len(text)):
            ch = text[end]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == opener:
                depth += 1
            elif ch == closer:
                depth -= 1
                if depth == 0:
                    spans.append(text[start : end + 1])
                    break
    return spans


def _load_container(candidate: str) -> dict[str, Any] | list[Any] | None:
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, (dict, list)) else None


def extract_json_payload(response: str) -> dict[str, Any] | list[Any] | None:
    """Extract a JSON object or array from an LLM response.

    Tries, in order: the whole response, fenced code blocks, and the longest
    balanced object/array embedded in free-form text.

    Returns:
        Parsed JSON (dict or list) if found, None otherwise
    """
    parsed = _load_container(response.strip().lstrip("﻿"))
    if parsed is not None:
        return parsed

    for match in _FENCED_BLOCK.finditer(response):
        parsed = _load_container(match.group(1).strip())
        if parsed is not None:
            return parsed

    for candidate in sorted(_balanced_spans(response), key=len, reverse=True):
        parsed = _load_container(candidate)
        if parsed is not None:
            return parsed
    return None


class MockLLMClient(LLMClient):
    """Scripted LLM client for tests; never touches the network.

    Usage:
        >>> client = MockLLMClient(responses=['{"success": true, "output": "ok"}'])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[str | LLMResponse] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize with replies returned in order.

        Args:
            responses: Plain strings are wrapped into zero-token LLMResponses
            **kwargs: Passed to LLMClient
        """
        super().__init__(**kwargs)
        self.responses = list(responses or [])
        self.call_history: list[dict[str, Any]] = []
        self._cursor = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        node_id: str | None = None,
    ) -> LLMResponse:
        """Return the next scripted reply.

        Raises:
            IndexError: If the script is exhausted
        """
        model = model or self.default_model
        self.call_history.append({
            "messages": messages,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "node_id": node_id,
        })
        if self._cursor >= len(self.responses):
            raise IndexError("No more mock responses available")

        reply = self.responses[self._cursor]
        self._cursor += 1
        if isinstance(reply, LLMResponse):
            return reply
        return LLMResponse(
            content=reply,
            finish_reason="stop",
            metrics=LLMMetrics(model=model, input_tokens=0, output_tokens=0, latency_ms=0),
        )

    def reset(self) -> None:
        """Rewind the script and forget recorded calls."""
        self._cursor = 0
        self.call_history.clear()

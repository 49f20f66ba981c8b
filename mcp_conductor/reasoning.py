"""Reasoning-service client: one litellm chat-completions round trip per turn.

The transcript is converted from block form to OpenAI chat messages, the
aggregated tool catalog is passed as OpenAI function tools, and the reply
is converted back into content blocks.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any

import litellm

from mcp_conductor.errors import ReasoningServiceError, is_retryable_reasoning_error
from mcp_conductor.messages import (
    ContentBlock,
    Message,
    TextBlock,
    ToolCallBlock,
    parse_tool_call,
    to_openai_messages,
)

logger = logging.getLogger(__name__)

# Silence litellm's noisy default logging
litellm.suppress_debug_info = True


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0.5, 1.5)
    return min(delay * jitter, max_delay)


@dataclass
class ReasoningResponse:
    """One reasoning-service reply as ordered content blocks."""

    blocks: list[ContentBlock] = field(default_factory=list)
    finish_reason: str = ""
    usage: dict[str, Any] = field(default_factory=dict)
    model: str = ""

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.blocks if isinstance(b, ToolCallBlock)]


def _extract_usage(response: Any) -> dict[str, Any]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return {}
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
        "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
        "total_tokens": getattr(usage, "total_tokens", 0) or 0,
    }


def _build_response(response: Any, model: str) -> ReasoningResponse:
    choice = response.choices[0]
    message = choice.message
    blocks: list[ContentBlock] = []
    content = getattr(message, "content", None)
    if content:
        blocks.append(TextBlock(content))
    for tc in getattr(message, "tool_calls", None) or []:
        blocks.append(parse_tool_call(tc))
    return ReasoningResponse(
        blocks=blocks,
        finish_reason=choice.finish_reason or "",
        usage=_extract_usage(response),
        model=model,
    )


class ReasoningClient:
    """Calls the reasoning service through ``litellm.acompletion``.

    Retries transient failures (rate limits, 5xx, timeouts) with jittered
    exponential backoff; anything else, or exhausting the retries, raises
    ReasoningServiceError wrapping the original exception.
    """

    def __init__(
        self,
        model: str,
        *,
        max_tokens: int = 2000,
        timeout: float = 60,
        num_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        api_base: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.num_retries = num_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.api_base = api_base
        self.extra_kwargs = kwargs

    def _call_kwargs(
        self, messages: list[Message], tools: list[dict[str, Any]] | None,
    ) -> dict[str, Any]:
        call_kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages),
            "max_tokens": self.max_tokens,
            "timeout": self.timeout,
            **self.extra_kwargs,
        }
        if tools:
            call_kwargs["tools"] = tools
        if self.api_base is not None:
            call_kwargs["api_base"] = self.api_base
        return call_kwargs

    async def acomplete(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> ReasoningResponse:
        call_kwargs = self._call_kwargs(messages, tools)
        last_error: Exception | None = None

        for attempt in range(self.num_retries + 1):
            try:
                response = await litellm.acompletion(**call_kwargs)
            except Exception as e:
                last_error = e
                if not is_retryable_reasoning_error(e) or attempt >= self.num_retries:
                    break
                delay = exponential_backoff(attempt, self.base_delay, self.max_delay)
                logger.warning(
                    "Reasoning call attempt %d/%d failed (retrying in %.1fs): %s",
                    attempt + 1, self.num_retries + 1, delay, e,
                )
                await asyncio.sleep(delay)
                continue

            if attempt > 0:
                logger.info("Reasoning call succeeded after %d retries", attempt)
            result = _build_response(response, self.model)
            logger.debug(
                "Reasoning call: model=%s tokens=%s finish=%s tool_calls=%d",
                self.model, result.usage.get("total_tokens"), result.finish_reason,
                len(result.tool_calls),
            )
            return result

        raise ReasoningServiceError(
            f"Reasoning service call failed: {last_error}", original=last_error,
        ) from last_error

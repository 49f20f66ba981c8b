"""Conversation transcript model.

A Message is a role plus an ordered list of content blocks. The transcript
is kept in this block form (so pairing between tool-call requests and their
results can be checked and trimmed block by block) and converted to the
OpenAI chat format litellm expects right before each reasoning-service call:

    assistant(text, ToolCallBlock...)  ->  {"role": "assistant", "content": ..., "tool_calls": [...]}
    user(ToolResultBlock)              ->  {"role": "tool", "tool_call_id": ..., "content": ...}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Union

Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolCallBlock:
    """A tool-call request from the reasoning service.

    ``argument_error`` is set when the service sent arguments that were not
    a JSON object; such calls are answered with an error result, never run.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    argument_error: str | None = None


@dataclass(frozen=True)
class ToolResultBlock:
    tool_call_id: str
    content: str
    is_error: bool = False


ContentBlock = Union[TextBlock, ToolCallBlock, ToolResultBlock]


@dataclass
class Message:
    role: Role
    content: list[ContentBlock] = field(default_factory=list)

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls("system", [TextBlock(text)])

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls("user", [TextBlock(text)])

    @classmethod
    def assistant(cls, blocks: list[ContentBlock]) -> "Message":
        return cls("assistant", list(blocks))

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str, *, is_error: bool = False) -> "Message":
        return cls("user", [ToolResultBlock(tool_call_id, content, is_error)])

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


def _tool_call_to_openai(block: ToolCallBlock) -> dict[str, Any]:
    return {
        "id": block.id,
        "type": "function",
        "function": {
            "name": block.name,
            "arguments": json.dumps(block.arguments),
        },
    }


def to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert block-form messages to OpenAI chat-completions messages."""
    out: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            calls = message.tool_calls
            if calls:
                entry["tool_calls"] = [_tool_call_to_openai(c) for c in calls]
            out.append(entry)
            continue

        for result in message.tool_results:
            out.append({
                "role": "tool",
                "tool_call_id": result.tool_call_id,
                "content": result.content,
            })
        text = message.text
        if text or not message.tool_results:
            out.append({"role": message.role, "content": text})
    return out


def parse_tool_call(tc: Any) -> ToolCallBlock:
    """Build a ToolCallBlock from a litellm tool call (object or dict)."""
    if isinstance(tc, dict):
        tc_id = tc.get("id") or ""
        fn = tc.get("function") or {}
        name = fn.get("name") or ""
        raw_args = fn.get("arguments")
    else:
        tc_id = getattr(tc, "id", "") or ""
        fn = getattr(tc, "function", None)
        name = getattr(fn, "name", "") or ""
        raw_args = getattr(fn, "arguments", None)

    if raw_args is None or raw_args == "":
        return ToolCallBlock(tc_id, name, {})
    if isinstance(raw_args, dict):
        return ToolCallBlock(tc_id, name, dict(raw_args))
    try:
        parsed = json.loads(raw_args)
    except (TypeError, json.JSONDecodeError) as exc:
        return ToolCallBlock(tc_id, name, {}, argument_error=f"Invalid JSON arguments: {exc}")
    if not isinstance(parsed, dict):
        return ToolCallBlock(
            tc_id, name, {}, argument_error=f"Arguments must be a JSON object, got {type(parsed).__name__}",
        )
    return ToolCallBlock(tc_id, name, parsed)


def summarize_content(message: Message, max_length: int = 200) -> str:
    """One-line text rendering of a message for listings."""
    if message.text:
        text = message.text
    elif message.tool_calls:
        text = "[tool calls: " + ", ".join(c.name for c in message.tool_calls) + "]"
    elif message.tool_results:
        text = message.tool_results[0].content
    else:
        text = ""
    text = " ".join(text.split())
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text

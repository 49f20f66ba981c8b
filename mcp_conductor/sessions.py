"""Session Store — in-process conversation table.

Each ConversationContext holds the literal transcript sent to the reasoning
service. Trimming keeps the system message plus the most recent window and
never separates a tool-call request from its result.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any

from mcp_conductor.messages import Message, ToolCallBlock, ToolResultBlock, summarize_content
from mcp_conductor.registry import ToolCatalog, ToolDescriptor

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an AI agent trying to help with the user's query using the available "
    "MCP tools. If you need clarification from the user, respond with a message "
    "prefixed with #CLARIFY# followed by your question. If you cannot answer the "
    "query using the available tools, respond with #NOANSWER#."
)

DEFAULT_MAX_HISTORY: int = 10


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class ConversationContext:
    conversation_id: str
    messages: list[Message] = field(default_factory=list)
    catalog: ToolCatalog | None = None
    user_id: str | None = None
    user_email: str | None = None

    @property
    def tools(self) -> list[ToolDescriptor]:
        return self.catalog.tools if self.catalog is not None else []

    @property
    def primary_server(self) -> str | None:
        return self.catalog.primary_server if self.catalog is not None else None


@dataclass(frozen=True)
class ConversationSummary:
    conversation_id: str
    first_message: str
    last_message: str
    message_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "firstMessage": self.first_message,
            "lastMessage": self.last_message,
            "messageCount": self.message_count,
        }


# ---------------------------------------------------------------------------
# Pairing-preserving history operations
# ---------------------------------------------------------------------------


def trim_history(messages: list[Message], max_messages: int) -> list[Message]:
    """Return a trimmed copy of *messages*.

    Keeps index 0 and the last ``max_messages - 1`` messages, then pulls in
    every message needed to complete a request/result pair touched by the
    kept set (to a fixpoint). Blocks that would still be orphaned are
    stripped and messages left empty are dropped. The input is not mutated.
    """
    if max_messages < 2:
        max_messages = 2
    if len(messages) <= max_messages:
        return list(messages)

    request_at: dict[str, int] = {}
    result_at: dict[str, int] = {}
    for i, message in enumerate(messages):
        for call in message.tool_calls:
            request_at[call.id] = i
        for result in message.tool_results:
            result_at[result.tool_call_id] = i

    keep = {0, *range(len(messages) - (max_messages - 1), len(messages))}
    pending = sorted(keep)
    while pending:
        i = pending.pop()
        partners = [result_at.get(c.id) for c in messages[i].tool_calls]
        partners += [request_at.get(r.tool_call_id) for r in messages[i].tool_results]
        for j in partners:
            if j is not None and j not in keep:
                keep.add(j)
                pending.append(j)

    kept_requests = {c.id for i in keep for c in messages[i].tool_calls}
    kept_results = {r.tool_call_id for i in keep for r in messages[i].tool_results}

    out: list[Message] = []
    for i in sorted(keep):
        message = messages[i]
        blocks = [
            b for b in message.content
            if not (isinstance(b, ToolCallBlock) and b.id not in kept_results)
            and not (isinstance(b, ToolResultBlock) and b.tool_call_id not in kept_requests)
        ]
        if i != 0 and not blocks:
            continue
        if len(blocks) == len(message.content):
            out.append(message)
        else:
            out.append(Message(message.role, blocks))
    return out


def close_pending_tool_calls(messages: list[Message], reason: str) -> int:
    """Answer every unanswered tool-call request with an error result.

    Used after a cancelled dispatch so the transcript satisfies the pairing
    rule before it is sent again. Returns the number of results appended.
    """
    answered = {r.tool_call_id for m in messages for r in m.tool_results}
    pending = [c for m in messages for c in m.tool_calls if c.id not in answered]
    for call in pending:
        messages.append(Message.tool_result(call.id, reason, is_error=True))
    if pending:
        logger.warning("Closed %d unanswered tool call(s): %s", len(pending), reason)
    return len(pending)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore:
    """Unbounded in-process table of conversations, keyed by conversation id."""

    def __init__(
        self,
        *,
        max_history: int = DEFAULT_MAX_HISTORY,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.max_history = max_history
        self.system_prompt = system_prompt
        self._contexts: dict[str, ConversationContext] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._contexts

    @staticmethod
    def new_conversation_id(user_id: str | None = None) -> str:
        prefix = f"user-{user_id}-" if user_id else "conv-"
        return f"{prefix}{int(time.time() * 1000)}-{random.randrange(1000)}"

    def get(self, conversation_id: str) -> ConversationContext | None:
        return self._contexts.get(conversation_id)

    def get_or_create(
        self,
        conversation_id: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> ConversationContext:
        """Look up a conversation, creating it (and an id, if none given) on a miss.

        User id/email passed here fill in values the context doesn't have yet;
        they never overwrite existing ones.
        """
        conversation_id = conversation_id or self.new_conversation_id(user_id)
        context = self._contexts.get(conversation_id)
        if context is None:
            context = ConversationContext(
                conversation_id=conversation_id,
                messages=[Message.system(self.system_prompt)],
                user_id=user_id,
                user_email=user_email,
            )
            self._contexts[conversation_id] = context
            logger.info("Created conversation %s", conversation_id)
            return context

        if user_id and not context.user_id:
            context.user_id = user_id
        if user_email and not context.user_email:
            context.user_email = user_email
        return context

    def lock(self, conversation_id: str) -> asyncio.Lock:
        """Per-conversation lock: one query at a time per conversation."""
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    def trim(self, context: ConversationContext) -> ConversationContext:
        before = len(context.messages)
        if before > self.max_history:
            context.messages = trim_history(context.messages, self.max_history)
            logger.debug(
                "Trimmed conversation %s from %d to %d messages",
                context.conversation_id, before, len(context.messages),
            )
        return context

    def clear(self, conversation_id: str) -> bool:
        # A held lock stays so a re-created conversation still serializes behind it.
        lock = self._locks.get(conversation_id)
        if lock is not None and not lock.locked():
            del self._locks[conversation_id]
        return self._contexts.pop(conversation_id, None) is not None

    def clear_all(self, user_id: str | None) -> int:
        """Delete every conversation owned by *user_id*; returns how many."""
        if not user_id:
            return 0
        doomed = [cid for cid, ctx in self._contexts.items() if ctx.user_id == user_id]
        for cid in doomed:
            self.clear(cid)
        return len(doomed)

    def list_conversations(self, user_id: str | None) -> list[ConversationSummary]:
        if not user_id:
            return []
        summaries: list[ConversationSummary] = []
        for cid, ctx in self._contexts.items():
            if ctx.user_id != user_id:
                continue
            messages = ctx.messages
            summaries.append(
                ConversationSummary(
                    conversation_id=cid,
                    first_message=summarize_content(messages[1]) if len(messages) > 1 else "",
                    last_message=summarize_content(messages[-1]) if messages else "",
                    message_count=len(messages),
                )
            )
        return summaries

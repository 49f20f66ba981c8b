"""Agent Loop — drives one query through reasoning turns and tool dispatch.

State machine per query::

    Init -> Invoke -> (Dispatch <-> Invoke) -> Finalize

Written as an explicit loop over a turn counter with accumulators (tool
invocation records, transcript) held in a per-run state object. A failed
tool call is reported as data, never raised: it becomes an errored record
plus an error tool result, and the loop continues.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from mcp_conductor.connections import ConnectionManager
from mcp_conductor.errors import ReasoningServiceError, ToolInvocationError, is_transport_failure
from mcp_conductor.loop_guard import (
    LoopGuard,
    LoopGuardPolicy,
    TruncationPolicy,
    is_extended_tool,
    truncate_result,
)
from mcp_conductor.messages import Message, TextBlock, ToolCallBlock
from mcp_conductor.reasoning import ReasoningClient
from mcp_conductor.registry import ResolvedTool, ToolRegistry
from mcp_conductor.sessions import ConversationContext, SessionStore, close_pending_tool_calls

logger = logging.getLogger(__name__)

CLARIFY_MARKER = "#CLARIFY#"
NOANSWER_MARKER = "#NOANSWER#"

USER_INSTRUCTION = (
    "Try to answer using the available tools. If you need clarification, respond with "
    f"{CLARIFY_MARKER} followed by your question. If you cannot answer with available "
    f"tools, respond with {NOANSWER_MARKER}."
)
EMAIL_HINT = "For Calendar related tools, use {email} as the target user."
LIMIT_MESSAGE = (
    "I've reached the maximum number of follow-up steps. Please continue with a new query."
)
STAGNATION_MESSAGE = (
    "The fetched content stopped changing across several consecutive attempts, "
    "so I stopped here."
)
SKIPPED_RESULT = "Skipped: tool dispatch was stopped before this call ran."
CANCELLED_RESULT = "Cancelled: the query ended before this tool call completed."
RECOVERY_INSTRUCTION = (
    "The previous attempt to answer this request failed partway through. "
    "Summarize the progress made so far and give the best answer you can "
    "without calling any tools."
)

DEFAULT_MAX_TURNS: int = 5
DEFAULT_EXTENDED_MAX_TURNS: int = 8


def build_user_message(query: str, user_email: str | None = None) -> str:
    hint = f"{EMAIL_HINT.format(email=user_email)} " if user_email else ""
    return f"{query}\n\n{hint}{USER_INSTRUCTION}"


def strip_markers(text: str) -> tuple[str, bool, bool]:
    """Remove the clarify/no-answer markers; report which were present."""
    needs_clarification = CLARIFY_MARKER in text
    no_answer = NOANSWER_MARKER in text
    cleaned = text.replace(CLARIFY_MARKER, "").replace(NOANSWER_MARKER, "").strip()
    return cleaned, needs_clarification, no_answer


def first_text(result: Any) -> str:
    """Primary text payload of a call_tool result: its first content element."""
    content = getattr(result, "content", None) or []
    if not content:
        return ""
    head = content[0]
    text = getattr(head, "text", None)
    return text if isinstance(text, str) else str(head)


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class ToolInvocationRecord:
    """One dispatched tool call as reported back to the caller."""

    tool: str
    input: dict[str, Any]
    response: str
    server: str | None
    error: bool = False
    forced_stop: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "input": self.input,
            "response": self.response,
            "server": self.server,
            "error": self.error,
            "forcedStop": self.forced_stop,
        }


@dataclass
class QueryResult:
    answer: str | None
    conversation_id: str
    user_id: str | None = None
    needs_clarification: bool = False
    no_answer: bool = False
    error: bool = False
    tool_responses: list[ToolInvocationRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """HTTP contract shape."""
        return {
            "answer": self.answer,
            "conversationId": self.conversation_id,
            "userId": self.user_id,
            "needsClarification": self.needs_clarification,
            "noAnswer": self.no_answer,
            "error": self.error,
            "toolResponses": [r.to_dict() for r in self.tool_responses],
        }


@dataclass
class _RunState:
    guard: LoopGuard
    records: list[ToolInvocationRecord] = field(default_factory=list)
    turns: int = 0
    extended: bool = False
    extended_calls: int = 0


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class AgentLoop:
    """Runs queries against one conversation at a time.

    Args:
        reasoning: Reasoning-service client.
        registry: Resolves global tool names to (server, local name).
        connections: Supplies live connections for dispatch.
        store: Trims the transcript before every reasoning call.
        max_turns / extended_max_turns: Tool-requesting turns allowed before
            the limit message is returned; the extended limit applies once an
            extended-category tool has been requested.
    """

    def __init__(
        self,
        reasoning: ReasoningClient,
        registry: ToolRegistry,
        connections: ConnectionManager,
        store: SessionStore,
        *,
        max_turns: int = DEFAULT_MAX_TURNS,
        extended_max_turns: int = DEFAULT_EXTENDED_MAX_TURNS,
        truncation: TruncationPolicy | None = None,
        guard_policy: LoopGuardPolicy | None = None,
    ) -> None:
        self.reasoning = reasoning
        self.registry = registry
        self.connections = connections
        self.store = store
        self.max_turns = max_turns
        self.extended_max_turns = extended_max_turns
        self.truncation = truncation or TruncationPolicy()
        self.guard_policy = guard_policy or LoopGuardPolicy()

    async def run(
        self,
        context: ConversationContext,
        query: str,
        *,
        llm_answer: bool = True,
        last_response_only: bool = False,
    ) -> QueryResult:
        """Append *query* to the conversation and loop until a final answer.

        With ``llm_answer=False`` (tool-only mode) the answer is None once
        any tool result exists; tool requests are still drained. If the task
        is cancelled mid-dispatch, unanswered tool requests are closed with
        error results before the cancellation propagates.
        """
        context.messages.append(Message.user(build_user_message(query, context.user_email)))
        state = _RunState(guard=LoopGuard(self.guard_policy))
        tools = context.catalog.openai_tools() if context.catalog is not None else []

        try:
            while True:
                self.store.trim(context)
                try:
                    response = await self.reasoning.acomplete(context.messages, tools or None)
                except ReasoningServiceError as exc:
                    return await self._recover(context, query, state, exc, last_response_only)

                calls = response.tool_calls
                if not calls:
                    if response.blocks:
                        context.messages.append(Message.assistant(response.blocks))
                    return self._finalize(
                        context, response.text, state,
                        llm_answer=llm_answer, last_response_only=last_response_only,
                    )

                state.extended = state.extended or any(is_extended_tool(c.name) for c in calls)
                limit = self.extended_max_turns if state.extended else self.max_turns
                if state.turns >= limit:
                    logger.warning(
                        "Conversation %s reached the %d-turn limit", context.conversation_id, limit,
                    )
                    context.messages.append(Message.assistant([TextBlock(LIMIT_MESSAGE)]))
                    return self._finalize(
                        context, LIMIT_MESSAGE, state,
                        last_response_only=last_response_only, synthesized=True,
                    )

                context.messages.append(Message.assistant(response.blocks))
                state.turns += 1
                if state.turns > 1:
                    logger.info("Additional tools requested in turn %d", state.turns)

                if await self._dispatch(context, calls, state):
                    summary = self._stagnation_summary(state)
                    context.messages.append(Message.assistant([TextBlock(summary)]))
                    return self._finalize(
                        context, summary, state,
                        last_response_only=last_response_only, synthesized=True,
                    )
        except asyncio.CancelledError:
            close_pending_tool_calls(context.messages, CANCELLED_RESULT)
            raise

    async def _dispatch(
        self,
        context: ConversationContext,
        calls: list[ToolCallBlock],
        state: _RunState,
    ) -> bool:
        """Run calls in order. Returns True when content stagnation stopped dispatch."""
        for index, call in enumerate(calls):
            record, transcript_text = await self._invoke(context, call, state)
            state.records.append(record)
            context.messages.append(
                Message.tool_result(
                    call.id, transcript_text, is_error=record.error or record.forced_stop,
                )
            )
            if state.guard.stagnated:
                for skipped in calls[index + 1:]:
                    context.messages.append(
                        Message.tool_result(skipped.id, SKIPPED_RESULT, is_error=True)
                    )
                logger.warning("Stopping dispatch for %s: content stagnated", context.conversation_id)
                return True
        return False

    async def _invoke(
        self,
        context: ConversationContext,
        call: ToolCallBlock,
        state: _RunState,
    ) -> tuple[ToolInvocationRecord, str]:
        resolved = self.registry.resolve(call.name, context.catalog)
        if resolved is None:
            primary = context.primary_server
            if primary is None:
                text = f"Error calling tool: No server available for tool {call.name!r}"
                logger.error(text)
                return ToolInvocationRecord(call.name, call.arguments, text, None, error=True), text
            logger.info(
                'No server prefix found for tool "%s", using primary server "%s"', call.name, primary,
            )
            resolved = ResolvedTool(primary, call.name)

        server, local = resolved.server_name, resolved.local_name
        extended = is_extended_tool(call.name)
        if not extended:
            state.guard.reset_action()

        if call.argument_error:
            text = f"Error calling tool: {call.argument_error}"
            return ToolInvocationRecord(call.name, {}, text, server, error=True), text

        if extended and state.guard.check_action(local, call.arguments):
            text = state.guard.forced_stop_message(call.name)
            record = ToolInvocationRecord(call.name, call.arguments, text, server, forced_stop=True)
            return record, text

        logger.info('Calling tool "%s" on "%s" server', local, server)
        try:
            conn = await self.connections.get_connection(server)
            result = await conn.call_tool(local, call.arguments)
            text = first_text(result)
            if getattr(result, "isError", False):
                raise ToolInvocationError(text or f"Tool {local!r} reported an error")
        except Exception as exc:
            logger.error('Error calling tool "%s" on "%s": %s', local, server, exc)
            if is_transport_failure(exc):
                await self.connections.evict(server)
            text = f"Error calling tool: {exc}"
            return ToolInvocationRecord(call.name, call.arguments, text, server, error=True), text

        limit = self.truncation.limit_for(extended, first_call=state.extended_calls == 0)
        if extended:
            state.extended_calls += 1
            if state.guard.is_content_tool(local):
                await state.guard.observe_content(text)
        return ToolInvocationRecord(call.name, call.arguments, text, server), truncate_result(text, limit)

    def _stagnation_summary(self, state: _RunState) -> str:
        last = next(
            (r.response for r in reversed(state.records) if not r.error and not r.forced_stop), "",
        )
        if not last:
            return STAGNATION_MESSAGE
        return (
            f"{STAGNATION_MESSAGE}\n\nLast retrieved content:\n"
            f"{truncate_result(last, self.truncation.general)}"
        )

    async def _recover(
        self,
        context: ConversationContext,
        query: str,
        state: _RunState,
        exc: ReasoningServiceError,
        last_response_only: bool,
    ) -> QueryResult:
        """Restart the transcript as system message + summarize request, no tools."""
        logger.error(
            "Reasoning service failed for %s: %s; attempting recovery", context.conversation_id, exc,
        )
        progress = "\n".join(
            f"- {r.tool}: {truncate_result(r.response, 200)}" for r in state.records
        )
        instruction = f"{RECOVERY_INSTRUCTION}\n\nRequest: {query}"
        if progress:
            instruction += f"\n\nTool results so far:\n{progress}"
        context.messages = [context.messages[0], Message.user(instruction)]

        response = await self.reasoning.acomplete(context.messages, None)
        if response.blocks:
            context.messages.append(Message.assistant(response.blocks))
        return self._finalize(
            context, response.text, state,
            last_response_only=last_response_only, synthesized=True, error=True,
        )

    def _finalize(
        self,
        context: ConversationContext,
        text: str,
        state: _RunState,
        *,
        llm_answer: bool = True,
        last_response_only: bool = False,
        synthesized: bool = False,
        error: bool = False,
    ) -> QueryResult:
        answer, needs_clarification, no_answer = strip_markers(text)
        records = state.records
        if not llm_answer and records and not synthesized:
            answer, needs_clarification, no_answer = None, False, False
        if last_response_only and records:
            records = records[-1:]
        return QueryResult(
            answer=answer,
            conversation_id=context.conversation_id,
            user_id=context.user_id,
            needs_clarification=needs_clarification,
            no_answer=no_answer,
            error=error,
            tool_responses=list(records),
        )

"""Query Governor — one end-to-end query under an overall deadline.

Every path returns a QueryResult; nothing raised by the agent loop reaches
the caller. The deadline is enforced with ``asyncio.wait_for``, so a
timed-out query's in-flight reasoning call or tool call is cancelled, not
left running.
"""

from __future__ import annotations

import asyncio
import logging

from mcp_conductor.agent import AgentLoop, QueryResult
from mcp_conductor.connections import ConnectionManager
from mcp_conductor.errors import QueryTimeoutError, is_transport_failure
from mcp_conductor.registry import ToolRegistry
from mcp_conductor.sessions import ConversationContext, SessionStore

logger = logging.getLogger(__name__)

DEFAULT_QUERY_TIMEOUT: float = 120.0

TIMEOUT_APOLOGY = "Sorry, I couldn't process your query in time."
NO_TOOLS_ANSWER = (
    "No MCP servers or tools available. Please check your servers-config.json file."
)


class QueryGovernor:
    def __init__(
        self,
        agent: AgentLoop,
        registry: ToolRegistry,
        connections: ConnectionManager,
        store: SessionStore,
        *,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
        last_response_only: bool = False,
    ) -> None:
        self.agent = agent
        self.registry = registry
        self.connections = connections
        self.store = store
        self.query_timeout = query_timeout
        self.last_response_only = last_response_only

    async def process_query(
        self,
        query: str,
        conversation_id: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        timeout: float | None = None,
        llm_answer: bool = True,
    ) -> QueryResult:
        """Run *query* in its conversation, bounded by *timeout* seconds.

        On timeout the result carries an apology, ``error=True`` and no tool
        responses. Transport-class failures additionally drop every cached
        connection so the next query reconnects.
        """
        context = self.store.get_or_create(conversation_id, user_id, user_email)
        budget = self.query_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(
                self._process(context, query, llm_answer), timeout=budget,
            )
        except asyncio.TimeoutError:
            error = QueryTimeoutError(f"Query timed out after {budget:g}s")
            logger.error("Query in %s failed: %s", context.conversation_id, error)
            return QueryResult(
                answer=f"{TIMEOUT_APOLOGY} {error}",
                conversation_id=context.conversation_id,
                user_id=context.user_id,
                error=True,
            )

    async def _process(
        self, context: ConversationContext, query: str, llm_answer: bool,
    ) -> QueryResult:
        async with self.store.lock(context.conversation_id):
            try:
                if context.catalog is None or not context.catalog.tools:
                    context.catalog = await self.registry.catalog()
                if not context.catalog.tools:
                    logger.warning("No tools available for %s", context.conversation_id)
                    context.catalog = None
                    return QueryResult(
                        answer=NO_TOOLS_ANSWER,
                        conversation_id=context.conversation_id,
                        user_id=context.user_id,
                    )
                return await self.agent.run(
                    context, query,
                    llm_answer=llm_answer,
                    last_response_only=self.last_response_only,
                )
            except Exception as exc:
                logger.error("Error processing query in %s: %s", context.conversation_id, exc)
                if is_transport_failure(exc):
                    logger.warning("Transport failure; closing all cached MCP connections")
                    await self.connections.close_all()
                    self.registry.invalidate()
                return QueryResult(
                    answer=f"Error: {exc}",
                    conversation_id=context.conversation_id,
                    user_id=context.user_id,
                    error=True,
                )

"""Conductor — owns and wires every component for one process.

Usage:
    async with Conductor.from_config_file("servers-config.json") as conductor:
        await conductor.preload()
        result = await conductor.process_query("What's on my calendar?", user_id="u1")
        print(result.to_dict())
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

from mcp_conductor.agent import AgentLoop, QueryResult
from mcp_conductor.config import (
    ConductorConfig,
    ServerConfig,
    inject_extra_server,
    load_servers_config,
)
from mcp_conductor.connections import ConnectionFactory, ConnectionManager
from mcp_conductor.governor import QueryGovernor
from mcp_conductor.reasoning import ReasoningClient
from mcp_conductor.registry import DiscoveryStatus, ToolRegistry
from mcp_conductor.sessions import SessionStore

logger = logging.getLogger(__name__)


class Conductor:
    """Facade over connections, registry, sessions, agent loop and governor.

    All state lives on the instance; two Conductors share nothing.
    """

    def __init__(
        self,
        servers: Mapping[str, ServerConfig],
        config: ConductorConfig | None = None,
        *,
        reasoning: ReasoningClient | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self.config = config or ConductorConfig.from_env()
        self.connections = ConnectionManager(
            servers,
            max_retries=self.config.max_connect_retries,
            connection_factory=connection_factory,
        )
        self.registry = ToolRegistry(
            self.connections,
            discovery_timeout=self.config.discovery_timeout,
            connect_retries=self.config.discovery_connect_retries,
        )
        self.sessions = SessionStore(max_history=self.config.max_conversation_history)
        self.reasoning = reasoning or ReasoningClient(
            self.config.model, max_tokens=self.config.max_tokens,
        )
        self.agent = AgentLoop(
            self.reasoning,
            self.registry,
            self.connections,
            self.sessions,
            max_turns=self.config.max_turns,
            extended_max_turns=self.config.extended_max_turns,
        )
        self.governor = QueryGovernor(
            self.agent,
            self.registry,
            self.connections,
            self.sessions,
            query_timeout=self.config.query_timeout,
            last_response_only=self.config.last_response_only,
        )

    @classmethod
    def from_config_file(
        cls,
        path: str | Path | None = None,
        config: ConductorConfig | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> "Conductor":
        """Load servers from *path* (default: the configured path) plus the extra-server env var."""
        config = config or ConductorConfig.from_env(environ)
        servers = load_servers_config(path or config.servers_config_path)
        servers = inject_extra_server(servers, environ)
        return cls(servers, config, **kwargs)

    async def process_query(
        self,
        query: str,
        conversation_id: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        timeout: float | None = None,
        llm_answer: bool = True,
    ) -> QueryResult:
        return await self.governor.process_query(
            query,
            conversation_id=conversation_id,
            user_id=user_id,
            user_email=user_email,
            timeout=timeout,
            llm_answer=llm_answer,
        )

    def list_conversations(self, user_id: str | None) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self.sessions.list_conversations(user_id)]

    def clear_conversation(self, conversation_id: str) -> bool:
        return self.sessions.clear(conversation_id)

    def clear_user_conversations(self, user_id: str | None) -> int:
        return self.sessions.clear_all(user_id)

    async def preload(self, timeout: float | None = None) -> DiscoveryStatus:
        return await self.registry.preload(
            self.config.preload_timeout if timeout is None else timeout,
        )

    async def server_actions(self) -> list[dict[str, Any]]:
        return await self.registry.server_actions()

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "servers": sorted(self.connections.servers),
            "connected": sorted(self.connections.cached_servers()),
            "conversations": len(self.sessions),
        }

    async def aclose(self) -> None:
        await self.connections.aclose()

    async def __aenter__(self) -> "Conductor":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

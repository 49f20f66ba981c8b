"""MCP orchestration client: many tool servers, one reasoning-driven agent loop.

Connects to independently configured MCP servers (stdio or HTTP streaming),
aggregates their tools under collision-free global names, and drives a
multi-turn conversation with a litellm-backed reasoning service.

Usage:
    from mcp_conductor import Conductor

    async with Conductor.from_config_file("servers-config.json") as conductor:
        result = await conductor.process_query("List my open pull requests")
        print(result.answer)
        for record in result.tool_responses:
            print(record.tool, record.server, record.error)
"""

from mcp_conductor.agent import AgentLoop, QueryResult, ToolInvocationRecord
from mcp_conductor.conductor import Conductor
from mcp_conductor.config import (
    ConductorConfig,
    ServerConfig,
    TransportKind,
    inject_extra_server,
    load_servers_config,
)
from mcp_conductor.connections import Connection, ConnectionManager
from mcp_conductor.errors import (
    ConductorError,
    ConfigError,
    ConnectTimeoutError,
    MCPConnectionError,
    QueryTimeoutError,
    ReasoningServiceError,
    ToolInvocationError,
)
from mcp_conductor.governor import QueryGovernor
from mcp_conductor.loop_guard import LoopGuard, LoopGuardPolicy, TruncationPolicy, similarity
from mcp_conductor.messages import Message, TextBlock, ToolCallBlock, ToolResultBlock
from mcp_conductor.reasoning import ReasoningClient, ReasoningResponse
from mcp_conductor.registry import (
    DiscoveryStatus,
    ToolCatalog,
    ToolDescriptor,
    ToolRegistry,
    make_global_name,
    sanitize_server_name,
)
from mcp_conductor.sessions import ConversationContext, SessionStore, trim_history

__version__ = "0.1.0"

__all__ = [
    "AgentLoop",
    "Conductor",
    "ConductorConfig",
    "ConductorError",
    "ConfigError",
    "ConnectTimeoutError",
    "Connection",
    "ConnectionManager",
    "ConversationContext",
    "DiscoveryStatus",
    "LoopGuard",
    "LoopGuardPolicy",
    "MCPConnectionError",
    "Message",
    "QueryGovernor",
    "QueryResult",
    "QueryTimeoutError",
    "ReasoningClient",
    "ReasoningResponse",
    "ReasoningServiceError",
    "ServerConfig",
    "SessionStore",
    "TextBlock",
    "ToolCallBlock",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolInvocationError",
    "ToolInvocationRecord",
    "ToolRegistry",
    "ToolResultBlock",
    "TransportKind",
    "TruncationPolicy",
    "inject_extra_server",
    "load_servers_config",
    "make_global_name",
    "sanitize_server_name",
    "similarity",
    "trim_history",
]

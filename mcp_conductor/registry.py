"""Tool Registry — aggregates every server's tools into one namespace.

Global tool names are ``<sanitized server name>_<local tool name>``.
Resolution is a typed lookup in the discovered catalog first; names the
catalog doesn't know fall back to a longest-prefix search over configured
server names, because sanitized server names may themselves contain ``_``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from mcp_conductor.connections import ConnectionManager
from mcp_conductor.errors import MCPConnectionError

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_TIMEOUT: float = 15.0
DEFAULT_DISCOVERY_CONNECT_RETRIES: int = 1

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_server_name(server_name: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_-]`` with ``_``."""
    return _UNSAFE_CHARS.sub("_", server_name)


def make_global_name(server_name: str, tool_name: str) -> str:
    return f"{sanitize_server_name(server_name)}_{tool_name}"


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDescriptor:
    """One discovered tool, addressable by its collision-free global name."""

    global_name: str
    local_name: str
    server_name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mcp(cls, server_name: str, tool: Any) -> "ToolDescriptor":
        schema = tool.inputSchema if isinstance(tool.inputSchema, dict) else {}
        return cls(
            global_name=make_global_name(server_name, tool.name),
            local_name=tool.name,
            server_name=server_name,
            description=tool.description or "",
            input_schema=dict(schema),
        )

    def to_openai(self) -> dict[str, Any]:
        """OpenAI function-calling schema under the global name.

        MCP: {"name": "foo", "description": "...", "inputSchema": {...}}
        OpenAI: {"type": "function", "function": {"name": "srv_foo", "description": "...", "parameters": {...}}}
        """
        parameters = dict(self.input_schema or {"type": "object", "properties": {}})
        parameters.setdefault("type", "object")
        if not isinstance(parameters.get("properties"), dict):
            parameters["properties"] = {}
        return {
            "type": "function",
            "function": {
                "name": self.global_name,
                "description": self.description,
                "parameters": parameters,
            },
        }


@dataclass
class DiscoveryStatus:
    """Per-discovery report: how many servers answered, and why others didn't."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "errors": dict(self.errors),
        }


@dataclass
class ToolCatalog:
    tools: list[ToolDescriptor] = field(default_factory=list)
    primary_server: str | None = None
    status: DiscoveryStatus = field(default_factory=DiscoveryStatus)

    def __post_init__(self) -> None:
        self._by_name = {t.global_name: t for t in self.tools}

    def get(self, global_name: str) -> ToolDescriptor | None:
        return self._by_name.get(global_name)

    def openai_tools(self) -> list[dict[str, Any]]:
        return [t.to_openai() for t in self.tools]

    def tools_for(self, server_name: str) -> list[ToolDescriptor]:
        return [t for t in self.tools if t.server_name == server_name]


@dataclass(frozen=True)
class ResolvedTool:
    server_name: str
    local_name: str


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Discovers tool catalogs through a ConnectionManager and routes global names.

    Args:
        connections: Source of live connections (and of the configured servers).
        discovery_timeout: Independent per-server budget for connect + list_tools.
        connect_retries: Connect retries used during discovery.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        *,
        discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
        connect_retries: int = DEFAULT_DISCOVERY_CONNECT_RETRIES,
    ) -> None:
        self._connections = connections
        self.discovery_timeout = discovery_timeout
        self.connect_retries = connect_retries
        self._catalog: ToolCatalog | None = None
        self._catalog_task: asyncio.Task[ToolCatalog] | None = None
        self._prefixes = self._build_prefix_index(connections.servers)

    @staticmethod
    def _build_prefix_index(server_names: Iterable[str]) -> dict[str, str]:
        prefixes: dict[str, str] = {}
        for name in server_names:
            sanitized = sanitize_server_name(name)
            if sanitized in prefixes:
                logger.warning(
                    "Servers %r and %r sanitize to the same prefix %r; routing keeps %r",
                    prefixes[sanitized], name, sanitized, prefixes[sanitized],
                )
                continue
            prefixes[sanitized] = name
        return prefixes

    @property
    def cached_catalog(self) -> ToolCatalog | None:
        return self._catalog

    def invalidate(self) -> None:
        """Forget the cached catalog; the next catalog() call rediscovers."""
        self._catalog = None

    async def discover(
        self,
        server_names: Iterable[str] | None = None,
        *,
        timeout: float | None = None,
    ) -> ToolCatalog:
        """List tools on every (or the named) enabled server concurrently.

        A failing or slow server contributes no tools and is recorded in the
        returned status; it never fails the whole discovery.
        """
        names = list(self._connections.servers) if server_names is None else list(server_names)
        enabled = [
            name for name in names
            if name not in self._connections.servers or not self._connections.servers[name].disabled
        ]
        budget = self.discovery_timeout if timeout is None else timeout

        results = await asyncio.gather(
            *(self._discover_one(name, budget) for name in enabled),
            return_exceptions=True,
        )

        status = DiscoveryStatus(total=len(enabled))
        tools: list[ToolDescriptor] = []
        seen: dict[str, str] = {}
        primary: str | None = None
        for name, result in zip(enabled, results):
            if isinstance(result, BaseException):
                status.failed += 1
                status.errors[name] = str(result) or type(result).__name__
                logger.error("Error getting tools from server %s: %s", name, status.errors[name])
                continue
            status.successful += 1
            if primary is None:
                primary = name
            for tool in result:
                if tool.global_name in seen:
                    logger.warning(
                        "Duplicate tool %r from server %r (already from %r)",
                        tool.global_name, name, seen[tool.global_name],
                    )
                    continue
                seen[tool.global_name] = name
                tools.append(tool)

        logger.info(
            "Discovered %d tools from %d/%d servers", len(tools), status.successful, status.total,
        )
        return ToolCatalog(tools=tools, primary_server=primary, status=status)

    async def _discover_one(self, server_name: str, timeout: float) -> list[ToolDescriptor]:
        async def _list() -> Any:
            conn = await self._connections.get_connection(
                server_name, max_retries=self.connect_retries,
            )
            return await conn.list_tools()

        try:
            result = await asyncio.wait_for(_list(), timeout=timeout)
        except asyncio.TimeoutError:
            raise MCPConnectionError(
                f"Server discovery timeout after {timeout:g}s", server=server_name,
            ) from None
        tools = [ToolDescriptor.from_mcp(server_name, t) for t in result.tools]
        logger.info("Retrieved %d tools from %s server", len(tools), server_name)
        return tools

    async def catalog(self, *, refresh: bool = False) -> ToolCatalog:
        """Cached aggregate catalog; concurrent callers share one discovery.

        Only catalogs where at least one server answered are cached, so a
        total outage is retried on the next call.
        """
        if self._catalog is not None and not refresh:
            return self._catalog

        task = self._catalog_task
        if task is None:
            task = asyncio.create_task(self._discover_and_cache(), name="tool-discovery")
            self._catalog_task = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._catalog_task is task:
                self._catalog_task = None

    async def _discover_and_cache(self, timeout: float | None = None) -> ToolCatalog:
        catalog = await self.discover(timeout=timeout)
        if catalog.status.successful:
            self._catalog = catalog
        return catalog

    async def preload(self, timeout: float) -> DiscoveryStatus:
        """Connect to every enabled server and warm the catalog cache.

        Each server gets *timeout* seconds; the summary is logged and returned.
        """
        logger.info("Preloading MCP servers...")
        catalog = await self._discover_and_cache(timeout=timeout)
        status = catalog.status
        logger.info(
            "Server preload summary: %d total, %d loaded, %d failed",
            status.total, status.successful, status.failed,
        )
        for server_name, error in status.errors.items():
            logger.warning("Failed server %s: %s", server_name, error)
        return status

    async def server_actions(self) -> list[dict[str, Any]]:
        """Every configured server with its tools (``actions``) or its error."""
        catalog = await self.catalog()
        out: list[dict[str, Any]] = []
        for name, config in self._connections.servers.items():
            entry: dict[str, Any] = {"name": name, "enabled": not config.disabled}
            if config.disabled:
                entry["actions"] = []
            elif name in catalog.status.errors:
                entry["error"] = catalog.status.errors[name]
            else:
                entry["actions"] = [
                    {
                        "name": t.local_name,
                        "description": t.description,
                        "inputSchema": t.input_schema,
                    }
                    for t in catalog.tools_for(name)
                ]
            out.append(entry)
        return out

    def resolve(self, global_name: str, catalog: ToolCatalog | None = None) -> ResolvedTool | None:
        """Map a global tool name back to (server name, local name).

        Returns None when neither the catalog nor any server-name prefix
        matches; the caller then routes to its primary server.
        """
        catalog = catalog or self._catalog
        if catalog is not None:
            tool = catalog.get(global_name)
            if tool is not None:
                return ResolvedTool(tool.server_name, tool.local_name)

        parts = global_name.split("_")
        # Longest prefix first; at least one segment must remain for the tool name.
        for i in range(len(parts) - 1, 0, -1):
            prefix = "_".join(parts[:i])
            server_name = self._prefixes.get(prefix)
            if server_name is not None:
                return ResolvedTool(server_name, "_".join(parts[i:]))
        return None

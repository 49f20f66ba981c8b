"""Tests for mcp_conductor.registry — naming, resolution, discovery. All mocked."""

# mock-ok: discovery talks to live MCP servers; unit tests use fake connections

from __future__ import annotations

import asyncio
import logging
from typing import Any
from unittest.mock import MagicMock

import pytest

from mcp_conductor.config import ServerConfig
from mcp_conductor.connections import ConnectionManager
from mcp_conductor.registry import (
    ResolvedTool,
    ToolCatalog,
    ToolDescriptor,
    ToolRegistry,
    make_global_name,
    sanitize_server_name,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _make_tool(name: str, desc: str = "tool") -> MagicMock:
    t = MagicMock()
    t.name = name
    t.description = desc
    t.inputSchema = {"type": "object", "properties": {}}
    return t


class FakeConnection:
    """Stands in for Connection; behaviour keyed by server name."""

    tools: dict[str, list[str]] = {}
    failing: set[str] = set()
    slow: set[str] = set()
    list_calls: list[str] = []

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.is_open = False

    async def open(self, timeout: float) -> "FakeConnection":
        if self.config.name in self.failing:
            raise OSError(f"spawn {self.config.name} failed")
        self.is_open = True
        return self

    async def list_tools(self) -> Any:
        FakeConnection.list_calls.append(self.config.name)
        if self.config.name in self.slow:
            await asyncio.sleep(10)
        return MagicMock(tools=[_make_tool(n) for n in self.tools.get(self.config.name, [])])

    async def aclose(self) -> None:
        self.is_open = False


def _servers(*names: str, disabled: tuple[str, ...] = ()) -> dict[str, ServerConfig]:
    return {
        n: ServerConfig(name=n, command=f"{n}-server", disabled=n in disabled) for n in names
    }


def _registry(
    servers: dict[str, ServerConfig],
    tools: dict[str, list[str]],
    *,
    failing: set[str] | None = None,
    slow: set[str] | None = None,
    discovery_timeout: float = 15.0,
) -> ToolRegistry:
    FakeConnection.tools = tools
    FakeConnection.failing = failing or set()
    FakeConnection.slow = slow or set()
    FakeConnection.list_calls = []
    manager = ConnectionManager(servers, base_delay=0, connection_factory=FakeConnection)
    return ToolRegistry(manager, discovery_timeout=discovery_timeout)


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


class TestNaming:
    def test_sanitize(self):
        assert sanitize_server_name("github") == "github"
        assert sanitize_server_name("my.server") == "my_server"
        assert sanitize_server_name("a b/c@d") == "a_b_c_d"
        assert sanitize_server_name("keep-dash_under") == "keep-dash_under"

    def test_make_global_name(self):
        assert make_global_name("my.server", "read_file") == "my_server_read_file"

    def test_descriptor_to_openai(self):
        tool = ToolDescriptor.from_mcp("my.server", _make_tool("read_file", "Read a file"))
        schema = tool.to_openai()
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "my_server_read_file"
        assert schema["function"]["description"] == "Read a file"
        assert schema["function"]["parameters"]["type"] == "object"

    def test_descriptor_missing_schema(self):
        raw = _make_tool("x")
        raw.inputSchema = None
        raw.description = None
        tool = ToolDescriptor.from_mcp("s", raw)
        params = tool.to_openai()["function"]["parameters"]
        assert params == {"type": "object", "properties": {}}
        assert tool.description == ""


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

ROUND_TRIP_SERVERS = ["a", "a-b", "a.b.c", "srv", "my server"]
ROUND_TRIP_TOOLS = ["t", "do_thing", "read-file"]


class TestResolve:
    @pytest.mark.parametrize("server", ROUND_TRIP_SERVERS)
    @pytest.mark.parametrize("tool", ROUND_TRIP_TOOLS)
    def test_round_trip_by_prefix(self, server, tool):
        registry = _registry(_servers(*ROUND_TRIP_SERVERS), {})
        assert registry.resolve(make_global_name(server, tool)) == ResolvedTool(server, tool)

    def test_longest_prefix_wins(self):
        registry = _registry(_servers("my", "my.server"), {})
        assert registry.resolve("my_server_read_file") == ResolvedTool("my.server", "read_file")
        assert registry.resolve("my_list") == ResolvedTool("my", "list")

    def test_catalog_lookup_beats_prefix(self):
        # Tool "server_x" on "my" has the same global name a prefix search
        # would route to "my.server".
        registry = _registry(_servers("my", "my.server"), {})
        catalog = ToolCatalog(tools=[ToolDescriptor("my_server_x", "server_x", "my")])
        assert registry.resolve("my_server_x", catalog) == ResolvedTool("my", "server_x")
        assert registry.resolve("my_server_x") == ResolvedTool("my.server", "x")

    def test_unknown_returns_none(self):
        registry = _registry(_servers("github"), {})
        assert registry.resolve("search") is None
        assert registry.resolve("gitlab_search") is None

    def test_bare_server_name_is_not_a_tool(self):
        registry = _registry(_servers("github"), {})
        assert registry.resolve("github") is None


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestDiscover:
    async def test_aggregates_tools(self):
        registry = _registry(
            _servers("github", "fs"), {"github": ["search"], "fs": ["read_file", "write_file"]},
        )
        catalog = await registry.discover()
        assert [t.global_name for t in catalog.tools] == [
            "github_search", "fs_read_file", "fs_write_file",
        ]
        assert catalog.primary_server == "github"
        assert catalog.status.to_dict() == {
            "total": 2, "successful": 2, "failed": 0, "errors": {},
        }

    async def test_failed_server_is_non_fatal(self):
        registry = _registry(
            _servers("broken", "fs"), {"fs": ["read_file"]}, failing={"broken"},
        )
        catalog = await registry.discover()
        assert [t.global_name for t in catalog.tools] == ["fs_read_file"]
        assert catalog.primary_server == "fs"
        assert catalog.status.failed == 1
        assert "broken" in catalog.status.errors

    async def test_disabled_servers_skipped(self):
        registry = _registry(
            _servers("fs", "off", disabled=("off",)), {"fs": ["a"], "off": ["b"]},
        )
        catalog = await registry.discover()
        assert catalog.status.total == 1
        assert "off" not in FakeConnection.list_calls

    async def test_slow_server_times_out_independently(self):
        registry = _registry(
            _servers("slow", "fs"), {"fs": ["a"], "slow": ["b"]},
            slow={"slow"}, discovery_timeout=0.05,
        )
        catalog = await registry.discover()
        assert [t.global_name for t in catalog.tools] == ["fs_a"]
        assert "timeout" in catalog.status.errors["slow"]

    async def test_duplicate_global_name_keeps_first(self, caplog):
        registry = _registry(_servers("a.b", "a_b"), {"a.b": ["x"], "a_b": ["x"]})
        with caplog.at_level(logging.WARNING):
            catalog = await registry.discover()
        assert len(catalog.tools) == 1
        assert catalog.tools[0].server_name == "a.b"
        assert "Duplicate tool" in caplog.text

    async def test_catalog_is_cached_and_single_flight(self):
        registry = _registry(_servers("fs"), {"fs": ["a"]})
        first, second = await asyncio.gather(registry.catalog(), registry.catalog())
        third = await registry.catalog()
        assert first is second is third
        assert FakeConnection.list_calls == ["fs"]

    async def test_total_outage_not_cached(self):
        registry = _registry(_servers("fs"), {"fs": ["a"]}, failing={"fs"})
        catalog = await registry.catalog()
        assert catalog.tools == []
        assert registry.cached_catalog is None

    async def test_preload_reports_status(self):
        registry = _registry(_servers("ok", "bad"), {"ok": ["a"]}, failing={"bad"})
        status = await registry.preload(timeout=1.0)
        assert (status.total, status.successful, status.failed) == (2, 1, 1)
        assert registry.cached_catalog is not None

    async def test_server_actions(self):
        registry = _registry(
            _servers("fs", "bad", "off", disabled=("off",)), {"fs": ["read_file"]},
            failing={"bad"},
        )
        actions = {entry["name"]: entry for entry in await registry.server_actions()}
        assert actions["fs"]["enabled"] is True
        assert [a["name"] for a in actions["fs"]["actions"]] == ["read_file"]
        assert "error" in actions["bad"]
        assert actions["off"] == {"name": "off", "enabled": False, "actions": []}

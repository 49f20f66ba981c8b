"""Tests for mcp_conductor.connections — retries, single-flight, transports, teardown.

All mocked: no child processes or HTTP servers are started.
"""

# mock-ok: MCP transports require subprocess/HTTP lifecycle; unit tests must mock

from __future__ import annotations

import asyncio
import logging
import os
import signal
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mcp_conductor.config import ServerConfig
from mcp_conductor.connections import (
    Connection,
    ConnectionManager,
    connect_backoff,
    stdio_args,
    with_query_param,
)
from mcp_conductor.errors import ConfigError, ConnectTimeoutError, MCPConnectionError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class FakeConnection:
    """Connection double: fails the first ``fail_times`` opens per server."""

    fail_times: dict[str, int] = {}
    gate: asyncio.Event | None = None
    created: list["FakeConnection"] = []

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.is_open = False
        self.cancelled = False
        self.closed = False
        self.close_error: Exception | None = None
        FakeConnection.created.append(self)

    async def open(self, timeout: float) -> "FakeConnection":
        self.timeout = timeout
        if FakeConnection.gate is not None:
            try:
                await FakeConnection.gate.wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        remaining = FakeConnection.fail_times.get(self.config.name, 0)
        if remaining:
            FakeConnection.fail_times[self.config.name] = remaining - 1
            raise OSError(f"spawn {self.config.name} failed")
        self.is_open = True
        return self

    async def aclose(self) -> None:
        self.closed = True
        self.is_open = False
        if self.close_error is not None:
            raise self.close_error


@pytest.fixture(autouse=True)
def _reset_fakes():
    FakeConnection.fail_times = {}
    FakeConnection.gate = None
    FakeConnection.created = []
    yield


def _manager(**kwargs: Any) -> ConnectionManager:
    servers = {
        "fs": ServerConfig(name="fs", command="fs-server"),
        "remote": ServerConfig(name="remote", url="http://localhost:3002/mcp"),
    }
    return ConnectionManager(servers, connection_factory=FakeConnection, **kwargs)


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestConnectBackoff:
    def test_sequence(self):
        assert [connect_backoff(a) for a in range(5)] == [2.0, 4.0, 8.0, 15.0, 15.0]

    def test_custom(self):
        assert connect_backoff(1, base_delay=1.0, max_delay=3.0) == 2.0
        assert connect_backoff(4, base_delay=1.0, max_delay=3.0) == 3.0


class TestWithQueryParam:
    def test_appends(self):
        assert with_query_param("http://h/mcp", "clientId", "c1") == "http://h/mcp?clientId=c1"

    def test_keeps_existing_query(self):
        url = with_query_param("http://h/mcp?token=abc", "clientId", "c1")
        assert url == "http://h/mcp?token=abc&clientId=c1"


class TestStdioArgs:
    def test_npx_env_inserted_before_package(self):
        args = stdio_args("npx", ["-y", "@acme/server", "--port", "1"], {"TOKEN": "t", "MODE": "x"})
        assert args == ["-y", "-e", "TOKEN=t", "-e", "MODE=x", "@acme/server", "--port", "1"]

    def test_npx_options_only(self):
        assert stdio_args("npx", ["-y"], {"A": "1"}) == ["-y", "-e", "A=1"]

    def test_other_commands_untouched(self):
        args = ["server.py"]
        assert stdio_args("python", args, {"A": "1"}) == ["server.py"]
        assert stdio_args("npx", args, {}) == ["server.py"]


# ---------------------------------------------------------------------------
# ConnectionManager
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestGetConnection:
    async def test_cache_hit(self):
        manager = _manager()
        first = await manager.get_connection("fs")
        second = await manager.get_connection("fs")
        assert first is second
        assert len(FakeConnection.created) == 1
        assert manager.cached_servers() == ["fs"]

    async def test_unknown_server(self):
        manager = _manager()
        with pytest.raises(ConfigError, match="not configured"):
            await manager.get_connection("nope")

    async def test_transport_specific_timeouts(self):
        manager = _manager()
        assert (await manager.get_connection("fs")).timeout == 30.0
        assert (await manager.get_connection("remote")).timeout == 45.0

    async def test_retries_with_backoff_then_succeeds(self):
        FakeConnection.fail_times = {"fs": 2}
        manager = _manager()
        with patch("mcp_conductor.connections.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            conn = await manager.get_connection("fs")
        assert conn.is_open
        assert [c.args[0] for c in mock_sleep.call_args_list] == [2.0, 4.0]
        assert len(FakeConnection.created) == 3

    async def test_exhausted_retries_not_cached(self):
        FakeConnection.fail_times = {"fs": 10}
        manager = _manager(max_retries=3)
        with patch("mcp_conductor.connections.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(MCPConnectionError) as exc_info:
                await manager.get_connection("fs")
        assert [c.args[0] for c in mock_sleep.call_args_list] == [2.0, 4.0, 8.0]
        assert exc_info.value.server == "fs"
        assert isinstance(exc_info.value.original, OSError)
        assert manager.cached_servers() == []

    async def test_per_call_retry_override(self):
        FakeConnection.fail_times = {"fs": 10}
        manager = _manager()
        with patch("mcp_conductor.connections.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(MCPConnectionError, match="after 2 attempts"):
                await manager.get_connection("fs", max_retries=1)

    async def test_closed_cached_connection_is_replaced(self):
        manager = _manager()
        first = await manager.get_connection("fs")
        first.is_open = False
        second = await manager.get_connection("fs")
        assert second is not first


@pytest.mark.asyncio
class TestSingleFlight:
    async def test_concurrent_callers_share_one_connect(self):
        FakeConnection.gate = asyncio.Event()
        manager = _manager()
        waiters = [asyncio.create_task(manager.get_connection("fs")) for _ in range(3)]
        await asyncio.sleep(0)
        FakeConnection.gate.set()
        results = await asyncio.gather(*waiters)
        assert results[0] is results[1] is results[2]
        assert len(FakeConnection.created) == 1

    async def test_cancelling_one_waiter_keeps_connect_alive(self):
        FakeConnection.gate = asyncio.Event()
        manager = _manager()
        a = asyncio.create_task(manager.get_connection("fs"))
        b = asyncio.create_task(manager.get_connection("fs"))
        await asyncio.sleep(0)
        a.cancel()
        await asyncio.sleep(0)
        FakeConnection.gate.set()
        conn = await b
        assert conn.is_open
        assert a.cancelled()

    async def test_cancelling_last_waiter_cancels_connect(self):
        FakeConnection.gate = asyncio.Event()
        manager = _manager()
        waiter = asyncio.create_task(manager.get_connection("fs"))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert FakeConnection.created[0].cancelled
        assert manager.cached_servers() == []


@pytest.mark.asyncio
class TestTeardown:
    async def test_close_all_logs_and_continues(self, caplog):
        manager = _manager()
        fs = await manager.get_connection("fs")
        remote = await manager.get_connection("remote")
        fs.close_error = RuntimeError("already dead")
        with caplog.at_level(logging.ERROR):
            await manager.close_all()
        assert fs.closed and remote.closed
        assert manager.cached_servers() == []
        assert "already dead" in caplog.text

    async def test_evict(self):
        manager = _manager()
        conn = await manager.get_connection("fs")
        assert await manager.evict("fs") is True
        assert conn.closed
        assert await manager.evict("fs") is False

    async def test_context_manager_closes(self):
        async with _manager() as manager:
            conn = await manager.get_connection("fs")
        assert conn.closed

    async def test_install_signal_handlers(self):
        manager = _manager()
        loop = MagicMock()
        manager.install_signal_handlers(loop)
        registered = [c.args[0] for c in loop.add_signal_handler.call_args_list]
        assert registered == [signal.SIGINT, signal.SIGTERM]


# ---------------------------------------------------------------------------
# Connection (real class, patched transports)
# ---------------------------------------------------------------------------


def _fake_transport(record: dict[str, Any], streams: tuple[Any, ...]):
    @asynccontextmanager
    async def _cm(arg: Any):
        record["arg"] = arg
        try:
            yield streams
        finally:
            record["closed"] = True

    return _cm


def _mock_session() -> AsyncMock:
    session = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    session.initialize = AsyncMock()
    return session


@pytest.mark.asyncio
class TestConnection:
    async def test_stdio_open_and_close(self):
        record: dict[str, Any] = {}
        session = _mock_session()
        session.list_tools = AsyncMock(return_value=MagicMock(tools=[]))
        config = ServerConfig(name="fs", command="fs-server", args=["--root", "/"], env={"TOKEN": "t"})

        with (
            patch("mcp_conductor.connections.stdio_client", _fake_transport(record, ("r", "w"))),
            patch("mcp_conductor.connections.ClientSession", MagicMock(return_value=session)) as mock_cls,
        ):
            with patch.dict(os.environ, {"CONDUCTOR_TEST_VAR": "1"}):
                conn = await Connection(config).open(timeout=1.0)
            assert conn.is_open
            await conn.list_tools()
            session.list_tools.assert_awaited_once()

            params = record["arg"]
            assert params.command == "fs-server"
            assert params.args == ["--root", "/"]
            assert params.env["TOKEN"] == "t"
            assert params.env["CONDUCTOR_TEST_VAR"] == "1"
            assert params.cwd == os.getcwd()
            client_info = mock_cls.call_args.kwargs["client_info"]
            assert client_info.name == "mcp-conductor-fs"

            await conn.aclose()
            assert not conn.is_open
            assert record["closed"] is True
            session.__aexit__.assert_awaited()

    async def test_streaming_adds_client_id(self):
        record: dict[str, Any] = {}
        config = ServerConfig(name="remote", url="http://localhost:3002/mcp?x=1")
        with (
            patch(
                "mcp_conductor.connections.streamablehttp_client",
                _fake_transport(record, ("r", "w", lambda: "sid")),
            ),
            patch("mcp_conductor.connections.ClientSession", MagicMock(return_value=_mock_session())),
        ):
            conn = await Connection(config).open(timeout=1.0)
            assert record["arg"].startswith("http://localhost:3002/mcp?x=1&clientId=client-remote-")
            await conn.aclose()

    async def test_sse_transport(self):
        record: dict[str, Any] = {}
        config = ServerConfig(name="old", url="http://localhost:8080/sse", transport="sse")
        with (
            patch("mcp_conductor.connections.sse_client", _fake_transport(record, ("r", "w"))),
            patch("mcp_conductor.connections.ClientSession", MagicMock(return_value=_mock_session())),
        ):
            conn = await Connection(config).open(timeout=1.0)
            assert "clientId=client-old-" in record["arg"]
            await conn.aclose()

    async def test_timeout_tears_down_transport(self):
        record: dict[str, Any] = {}
        session = _mock_session()

        async def _hang() -> None:
            await asyncio.sleep(10)

        session.initialize = AsyncMock(side_effect=_hang)
        config = ServerConfig(name="fs", command="fs-server")
        with (
            patch("mcp_conductor.connections.stdio_client", _fake_transport(record, ("r", "w"))),
            patch("mcp_conductor.connections.ClientSession", MagicMock(return_value=session)),
        ):
            conn = Connection(config)
            with pytest.raises(ConnectTimeoutError, match="Connection timeout"):
                await conn.open(timeout=0.05)
        assert record["closed"] is True
        assert not conn.is_open

    async def test_initialize_failure_propagates(self):
        record: dict[str, Any] = {}
        session = _mock_session()
        session.initialize = AsyncMock(side_effect=RuntimeError("handshake failed"))
        config = ServerConfig(name="fs", command="fs-server")
        with (
            patch("mcp_conductor.connections.stdio_client", _fake_transport(record, ("r", "w"))),
            patch("mcp_conductor.connections.ClientSession", MagicMock(return_value=session)),
        ):
            with pytest.raises(RuntimeError, match="handshake failed"):
                await Connection(config).open(timeout=1.0)
        assert record["closed"] is True

    async def test_session_property_when_closed(self):
        conn = Connection(ServerConfig(name="fs", command="fs-server"))
        with pytest.raises(MCPConnectionError, match="not open"):
            conn.session

"""Connection Manager — one live MCP client session per configured server.

Usage:
    async with ConnectionManager(servers) as manager:
        conn = await manager.get_connection("github")
        tools = await conn.list_tools()
        result = await conn.call_tool("search_repositories", {"query": "mcp"})

Each Connection runs its transport + ClientSession inside a dedicated
background task, so it can be opened by one task and closed by another
(anyio cancel scopes must be exited by the task that entered them).

Connects are single-flight per server name: concurrent callers that miss
the cache await the same in-flight connect task instead of spawning a
second server process.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import signal
import uuid
from contextlib import AsyncExitStack
from typing import Any, Callable, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Implementation

from mcp_conductor.config import ServerConfig, TransportKind
from mcp_conductor.errors import ConfigError, ConnectTimeoutError, MCPConnectionError

logger = logging.getLogger(__name__)

CLIENT_NAME = "mcp-conductor"
CLIENT_VERSION = "0.1.0"

DEFAULT_MAX_CONNECT_RETRIES: int = 3
"""Retries after the first failed connect attempt."""

DEFAULT_STDIO_CONNECT_TIMEOUT: float = 30.0
DEFAULT_HTTP_CONNECT_TIMEOUT: float = 45.0
"""Streaming transports get longer: the server may be cold-starting remotely."""

DEFAULT_CLOSE_TIMEOUT: float = 5.0


def connect_backoff(attempt: int, base_delay: float = 2.0, max_delay: float = 15.0) -> float:
    """Exponential backoff without jitter: 2s, 4s, 8s, then capped at *max_delay*."""
    return min(base_delay * (2 ** attempt), max_delay)


def with_query_param(url: str, key: str, value: str) -> str:
    """Return *url* with ``key=value`` appended to its query string."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append((key, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


def stdio_args(command: str, args: list[str], env: Mapping[str, str]) -> list[str]:
    """Arguments for a spawned server.

    ``npx`` also gets each env entry as ``-e KEY=VALUE``, inserted before the
    package name (after any leading npx options).
    """
    args = list(args)
    if command != "npx" or not env:
        return args
    env_args = [item for key, value in env.items() for item in ("-e", f"{key}={value}")]
    package_index = next((i for i, arg in enumerate(args) if not arg.startswith("-")), len(args))
    return args[:package_index] + env_args + args[package_index:]


def _consume_exception(fut: asyncio.Future[Any]) -> None:
    # Mark the readiness future's exception as retrieved; open() reports it.
    if not fut.cancelled():
        fut.exception()


class Connection:
    """Transport handle + MCP ClientSession bound to exactly one ServerConfig."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
    ) -> None:
        self.config = config
        self.client_id = f"client-{config.name}-{uuid.uuid4().hex[:12]}"
        self._close_timeout = close_timeout
        self._session: ClientSession | None = None
        self._task: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._closing = asyncio.Event()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_open(self) -> bool:
        return (
            self._session is not None
            and self._task is not None
            and not self._task.done()
        )

    @property
    def session(self) -> ClientSession:
        if self._session is None:
            raise MCPConnectionError(
                f"Connection to {self.name!r} is not open", server=self.name,
            )
        return self._session

    async def open(self, timeout: float) -> "Connection":
        """Start the transport and initialize the session within *timeout* seconds.

        On timeout the half-open transport is torn down (the child process
        is terminated / the HTTP stream closed) before ConnectTimeoutError
        is raised.
        """
        if self._task is not None:
            raise MCPConnectionError(f"Connection to {self.name!r} was already opened", server=self.name)

        self._ready = asyncio.get_running_loop().create_future()
        self._ready.add_done_callback(_consume_exception)
        logger.info(
            "Connecting to MCP server %r via %s", self.name, self.config.transport_kind.value,
        )
        self._task = asyncio.create_task(self._run(), name=f"mcp-connection:{self.name}")
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=timeout)
        except asyncio.TimeoutError:
            await self.aclose()
            raise ConnectTimeoutError(
                f"Connection timeout after {timeout:g}s", server=self.name,
            ) from None
        except BaseException:
            await self.aclose()
            raise
        logger.info("MCP client connected to %r server", self.name)
        return self

    async def _run(self) -> None:
        assert self._ready is not None
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream = await self._open_transport(stack)
                session = await stack.enter_async_context(
                    ClientSession(
                        read_stream,
                        write_stream,
                        message_handler=self._on_message,
                        client_info=Implementation(
                            name=f"{CLIENT_NAME}-{self.name}", version=CLIENT_VERSION,
                        ),
                    )
                )
                await session.initialize()
                self._session = session
                self._ready.set_result(None)
                await self._closing.wait()
        except Exception as exc:
            if self._ready.done():
                logger.error("MCP connection to %r lost: %s", self.name, exc)
            else:
                self._ready.set_exception(exc)
        finally:
            self._session = None
            if not self._ready.done():
                self._ready.set_exception(
                    MCPConnectionError(
                        f"Connection to {self.name!r} closed before it was ready", server=self.name,
                    )
                )

    async def _open_transport(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        config = self.config
        kind = config.transport_kind

        if kind is TransportKind.STDIO:
            if config.env:
                logger.info("Server %r environment variables: %s", self.name, sorted(config.env))
            else:
                logger.debug("No custom environment variables for server %r", self.name)
            params = StdioServerParameters(
                command=config.command or "",
                args=stdio_args(config.command or "", config.args, config.env),
                env={**os.environ, **config.env},
                cwd=os.getcwd(),
            )
            logger.info("Launching server %r: %s %s", self.name, params.command, " ".join(params.args))
            read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
            return read_stream, write_stream

        url = with_query_param(config.url or "", "clientId", self.client_id)
        if kind is TransportKind.SSE:
            read_stream, write_stream = await stack.enter_async_context(sse_client(url))
        else:
            read_stream, write_stream, _get_session_id = await stack.enter_async_context(
                streamablehttp_client(url)
            )
        logger.info("%s transport for client %s opened", kind.value, self.client_id)
        return read_stream, write_stream

    async def _on_message(self, message: Any) -> None:
        if isinstance(message, Exception):
            logger.error(
                "%s transport for client %s error: %s",
                self.config.transport_kind.value, self.client_id, message,
            )

    async def list_tools(self) -> Any:
        return await self.session.list_tools()

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        return await self.session.call_tool(name, arguments)

    async def aclose(self) -> None:
        """Close the session and transport. Safe to call more than once."""
        self._closing.set()
        task = self._task
        if task is None or task.done():
            return
        if self._session is None:
            # Still connecting: abort the half-open transport outright.
            task.cancel()
        done, _pending = await asyncio.wait({task}, timeout=self._close_timeout)
        if task not in done:
            logger.warning(
                "Closing %r exceeded %.1fs; cancelling transport", self.name, self._close_timeout,
            )
            task.cancel()
            await asyncio.wait({task}, timeout=self._close_timeout)


ConnectionFactory = Callable[[ServerConfig], Connection]


class ConnectionManager:
    """Owns the connection cache: at most one live Connection per server name.

    Args:
        servers: Configured servers by name.
        max_retries: Retries after the first failed connect attempt.
        base_delay / max_delay: Backoff parameters, seconds.
        stdio_timeout / http_timeout: Per-attempt connect timeouts, seconds.
        connection_factory: Builds an unopened Connection for a config.
            Defaults to :class:`Connection`; tests inject fakes here.
    """

    def __init__(
        self,
        servers: Mapping[str, ServerConfig],
        *,
        max_retries: int = DEFAULT_MAX_CONNECT_RETRIES,
        base_delay: float = 2.0,
        max_delay: float = 15.0,
        stdio_timeout: float = DEFAULT_STDIO_CONNECT_TIMEOUT,
        http_timeout: float = DEFAULT_HTTP_CONNECT_TIMEOUT,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self._servers: dict[str, ServerConfig] = dict(servers)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.stdio_timeout = stdio_timeout
        self.http_timeout = http_timeout
        self._factory: ConnectionFactory = connection_factory or Connection
        self._connections: dict[str, Connection] = {}
        self._inflight: dict[str, asyncio.Task[Connection]] = {}
        self._waiters: dict[str, int] = {}
        self._shutdown_task: asyncio.Task[None] | None = None

    @property
    def servers(self) -> Mapping[str, ServerConfig]:
        return self._servers

    def server_config(self, server_name: str) -> ServerConfig:
        config = self._servers.get(server_name)
        if config is None:
            raise ConfigError(f'MCP server "{server_name}" not configured')
        return config

    def connect_timeout(self, config: ServerConfig) -> float:
        if config.transport_kind is TransportKind.STDIO:
            return self.stdio_timeout
        return self.http_timeout

    def cached_servers(self) -> list[str]:
        return [name for name, conn in self._connections.items() if conn.is_open]

    async def get_connection(self, server_name: str, *, max_retries: int | None = None) -> Connection:
        """Return the cached live Connection, connecting (with retries) on a miss.

        Raises:
            ConfigError: server_name is not configured.
            MCPConnectionError: every attempt failed; nothing is cached.
        """
        config = self.server_config(server_name)

        conn = self._connections.get(server_name)
        if conn is not None:
            if conn.is_open:
                return conn
            logger.info("Cached connection to %r is closed; reconnecting", server_name)
            self._connections.pop(server_name, None)

        task = self._inflight.get(server_name)
        if task is None:
            retries = self.max_retries if max_retries is None else max_retries
            task = asyncio.create_task(
                self._connect_with_retries(config, retries), name=f"connect:{server_name}",
            )
            self._inflight[server_name] = task
            task.add_done_callback(functools.partial(self._forget_inflight, server_name))

        self._waiters[server_name] = self._waiters.get(server_name, 0) + 1
        try:
            return await asyncio.shield(task)
        finally:
            remaining = self._waiters[server_name] - 1
            if remaining:
                self._waiters[server_name] = remaining
            else:
                self._waiters.pop(server_name, None)
                if not task.done():
                    logger.info("No callers left waiting on %r; cancelling connect", server_name)
                    task.cancel()

    def _forget_inflight(self, server_name: str, task: asyncio.Task[Connection]) -> None:
        if self._inflight.get(server_name) is task:
            del self._inflight[server_name]
        if not task.cancelled():
            task.exception()

    async def _connect_with_retries(self, config: ServerConfig, max_retries: int) -> Connection:
        timeout = self.connect_timeout(config)
        last_error: Exception | None = None

        for attempt in range(max_retries + 1):
            conn = self._factory(config)
            try:
                await conn.open(timeout)
            except Exception as exc:
                last_error = exc
                logger.error(
                    "Error creating MCP client for %s (attempt %d/%d): %s",
                    config.name, attempt + 1, max_retries + 1, exc,
                )
                if attempt >= max_retries:
                    break
                delay = connect_backoff(attempt, self.base_delay, self.max_delay)
                logger.warning("Retrying %s in %.1fs", config.name, delay)
                await asyncio.sleep(delay)
                continue

            self._connections[config.name] = conn
            return conn

        raise MCPConnectionError(
            f"Could not connect to MCP server {config.name!r} after "
            f"{max_retries + 1} attempts: {last_error}",
            server=config.name,
            original=last_error,
        )

    async def evict(self, server_name: str) -> bool:
        """Close and forget one cached connection. Returns True if one existed."""
        conn = self._connections.pop(server_name, None)
        if conn is None:
            return False
        try:
            await conn.aclose()
        except Exception as exc:
            logger.error("Error closing client for %r: %s", server_name, exc)
        return True

    async def close_all(self) -> None:
        """Close and evict every cached connection, logging individual failures."""
        connections = list(self._connections.items())
        self._connections.clear()
        for server_name, conn in connections:
            try:
                await conn.aclose()
                logger.info("Closed client connection to %r server", server_name)
            except Exception as exc:
                logger.error("Error closing client for %r: %s", server_name, exc)

    async def aclose(self) -> None:
        """Shutdown: abort in-flight connects, then close everything cached."""
        for task in list(self._inflight.values()):
            task.cancel()
        await self.close_all()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Close every connection on SIGINT/SIGTERM, then let the signal proceed."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, loop, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable for %s on this platform", sig.name)

    def _on_signal(self, loop: asyncio.AbstractEventLoop, sig: signal.Signals) -> None:
        logger.info("Received %s; closing MCP connections", sig.name)
        if self._shutdown_task is None:
            self._shutdown_task = loop.create_task(self._shutdown(loop, sig))

    async def _shutdown(self, loop: asyncio.AbstractEventLoop, sig: signal.Signals) -> None:
        await self.aclose()
        loop.remove_signal_handler(sig)
        signal.raise_signal(sig)

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

"""Typed configuration for mcp_conductor.

Two layers:

- ``ServerConfig``: one entry per tool server, loaded once from a JSON or
  YAML file with a top-level ``mcpServers`` mapping::

      {
        "mcpServers": {
          "github": {"command": "npx", "args": ["-y", "@mcp/github"],
                     "env": {"GITHUB_TOKEN": "..."}},
          "browser": {"url": "http://localhost:3002/mcp", "preferStdio": false}
        }
      }

- ``ConductorConfig``: runtime policy resolved once (usually from the
  environment) and passed explicitly to the components.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from mcp_conductor.errors import ConfigError

logger = logging.getLogger(__name__)

MODEL_ENV = "MCP_CONDUCTOR_MODEL"
MAX_TOKENS_ENV = "MCP_CONDUCTOR_MAX_TOKENS"
MAX_HISTORY_ENV = "MCP_CONDUCTOR_MAX_HISTORY"
LAST_RESPONSE_ONLY_ENV = "MCP_CONDUCTOR_LAST_RESPONSE_ONLY"
QUERY_TIMEOUT_ENV = "MCP_CONDUCTOR_QUERY_TIMEOUT"
PRELOAD_TIMEOUT_ENV = "MCP_CONDUCTOR_PRELOAD_TIMEOUT"
SERVERS_CONFIG_ENV = "MCP_CONDUCTOR_SERVERS_CONFIG"
EXTRA_SERVER_ENV = "MCP_CONDUCTOR_EXTRA_SERVER"

DEFAULT_MODEL = "anthropic/claude-3-7-sonnet-20250219"
DEFAULT_SERVERS_CONFIG = "servers-config.json"


class TransportKind(str, Enum):
    STDIO = "stdio"
    STREAMABLE_HTTP = "streamable-http"
    SSE = "sse"


class ServerConfig(BaseModel):
    """One configured tool server. Immutable after load."""

    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    name: str = Field(min_length=1)
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str | None = None
    prefer_stdio: bool = Field(default=True, alias="preferStdio")
    disabled: bool = False
    transport: Literal["streamable-http", "sse"] = "streamable-http"

    @model_validator(mode="after")
    def _require_transport(self) -> "ServerConfig":
        if not self.command and not self.url:
            raise ValueError(f"server {self.name!r} needs a command or a url")
        return self

    @property
    def transport_kind(self) -> TransportKind:
        """Spawned process when a command is given and streaming isn't
        explicitly preferred, or when there is no URL; streaming otherwise."""
        if (self.command and self.prefer_stdio) or not self.url:
            return TransportKind.STDIO
        if self.transport == "sse":
            return TransportKind.SSE
        return TransportKind.STREAMABLE_HTTP


def _parse_server(name: str, raw: Any) -> ServerConfig:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Server {name!r} must be a mapping, got {type(raw).__name__}")
    try:
        return ServerConfig(**{**raw, "name": name})
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration for server {name!r}: {exc}", original=exc) from exc


def parse_servers_config(raw: Any) -> dict[str, ServerConfig]:
    """Validate an already-parsed config document (``{"mcpServers": {...}}``)."""
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Servers config root must be a mapping. Got: {type(raw).__name__}")
    servers_raw = raw.get("mcpServers") or {}
    if not isinstance(servers_raw, Mapping):
        raise ConfigError("'mcpServers' must be a mapping of server name -> settings")
    return {str(name): _parse_server(str(name), entry) for name, entry in servers_raw.items()}


def load_servers_config(path: str | Path) -> dict[str, ServerConfig]:
    """Load server configurations from a JSON or YAML file.

    A missing file is not an error: it is logged and no servers are
    available. Anything unparsable raises ConfigError.
    """
    path = Path(path).expanduser()
    if not path.is_file():
        logger.warning("Could not load servers config %s: file not found", path)
        logger.warning("No MCP servers will be available")
        return {}

    text = path.read_text()
    suffix = path.suffix.lower()
    try:
        if suffix in {".yaml", ".yml"}:
            raw = yaml.safe_load(text)
        else:
            raw = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not parse servers config {path}: {exc}", original=exc) from exc

    servers = parse_servers_config(raw)
    logger.info("Loaded MCP server configurations: %s", sorted(servers))
    return servers


def inject_extra_server(
    servers: Mapping[str, ServerConfig],
    environ: Mapping[str, str] | None = None,
) -> dict[str, ServerConfig]:
    """Add the one server entry carried by MCP_CONDUCTOR_EXTRA_SERVER, if set.

    The variable holds a JSON object with a ``name`` key plus the usual
    server settings. Returns a new mapping; the input is not mutated.
    """
    environ = os.environ if environ is None else environ
    merged = dict(servers)
    raw = environ.get(EXTRA_SERVER_ENV, "").strip()
    if not raw:
        return merged
    try:
        entry = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{EXTRA_SERVER_ENV} is not valid JSON: {exc}", original=exc) from exc
    if not isinstance(entry, dict) or not entry.get("name"):
        raise ConfigError(f"{EXTRA_SERVER_ENV} must be a JSON object with a 'name' key")
    name = str(entry.pop("name"))
    if name in merged:
        logger.warning("%s overrides configured server %r", EXTRA_SERVER_ENV, name)
    merged[name] = _parse_server(name, entry)
    logger.info("Injected MCP server %r from %s", name, EXTRA_SERVER_ENV)
    return merged


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = -1
    if value <= 0:
        logger.warning("Invalid %s=%r; expected a positive integer. Defaulting to %d.", key, raw, default)
        return default
    return value


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        value = -1.0
    if value <= 0:
        logger.warning("Invalid %s=%r; expected a positive number. Defaulting to %s.", key, raw, default)
        return default
    return value


def _env_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key, "").strip().lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    logger.warning("Invalid %s=%r; expected on/off boolean. Defaulting to %s.", key, raw, default)
    return default


@dataclass(frozen=True)
class ConductorConfig:
    """Runtime policy/config resolved once and passed explicitly to components.

    Timeouts are in seconds.
    """

    model: str = DEFAULT_MODEL
    max_tokens: int = 2000
    max_conversation_history: int = 10
    last_response_only: bool = False
    query_timeout: float = 120.0
    discovery_timeout: float = 15.0
    preload_timeout: float = 60.0
    max_connect_retries: int = 3
    discovery_connect_retries: int = 1
    max_turns: int = 5
    extended_max_turns: int = 8
    servers_config_path: str = DEFAULT_SERVERS_CONFIG

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ConductorConfig":
        """Build typed config from environment variables."""
        environ = os.environ if environ is None else environ
        return cls(
            model=environ.get(MODEL_ENV, "").strip() or DEFAULT_MODEL,
            max_tokens=_env_int(environ, MAX_TOKENS_ENV, 2000),
            max_conversation_history=_env_int(environ, MAX_HISTORY_ENV, 10),
            last_response_only=_env_bool(environ, LAST_RESPONSE_ONLY_ENV, False),
            query_timeout=_env_float(environ, QUERY_TIMEOUT_ENV, 120.0),
            preload_timeout=_env_float(environ, PRELOAD_TIMEOUT_ENV, 60.0),
            servers_config_path=environ.get(SERVERS_CONFIG_ENV, "").strip() or DEFAULT_SERVERS_CONFIG,
        )

"""Structured error types for mcp_conductor.

Callers can catch specific error types instead of parsing raw SDK exceptions:

    from mcp_conductor.errors import ConfigError, MCPConnectionError

    try:
        conn = await manager.get_connection("github")
    except ConfigError:
        # Server isn't configured; fix servers-config.json
        ...
    except MCPConnectionError:
        # Transport never came up, even after retries
        ...

Failures local to one server or one tool are reported as data by the agent
loop; only transport-class failures (see :func:`is_transport_failure`)
trigger the global remediation of dropping every cached connection.
"""

from __future__ import annotations

from typing import Any


class ConductorError(Exception):
    """Base for all mcp_conductor errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class ConfigError(ConductorError):
    """Server not configured, or the configuration is malformed."""


class MCPConnectionError(ConductorError):
    """Transport setup for a tool server failed (after retries)."""

    def __init__(
        self,
        message: str,
        *,
        server: str | None = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.server = server


class ConnectTimeoutError(MCPConnectionError):
    """A single connect attempt exceeded its transport-specific timeout."""


class ToolInvocationError(ConductorError):
    """An individual tool call failed or the server flagged its result as an error."""


class ReasoningServiceError(ConductorError):
    """The reasoning-service call failed after exhausting its retries."""


class QueryTimeoutError(ConductorError):
    """The overall query deadline elapsed."""


# Messages that mean the underlying stream is gone and every cached
# connection should be rebuilt.
_TRANSPORT_FAILURE_PATTERNS = [
    "stream is not readable",
    "stream not readable",
    "network error",
    "connection closed",
]

# Transient reasoning-service conditions worth another attempt.
_RETRYABLE_PATTERNS = [
    "rate limit",
    "rate_limit",
    "timeout",
    "timed out",
    "connection reset",
    "connection error",
    "network error",
    "service unavailable",
    "internal server error",
    "server error",
    "overloaded",
    "http 500",
    "http 502",
    "http 503",
    "http 529",
    "temporary failure",
]


def _error_chain(error: BaseException) -> list[BaseException]:
    """The error plus every wrapped original / cause, outermost first."""
    chain: list[BaseException] = []
    current: BaseException | None = error
    while current is not None and current not in chain:
        chain.append(current)
        wrapped = getattr(current, "original", None)
        current = wrapped if isinstance(wrapped, BaseException) else current.__cause__
    return chain


def is_transport_failure(error: BaseException) -> bool:
    """True when the error (or anything it wraps) indicates a broken transport."""
    for item in _error_chain(error):
        text = str(item).lower()
        if any(p in text for p in _TRANSPORT_FAILURE_PATTERNS):
            return True
    return False


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def is_retryable_reasoning_error(error: Exception) -> bool:
    """Decide whether a failed reasoning-service call is worth retrying.

    Uses litellm exception types when available, falls back to string matching.
    """
    import litellm as _lt

    permanent_types = _litellm_error_types(
        _lt,
        (
            "AuthenticationError",
            "PermissionDeniedError",
            "NotFoundError",
            "ContentPolicyViolationError",
            "BadRequestError",
        ),
    )
    if permanent_types and isinstance(error, permanent_types):
        return False

    transient_types = _litellm_error_types(
        _lt,
        (
            "RateLimitError",
            "InternalServerError",
            "ServiceUnavailableError",
            "APIConnectionError",
            "Timeout",
        ),
    )
    if transient_types and isinstance(error, transient_types):
        return True

    error_str = str(error).lower()
    return any(p in error_str for p in _RETRYABLE_PATTERNS)

"""
Error taxonomy for the relay runtime.

Every error raised by the runner, the request processors and the tools derives
from RelayError so callers can map `code` onto their own envelopes.
"""

from __future__ import annotations

from typing import Any


class RelayError(RuntimeError):
    """Base relay error."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(RelayError):
    """A named session, agent or tool does not exist."""

    code = "NOT_FOUND"


class SessionNotFound(NotFoundError):
    """Raised by session services when the session key is unknown."""


class AgentNotFound(NotFoundError):
    """Raised when a transfer names an agent that is not in the tree."""


class InvalidArgumentError(RelayError):
    """Malformed tool call arguments."""

    code = "INVALID_ARGUMENT"


class UnsupportedError(RelayError):
    """A requested capability is not supported by the active agent or model."""

    code = "UNSUPPORTED"


class InvocationCancelled(RelayError):
    """The invocation context was ended while the agent was running."""

    code = "CANCELLED"


class UpstreamError(RelayError):
    """Model backend or storage failure."""

    code = "UPSTREAM_ERROR"


class DuplicateAgentNameError(RelayError):
    """Two agents in one tree share a name."""

    code = "DUPLICATE_AGENT_NAME"


class LlmCallLimitExceeded(RelayError):
    """The invocation made more model calls than RunConfig.max_llm_calls allows."""

    code = "LLM_CALL_LIMIT_EXCEEDED"

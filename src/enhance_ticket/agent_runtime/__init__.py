"""Agent runtime clients.

This package provides the abstract runtime interface the session runner
drives, and the HTTP implementation that talks to the sandbox agent server.
"""

from enhance_ticket.agent_runtime.base import (
    AgentRuntime,
    AgentRuntimeError,
    AgentSessionClosedError,
    EventPage,
    RuntimeEvent,
    TransientStreamError,
    is_transient_stream_error,
)
from enhance_ticket.agent_runtime.http import SandboxAgentClient

# NOTE: Update this list when adding new exports to this module.
__all__ = [
    # Base classes and types
    "AgentRuntime",
    "AgentRuntimeError",
    "AgentSessionClosedError",
    "EventPage",
    "RuntimeEvent",
    "TransientStreamError",
    "is_transient_stream_error",
    # HTTP client
    "SandboxAgentClient",
]

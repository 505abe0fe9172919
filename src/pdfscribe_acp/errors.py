"""Error types for the ACP client.

Three families, each carrying a ``kind`` so callers and the UI can branch
without parsing messages:

- ProtocolError: bad or unexpected data on the wire (recovered locally)
- StateError: an operation was called in the wrong lifecycle state
- ProcessError: the agent subprocess failed to start or died

RpcError wraps a JSON-RPC error response returned by the agent.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ProtocolErrorKind(str, Enum):
    """Wire-level faults."""

    MALFORMED_MESSAGE = "malformed_message"
    UNMATCHED_RESPONSE = "unmatched_response"
    UNKNOWN_TOOL_CALL = "unknown_tool_call"
    TIMEOUT = "timeout"


class StateErrorKind(str, Enum):
    """Lifecycle contract violations."""

    NOT_INITIALIZED = "not_initialized"
    ALREADY_INITIALIZED = "already_initialized"
    SESSION_NOT_ACTIVE = "session_not_active"
    PROMPT_IN_FLIGHT = "prompt_in_flight"
    SESSION_CLOSED = "session_closed"
    TRANSPORT_CLOSED = "transport_closed"


class ProcessErrorKind(str, Enum):
    """Subprocess failures."""

    UNEXPECTED_EXIT = "unexpected_exit"
    SPAWN_FAILURE = "spawn_failure"


class ScribeError(Exception):
    """Base class for all client errors."""

    kind: Enum | None = None

    @property
    def kind_name(self) -> str:
        """Kind as a plain string, for event payloads and logs."""
        return self.kind.value if self.kind is not None else type(self).__name__


class ProtocolError(ScribeError):
    """Malformed, unmatched, unknown or late data on the wire."""

    def __init__(self, kind: ProtocolErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


class StateError(ScribeError):
    """Operation not allowed in the current state."""

    def __init__(self, kind: StateErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


class ProcessError(ScribeError):
    """The agent subprocess could not be started or exited unexpectedly."""

    def __init__(
        self,
        kind: ProcessErrorKind,
        message: str = "",
        exit_code: int | None = None,
    ):
        self.kind = kind
        self.exit_code = exit_code
        super().__init__(message or kind.value)

    @classmethod
    def unexpected_exit(cls, exit_code: int | None) -> ProcessError:
        """Build the error reported when the agent dies on its own."""
        detail = f"exit code {exit_code}" if exit_code is not None else "output closed"
        return cls(
            ProcessErrorKind.UNEXPECTED_EXIT,
            f"Agent process exited unexpectedly ({detail})",
            exit_code=exit_code,
        )


class RpcError(ScribeError):
    """A JSON-RPC error object returned by the agent."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"[{code}] {message}")

    @property
    def kind_name(self) -> str:
        return "rpc_error"


class BackendError(ScribeError):
    """A direct API backend failed (missing key, HTTP error, bad payload)."""

    @property
    def kind_name(self) -> str:
        return "backend_error"

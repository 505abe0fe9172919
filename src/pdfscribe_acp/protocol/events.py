"""Normalized stream events delivered to the host application.

The router turns raw ``session/update`` notifications into these typed
events. Every event carries:
- ``session_id``: the session it belongs to (sessions share one transport)
- ``sequence``: position in that session's stream (0, 1, 2, ...)
- ``delegation_id``: set while a sub-agent owns the turn

Events are emitted in wire arrival order and never reordered. Message
chunks are not reassembled here; the consumer concatenates them.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

TERMINAL_TOOL_STATUSES = frozenset({"completed", "failed", "cancelled"})


class BaseStreamEvent(BaseModel):
    """Fields shared by every stream event."""

    id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")
    session_id: str
    sequence: int | None = None
    delegation_id: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def is_delegated(self) -> bool:
        """True if the event belongs to a sub-agent's turn."""
        return self.delegation_id is not None


class MessageChunk(BaseStreamEvent):
    """A piece of assistant text."""

    type: Literal["message_chunk"] = "message_chunk"
    text: str


class ToolCall(BaseStreamEvent):
    """The agent started a tool call."""

    type: Literal["tool_call"] = "tool_call"
    tool_call_id: str
    name: str
    title: str = ""
    kind: str = "other"
    args: dict[str, Any] = Field(default_factory=dict)
    status: str = "pending"


class ToolCallUpdate(BaseStreamEvent):
    """Progress or completion of a previously announced tool call."""

    type: Literal["tool_call_update"] = "tool_call_update"
    tool_call_id: str
    status: str | None = None
    output: Any = None
    title: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TOOL_STATUSES


class TurnComplete(BaseStreamEvent):
    """The agent finished its turn for the current prompt."""

    type: Literal["turn_complete"] = "turn_complete"
    stop_reason: str = "end_turn"


class ErrorEvent(BaseStreamEvent):
    """A typed error or warning for the UI to render as a banner.

    ``fatal`` means the session is gone (e.g. the agent process died);
    warnings leave the conversation usable.
    """

    type: Literal["error"] = "error"
    kind: str
    message: str
    severity: Literal["warning", "error"] = "error"
    fatal: bool = False


StreamEvent = Annotated[
    MessageChunk | ToolCall | ToolCallUpdate | TurnComplete | ErrorEvent,
    Field(discriminator="type"),
]

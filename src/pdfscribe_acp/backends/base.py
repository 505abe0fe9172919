"""Conversational backend interface.

Every backend turns one user message (plus optional PromptContext) into a
stream of StreamEvents that ends with a top-level TurnComplete, or with an
ErrorEvent if the turn failed.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ..context import PromptContext
from ..protocol.events import StreamEvent


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: str


@dataclass(frozen=True)
class ModeInfo:
    id: str
    name: str
    description: str | None = None


@runtime_checkable
class ConversationalBackend(Protocol):
    """What the chat panel talks to, whatever is behind it."""

    name: str

    def stream(self, message: str, context: PromptContext | None = None) -> AsyncIterator[StreamEvent]:
        """Send a message and yield the response events."""
        ...

    def available_models(self) -> list[ModelInfo]: ...

    def available_modes(self) -> list[ModeInfo]: ...

    def current_model(self) -> ModelInfo | None: ...

    def current_mode(self) -> ModeInfo | None: ...

    async def select_model(self, model_id: str) -> None: ...

    async def select_mode(self, mode_id: str) -> None: ...

    async def cancel(self) -> None:
        """Stop the current response; the stream still ends with TurnComplete."""
        ...

    async def aclose(self) -> None: ...


def local_session_id(prefix: str) -> str:
    """Session id for backends that have no agent-issued one."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"

"""Stream event routing.

Turns ``session/update`` notifications into typed StreamEvents and delivers
them to per-session handlers.

Classification is on ``update.sessionUpdate``:
- agent_message_chunk -> MessageChunk
- tool_call           -> ToolCall (a delegation tool opens a DelegationContext)
- tool_call_update    -> ToolCallUpdate (unknown IDs become a warning ErrorEvent)
- turn_complete       -> TurnComplete (delegated or top-level)

Routing runs inside the transport reader and never awaits the UI. Each
session has its own queue and pump task, so a slow handler for one session
stalls neither the reader nor any other session.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .errors import ProtocolError, ProtocolErrorKind, ScribeError, StateError, StateErrorKind
from .protocol.events import (
    TERMINAL_TOOL_STATUSES,
    ErrorEvent,
    MessageChunk,
    StreamEvent,
    ToolCall,
    ToolCallUpdate,
    TurnComplete,
)
from .protocol.messages import JsonRpcNotification
from .session import Session, SessionManager, Turn
from .tool_metadata import get_tool_kind, get_tool_title, is_delegation_tool
from .transport import JsonRpcTransport
from .utils import maybe_await

logger = logging.getLogger(__name__)

EventHandler = Callable[[StreamEvent], Awaitable[None] | None]

# ACP update kinds that carry nothing the UI renders
_IGNORED_UPDATES = frozenset(
    {
        "agent_thought_chunk",
        "plan",
        "user_message_chunk",
        "available_commands_update",
    }
)


# =============================================================================
# Delegation
# =============================================================================


@dataclass
class DelegationContext:
    """A sub-agent turn started by a delegation tool call."""

    delegation_id: str
    tool_call_id: str
    agent: str | None = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class DelegationTracker:
    """The open delegation per session. Depth is limited to one."""

    def __init__(self) -> None:
        self._active: dict[str, DelegationContext] = {}

    def __len__(self) -> int:
        return len(self._active)

    def current(self, session_id: str) -> DelegationContext | None:
        return self._active.get(session_id)

    def open(self, session_id: str, tool_call_id: str, agent: str | None = None) -> DelegationContext:
        if session_id in self._active:
            raise RuntimeError(f"Session {session_id} already has an open delegation")
        context = DelegationContext(
            delegation_id=f"dlg_{uuid.uuid4().hex[:12]}",
            tool_call_id=tool_call_id,
            agent=agent,
        )
        self._active[session_id] = context
        logger.debug(f"Delegation opened: {context.delegation_id} ({agent or 'agent'}) in {session_id}")
        return context

    def close(self, session_id: str) -> DelegationContext | None:
        context = self._active.pop(session_id, None)
        if context is not None:
            logger.debug(f"Delegation closed: {context.delegation_id} in {session_id}")
        return context


# =============================================================================
# Per-session delivery
# =============================================================================


class _SessionStream:
    """Ordered delivery state for one session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.handlers: list[EventHandler] = []
        self.queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self.pump: asyncio.Task[None] | None = None
        self.next_sequence = 0
        self.tool_calls: dict[str, str] = {}
        self.closed = False

    def sequence(self) -> int:
        value = self.next_sequence
        self.next_sequence += 1
        return value


def _tool_name(update: dict[str, Any]) -> str:
    for key in ("toolName", "name", "title"):
        value = update.get(key)
        if isinstance(value, str) and value:
            return value
    return "unknown"


def _tool_args(update: dict[str, Any]) -> dict[str, Any]:
    raw = update.get("rawInput")
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    return {"input": raw}


class StreamEventRouter:
    """Classifies updates, tracks delegation, and delivers events per session."""

    def __init__(
        self,
        sessions: SessionManager,
        *,
        delegation_tool: str | None = None,
    ):
        self._sessions = sessions
        self._delegation_tool = delegation_tool
        self.delegations = DelegationTracker()
        self._streams: dict[str, _SessionStream] = {}
        self._update_handlers: dict[str, Callable[[Session, dict[str, Any]], None]] = {
            "agent_message_chunk": self._on_message_chunk,
            "tool_call": self._on_tool_call,
            "tool_call_update": self._on_tool_call_update,
            "turn_complete": self._on_turn_complete,
            "current_mode_update": self._on_mode_update,
        }
        sessions.on_session_closed(self._on_session_closed)

    def attach(self, transport: JsonRpcTransport) -> Callable[[], None]:
        """Subscribe to ``session/update`` on the transport."""
        return transport.on_notification("session/update", self.handle_notification)

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def on_event(self, session_id: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler for one session's events. Returns an unsubscriber.

        Events emitted before the first handler registers are held and
        delivered once it does, even if the session has closed since.

        Raises:
            StateError: The session is closed and nothing is left to deliver,
                or the ID was never issued.
        """
        stream = self._streams.get(session_id)
        if stream is None:
            self._sessions.require_active(session_id)
            stream = self._stream(session_id)
        stream.handlers.append(handler)
        self._ensure_pump(stream)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                stream.handlers.remove(handler)

        return unsubscribe

    async def flush(self, session_id: str) -> None:
        """Wait until every event queued so far for the session is delivered."""
        stream = self._streams.get(session_id)
        if stream is not None and stream.pump is not None:
            await stream.queue.join()

    async def aclose(self) -> None:
        """Stop every pump without delivering what is still queued."""
        for stream in list(self._streams.values()):
            if stream.pump is not None:
                stream.pump.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stream.pump
        self._streams.clear()

    # ------------------------------------------------------------------
    # Notification handling
    # ------------------------------------------------------------------

    def handle_notification(self, notification: JsonRpcNotification) -> None:
        params = notification.params or {}
        session_id = params.get("sessionId")
        update = params.get("update")
        if not isinstance(session_id, str) or not isinstance(update, dict):
            logger.warning("Discarding session/update without sessionId or update")
            return

        session = self._sessions.find(session_id)
        if session is None or not session.is_active:
            logger.debug(f"Dropping update for unknown session {session_id}")
            return

        kind = update.get("sessionUpdate")
        handler = self._update_handlers.get(kind) if isinstance(kind, str) else None
        if handler is not None:
            handler(session, update)
        elif kind in _IGNORED_UPDATES:
            logger.debug(f"Ignoring {kind} update for {session_id}")
        else:
            logger.debug(f"Unknown session update kind: {kind}")

    def _on_message_chunk(self, session: Session, update: dict[str, Any]) -> None:
        content = update.get("content")
        if not isinstance(content, dict) or content.get("type") != "text":
            logger.debug(f"Ignoring non-text message chunk in {session.session_id}")
            return
        text = content.get("text") or ""
        if text:
            self._emit(session.session_id, MessageChunk, text=text)

    def _on_tool_call(self, session: Session, update: dict[str, Any]) -> None:
        session_id = session.session_id
        tool_call_id = update.get("toolCallId")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            logger.warning(f"Discarding tool_call without toolCallId in {session_id}")
            return

        name = _tool_name(update)
        args = _tool_args(update)
        current = self.delegations.current(session_id)

        event_fields = {
            "tool_call_id": tool_call_id,
            "name": name,
            "title": update.get("title") or get_tool_title(name, args),
            "kind": get_tool_kind(name),
            "args": args,
            "status": update.get("status") or "pending",
        }

        if self._is_delegation(name) and current is not None:
            self._emit(
                session_id,
                ErrorEvent,
                kind="unsupported_nesting",
                message=f"Nested delegation ({name}) inside {current.delegation_id}; treating as a tool call",
                severity="warning",
            )

        self._stream(session_id).tool_calls[tool_call_id] = name
        self._emit(session_id, ToolCall, **event_fields)

        if self._is_delegation(name) and current is None:
            agent = args.get("subagent_type") or args.get("agent")
            self.delegations.open(session_id, tool_call_id, agent=str(agent) if agent else None)

    def _on_tool_call_update(self, session: Session, update: dict[str, Any]) -> None:
        session_id = session.session_id
        tool_call_id = update.get("toolCallId")
        stream = self._stream(session_id)

        if not isinstance(tool_call_id, str) or tool_call_id not in stream.tool_calls:
            error = ProtocolError(
                ProtocolErrorKind.UNKNOWN_TOOL_CALL,
                f"Update for unknown tool call {tool_call_id}",
            )
            logger.warning(f"{error} in {session_id}")
            self.emit_error(session_id, error, severity="warning")
            return

        status = update.get("status")
        output = update.get("rawOutput")
        if output is None:
            output = update.get("content")

        self._emit(
            session_id,
            ToolCallUpdate,
            tool_call_id=tool_call_id,
            status=status,
            output=output,
            title=update.get("title"),
        )

        current = self.delegations.current(session_id)
        if current is not None and current.tool_call_id == tool_call_id and status in TERMINAL_TOOL_STATUSES:
            self.delegations.close(session_id)

    def _on_turn_complete(self, session: Session, update: dict[str, Any]) -> None:
        session_id = session.session_id
        stop_reason = str(update.get("stopReason") or "end_turn")
        reference = update.get("toolCallId") or update.get("delegationId")

        current = self.delegations.current(session_id)
        if current is not None and reference in (current.tool_call_id, current.delegation_id):
            self._emit(session_id, TurnComplete, stop_reason=stop_reason)
            self.delegations.close(session_id)
            return

        if not self.complete_turn(session_id, stop_reason):
            logger.debug(f"Ignoring turn_complete with no open turn in {session_id}")

    def _on_mode_update(self, session: Session, update: dict[str, Any]) -> None:
        mode_id = update.get("currentModeId") or update.get("modeId")
        if isinstance(mode_id, str):
            session.current_mode_id = mode_id
            logger.debug(f"Session {session.session_id} mode is now {mode_id}")

    def _is_delegation(self, name: str) -> bool:
        if self._delegation_tool is not None:
            return name == self._delegation_tool
        return is_delegation_tool(name)

    # ------------------------------------------------------------------
    # Turn completion
    # ------------------------------------------------------------------

    def complete_turn(self, session_id: str, stop_reason: str, *, turn: Turn | None = None) -> bool:
        """End the session's open turn with a single top-level TurnComplete.

        Returns False if there is no open turn (or ``turn`` is no longer
        the open one), in which case nothing is emitted.
        """
        session = self._sessions.find(session_id)
        open_turn = session.turn if session is not None else None
        if open_turn is None or open_turn.done() or (turn is not None and turn is not open_turn):
            return False

        leftover = self.delegations.close(session_id)
        if leftover is not None:
            logger.warning(f"Turn ended with delegation {leftover.delegation_id} still open")

        self._emit(session_id, TurnComplete, stop_reason=stop_reason)
        open_turn.finish(stop_reason)
        return True

    def fail_turn(self, session_id: str, turn: Turn, error: ScribeError) -> None:
        """End a turn whose prompt request failed, reporting it to the UI."""
        if turn.done():
            return
        self.delegations.close(session_id)
        self.emit_error(session_id, error)
        turn.fail(error)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def emit_error(
        self,
        session_id: str,
        error: BaseException,
        *,
        severity: str = "error",
        fatal: bool = False,
    ) -> None:
        """Deliver an error as an ErrorEvent on the session's stream."""
        kind = error.kind_name if isinstance(error, ScribeError) else type(error).__name__
        self._emit(
            session_id,
            ErrorEvent,
            kind=kind,
            message=str(error),
            severity=severity,
            fatal=fatal,
        )

    def _emit(self, session_id: str, event_type: type[Any], **fields: Any) -> None:
        stream = self._streams.get(session_id)
        if stream is None:
            if self._sessions.is_closed(session_id):
                return
            stream = self._stream(session_id)
        if stream.closed:
            return
        current = self.delegations.current(session_id)
        event = event_type(
            session_id=session_id,
            sequence=stream.sequence(),
            delegation_id=current.delegation_id if current else None,
            **fields,
        )
        stream.queue.put_nowait(event)
        self._ensure_pump(stream)

    def _stream(self, session_id: str) -> _SessionStream:
        stream = self._streams.get(session_id)
        if stream is None:
            stream = _SessionStream(session_id)
            self._streams[session_id] = stream
        return stream

    def _ensure_pump(self, stream: _SessionStream) -> None:
        if stream.pump is None and stream.handlers:
            stream.pump = asyncio.create_task(self._pump(stream))

    async def _pump(self, stream: _SessionStream) -> None:
        while True:
            event = await stream.queue.get()
            try:
                if event is None:
                    self._discard(stream)
                    return
                for handler in list(stream.handlers):
                    try:
                        await maybe_await(handler, event)
                    except Exception:
                        logger.exception(f"Error in event handler for {stream.session_id}")
            finally:
                stream.queue.task_done()

    def _discard(self, stream: _SessionStream) -> None:
        if self._streams.get(stream.session_id) is stream:
            del self._streams[stream.session_id]

    def _on_session_closed(self, session: Session, reason: BaseException) -> None:
        session_id = session.session_id
        self.delegations.close(session_id)
        stream = self._stream(session_id)
        if stream.closed:
            return

        # A local close only matters to the UI if it cut a turn short
        if isinstance(reason, StateError) and reason.kind == StateErrorKind.SESSION_CLOSED:
            if session.prompt_in_flight:
                self.emit_error(session_id, reason, severity="warning")
        else:
            self.emit_error(session_id, reason, fatal=True)

        # Already-queued events are still delivered, then the pump exits
        # and the stream is dropped
        stream.closed = True
        local_close = isinstance(reason, StateError) and reason.kind == StateErrorKind.SESSION_CLOSED
        if stream.pump is None and (local_close or stream.queue.empty()):
            # Nobody will subscribe to a session the caller closed
            self._discard(stream)
            return
        stream.queue.put_nowait(None)

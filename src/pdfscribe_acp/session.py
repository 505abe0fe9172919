"""ACP session management.

Owns the protocol handshake and the logical sessions multiplexed over one
transport:

    UNINITIALIZED --initialize--> INITIALIZED --session/new--> SESSION_ACTIVE
                                                  <--close (last)-- SESSION_CLOSED

Each Session goes CREATED -> ACTIVE -> CLOSED and is identified only by the
opaque ID the agent issued. Closed IDs are remembered so any later use
fails with SESSION_CLOSED.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from acp import PROTOCOL_VERSION  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    ProtocolError,
    ProtocolErrorKind,
    ScribeError,
    StateError,
    StateErrorKind,
)
from .transport import JsonRpcTransport
from .utils import maybe_await

logger = logging.getLogger(__name__)

CLIENT_NAME = "PDFScribe"
CLIENT_VERSION = "1.0.0"

# The client does not serve files or terminals to the agent
DEFAULT_CLIENT_CAPABILITIES: dict[str, Any] = {
    "fs": {"readTextFile": False, "writeTextFile": False},
    "terminal": False,
}


class ManagerState(str, Enum):
    """Handshake state of the session manager."""

    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    SESSION_ACTIVE = "session_active"
    SESSION_CLOSED = "session_closed"


class SessionState(str, Enum):
    """Lifecycle of one session."""

    CREATED = "created"
    ACTIVE = "active"
    CLOSED = "closed"


class ServerCapabilities(BaseModel):
    """The agent's answer to ``initialize``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    protocol_version: int | str | None = Field(default=None, alias="protocolVersion")
    agent_capabilities: dict[str, Any] = Field(default_factory=dict, alias="agentCapabilities")
    auth_methods: list[Any] = Field(default_factory=list, alias="authMethods")
    agent_info: dict[str, Any] | None = Field(default=None, alias="agentInfo")

    @property
    def supports_embedded_context(self) -> bool:
        prompt_caps = self.agent_capabilities.get("promptCapabilities") or {}
        return bool(prompt_caps.get("embeddedContext", False))


@dataclass
class Turn:
    """One prompt's turn: open until TurnComplete, failure, or session close."""

    session_id: str
    request_id: int | None = None
    stop_reason: str | None = None
    error: BaseException | None = None
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def done(self) -> bool:
        return self._done.is_set()

    def finish(self, stop_reason: str) -> bool:
        if self.done():
            return False
        self.stop_reason = stop_reason
        self._done.set()
        return True

    def fail(self, error: BaseException) -> bool:
        if self.done():
            return False
        self.error = error
        self._done.set()
        return True

    async def wait(self, timeout: float | None = None) -> str:
        """Wait for the turn to end and return its stop reason.

        Raises:
            The error that ended the turn, if it failed.
        """
        await asyncio.wait_for(self._done.wait(), timeout)
        if self.error is not None:
            raise self.error
        return self.stop_reason or "end_turn"


@dataclass
class Session:
    """A conversation bound to a working directory."""

    session_id: str
    working_directory: str
    state: SessionState = SessionState.CREATED
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    available_modes: list[dict[str, Any]] = field(default_factory=list)
    current_mode_id: str | None = None
    turn: Turn | None = None

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def prompt_in_flight(self) -> bool:
        return self.turn is not None and not self.turn.done()

    def begin_turn(self) -> Turn:
        if self.prompt_in_flight:
            raise StateError(
                StateErrorKind.PROMPT_IN_FLIGHT,
                f"Session {self.session_id} already has a prompt in flight",
            )
        self.turn = Turn(session_id=self.session_id)
        return self.turn


SessionClosedHandler = Callable[[Session, BaseException], Awaitable[None] | None]


class SessionManager:
    """Tracks the handshake and every session on one transport."""

    def __init__(
        self,
        transport: JsonRpcTransport,
        *,
        client_name: str = CLIENT_NAME,
        client_version: str = CLIENT_VERSION,
        closed_ids: set[str] | None = None,
    ):
        """Create a manager for one transport.

        Args:
            closed_ids: Set of closed session IDs, shared across agent
                restarts so a closed ID is never accepted again.
        """
        self._transport = transport
        self._client_info = {"name": client_name, "version": client_version}
        self._initialized = False
        self._initializing = False
        self._server_capabilities: ServerCapabilities | None = None
        self._sessions: dict[str, Session] = {}
        self._closed_ids: set[str] = closed_ids if closed_ids is not None else set()
        self._closed_handlers: list[SessionClosedHandler] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ManagerState:
        if not self._initialized:
            return ManagerState.UNINITIALIZED
        if self._sessions:
            return ManagerState.SESSION_ACTIVE
        if self._closed_ids:
            return ManagerState.SESSION_CLOSED
        return ManagerState.INITIALIZED

    @property
    def server_capabilities(self) -> ServerCapabilities | None:
        return self._server_capabilities

    @property
    def active_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def is_closed(self, session_id: str) -> bool:
        return session_id in self._closed_ids

    def find(self, session_id: str) -> Session | None:
        """Return the active session, or None."""
        return self._sessions.get(session_id)

    def require_active(self, session_id: str) -> Session:
        """Return the session if it is ACTIVE.

        Raises:
            StateError: SESSION_CLOSED for closed IDs, SESSION_NOT_ACTIVE for
                IDs this manager never issued.
        """
        if session_id in self._closed_ids:
            raise StateError(StateErrorKind.SESSION_CLOSED, f"Session {session_id} is closed")
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            raise StateError(
                StateErrorKind.SESSION_NOT_ACTIVE, f"Session {session_id} is not active"
            )
        return session

    def on_session_closed(self, handler: SessionClosedHandler) -> None:
        """Register a handler called with (session, reason) on every close.

        Handlers run after the session is marked CLOSED but before its open
        turn is failed, so ``session.prompt_in_flight`` is still accurate.
        """
        self._closed_handlers.append(handler)

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def initialize_client(
        self,
        capabilities: dict[str, Any] | None = None,
        client_info: dict[str, Any] | None = None,
    ) -> ServerCapabilities:
        """Perform the ``initialize`` handshake. Allowed once per transport."""
        if self._initialized or self._initializing:
            raise StateError(StateErrorKind.ALREADY_INITIALIZED, "Client already initialized")

        self._initializing = True
        try:
            result = await self._transport.request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "clientCapabilities": capabilities or DEFAULT_CLIENT_CAPABILITIES,
                    "clientInfo": client_info or self._client_info,
                },
            )
        finally:
            self._initializing = False

        self._server_capabilities = ServerCapabilities.model_validate(result or {})
        self._initialized = True
        logger.info(
            f"Initialized ACP client (protocol={self._server_capabilities.protocol_version})"
        )
        return self._server_capabilities

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise StateError(StateErrorKind.NOT_INITIALIZED, "Call initialize_client() first")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def new_session(
        self,
        working_directory: str | Path,
        *,
        mcp_servers: list[dict[str, Any]] | None = None,
    ) -> str:
        """Create a session bound to an absolute working directory."""
        self._require_initialized()

        path = Path(working_directory)
        if not path.is_absolute():
            raise ValueError(f"Working directory must be absolute: {working_directory}")

        result = await self._transport.request(
            "session/new",
            {"cwd": str(path), "mcpServers": mcp_servers or []},
        )

        session_id = result.get("sessionId") if isinstance(result, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED_MESSAGE, "session/new response missing sessionId"
            )
        if session_id in self._closed_ids or session_id in self._sessions:
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED_MESSAGE,
                f"Agent reissued session id {session_id}",
            )

        modes = result.get("modes") or {}
        session = Session(
            session_id=session_id,
            working_directory=str(path),
            available_modes=list(modes.get("availableModes") or []),
            current_mode_id=modes.get("currentModeId"),
        )
        self._sessions[session_id] = session
        session.state = SessionState.ACTIVE

        logger.info(f"Session created: {session_id} (cwd={path})")
        return session_id

    async def close_session(self, session_id: str) -> None:
        """Close a session; its in-flight calls resolve with SESSION_CLOSED.

        The agent process keeps running for other sessions.
        """
        session = self.require_active(session_id)
        reason = StateError(StateErrorKind.SESSION_CLOSED, f"Session {session_id} closed")

        if session.prompt_in_flight and self._transport.is_open:
            with contextlib.suppress(ScribeError):
                await self._transport.send_notification("session/cancel", {"sessionId": session_id})

        cancelled = self._transport.cancel_session(session_id, reason)
        await self._close(session, reason)
        logger.info(f"Session closed: {session_id} ({cancelled} pending call(s) cancelled)")

    async def close_all(self, reason: BaseException) -> list[str]:
        """Close every session locally (no wire traffic). Used when the agent dies."""
        closed = []
        for session in list(self._sessions.values()):
            self._transport.cancel_session(session.session_id, reason)
            await self._close(session, reason)
            closed.append(session.session_id)
        return closed

    async def _close(self, session: Session, reason: BaseException) -> None:
        session.state = SessionState.CLOSED
        self._sessions.pop(session.session_id, None)
        self._closed_ids.add(session.session_id)
        for handler in list(self._closed_handlers):
            try:
                await maybe_await(handler, session, reason)
            except Exception:
                logger.exception("Error in session closed handler")

        if session.turn is not None:
            session.turn.fail(reason)

    # ------------------------------------------------------------------
    # Session controls
    # ------------------------------------------------------------------

    async def set_mode(self, session_id: str, mode_id: str) -> None:
        """Switch the agent mode (e.g. build / plan) for a session."""
        session = self.require_active(session_id)
        await self._transport.request(
            "session/set_mode",
            {"sessionId": session_id, "modeId": mode_id},
            session_id=session_id,
        )
        session.current_mode_id = mode_id
        logger.info(f"Session {session_id} switched to mode {mode_id}")

    async def cancel(self, session_id: str) -> None:
        """Ask the agent to stop the current turn. The turn still ends with TurnComplete."""
        self.require_active(session_id)
        await self._transport.send_notification("session/cancel", {"sessionId": session_id})

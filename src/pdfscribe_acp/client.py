"""ACP client facade.

AcpClient owns every moving part for one agent process:

    ProcessSupervisor -> Channel -> JsonRpcTransport
                                      |-> SessionManager
                                      |-> StreamEventRouter
                                      '-> PromptDispatcher

The agent is launched (and ``initialize`` performed) by the first
``new_session()`` and stopped when the last session closes. If the agent
dies, every pending call fails with UNEXPECTED_EXIT, each session gets a
fatal ErrorEvent and is closed. Nothing is restarted; the next
``new_session()`` launches a fresh agent.

Usage:
    async with AcpClient(config) as client:
        session_id = await client.new_session("/path/to/notes")
        client.on_event(session_id, presenter_callback)
        handle = await client.send_prompt(session_id, "Summarize page 3")
        await handle.wait()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import Any

from .config import ClientConfig
from .dispatcher import PromptDispatcher, PromptHandle, PromptPayload, Resource, Selection
from .errors import ProcessError, ScribeError, StateError, StateErrorKind
from .process import ProcessSupervisor
from .router import EventHandler, StreamEventRouter
from .session import ServerCapabilities, SessionManager
from .transport import Channel, JsonRpcTransport, RequestHandler
from .utils import maybe_await

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[], Awaitable[Channel] | Channel]

# How long to wait for an exit code after the agent's output closes
_EXIT_CODE_GRACE = 1.0


class AcpClient:
    """One agent process, any number of sessions."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        channel_factory: ChannelFactory | None = None,
        supervisor: ProcessSupervisor | None = None,
    ):
        """Create a client.

        Args:
            config: Client configuration (defaults to ``ClientConfig()``).
            channel_factory: Supplies the byte channel instead of launching
                ``config.agent_command``; used for tests and embedding.
            supervisor: Process supervisor to use for launching the agent.
        """
        self.config = config or ClientConfig()
        self._channel_factory = channel_factory
        self._supervisor = supervisor or ProcessSupervisor(stop_timeout=self.config.stop_timeout)
        self._supervisor.on_exit(self._on_process_exit)
        self._request_handlers: dict[str, RequestHandler] = {}
        # Outlives each agent process
        self._closed_ids: set[str] = set()

        self.transport: JsonRpcTransport | None = None
        self.sessions: SessionManager | None = None
        self.router: StreamEventRouter | None = None
        self.dispatcher: PromptDispatcher | None = None
        self.server_capabilities: ServerCapabilities | None = None

        self._connected = False
        self._failing = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    async def __aenter__(self) -> AcpClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> ServerCapabilities:
        """Launch the agent and run the handshake if not already connected."""
        async with self._lock:
            if not self._connected:
                await self._start()
            assert self.server_capabilities is not None
            return self.server_capabilities

    async def _start(self) -> None:
        channel = await self._open_channel()

        transport = JsonRpcTransport(channel, request_timeout=self.config.request_timeout)
        sessions = SessionManager(transport, closed_ids=self._closed_ids)
        router = StreamEventRouter(sessions, delegation_tool=self.config.delegation_tool)
        router.attach(transport)
        dispatcher = PromptDispatcher(
            transport, sessions, router, prompt_timeout=self.config.prompt_timeout
        )
        for method, handler in self._request_handlers.items():
            transport.on_request(method, handler)
        transport.on_close(self._on_transport_closed)

        self.transport = transport
        self.sessions = sessions
        self.router = router
        self.dispatcher = dispatcher
        self._failing = False

        transport.start()
        try:
            self.server_capabilities = await sessions.initialize_client()
        except BaseException:
            await self._teardown()
            raise

        self._connected = True
        logger.info("ACP client connected")

    async def _open_channel(self) -> Channel:
        if self._channel_factory is not None:
            return await maybe_await(self._channel_factory)

        argv = self.config.agent_argv
        if not argv:
            raise ValueError("agent_command is empty")
        handle = await self._supervisor.start(
            argv[0],
            argv[1:],
            cwd=self.config.working_directory,
            env=self.config.agent_env or None,
        )
        return handle.channel

    async def _teardown(self) -> None:
        self._connected = False
        if self.dispatcher is not None:
            await self.dispatcher.aclose()
        if self.transport is not None:
            await self.transport.close()
        if self._supervisor.is_running:
            await self._supervisor.stop()
        logger.info("ACP client disconnected")

    async def aclose(self) -> None:
        """Close every session and stop the agent."""
        if self.sessions is not None:
            for session in self.sessions.active_sessions:
                try:
                    await self.sessions.close_session(session.session_id)
                except ScribeError as e:
                    logger.debug(f"Error closing session {session.session_id}: {e}")
        if self._connected or self._supervisor.is_running:
            await self._teardown()
        if self.router is not None:
            await self.router.aclose()

    # ------------------------------------------------------------------
    # Agent -> client requests
    # ------------------------------------------------------------------

    def on_request(self, method: str, handler: RequestHandler) -> None:
        """Answer agent requests such as ``session/request_permission``.

        Methods without a handler are answered with "Method not found".
        """
        self._request_handlers[method] = handler
        if self.transport is not None:
            self.transport.on_request(method, handler)

    # ------------------------------------------------------------------
    # Sessions and prompts
    # ------------------------------------------------------------------

    async def new_session(
        self,
        working_directory: str | Path | None = None,
        *,
        on_event: EventHandler | None = None,
    ) -> str:
        """Create a session, launching the agent first if needed."""
        await self.connect()
        assert self.sessions is not None and self.router is not None
        session_id = await self.sessions.new_session(working_directory or self.config.working_directory)
        if on_event is not None:
            self.router.on_event(session_id, on_event)
        return session_id

    def on_event(self, session_id: str, handler: EventHandler) -> Callable[[], None]:
        return self._require_router().on_event(session_id, handler)

    async def send_prompt(
        self,
        session_id: str,
        text: str,
        resources: Iterable[Resource] = (),
        selections: Iterable[Selection] = (),
    ) -> PromptHandle:
        return await self._require_dispatcher().send_prompt(session_id, text, resources, selections)

    async def dispatch(self, session_id: str, payload: PromptPayload) -> PromptHandle:
        return await self._require_dispatcher().dispatch(session_id, payload)

    async def set_mode(self, session_id: str, mode_id: str) -> None:
        await self._require_sessions().set_mode(session_id, mode_id)

    async def cancel(self, session_id: str) -> None:
        await self._require_sessions().cancel(session_id)

    async def close_session(self, session_id: str) -> None:
        """Close a session; the agent is stopped when no sessions remain."""
        sessions = self._require_sessions()
        await sessions.close_session(session_id)
        if sessions.active_count == 0 and self._connected:
            await self._teardown()

    async def flush(self, session_id: str) -> None:
        """Wait until the session's queued events have been delivered."""
        await self._require_router().flush(session_id)

    def _require_sessions(self) -> SessionManager:
        if self.sessions is None:
            raise StateError(StateErrorKind.NOT_INITIALIZED, "No session has been created")
        return self.sessions

    def _require_router(self) -> StreamEventRouter:
        self._require_sessions()
        assert self.router is not None
        return self.router

    def _require_dispatcher(self) -> PromptDispatcher:
        self._require_sessions()
        assert self.dispatcher is not None
        return self.dispatcher

    # ------------------------------------------------------------------
    # Agent death
    # ------------------------------------------------------------------

    async def _on_transport_closed(self, error: BaseException | None) -> None:
        if error is None:
            return
        if isinstance(error, ProcessError) and self._supervisor.pid is not None:
            code = await self._supervisor.wait(_EXIT_CODE_GRACE)
            if code is not None:
                error = ProcessError.unexpected_exit(code)
        await self._fail_everything(error)

    async def _on_process_exit(self, exit_code: int) -> None:
        await self._fail_everything(ProcessError.unexpected_exit(exit_code))

    async def _fail_everything(self, error: BaseException) -> None:
        if self._failing or self.sessions is None:
            return
        self._failing = True
        logger.error(f"Agent connection lost: {error}")

        if self.transport is not None:
            self.transport.fail_all(error)
        # The router turns each closure into a fatal ErrorEvent
        await self.sessions.close_all(error)
        await self._teardown()

"""Pytest configuration and shared fixtures.

FakeAgent plays the agent side of an in-memory channel: it answers
requests from per-method handlers and can push ``session/update``
notifications at any point. Tests open it with the ``scripted_client`` or
``scripted_transport`` fixtures:

    async with scripted_client() as (client, agent):
        session_id = await client.new_session()
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest

from pdfscribe_acp.client import AcpClient
from pdfscribe_acp.config import ClientConfig
from pdfscribe_acp.protocol.events import MessageChunk
from pdfscribe_acp.transport import JsonRpcTransport, MemoryChannel, create_memory_channel
from pdfscribe_acp.utils import maybe_await

# Returned by a handler that answers later with respond()
NO_REPLY = object()

AgentHandler = Callable[["FakeAgent", dict[str, Any]], Any]


# =============================================================================
# Fake agent
# =============================================================================


def _initialize(agent: FakeAgent, message: dict[str, Any]) -> dict[str, Any]:
    return {
        "protocolVersion": 1,
        "agentCapabilities": {"promptCapabilities": {"embeddedContext": True}},
        "authMethods": [],
        "agentInfo": {"name": "fake-agent", "version": "0.0.1"},
    }


def _end_turn(agent: FakeAgent, message: dict[str, Any]) -> dict[str, Any]:
    return {"stopReason": "end_turn"}


def _empty(agent: FakeAgent, message: dict[str, Any]) -> dict[str, Any]:
    return {}


class FakeAgent:
    """Scripted ACP agent on the far end of a MemoryChannel."""

    NO_REPLY = NO_REPLY

    def __init__(self, channel: MemoryChannel):
        self.channel = channel
        self.received: list[dict[str, Any]] = []
        self.session_count = 0
        self.handlers: dict[str, AgentHandler] = {
            "initialize": _initialize,
            "session/new": FakeAgent._new_session,
            "session/prompt": _end_turn,
            "session/set_mode": _empty,
        }
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._serve())

    async def stop(self) -> None:
        await self.channel.close()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    def on(self, method: str, handler: AgentHandler) -> None:
        self.handlers[method] = handler

    def _new_session(self, message: dict[str, Any]) -> dict[str, Any]:
        self.session_count += 1
        return {"sessionId": f"sess_{self.session_count}"}

    async def _serve(self) -> None:
        while True:
            line = await self.channel.readline()
            if not line:
                return
            message = json.loads(line)
            self.received.append(message)
            if "method" not in message or "id" not in message:
                continue
            handler = self.handlers.get(message["method"])
            if handler is None:
                await self.respond_error(message["id"], -32601, f"Method not found: {message['method']}")
                continue
            result = await maybe_await(handler, self, message)
            if result is not NO_REPLY:
                await self.respond(message["id"], result)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, message: dict[str, Any]) -> None:
        await self.channel.write((json.dumps(message) + "\n").encode("utf-8"))

    async def send_raw(self, line: bytes) -> None:
        await self.channel.write(line)

    async def respond(self, request_id: int | str, result: Any) -> None:
        await self.send({"jsonrpc": "2.0", "id": request_id, "result": result})

    async def respond_error(self, request_id: int | str, code: int, message: str) -> None:
        await self.send({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})

    async def notify(self, method: str, params: dict[str, Any]) -> None:
        await self.send({"jsonrpc": "2.0", "method": method, "params": params})

    async def update(self, session_id: str, update: dict[str, Any]) -> None:
        await self.notify("session/update", {"sessionId": session_id, "update": update})

    async def send_chunk(self, session_id: str, text: str) -> None:
        await self.update(
            session_id,
            {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": text}},
        )

    async def send_tool_call(
        self, session_id: str, tool_call_id: str, name: str, raw_input: Any = None, **extra: Any
    ) -> None:
        update = {"sessionUpdate": "tool_call", "toolCallId": tool_call_id, "toolName": name, **extra}
        if raw_input is not None:
            update["rawInput"] = raw_input
        await self.update(session_id, update)

    async def send_tool_update(
        self, session_id: str, tool_call_id: str, status: str, raw_output: Any = None
    ) -> None:
        update = {"sessionUpdate": "tool_call_update", "toolCallId": tool_call_id, "status": status}
        if raw_output is not None:
            update["rawOutput"] = raw_output
        await self.update(session_id, update)

    async def send_turn_complete(self, session_id: str, stop_reason: str = "end_turn", **refs: str) -> None:
        await self.update(session_id, {"sessionUpdate": "turn_complete", "stopReason": stop_reason, **refs})

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def messages(self, method: str) -> list[dict[str, Any]]:
        return [m for m in self.received if m.get("method") == method]

    async def wait_for_message(self, method: str, count: int = 1, timeout: float = 2.0) -> dict[str, Any]:
        """Wait until ``count`` messages for ``method`` arrived; returns the last."""
        async with asyncio.timeout(timeout):
            while len(self.messages(method)) < count:
                await asyncio.sleep(0.001)
        return self.messages(method)[count - 1]


# =============================================================================
# Event recording
# =============================================================================


class EventRecorder:
    """Event handler that keeps everything it is given."""

    def __init__(self) -> None:
        self.events: list[Any] = []

    def __call__(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type: type[Any]) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_type)]

    @property
    def text(self) -> str:
        return "".join(e.text for e in self.of_type(MessageChunk))

    async def wait_for(self, predicate: Callable[[Any], bool], timeout: float = 2.0) -> Any:
        async with asyncio.timeout(timeout):
            while True:
                for event in self.events:
                    if predicate(event):
                        return event
                await asyncio.sleep(0.001)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def client_config(tmp_path: Path) -> ClientConfig:
    """Client config with short timeouts, rooted in a temp directory."""
    return ClientConfig(
        working_directory=str(tmp_path),
        request_timeout=2.0,
        prompt_timeout=5.0,
    )


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def make_recorder() -> type[EventRecorder]:
    """For tests that need one recorder per session."""
    return EventRecorder


@pytest.fixture
def scripted_client(client_config: ClientConfig):
    """Factory for an AcpClient wired to a FakeAgent."""

    @contextlib.asynccontextmanager
    async def open_client(config: ClientConfig | None = None) -> AsyncIterator[tuple[AcpClient, FakeAgent]]:
        client_end, agent_end = create_memory_channel()
        agent = FakeAgent(agent_end)
        agent.start()
        client = AcpClient(config or client_config, channel_factory=lambda: client_end)
        try:
            yield client, agent
        finally:
            await client.aclose()
            await agent.stop()

    return open_client


@pytest.fixture
def scripted_transport():
    """Factory for a started JsonRpcTransport wired to a FakeAgent."""

    @contextlib.asynccontextmanager
    async def open_transport(
        request_timeout: float | None = 2.0,
    ) -> AsyncIterator[tuple[JsonRpcTransport, FakeAgent]]:
        client_end, agent_end = create_memory_channel()
        agent = FakeAgent(agent_end)
        agent.start()
        transport = JsonRpcTransport(client_end, request_timeout=request_timeout)
        transport.start()
        try:
            yield transport, agent
        finally:
            await transport.close()
            await agent.stop()

    return open_transport


@pytest.fixture
def restarting_client(client_config: ClientConfig):
    """Factory for an AcpClient that gets a fresh FakeAgent on every connect.

    ``prepare`` is called with each new agent before it starts serving.
    """

    @contextlib.asynccontextmanager
    async def open_client(
        prepare: Callable[[FakeAgent], None] | None = None,
    ) -> AsyncIterator[tuple[AcpClient, list[FakeAgent]]]:
        agents: list[FakeAgent] = []

        def connect() -> MemoryChannel:
            client_end, agent_end = create_memory_channel()
            agent = FakeAgent(agent_end)
            if prepare is not None:
                prepare(agent)
            agent.start()
            agents.append(agent)
            return client_end

        client = AcpClient(client_config, channel_factory=connect)
        try:
            yield client, agents
        finally:
            await client.aclose()
            for agent in agents:
                await agent.stop()

    return open_client

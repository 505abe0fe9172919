"""Unit tests for the conversational backends.

The direct API backends run against httpx.MockTransport; the ACP backend
runs against FakeAgent.
"""

from __future__ import annotations

import json

import httpx
import pytest

from pdfscribe_acp import backends
from pdfscribe_acp.backends import (
    AcpBackend,
    ConversationalBackend,
    DirectApiBackend,
    MockBackend,
    create_backend,
    register_backend,
)
from pdfscribe_acp.backends.direct_api import ANTHROPIC_VERSION, render_prompt
from pdfscribe_acp.backends.mock import chunk_text, mock_reply
from pdfscribe_acp.config import ClientConfig
from pdfscribe_acp.context import ChatMessage, PromptContext
from pdfscribe_acp.dispatcher import PromptPayload, Resource
from pdfscribe_acp.errors import BackendError
from pdfscribe_acp.protocol.events import ErrorEvent, MessageChunk, ToolCall, TurnComplete


async def collect(backend, message, context=None):
    return [event async for event in backend.stream(message, context)]


# =============================================================================
# Registry
# =============================================================================


class TestRegistry:
    """Backend selection by name."""

    def test_create_mock(self):
        backend = create_backend(ClientConfig(backend="mock"))

        assert isinstance(backend, MockBackend)
        assert isinstance(backend, ConversationalBackend)

    def test_create_acp(self, tmp_path):
        backend = create_backend(ClientConfig(backend="acp", working_directory=str(tmp_path)))

        assert isinstance(backend, AcpBackend)

    def test_create_openai_needs_key(self):
        with pytest.raises(BackendError):
            create_backend(ClientConfig(backend="openai"))

    def test_create_anthropic(self):
        backend = create_backend(ClientConfig(backend="anthropic", anthropic_api_key="sk-ant"))

        assert isinstance(backend, DirectApiBackend)
        assert backend.provider == "anthropic"

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="available"):
            create_backend(ClientConfig(backend="carrier-pigeon"))

    def test_register_backend(self, monkeypatch):
        monkeypatch.setitem(backends.BACKEND_FACTORIES, "canned", lambda config: MockBackend(config, delay=0))

        assert isinstance(create_backend(ClientConfig(backend="canned")), MockBackend)

    def test_register_backend_adds_factory(self, monkeypatch):
        monkeypatch.setattr(backends, "BACKEND_FACTORIES", dict(backends.BACKEND_FACTORIES))
        register_backend("echo", MockBackend)

        assert backends.BACKEND_FACTORIES["echo"] is MockBackend


# =============================================================================
# Mock backend
# =============================================================================


class TestMockBackend:
    """Canned replies streamed in chunks."""

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("hello there", "Hello!"),
            ("run a test", "**mock response**"),
            ("show me code", "```python"),
            ("make a list", "Bulleted list"),
            ("something long please", "Auto-Scroll"),
            ("what is this?", 'You asked: "what is this?"'),
        ],
    )
    def test_reply_by_keyword(self, message, expected):
        assert expected.lower() in mock_reply(message).lower()

    def test_keywords_match_whole_words(self):
        # "this" contains "hi" but is not a greeting
        assert "Hello!" not in mock_reply("this")

    def test_chunks_rebuild_text(self):
        text = "Line one\n\n  indented   words\n"

        assert "".join(chunk_text(text)) == text

    @pytest.mark.asyncio
    async def test_stream_ends_with_turn_complete(self):
        backend = MockBackend(delay=0)

        events = await collect(backend, "hello")

        assert isinstance(events[-1], TurnComplete)
        assert events[-1].stop_reason == "end_turn"
        chunks = [e for e in events if isinstance(e, MessageChunk)]
        assert "".join(c.text for c in chunks) == mock_reply("hello")
        assert [e.sequence for e in events] == list(range(len(events)))

    @pytest.mark.asyncio
    async def test_cancel_stops_stream(self):
        backend = MockBackend(delay=0)
        events = []

        async for event in backend.stream("something long please"):
            events.append(event)
            if len(events) == 3:
                await backend.cancel()

        assert len(events) == 4
        assert events[-1].stop_reason == "cancelled"

    @pytest.mark.asyncio
    async def test_model_and_mode_selection(self):
        backend = MockBackend(delay=0)

        await backend.select_model("mock-advanced")
        await backend.select_mode("mock-code")

        assert backend.current_model().id == "mock-advanced"
        assert backend.current_mode().name == "Code"
        assert len(backend.available_models()) == 3


# =============================================================================
# Direct API backend
# =============================================================================


def openai_handler(captured: list[httpx.Request], reply: str = "Direct answer"):
    def handle(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": reply}}]})

    return handle


def anthropic_handler(captured: list[httpx.Request]):
    def handle(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        blocks = [{"type": "text", "text": "Claude "}, {"type": "text", "text": "here"}]
        return httpx.Response(200, json={"content": blocks})

    return handle


def direct_backend(provider, handler, **config_values):
    keys = {"openai_api_key": "sk-test"} if provider == "openai" else {"anthropic_api_key": "sk-ant-test"}
    config = ClientConfig(backend=provider, **keys, **config_values)
    base_url = "https://api.test/v1"
    http_client = httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))
    return DirectApiBackend(config, provider, http_client=http_client)


class TestDirectApiBackend:
    """OpenAI and Anthropic request shapes and failures."""

    @pytest.mark.asyncio
    async def test_openai_request(self):
        captured: list[httpx.Request] = []
        backend = direct_backend("openai", openai_handler(captured))

        events = await collect(backend, "Summarize")

        request = captured[0]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["model"] == "gpt-4o"
        assert body["messages"] == [{"role": "user", "content": "Summarize"}]

        assert [type(e) for e in events] == [MessageChunk, TurnComplete]
        assert events[0].text == "Direct answer"

    @pytest.mark.asyncio
    async def test_anthropic_request(self):
        captured: list[httpx.Request] = []
        backend = direct_backend("anthropic", anthropic_handler(captured), max_tokens=512)
        context = PromptContext(messages=[ChatMessage("system", "Be brief"), ChatMessage("user", "earlier")])

        events = await collect(backend, "Now this", context)

        request = captured[0]
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant-test"
        assert request.headers["anthropic-version"] == ANTHROPIC_VERSION
        body = json.loads(request.content)
        assert body["system"] == "Be brief"
        assert body["max_tokens"] == 512
        assert [m["role"] for m in body["messages"]] == ["user", "user"]
        assert events[0].text == "Claude here"

    @pytest.mark.asyncio
    async def test_history_is_kept_between_messages(self):
        captured: list[httpx.Request] = []
        backend = direct_backend("openai", openai_handler(captured, reply="first answer"))

        await collect(backend, "first")
        await collect(backend, "second")

        messages = json.loads(captured[1].content)["messages"]
        assert [m["content"] for m in messages] == ["first", "first answer", "second"]

    @pytest.mark.asyncio
    async def test_context_resources_are_inlined(self, tmp_path):
        captured: list[httpx.Request] = []
        backend = direct_backend("openai", openai_handler(captured))
        note = tmp_path / "note.md"
        note.write_text("Note body", encoding="utf-8")

        await collect(backend, "Use my note", PromptContext(referenced_files=[note]))

        content = json.loads(captured[0].content)["messages"][-1]["content"]
        assert content.startswith("Use my note")
        assert f"[Resource: {note.resolve().as_uri()}]\nNote body" in content

    @pytest.mark.asyncio
    async def test_http_error_becomes_error_event(self):
        backend = direct_backend("openai", lambda request: httpx.Response(429, text="rate limited"))

        events = await collect(backend, "hello")

        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert events[0].kind == "backend_error"
        assert "429" in events[0].message
        assert backend.history == []

    @pytest.mark.asyncio
    async def test_unexpected_shape_becomes_error_event(self):
        backend = direct_backend("openai", lambda request: httpx.Response(200, json={"nope": True}))

        events = await collect(backend, "hello")

        assert isinstance(events[0], ErrorEvent)

    @pytest.mark.asyncio
    async def test_network_error_becomes_error_event(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        backend = direct_backend("anthropic", refuse)

        events = await collect(backend, "hello")

        assert isinstance(events[0], ErrorEvent)
        assert "connection refused" in events[0].message

    @pytest.mark.asyncio
    async def test_model_selection(self):
        backend = direct_backend("openai", openai_handler([]))

        await backend.select_model("gpt-4o-mini")
        assert backend.current_model().id == "gpt-4o-mini"

        with pytest.raises(BackendError):
            await backend.select_model("claude-3-opus-20240229")
        with pytest.raises(BackendError):
            await backend.select_mode("plan")
        assert backend.available_modes() == []

    def test_render_prompt(self):
        payload = PromptPayload(text="Question", resources=(Resource(uri="file:///a.md", text="A"),))

        assert render_prompt(payload) == "Question\n\n[Resource: file:///a.md]\nA"


# =============================================================================
# ACP backend
# =============================================================================


class TestAcpBackend:
    """The backend wrapper around AcpClient."""

    @pytest.mark.asyncio
    async def test_stream_one_turn(self, scripted_client, client_config):
        client_config.mode = "plan"

        async def answer(agent, message):
            session_id = message["params"]["sessionId"]
            await agent.send_tool_call(session_id, "tc_1", "read", {"filePath": "/notes/a.md"})
            await agent.send_chunk(session_id, "Read it.")
            return {"stopReason": "end_turn"}

        async with scripted_client(client_config) as (client, agent):
            agent.on("session/prompt", answer)
            backend = AcpBackend(client_config, client=client)

            events = await collect(backend, "What does note a say?")
            second = await collect(backend, "And again?")

            assert backend.current_mode().id == "plan"
            await backend.aclose()

        assert [type(e) for e in events] == [ToolCall, MessageChunk, TurnComplete]
        assert [type(e) for e in second] == [ToolCall, MessageChunk, TurnComplete]
        assert len(agent.messages("session/new")) == 1
        assert agent.messages("session/set_mode")[0]["params"]["modeId"] == "plan"

    @pytest.mark.asyncio
    async def test_agent_death_ends_stream(self, scripted_client, client_config):
        async def die(agent, message):
            await agent.send_chunk(message["params"]["sessionId"], "partial")
            await agent.channel.close()
            return agent.NO_REPLY

        async with scripted_client(client_config) as (client, agent):
            agent.on("session/prompt", die)
            backend = AcpBackend(client_config, client=client)

            events = await collect(backend, "hello")

        assert isinstance(events[0], MessageChunk)
        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].fatal is True

    def test_modes_fall_back_to_opencode_config(self, tmp_path, client_config):
        config_path = tmp_path / "opencode.json"
        config_path.write_text(json.dumps({"agent": {"reviewer": {"mode": "primary"}}}), encoding="utf-8")
        client_config.opencode_config_path = str(config_path)

        backend = AcpBackend(client_config)

        assert [mode.id for mode in backend.available_modes()] == ["build", "plan", "explore", "reviewer"]
        assert backend.available_models() == []

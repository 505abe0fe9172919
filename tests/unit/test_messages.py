"""Unit tests for JSON-RPC envelopes and stream event types."""

import json

import pytest

from pdfscribe_acp.errors import ProtocolError, ProtocolErrorKind
from pdfscribe_acp.protocol.events import (
    ErrorEvent,
    MessageChunk,
    ToolCall,
    ToolCallUpdate,
    TurnComplete,
)
from pdfscribe_acp.protocol.messages import (
    METHOD_NOT_FOUND,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    encode_message,
    parse_message,
)

# =============================================================================
# Encoding
# =============================================================================


class TestEncodeMessage:
    """Messages are written as single JSON lines."""

    def test_request_is_one_line(self):
        data = encode_message(JsonRpcRequest(id=1, method="session/new", params={"cwd": "/tmp"}))

        assert data.endswith(b"\n")
        assert data.count(b"\n") == 1
        assert json.loads(data) == {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "session/new",
            "params": {"cwd": "/tmp"},
        }

    def test_notification_has_no_id(self):
        data = json.loads(encode_message(JsonRpcNotification(method="session/cancel", params={"sessionId": "s1"})))

        assert "id" not in data
        assert data["method"] == "session/cancel"

    def test_params_omitted_when_none(self):
        data = json.loads(encode_message(JsonRpcRequest(id=2, method="ping")))

        assert "params" not in data

    def test_newlines_in_text_stay_escaped(self):
        data = encode_message(JsonRpcRequest(id=3, method="x", params={"text": "a\nb"}))

        assert data.count(b"\n") == 1

    def test_error_response(self):
        response = JsonRpcResponse.failure(7, METHOD_NOT_FOUND, "Method not found: fs/read")
        data = json.loads(encode_message(response))

        assert data["id"] == 7
        assert data["error"] == {"code": -32601, "message": "Method not found: fs/read"}
        assert "result" not in data

    def test_null_result_is_kept(self):
        data = json.loads(encode_message(JsonRpcResponse(id=4, result=None)))

        assert data == {"jsonrpc": "2.0", "id": 4, "result": None}


# =============================================================================
# Parsing
# =============================================================================


class TestParseMessage:
    """Wire lines are classified by shape."""

    def test_parse_request(self):
        message = parse_message(b'{"jsonrpc": "2.0", "id": 5, "method": "session/request_permission"}')

        assert isinstance(message, JsonRpcRequest)
        assert message.id == 5

    def test_parse_notification(self):
        message = parse_message('{"jsonrpc": "2.0", "method": "session/update", "params": {"sessionId": "s"}}')

        assert isinstance(message, JsonRpcNotification)
        assert message.params == {"sessionId": "s"}

    def test_parse_success_response(self):
        message = parse_message('{"jsonrpc": "2.0", "id": 1, "result": {"sessionId": "s1"}}')

        assert isinstance(message, JsonRpcResponse)
        assert message.is_error is False
        assert message.result == {"sessionId": "s1"}

    def test_parse_error_response(self):
        message = parse_message('{"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "boom"}}')

        assert isinstance(message, JsonRpcResponse)
        assert message.is_error is True
        assert message.error is not None
        assert message.error.code == -32000

    def test_string_ids_are_accepted(self):
        message = parse_message('{"jsonrpc": "2.0", "id": "abc", "result": null}')

        assert isinstance(message, JsonRpcResponse)
        assert message.id == "abc"

    @pytest.mark.parametrize(
        "line",
        [
            b"not json",
            b"[1, 2, 3]",
            b'{"id": 1, "result": {}}',
            b'{"jsonrpc": "2.0", "id": 1}',
            b'{"jsonrpc": "2.0", "method": 42}',
            b"\xff\xfe",
        ],
    )
    def test_malformed_lines(self, line):
        with pytest.raises(ProtocolError) as exc_info:
            parse_message(line)

        assert exc_info.value.kind == ProtocolErrorKind.MALFORMED_MESSAGE
        assert exc_info.value.kind_name == "malformed_message"


# =============================================================================
# Stream events
# =============================================================================


class TestStreamEvents:
    """Typed events handed to presenters."""

    def test_event_defaults(self):
        event = MessageChunk(session_id="s1", text="hi")

        assert event.type == "message_chunk"
        assert event.id.startswith("evt_")
        assert event.sequence is None
        assert event.is_delegated is False

    def test_delegated_event(self):
        event = ToolCall(session_id="s1", tool_call_id="tc1", name="read", delegation_id="dlg_1")

        assert event.is_delegated is True
        assert event.kind == "other"
        assert event.status == "pending"

    @pytest.mark.parametrize(
        ("status", "terminal"),
        [("completed", True), ("failed", True), ("cancelled", True), ("in_progress", False), (None, False)],
    )
    def test_tool_update_terminal_status(self, status, terminal):
        event = ToolCallUpdate(session_id="s1", tool_call_id="tc1", status=status)

        assert event.is_terminal is terminal

    def test_error_event_defaults(self):
        event = ErrorEvent(session_id="s1", kind="unexpected_exit", message="gone")

        assert event.severity == "error"
        assert event.fatal is False


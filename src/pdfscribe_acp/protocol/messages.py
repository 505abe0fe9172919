"""JSON-RPC 2.0 envelopes for the ACP wire.

The agent speaks newline-delimited JSON: one object per line, no
Content-Length framing. Four shapes appear on the wire:

- Request (client->agent or agent->client): has ``id`` and ``method``
- Notification: has ``method`` but no ``id``
- Response: has ``id`` and exactly one of ``result`` / ``error``

Example exchange:
    --> {"jsonrpc": "2.0", "id": 1, "method": "session/new", "params": {"cwd": "/tmp"}}
    <-- {"jsonrpc": "2.0", "id": 1, "result": {"sessionId": "s1"}}
    <-- {"jsonrpc": "2.0", "method": "session/update", "params": {...}}
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from ..errors import ProtocolError, ProtocolErrorKind

JSONRPC_VERSION = "2.0"

# Standard JSON-RPC error codes
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

RequestId = int | str


class JsonRpcErrorObject(BaseModel):
    """The ``error`` member of a failed response."""

    code: int
    message: str
    data: Any = None


class JsonRpcRequest(BaseModel):
    """A call that expects a response."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: RequestId
    method: str
    params: dict[str, Any] | None = None

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message


class JsonRpcNotification(BaseModel):
    """A one-way message; never answered."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    method: str
    params: dict[str, Any] | None = None

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message


class JsonRpcResponse(BaseModel):
    """The answer to a request, carrying either ``result`` or ``error``."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: RequestId | None
    result: Any = None
    error: JsonRpcErrorObject | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            message["error"] = self.error.model_dump(exclude_none=True)
        else:
            message["result"] = self.result
        return message

    @classmethod
    def failure(
        cls, request_id: RequestId | None, code: int, message: str, data: Any = None
    ) -> JsonRpcResponse:
        return cls(id=request_id, error=JsonRpcErrorObject(code=code, message=message, data=data))


JsonRpcMessage = JsonRpcRequest | JsonRpcNotification | JsonRpcResponse


def encode_message(message: JsonRpcMessage) -> bytes:
    """Serialize a message as one UTF-8 JSON line."""
    return (json.dumps(message.to_wire(), ensure_ascii=False) + "\n").encode("utf-8")


def parse_message(line: bytes | str) -> JsonRpcMessage:
    """Parse one wire line into a typed message.

    Raises:
        ProtocolError: MALFORMED_MESSAGE if the line is not valid UTF-8 JSON,
            not an object, or lacks the fields its shape requires.
    """
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(ProtocolErrorKind.MALFORMED_MESSAGE, f"Invalid UTF-8: {e}") from e

    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(ProtocolErrorKind.MALFORMED_MESSAGE, f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError(
            ProtocolErrorKind.MALFORMED_MESSAGE,
            f"Expected a JSON object, got {type(data).__name__}",
        )

    if data.get("jsonrpc") != JSONRPC_VERSION:
        raise ProtocolError(ProtocolErrorKind.MALFORMED_MESSAGE, "Missing jsonrpc version")

    try:
        if "method" in data:
            if "id" in data:
                return JsonRpcRequest.model_validate(data)
            return JsonRpcNotification.model_validate(data)
        if "id" in data and ("result" in data or "error" in data):
            return JsonRpcResponse.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(
            ProtocolErrorKind.MALFORMED_MESSAGE,
            f"Invalid message fields: {e.error_count()} error(s)",
        ) from e

    raise ProtocolError(
        ProtocolErrorKind.MALFORMED_MESSAGE,
        "Message is neither a request, a notification nor a response",
    )

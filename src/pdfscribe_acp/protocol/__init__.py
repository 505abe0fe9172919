"""Wire and event models.

- messages: JSON-RPC 2.0 envelopes and the newline-delimited codec
- events: normalized stream events handed to the host application
"""

from .events import (
    ErrorEvent,
    MessageChunk,
    StreamEvent,
    ToolCall,
    ToolCallUpdate,
    TurnComplete,
)
from .messages import (
    JsonRpcMessage,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    encode_message,
    parse_message,
)

__all__ = [
    "ErrorEvent",
    "MessageChunk",
    "StreamEvent",
    "ToolCall",
    "ToolCallUpdate",
    "TurnComplete",
    "JsonRpcMessage",
    "JsonRpcNotification",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "encode_message",
    "parse_message",
]

"""PDFScribe ACP client.

Talks to an Agent Client Protocol agent (e.g. ``opencode acp``) over
stdio: sessions bound to working directories, prompts carrying files and
PDF selections, and a typed event stream with sub-agent delegation.
"""

from .client import AcpClient
from .config import ClientConfig, load_config
from .context import ChatMessage, PromptContext
from .dispatcher import PromptHandle, PromptPayload, Resource, Selection
from .errors import (
    BackendError,
    ProcessError,
    ProcessErrorKind,
    ProtocolError,
    ProtocolErrorKind,
    RpcError,
    ScribeError,
    StateError,
    StateErrorKind,
)
from .message_parser import MessageParser, ParsedMessage, parse_message
from .presenter import ConsolePresenter, Presenter, presenter_handler
from .protocol.events import (
    ErrorEvent,
    MessageChunk,
    StreamEvent,
    ToolCall,
    ToolCallUpdate,
    TurnComplete,
)

__version__ = "0.1.0"

__all__ = [
    "AcpClient",
    "ClientConfig",
    "load_config",
    "ChatMessage",
    "PromptContext",
    "PromptHandle",
    "PromptPayload",
    "Resource",
    "Selection",
    "BackendError",
    "ProcessError",
    "ProcessErrorKind",
    "ProtocolError",
    "ProtocolErrorKind",
    "RpcError",
    "ScribeError",
    "StateError",
    "StateErrorKind",
    "ConsolePresenter",
    "Presenter",
    "presenter_handler",
    "ErrorEvent",
    "MessageChunk",
    "StreamEvent",
    "ToolCall",
    "ToolCallUpdate",
    "TurnComplete",
    "MessageParser",
    "ParsedMessage",
    "parse_message",
]

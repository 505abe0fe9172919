"""Offline backend with canned Markdown answers.

Useful for UI work and demos: no process, no network. The reply is picked
by keyword (hello, test, code, list, long/scroll) and streamed in small
chunks.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator

from ..config import ClientConfig
from ..context import PromptContext
from ..protocol.events import MessageChunk, StreamEvent, TurnComplete
from .base import ModeInfo, ModelInfo, local_session_id

MOCK_MODELS = [
    ModelInfo(id="mock-fast", name="Mock Fast", provider="mock"),
    ModelInfo(id="mock-standard", name="Mock Standard", provider="mock"),
    ModelInfo(id="mock-advanced", name="Mock Advanced", provider="mock"),
]

MOCK_MODES = [
    ModeInfo(id="mock-chat", name="Chat", description="Mock chat mode"),
    ModeInfo(id="mock-research", name="Research", description="Mock research mode"),
    ModeInfo(id="mock-code", name="Code", description="Mock code mode"),
]

_REFERENCES = """
[1]: https://pdfscribe.example/docs/streaming
[2]: https://pdfscribe.example/docs/markdown
[3]: https://pdfscribe.example/docs/citations"""

_GREETING = "Hello! I'm a mock AI assistant. How can I help you test the application today?"

_TEST_REPLY = (
    """This is a **mock response** for testing purposes [1]. Here are some features being tested:

- Streaming text rendering [2]
- Markdown formatting support
- Inline citation badges [1][2][3]

The mock backend simulates real responses without API costs [1]!
"""
    + _REFERENCES
)

_CODE_REPLY = """Here's a sample code snippet for testing:

```python
def greet(name: str) -> str:
    return f"Hello, {name}!"

print(greet("World"))
```

This demonstrates **code block rendering** in the mock response.
"""

_LIST_REPLY = """Here's a mock list response:

1. First item with **bold text**
2. Second item with *italic text*
3. Third item with `inline code`

And a bulleted list:

- Apple
- Banana
- Cherry
"""

_LONG_REPLY = (
    """# Testing Auto-Scroll with Long Response

This is a longer mock response designed to test scrolling [1].

## Section 1: Introduction

Lorem ipsum dolor sit amet, consectetur adipiscing elit [2]. Sed do eiusmod tempor incididunt ut labore.

## Section 2: Details

Ut enim ad minim veniam, quis nostrud exercitation ullamco laboris [3] nisi ut aliquip ex ea commodo.

## Section 3: Conclusion

This concludes the mock response [1][2][3].
"""
    + _REFERENCES
)


def _default_reply(message: str) -> str:
    return (
        f"""I'm a mock AI assistant running in test mode. You asked: "{message}"

This is a simulated response with **Markdown formatting** support and inline citations [1]:

- No API costs [2]
- Instant responses [3]

Try asking about "test", "code", "list", or "scroll" for different response types!
"""
        + _REFERENCES
    )


def mock_reply(message: str) -> str:
    """Pick the canned reply for a message."""
    words = set(re.findall(r"[a-z]+", message.lower()))
    if words & {"hello", "hi"}:
        return _GREETING
    if "test" in words:
        return _TEST_REPLY
    if "code" in words:
        return _CODE_REPLY
    if "list" in words:
        return _LIST_REPLY
    if words & {"long", "scroll"}:
        return _LONG_REPLY
    return _default_reply(message)


def chunk_text(text: str) -> list[str]:
    """Split into word-sized chunks that concatenate back to ``text``."""
    return re.findall(r"\s*\S+|\s+", text)


class MockBackend:
    name = "mock"

    def __init__(self, config: ClientConfig | None = None, *, delay: float | None = None):
        self.delay = delay if delay is not None else (config.mock_delay if config else 0.02)
        self.session_id = local_session_id("mock")
        self._model = MOCK_MODELS[0]
        self._mode = MOCK_MODES[0]
        self._cancelled = False

    async def stream(self, message: str, context: PromptContext | None = None) -> AsyncIterator[StreamEvent]:
        self._cancelled = False
        sequence = 0
        for chunk in chunk_text(mock_reply(message)):
            if self._cancelled:
                break
            if self.delay:
                await asyncio.sleep(self.delay)
            yield MessageChunk(session_id=self.session_id, sequence=sequence, text=chunk)
            sequence += 1

        stop_reason = "cancelled" if self._cancelled else "end_turn"
        yield TurnComplete(session_id=self.session_id, sequence=sequence, stop_reason=stop_reason)

    def available_models(self) -> list[ModelInfo]:
        return list(MOCK_MODELS)

    def available_modes(self) -> list[ModeInfo]:
        return list(MOCK_MODES)

    def current_model(self) -> ModelInfo | None:
        return self._model

    def current_mode(self) -> ModeInfo | None:
        return self._mode

    async def select_model(self, model_id: str) -> None:
        self._model = next((m for m in MOCK_MODELS if m.id == model_id), ModelInfo(model_id, model_id, "mock"))

    async def select_mode(self, mode_id: str) -> None:
        self._mode = next((m for m in MOCK_MODES if m.id == mode_id), ModeInfo(mode_id, mode_id))

    async def cancel(self) -> None:
        self._cancelled = True

    async def aclose(self) -> None:
        self._cancelled = True

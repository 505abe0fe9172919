"""Prompt construction and dispatch.

A prompt is one text block followed by the embedded resources in order.
Selections are folded into the text block:

    Explain this.

    [Selection from paper.pdf, page 3, line 12]
    > The quick brown fox
    > jumps over the lazy dog

send_prompt() returns as soon as the request is written. The turn ends
with TurnComplete (from the agent, or synthesized from the ``session/prompt``
response) or with an ErrorEvent if the request fails.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import mimetypes
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from acp.schema import (  # type: ignore[import-untyped]
    EmbeddedResourceContentBlock,
    TextContentBlock,
    TextResourceContents,
)

from .errors import ProcessError, ScribeError, StateError
from .session import SessionManager, Turn
from .transport import JsonRpcTransport, PendingCall

if TYPE_CHECKING:
    from .router import StreamEventRouter

logger = logging.getLogger(__name__)

# Not in every platform mime.types
_TEXT_MIME_TYPES = {".md": "text/markdown", ".markdown": "text/markdown"}


def guess_mime_type(path: str | Path) -> str:
    """MIME type for a text file, defaulting to text/plain."""
    suffix = Path(path).suffix.lower()
    if suffix in _TEXT_MIME_TYPES:
        return _TEXT_MIME_TYPES[suffix]
    return mimetypes.guess_type(Path(path).name)[0] or "text/plain"


def _dump_block(block: Any) -> dict[str, Any]:
    return block.model_dump(mode="json", by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class Resource:
    """A text document embedded in the prompt."""

    uri: str
    text: str
    mime_type: str = "text/plain"

    @classmethod
    def from_path(cls, path: str | Path, mime_type: str | None = None) -> Resource:
        """Read a text file into a resource with a ``file://`` URI."""
        resolved = Path(path).expanduser().resolve()
        text = resolved.read_text(encoding="utf-8", errors="replace")
        return cls(uri=resolved.as_uri(), text=text, mime_type=mime_type or guess_mime_type(resolved))

    def to_block(self) -> dict[str, Any]:
        contents = TextResourceContents(uri=self.uri, text=self.text, mimeType=self.mime_type)
        return _dump_block(EmbeddedResourceContentBlock(type="resource", resource=contents))


@dataclass(frozen=True)
class Selection:
    """Highlighted text from a PDF page or the note editor."""

    text: str
    page: int | None = None
    line: int | None = None
    source: str | None = None

    def header(self) -> str:
        label = f"Selection from {self.source}" if self.source else "Selection"
        locator = []
        if self.page is not None:
            locator.append(f"page {self.page}")
        if self.line is not None:
            locator.append(f"line {self.line}")
        return f"[{', '.join([label, *locator])}]"

    def format(self) -> str:
        quoted = "\n".join(f"> {line}" for line in self.text.splitlines() or [""])
        return f"{self.header()}\n{quoted}"


@dataclass(frozen=True)
class PromptPayload:
    """Everything sent in one ``session/prompt``. Immutable once built."""

    text: str
    resources: tuple[Resource, ...] = ()
    selections: tuple[Selection, ...] = ()

    @property
    def prompt_text(self) -> str:
        parts = [self.text, *(selection.format() for selection in self.selections)]
        return "\n\n".join(part for part in parts if part)

    def to_content_blocks(self) -> list[dict[str, Any]]:
        blocks = [_dump_block(TextContentBlock(type="text", text=self.prompt_text))]
        blocks.extend(resource.to_block() for resource in self.resources)
        return blocks

    def to_params(self, session_id: str) -> dict[str, Any]:
        return {"sessionId": session_id, "prompt": self.to_content_blocks()}


class PromptHandle:
    """The caller's view of a dispatched prompt."""

    def __init__(self, turn: Turn, payload: PromptPayload):
        self._turn = turn
        self.payload = payload

    @property
    def session_id(self) -> str:
        return self._turn.session_id

    @property
    def request_id(self) -> int | None:
        return self._turn.request_id

    @property
    def stop_reason(self) -> str | None:
        return self._turn.stop_reason

    @property
    def failed(self) -> bool:
        return self._turn.error is not None

    def done(self) -> bool:
        return self._turn.done()

    async def wait(self, timeout: float | None = None) -> str:
        """Wait for the turn to finish and return the stop reason."""
        return await self._turn.wait(timeout)


class PromptDispatcher:
    """Sends prompts and closes out their turns."""

    def __init__(
        self,
        transport: JsonRpcTransport,
        sessions: SessionManager,
        router: StreamEventRouter,
        *,
        prompt_timeout: float | None = None,
    ):
        self._transport = transport
        self._sessions = sessions
        self._router = router
        self.prompt_timeout = prompt_timeout
        self._tasks: set[asyncio.Task[None]] = set()

    async def send_prompt(
        self,
        session_id: str,
        text: str,
        resources: Iterable[Resource] = (),
        selections: Iterable[Selection] = (),
    ) -> PromptHandle:
        """Send a prompt; returns once it is on the wire.

        Raises:
            StateError: the session is not active or already has a prompt
                in flight.
        """
        payload = PromptPayload(text=text, resources=tuple(resources), selections=tuple(selections))
        return await self.dispatch(session_id, payload)

    async def dispatch(self, session_id: str, payload: PromptPayload) -> PromptHandle:
        session = self._sessions.require_active(session_id)
        turn = session.begin_turn()

        try:
            pending = await self._transport.send_request(
                "session/prompt", payload.to_params(session_id), session_id=session_id
            )
        except BaseException as e:
            turn.fail(e)
            raise

        turn.request_id = pending.id
        logger.info(
            f"Prompt sent to {session_id} (id={pending.id}, "
            f"{len(payload.resources)} resource(s), {len(payload.selections)} selection(s))"
        )

        task = asyncio.create_task(self._finish_turn(session_id, turn, pending))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return PromptHandle(turn, payload)

    async def _finish_turn(self, session_id: str, turn: Turn, pending: PendingCall) -> None:
        try:
            result = await self._transport.wait_for(pending, self.prompt_timeout)
        except (StateError, ProcessError) as e:
            # Session closed or agent died; those paths report to the UI
            turn.fail(e)
            return
        except ScribeError as e:
            logger.warning(f"Prompt failed for {session_id}: {e}")
            self._router.fail_turn(session_id, turn, e)
            if self._transport.is_open:
                with contextlib.suppress(ScribeError):
                    await self._transport.send_notification("session/cancel", {"sessionId": session_id})
            return

        stop_reason = "end_turn"
        if isinstance(result, dict) and result.get("stopReason"):
            stop_reason = str(result["stopReason"])
        self._router.complete_turn(session_id, stop_reason, turn=turn)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

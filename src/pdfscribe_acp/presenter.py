"""UI-facing event presentation.

A Presenter is what the host application implements to render a session's
stream. Each method may be a plain function or a coroutine.

    router.on_event(session_id, presenter_handler(my_presenter))
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

import click

from .message_parser import MessageParser
from .protocol.events import (
    ErrorEvent,
    MessageChunk,
    StreamEvent,
    ToolCall,
    ToolCallUpdate,
    TurnComplete,
)
from .tool_metadata import get_display_name
from .utils import maybe_await

logger = logging.getLogger(__name__)


@runtime_checkable
class Presenter(Protocol):
    """Callbacks the host application implements."""

    def present_chunk(self, event: MessageChunk) -> Awaitable[None] | None: ...

    def present_tool_call(self, event: ToolCall) -> Awaitable[None] | None: ...

    def present_tool_update(self, event: ToolCallUpdate) -> Awaitable[None] | None: ...

    def present_turn_complete(self, event: TurnComplete) -> Awaitable[None] | None: ...

    def present_error(self, event: ErrorEvent) -> Awaitable[None] | None: ...


async def dispatch_event(presenter: Presenter, event: StreamEvent) -> None:
    """Call the presenter method matching the event type."""
    if isinstance(event, MessageChunk):
        await maybe_await(presenter.present_chunk, event)
    elif isinstance(event, ToolCall):
        await maybe_await(presenter.present_tool_call, event)
    elif isinstance(event, ToolCallUpdate):
        await maybe_await(presenter.present_tool_update, event)
    elif isinstance(event, TurnComplete):
        await maybe_await(presenter.present_turn_complete, event)
    elif isinstance(event, ErrorEvent):
        await maybe_await(presenter.present_error, event)
    else:
        logger.debug(f"No presenter method for {type(event).__name__}")


def presenter_handler(presenter: Presenter) -> Callable[[StreamEvent], Awaitable[None]]:
    """Adapt a presenter to a router event handler."""

    async def handle(event: StreamEvent) -> None:
        await dispatch_event(presenter, event)

    return handle


class ConsolePresenter:
    """Renders a session's stream on the terminal.

    Assistant text goes to stdout as it arrives, followed by a numbered
    list of the links it cited once the turn ends. Tool activity and
    errors go to stderr so the answer can be piped.
    """

    def __init__(
        self,
        *,
        show_tools: bool = True,
        show_sources: bool = True,
        color: bool | None = None,
    ):
        self.show_tools = show_tools
        self.show_sources = show_sources
        self.color = color
        self._at_line_start = True
        self._parser = MessageParser()
        self._answer: list[str] = []

    def present_chunk(self, event: MessageChunk) -> None:
        click.echo(event.text, nl=False)
        self._at_line_start = event.text.endswith("\n")
        if not event.is_delegated:
            self._answer.append(event.text)

    def present_tool_call(self, event: ToolCall) -> None:
        if not self.show_tools:
            return
        indent = "  " if event.is_delegated else ""
        label = click.style(get_display_name(event.name), fg="cyan", bold=True)
        self._status(f"{indent}{label} {event.title}")

    def present_tool_update(self, event: ToolCallUpdate) -> None:
        if not self.show_tools or not event.is_terminal:
            return
        indent = "  " if event.is_delegated else ""
        color = "green" if event.status == "completed" else "red"
        self._status(f"{indent}  -> {click.style(event.status or '', fg=color)}")

    def present_turn_complete(self, event: TurnComplete) -> None:
        if event.is_delegated:
            return
        if not self._at_line_start:
            click.echo()
            self._at_line_start = True
        if event.stop_reason != "end_turn":
            self._status(click.style(f"[stopped: {event.stop_reason}]", dim=True))
        self._present_sources()

    def _present_sources(self) -> None:
        answer = "".join(self._answer)
        self._answer.clear()
        if not self.show_sources:
            return
        references = self._parser.parse(answer).references
        if not references:
            return
        click.echo()
        click.echo("Sources:")
        for number, url in enumerate(references, start=1):
            click.echo(f"  [{number}] {url}")

    def present_error(self, event: ErrorEvent) -> None:
        color = "yellow" if event.severity == "warning" else "red"
        prefix = "Warning" if event.severity == "warning" else "Error"
        self._status(click.style(f"{prefix} ({event.kind}): {event.message}", fg=color))

    def _status(self, line: str) -> None:
        if not self._at_line_start:
            click.echo(err=True)
            self._at_line_start = True
        click.echo(line, err=True, color=self.color)


class JsonLinesPresenter:
    """Writes each event as one JSON object per line (``--json`` output)."""

    def _write(self, event: Any) -> None:
        click.echo(json.dumps(event.model_dump(mode="json")))

    present_chunk = _write
    present_tool_call = _write
    present_tool_update = _write
    present_turn_complete = _write
    present_error = _write

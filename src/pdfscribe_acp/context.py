"""What the user is looking at when they send a prompt.

The host application fills a PromptContext from its current state (open
note, open PDF, highlighted text) and the dispatcher turns it into
resources and selections.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from .dispatcher import PromptPayload, Resource, Selection, guess_mime_type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatMessage:
    """One prior turn of the conversation."""

    role: Literal["user", "assistant", "system"]
    content: str


@dataclass
class PromptContext:
    """Editor and viewer state attached to a prompt."""

    messages: list[ChatMessage] = field(default_factory=list)
    current_file: Path | None = None
    current_file_content: str | None = None
    editor_selection: str | None = None
    pdf_path: Path | None = None
    pdf_selection: str | None = None
    pdf_page: int | None = None
    referenced_files: list[Path] = field(default_factory=list)

    def resources(self) -> list[Resource]:
        """The open note first, then referenced files in order.

        Unreadable referenced files are skipped with a warning.
        """
        resources: list[Resource] = []
        seen: set[str] = set()

        if self.current_file is not None:
            if self.current_file_content is not None:
                resource = Resource(
                    uri=Path(self.current_file).expanduser().resolve().as_uri(),
                    text=self.current_file_content,
                    mime_type=guess_mime_type(self.current_file),
                )
            else:
                resource = Resource.from_path(self.current_file)
            resources.append(resource)
            seen.add(resource.uri)

        for path in self.referenced_files:
            try:
                resource = Resource.from_path(path)
            except OSError as e:
                logger.warning(f"Skipping referenced file {path}: {e}")
                continue
            if resource.uri not in seen:
                resources.append(resource)
                seen.add(resource.uri)

        return resources

    def selections(self) -> list[Selection]:
        selections = []
        if self.pdf_selection:
            source = self.pdf_path.name if self.pdf_path else None
            selections.append(Selection(text=self.pdf_selection, page=self.pdf_page, source=source))
        if self.editor_selection:
            source = self.current_file.name if self.current_file else None
            selections.append(Selection(text=self.editor_selection, source=source))
        return selections

    def to_payload(self, text: str) -> PromptPayload:
        return PromptPayload(
            text=text,
            resources=tuple(self.resources()),
            selections=tuple(self.selections()),
        )

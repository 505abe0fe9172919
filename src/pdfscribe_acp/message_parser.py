"""Assistant message parsing.

Splits Markdown into prose and fenced code blocks, and turns links into
numbered citations:

    See [the paper](https://example.org/p.pdf) and https://example.org/notes

becomes

    See the paper [1] and [2]

with ``references == ["https://example.org/p.pdf", "https://example.org/notes"]``.
A URL cited twice keeps its first number. Code blocks are left untouched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

_CODE_FENCE = re.compile(r"```([A-Za-z0-9_+-]*)\n(.*?)```", re.DOTALL)
# Bare URLs never end in sentence punctuation
_LINK_OR_URL = re.compile(
    r"\[([^\]]+)\]\((https?://[^)\s]+)\)|(https?://[^\s)\]]*[^\s)\].,;:!?'\"])"
)


@dataclass(frozen=True)
class Block:
    kind: Literal["text", "code"]
    content: str
    language: str | None = None


@dataclass
class ParsedMessage:
    blocks: list[Block] = field(default_factory=list)
    references: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        """The prose blocks joined back together."""
        return "".join(block.content for block in self.blocks if block.kind == "text")


def split_blocks(message: str) -> list[Block]:
    """Separate fenced code from prose. Whitespace-only prose is dropped."""
    blocks: list[Block] = []
    position = 0
    for match in _CODE_FENCE.finditer(message):
        before = message[position : match.start()]
        if before.strip():
            blocks.append(Block("text", before))
        blocks.append(Block("code", match.group(2), match.group(1) or None))
        position = match.end()

    rest = message[position:]
    if rest.strip():
        blocks.append(Block("text", rest))
    if not blocks:
        blocks.append(Block("text", message))
    return blocks


class MessageParser:
    """Parses assistant messages; citation numbers are shared across blocks."""

    def parse(self, message: str) -> ParsedMessage:
        references: list[str] = []
        numbers: dict[str, int] = {}

        def cite(match: re.Match[str]) -> str:
            label, link_url, bare_url = match.groups()
            url = link_url or bare_url
            if url not in numbers:
                references.append(url)
                numbers[url] = len(references)
            number = numbers[url]
            return f"{label} [{number}]" if label else f"[{number}]"

        blocks = []
        for block in split_blocks(message):
            if block.kind == "text":
                block = Block("text", _LINK_OR_URL.sub(cite, block.content))
            blocks.append(block)

        return ParsedMessage(blocks=blocks, references=references)


def parse_message(message: str) -> ParsedMessage:
    return MessageParser().parse(message)

"""Shared tool metadata for displaying agent tool calls.

Single source of truth for how a raw tool name (``read``, ``bash``,
``task``, ...) is categorized and titled. The router uses the category to
recognize delegation; presenters use display names and titles.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolMeta:
    """Display properties for one tool.

    Attributes:
        kind: Tool category (search, code, file, web, delegate, other)
        display_name: Short human-readable name
        title_fn: Function to generate a title from the tool arguments
    """

    kind: str
    display_name: str
    title_fn: Callable[[dict[str, Any]], str]


def _truncate(s: str, max_len: int = 50) -> str:
    """Truncate string with ellipsis if too long."""
    return s[:max_len] + "..." if len(s) > max_len else s


def _path_arg(args: dict[str, Any]) -> str:
    return str(args.get("filePath") or args.get("file_path") or args.get("path") or "file")


# =============================================================================
# Tool Metadata Registry
# =============================================================================

TOOL_METADATA: dict[str, ToolMeta] = {
    # File operations
    "read": ToolMeta(
        kind="file",
        display_name="Read File",
        title_fn=lambda args: f"Reading {_path_arg(args)}",
    ),
    "write": ToolMeta(
        kind="file",
        display_name="Write File",
        title_fn=lambda args: f"Writing {_path_arg(args)}",
    ),
    "edit": ToolMeta(
        kind="file",
        display_name="Edit File",
        title_fn=lambda args: f"Editing {_path_arg(args)}",
    ),
    # Code execution
    "bash": ToolMeta(
        kind="code",
        display_name="Run Command",
        title_fn=lambda args: f"Run: {_truncate(str(args.get('command', 'command')))}",
    ),
    # Search
    "glob": ToolMeta(
        kind="search",
        display_name="Find Files",
        title_fn=lambda args: f"Finding files: {args.get('pattern', '*')}",
    ),
    "grep": ToolMeta(
        kind="search",
        display_name="Search Code",
        title_fn=lambda args: f"Searching for: {_truncate(str(args.get('pattern', '...')))}",
    ),
    # Web
    "webfetch": ToolMeta(
        kind="web",
        display_name="Web Fetch",
        title_fn=lambda args: f"Fetching {_truncate(str(args.get('url', 'URL')))}",
    ),
    "web-search": ToolMeta(
        kind="web",
        display_name="Web Search",
        title_fn=lambda args: f"Searching: {_truncate(str(args.get('query', '...')))}",
    ),
    # Delegation
    "task": ToolMeta(
        kind="delegate",
        display_name="Sub-Agent",
        title_fn=lambda args: f"Delegating to {args.get('subagent_type') or args.get('agent') or 'agent'}",
    ),
    # Context management
    "discard": ToolMeta(
        kind="other",
        display_name="Discard",
        title_fn=lambda args: "Discarding context",
    ),
    "extract": ToolMeta(
        kind="other",
        display_name="Extract",
        title_fn=lambda args: "Extracting context",
    ),
}


# =============================================================================
# Public API
# =============================================================================


def get_tool_title(tool_name: str, arguments: dict[str, Any]) -> str:
    """Generate a human-readable title for a tool call.

    Example:
        >>> get_tool_title("read", {"filePath": "/notes/ch1.md"})
        'Reading /notes/ch1.md'
    """
    meta = TOOL_METADATA.get(tool_name)
    if meta:
        try:
            return meta.title_fn(arguments)
        except Exception as e:
            logger.debug(f"Title function for {tool_name} failed: {e}")

    # Default: humanize the tool name
    return get_display_name(tool_name)


def get_tool_kind(tool_name: str) -> str:
    """Get the category for a tool.

    Example:
        >>> get_tool_kind("grep")
        'search'
        >>> get_tool_kind("unknown_tool")
        'other'
    """
    meta = TOOL_METADATA.get(tool_name)
    return meta.kind if meta else "other"


def get_display_name(tool_name: str) -> str:
    """Short display name; unknown tools get a capitalized version of their name."""
    meta = TOOL_METADATA.get(tool_name)
    if meta:
        return meta.display_name
    return tool_name.replace("_", " ").replace("-", " ").title()


def is_delegation_tool(tool_name: str) -> bool:
    """True if calling this tool hands the turn to a sub-agent."""
    return get_tool_kind(tool_name) == "delegate"


def register_tool_metadata(
    tool_name: str,
    kind: str,
    title_fn: Callable[[dict[str, Any]], str],
    display_name: str | None = None,
) -> None:
    """Register metadata for a custom tool.

    Args:
        tool_name: Name of the tool to register
        kind: Tool category
        title_fn: Function to generate title from arguments
        display_name: Optional display name (derived from the name if omitted)
    """
    TOOL_METADATA[tool_name] = ToolMeta(
        kind=kind,
        display_name=display_name or tool_name.replace("_", " ").title(),
        title_fn=title_fn,
    )

"""Unit tests for tool metadata."""

from __future__ import annotations

import pytest

from pdfscribe_acp import tool_metadata
from pdfscribe_acp.tool_metadata import (
    get_display_name,
    get_tool_kind,
    get_tool_title,
    is_delegation_tool,
    register_tool_metadata,
)


class TestToolTitles:
    @pytest.mark.parametrize(
        ("tool", "args", "title"),
        [
            ("read", {"filePath": "/notes/ch1.md"}, "Reading /notes/ch1.md"),
            ("write", {"file_path": "out.md"}, "Writing out.md"),
            ("edit", {}, "Editing file"),
            ("glob", {"pattern": "**/*.md"}, "Finding files: **/*.md"),
            ("task", {"subagent_type": "explore"}, "Delegating to explore"),
            ("task", {}, "Delegating to agent"),
        ],
    )
    def test_known_tools(self, tool, args, title):
        assert get_tool_title(tool, args) == title

    def test_long_command_is_truncated(self):
        title = get_tool_title("bash", {"command": "x" * 80})

        assert title == "Run: " + "x" * 50 + "..."

    def test_unknown_tool_uses_display_name(self):
        assert get_tool_title("pdf_outline", {}) == "Pdf Outline"

    def test_failing_title_function_falls_back(self, monkeypatch):
        broken = tool_metadata.ToolMeta("other", "Broken", lambda args: args["missing"])
        monkeypatch.setitem(tool_metadata.TOOL_METADATA, "broken", broken)

        assert get_tool_title("broken", {}) == "Broken"


class TestToolKinds:
    def test_kinds(self):
        assert get_tool_kind("grep") == "search"
        assert get_tool_kind("bash") == "code"
        assert get_tool_kind("webfetch") == "web"
        assert get_tool_kind("mystery") == "other"

    def test_delegation(self):
        assert is_delegation_tool("task") is True
        assert is_delegation_tool("read") is False

    def test_display_names(self):
        assert get_display_name("read") == "Read File"
        assert get_display_name("web-search") == "Web Search"
        assert get_display_name("cite-source") == "Cite Source"

    def test_register_custom_tool(self, monkeypatch):
        monkeypatch.setattr(tool_metadata, "TOOL_METADATA", dict(tool_metadata.TOOL_METADATA))

        register_tool_metadata("annotate_pdf", "file", lambda args: f"Annotating page {args['page']}")

        assert get_tool_title("annotate_pdf", {"page": 4}) == "Annotating page 4"
        assert get_tool_kind("annotate_pdf") == "file"
        assert get_display_name("annotate_pdf") == "Annotate Pdf"

"""PDFScribe ACP command line.

Usage:
    pdfscribe-acp chat "Summarize page 3" --resource notes.md --selection "..." --page 3
    pdfscribe-acp chat "hello" --backend mock
    pdfscribe-acp chat "Review my draft" --mode plan --json

    pdfscribe-acp modes                   # List agent modes
    pdfscribe-acp config                  # Show effective configuration
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from .backends import BACKEND_FACTORIES, create_backend
from .config import ClientConfig, load_config
from .context import PromptContext
from .errors import ScribeError
from .modes import find_mode, load_primary_modes
from .presenter import ConsolePresenter, JsonLinesPresenter, dispatch_event
from .protocol.events import ErrorEvent

# Output format options
FORMAT_TABLE = "table"
FORMAT_JSON = "json"


def truncate(text: str | None, max_len: int = 50) -> str:
    """Truncate text for display."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _configure_logging(verbose: bool) -> None:
    # stdout carries the answer; logs go to stderr
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        force=True,
    )


def _load(ctx: click.Context, **overrides: object) -> ClientConfig:
    try:
        return load_config(ctx.obj.get("config_path"), **overrides)
    except (OSError, ValueError) as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="YAML config file (default: ~/.config/pdfscribe/acp.yaml)",
)
@click.version_option(package_name="pdfscribe-acp")
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """PDFScribe ACP client - chat with a coding agent about your notes and PDFs."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# =============================================================================
# Chat
# =============================================================================


@main.command()
@click.argument("prompt")
@click.option("--backend", "backend_name", help=f"Backend ({', '.join(sorted(BACKEND_FACTORIES))})")
@click.option("--agent-command", help="Agent command line (default: 'opencode acp')")
@click.option(
    "--cwd",
    "working_directory",
    type=click.Path(exists=True, file_okay=False),
    help="Working directory for the session",
)
@click.option(
    "--resource",
    "resources",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="File to embed in the prompt (repeatable)",
)
@click.option("--selection", help="Selected text to quote in the prompt")
@click.option("--page", type=int, help="PDF page the selection comes from")
@click.option("--pdf", "pdf_path", help="PDF the selection comes from")
@click.option("--mode", help="Agent mode (build, plan, explore, or a custom agent)")
@click.option("--json", "output_json", is_flag=True, help="Print events as JSON lines")
@click.pass_context
def chat(
    ctx: click.Context,
    prompt: str,
    backend_name: str | None,
    agent_command: str | None,
    working_directory: str | None,
    resources: tuple[str, ...],
    selection: str | None,
    page: int | None,
    pdf_path: str | None,
    mode: str | None,
    output_json: bool,
) -> None:
    """Send PROMPT and stream the answer.

    Examples:

        pdfscribe-acp chat "What does section 2 argue?" --resource notes.md

        pdfscribe-acp chat "Explain this" --selection "E = mc^2" --page 3 --pdf paper.pdf
    """
    config = _load(
        ctx,
        backend=backend_name,
        agent_command=agent_command,
        working_directory=str(Path(working_directory).resolve()) if working_directory else None,
        mode=mode,
    )
    if mode and find_mode(mode, load_primary_modes(config.opencode_config_path)) is None:
        click.echo(f"Warning: '{mode}' is not a known agent mode", err=True)
    context = PromptContext(
        referenced_files=[Path(r) for r in resources],
        pdf_path=Path(pdf_path) if pdf_path else None,
        pdf_selection=selection,
        pdf_page=page,
    )

    async def run() -> int:
        backend = create_backend(config)
        presenter = JsonLinesPresenter() if output_json else ConsolePresenter()
        exit_code = 0
        try:
            async for event in backend.stream(prompt, context):
                await dispatch_event(presenter, event)
                if isinstance(event, ErrorEvent) and event.severity == "error":
                    exit_code = 1
        finally:
            await backend.aclose()
        return exit_code

    try:
        code = asyncio.run(run())
    except (ScribeError, ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    sys.exit(code)


# =============================================================================
# Modes
# =============================================================================


@main.command("modes")
@click.option(
    "--opencode-config",
    type=click.Path(dir_okay=False),
    help="OpenCode config (default: ~/.config/opencode/opencode.json)",
)
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
@click.pass_context
def list_modes(ctx: click.Context, opencode_config: str | None, output_format: str) -> None:
    """List agent modes: built-ins plus custom primary agents.

    Examples:

        pdfscribe-acp modes
        pdfscribe-acp modes --format json
    """
    config = _load(ctx, opencode_config_path=opencode_config)
    modes = load_primary_modes(config.opencode_config_path)

    if output_format == FORMAT_JSON:
        click.echo(json.dumps([mode.to_dict() for mode in modes], indent=2))
        return

    click.echo(f"{'ID':<15} {'Name':<15} {'Description':<50}")
    click.echo("-" * 80)
    for mode in modes:
        click.echo(f"{mode.id:<15} {mode.name:<15} {truncate(mode.description, 50):<50}")


# =============================================================================
# Config
# =============================================================================


@main.command("config")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def show_config(ctx: click.Context, output_json: bool) -> None:
    """Show the effective configuration (API keys are masked).

    Examples:

        pdfscribe-acp config
        pdfscribe-acp config --json
    """
    config = _load(ctx)
    data = config.to_dict()

    if output_json:
        click.echo(json.dumps(data, indent=2))
        return

    click.echo("PDFScribe ACP Configuration")
    click.echo("-" * 40)
    click.echo(f"Backend:            {data['backend']}")
    click.echo(f"Agent command:      {data['agent_command']}")
    click.echo(f"Working directory:  {data['working_directory']}")
    click.echo(f"Request timeout:    {data['request_timeout']}s")
    click.echo(f"Prompt timeout:     {data['prompt_timeout'] or 'none'}")
    click.echo(f"Mode:               {data['mode'] or 'default'}")
    click.echo(f"Model:              {data['model'] or 'default'}")
    configured = [name for name in ("openai", "anthropic") if data[f"{name}_api_key"]]
    click.echo(f"API keys set:       {', '.join(configured) or 'none'}")


if __name__ == "__main__":
    main()

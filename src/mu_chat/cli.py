"""Command-line interface for mu-chat."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.table import Table
from rich.text import Text

from mu_chat import __version__
from mu_chat.config import AppConfig, ProviderSettings, load_config
from mu_chat.core.orchestrator import RunOrchestrator
from mu_chat.diagnostics import StreamTrace
from mu_chat.errors import ConfigurationError
from mu_chat.providers.catalog import check_connection, list_models
from mu_chat.types import EventType, Message, Role, RunRequest, StreamEnvelope, Usage

console = Console()

_logger = logging.getLogger(__name__)


def _settings(config: AppConfig, profile: str | None, model: str | None) -> ProviderSettings:
    try:
        settings = config.provider(profile)
    except KeyError as e:
        raise click.ClickException(str(e.args[0])) from None
    if model:
        settings = settings.model_copy(update={"model": model})
    return settings


def _system_message(config: AppConfig, settings: ProviderSettings) -> list[Message]:
    prompt = settings.system_prompt.strip() or config.system_prompt.strip()
    return [Message(Role.SYSTEM, prompt)] if prompt else []


# ---------------------------------------------------------------------------
# Streaming one turn
# ---------------------------------------------------------------------------

_TOOL_PREVIEW_CHARS = 120


def _clip(text: str) -> str:
    text = " ".join(text.split())
    if len(text) > _TOOL_PREVIEW_CHARS:
        return text[:_TOOL_PREVIEW_CHARS] + "..."
    return text


class _TurnPrinter:
    """Render one run's envelopes to the console as they arrive."""

    def __init__(self, show_reasoning: bool) -> None:
        self._show_reasoning = show_reasoning
        self._in_reasoning = False
        self.text = ""
        self.error: str | None = None
        self.usage: Usage | None = None

    def __call__(self, envelope: StreamEnvelope) -> None:
        event = envelope.event
        if event.type is EventType.REASONING:
            if self._show_reasoning:
                self._in_reasoning = True
                console.print(event.text, end="", style="dim italic", markup=False)
            return
        if self._in_reasoning:
            console.print()
            self._in_reasoning = False
        if event.type is EventType.DELTA:
            self.text += event.text
            console.print(event.text, end="", markup=False, highlight=False)
        elif event.type is EventType.ERROR:
            self.error = event.message
            console.print(f"\nError: {event.message}", style="red", markup=False)
        elif event.type is EventType.TOOL_START and event.tool is not None:
            line = f"> {event.tool.tool_name} {_clip(event.tool.payload)}".rstrip()
            console.print(f"\n{line}", style="dim cyan", markup=False, highlight=False)
        elif event.type is EventType.TOOL_RESULT and event.tool is not None:
            style = "red" if event.tool.is_error else "dim"
            status = "failed" if event.tool.is_error else "ok"
            line = f"< {event.tool.tool_name} {status} {_clip(event.tool.payload)}".rstrip()
            console.print(line, style=style, markup=False, highlight=False)
        elif event.type is EventType.PROGRESS:
            console.print(f"... {event.message}", style="dim", markup=False)
        elif event.type is EventType.USAGE and event.usage is not None:
            self.usage = event.usage
        elif event.type is EventType.DONE:
            console.print()
            if self.usage is not None and self.usage.to_dict():
                tokens = ", ".join(f"{k}={v}" for k, v in self.usage.to_dict().items())
                console.print(f"tokens: {tokens}", style="dim", markup=False)


async def _stream_turn(
    orchestrator: RunOrchestrator,
    settings: ProviderSettings,
    messages: list[Message],
    show_reasoning: bool,
) -> _TurnPrinter:
    printer = _TurnPrinter(show_reasoning)
    handle = orchestrator.start_run(RunRequest(settings=settings, messages=messages))
    orchestrator.bus.subscribe(handle.run_id, printer)

    # Ctrl-C stops the run instead of killing the process.
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop, handle.run_id)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        await handle.wait()
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
        orchestrator.bus.unsubscribe(handle.run_id, printer)
    return printer


def _make_orchestrator(config: AppConfig, trace_path: str | None) -> tuple[RunOrchestrator, StreamTrace | None]:
    path = trace_path or config.trace_path
    trace = StreamTrace(Path(path)) if path else None
    return RunOrchestrator(trace=trace), trace


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to mu_chat.yaml (auto-detected from CWD or ~/.mu_chat/)")
@click.option("--profile", "-p", default=None, help="Provider profile name")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="mu-chat")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, profile: str | None, verbose: bool):
    """mu-chat - stream chat replies from LLM providers and agent runtimes."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config, config_file = load_config(config_path)
    except FileNotFoundError as e:
        raise click.ClickException(str(e)) from None
    _logger.debug("Config: %s", config_file or "defaults")
    ctx.obj = {"config": config, "config_file": config_file, "profile": profile}


@main.command()
@click.argument("prompt", required=False)
@click.option("--model", "-m", default=None, help="Override the profile's model")
@click.option("--trace", "trace_path", default=None, help="Write a JSONL stream trace here")
@click.option("--reasoning/--no-reasoning", default=True, help="Show reasoning output")
@click.pass_context
def chat(ctx: click.Context, prompt: str | None, model: str | None,
         trace_path: str | None, reasoning: bool):
    """Send PROMPT and stream the reply, or start an interactive session."""
    config: AppConfig = ctx.obj["config"]
    settings = _settings(config, ctx.obj["profile"], model)
    orchestrator, trace = _make_orchestrator(config, trace_path)

    try:
        if prompt is not None:
            messages = _system_message(config, settings) + [Message(Role.USER, prompt)]
            try:
                result = asyncio.run(_stream_turn(orchestrator, settings, messages, reasoning))
            except ConfigurationError as e:
                raise click.ClickException(str(e)) from None
            if result.error:
                sys.exit(1)
            return
        asyncio.run(_repl(config, settings, orchestrator, reasoning))
    finally:
        if trace is not None:
            trace.close()


async def _repl(
    config: AppConfig,
    settings: ProviderSettings,
    orchestrator: RunOrchestrator,
    show_reasoning: bool,
) -> None:
    console.print(Text.assemble(
        ("mu-chat", "bold cyan"),
        (f" v{__version__}  {settings.provider_kind.value}  {settings.model or '-'}", "dim"),
    ))
    console.print("[dim]Ctrl-C stops a reply, /clear resets, /quit exits[/dim]\n")

    history_path = Path(os.path.expanduser("~/.mu_chat/history"))
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session: PromptSession[str] = PromptSession(history=FileHistory(str(history_path)))
    messages = _system_message(config, settings)

    while True:
        try:
            user_input = (await session.prompt_async("> ")).strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye![/dim]")
            break

        if not user_input:
            continue
        if user_input in ("/quit", "/exit"):
            console.print("[dim]Goodbye![/dim]")
            break
        if user_input == "/clear":
            messages = _system_message(config, settings)
            console.print("[dim]Conversation cleared.[/dim]")
            continue

        messages.append(Message(Role.USER, user_input))
        start = time.monotonic()
        try:
            result = await _stream_turn(orchestrator, settings, messages, show_reasoning)
        except ConfigurationError as e:
            console.print(str(e), style="red", markup=False)
            messages.pop()
            continue
        if result.text:
            messages.append(Message(Role.ASSISTANT, result.text))
        console.print(f"[dim]({time.monotonic() - start:.1f}s)[/dim]\n")

    await orchestrator.shutdown()


@main.command()
@click.pass_context
def models(ctx: click.Context):
    """List the models the active provider offers."""
    config: AppConfig = ctx.obj["config"]
    settings = _settings(config, ctx.obj["profile"], None)
    result = asyncio.run(list_models(settings))
    if not result.ok:
        console.print(result.message, style="red", markup=False)
        sys.exit(1)

    table = Table(title=f"Models ({settings.provider_kind.value})")
    table.add_column("Model", style="cyan")
    table.add_column("Active", justify="center")
    for model_id in result.models:
        table.add_row(Text(model_id), "*" if model_id == settings.model else "")
    console.print(table)
    console.print(result.message, style="dim", markup=False)


@main.command()
@click.pass_context
def check(ctx: click.Context):
    """Test the connection to the active provider."""
    config: AppConfig = ctx.obj["config"]
    settings = _settings(config, ctx.obj["profile"], None)
    result = asyncio.run(check_connection(settings))
    if result.ok:
        console.print(result.message, style="green", markup=False)
    else:
        console.print(result.message, style="red", markup=False)
        sys.exit(1)


if __name__ == "__main__":
    main()

"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json

from rich.console import Console
from rich.markdown import Markdown
from rich.syntax import Syntax
from rich.table import Table

from parley.llm.parts import (
    FilePart,
    Message,
    ReasoningPart,
    SourcePart,
    TextPart,
    ToolCallPart,
    normalize_reasoning_text,
)
from parley.types import is_tool_error

ROLE_COLORS = {
    "user": "blue",
    "assistant": "green",
    "system": "dim",
}


class OutputFormatter:
    """Rich-based output formatting for the parley CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_thread_list(self, threads: list[dict]) -> None:
        if not threads:
            self.console.print("[dim]No threads found.[/dim]")
            return

        table = Table(title="Threads")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Title")
        table.add_column("Icon", no_wrap=True)
        table.add_column("Updated", no_wrap=True)

        for t in threads:
            title = t.get("title", "?")
            if t.get("parentThreadId"):
                title += f" [dim](from {t['parentThreadId'][:8]})[/dim]"
            table.add_row(t.get("id", "?"), title, t.get("icon", ""), t.get("updatedAt", "?"))

        self.console.print(table)

    def format_messages(self, messages: list[Message]) -> None:
        if not messages:
            self.console.print("[dim]No messages.[/dim]")
            return
        for i, message in enumerate(messages, 1):
            self.format_message(message, index=i)

    def format_message(self, message: Message, index: int | None = None) -> None:
        color = ROLE_COLORS.get(message.role, "white")
        prefix = f"{index:>3}. " if index is not None else ""
        flags = " [yellow](stopped)[/yellow]" if message.stopped_by_user else ""
        self.console.print(f"[{color}]{prefix}{message.role}>[/{color}]{flags}")

        for part in message.parts:
            if isinstance(part, TextPart):
                self.console.print(Markdown(part.text))
            elif isinstance(part, ReasoningPart):
                text = normalize_reasoning_text(part.text)
                if text:
                    self.console.print(f"[dim italic]{text}[/dim italic]", markup=True)
            elif isinstance(part, FilePart):
                self.console.print(f"  [dim][file: {part.filename or part.media_type}][/dim]")
            elif isinstance(part, ToolCallPart):
                self.format_tool_call(part.tool_name, part.input, part.output)
            elif isinstance(part, SourcePart):
                self.console.print(f"  [cyan]source:[/cyan] {part.title or part.url} <{part.url}>")

        if message.metadata:
            self.format_metadata(message.metadata)

    def format_tool_call(self, tool_name: str, arguments: dict, output: dict | None) -> None:
        args = json.dumps(arguments, default=str)[:120]
        if output is None:
            status = "[dim]pending[/dim]"
        elif is_tool_error(output):
            status = f"[red]error:[/red] {output.get('message', '')}"
        else:
            status = "[green]ok[/green]"
        self.console.print(f"  [yellow]{tool_name}[/yellow]({args}) {status}")

    def format_metadata(self, metadata: dict) -> None:
        cost = metadata.get("costUSD") or {}
        self.console.print(
            f"  [dim]{metadata.get('model', '?')} · "
            f"{metadata.get('inputTokens', 0)} in / {metadata.get('outputTokens', 0)} out · "
            f"{metadata.get('tokensPerSecond', 0):.1f} tok/s · "
            f"ttft {metadata.get('timeToFirstTokenMs', 0):.0f} ms · "
            f"${cost.get('total', 0):.6f}[/dim]"
        )

    def format_config(self, config: dict) -> None:
        json_str = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(json_str, "json", theme="monokai"))

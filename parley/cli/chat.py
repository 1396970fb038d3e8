"""Interactive terminal chat client."""

from __future__ import annotations

import asyncio
import logging
import signal

from rich.console import Console

from parley.cli.output import OutputFormatter
from parley.client.state import ConversationState, EditPayload
from parley.errors import ChatRequestError, ReconcileError
from parley.llm.parts import FilePart, message_text
from parley.types import ReasoningLevel

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "  [bold]Commands:[/bold]\n"
    "  /regen             - Regenerate the last answer\n"
    "  /edit N text       - Replace your N-th message and resend\n"
    "  /search on|off     - Toggle web search\n"
    "  /model ID          - Switch model\n"
    "  /reasoning LEVEL   - Set reasoning effort\n"
    "  /history           - Show the conversation\n"
    "  /quit              - Exit the chat\n"
    "  Ctrl-C while streaming stops the answer.\n"
)


class ChatHandler:
    """
    Manages the interactive chat loop.

    Renders streamed wire events as they arrive and maps inline commands onto
    the conversation's stop / regenerate / edit protocols.
    """

    def __init__(self, state: ConversationState, console: Console | None = None) -> None:
        self.state = state
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self._running = True
        state.on_event = self.render_event

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_event(self, event: dict) -> None:
        etype = event.get("type")
        if etype == "text-delta":
            self.console.print(event.get("delta", ""), end="", markup=False, highlight=False)
        elif etype == "reasoning-start":
            self.console.print("[dim italic](thinking...)[/dim italic]")
        elif etype == "tool-input-available":
            self.console.print()
            self.formatter.format_tool_call(event.get("toolName", "?"), event.get("input") or {}, None)
        elif etype == "tool-output-available":
            self.formatter.format_tool_call("  result", {}, event.get("output") or {})
        elif etype == "source-url":
            self.console.print(f"\n  [cyan]source:[/cyan] {event.get('title') or event.get('url')}")
        elif etype == "finish":
            self.console.print()
            if event.get("messageMetadata"):
                self.formatter.format_metadata(event["messageMetadata"])
        elif etype == "error":
            self.console.print(f"\n[red]Error:[/red] {event.get('errorText')}")

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def _with_stop_on_interrupt(self, coro) -> None:
        """Run a streaming call; Ctrl-C stops the answer instead of exiting."""
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self._interrupt)
            installed = True
        except (NotImplementedError, RuntimeError):
            installed = False
        self.console.print("[dim]assistant>[/dim] ", end="")
        try:
            await coro
        except ChatRequestError as e:
            self.console.print(f"\n[red]Rejected ({e.status_code}):[/red] {e.message}")
        except ReconcileError as e:
            self.console.print(f"\n[red]Could not apply:[/red] {e}")
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    def _interrupt(self) -> None:
        info = self.state.stop()
        self.console.print("\n[yellow](stopped)[/yellow]")
        if info is not None:
            logger.debug("Stopped %s", info.message_id)

    async def handle_input(self, user_input: str) -> None:
        await self._with_stop_on_interrupt(self.state.send(user_input))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _user_message(self, n: int):
        users = [m for m in self.state.messages if m.role == "user"]
        if 1 <= n <= len(users):
            return users[n - 1]
        return None

    async def handle_command(self, command: str) -> bool:
        """Handle inline commands. Returns True if the command was handled."""
        parts = command.strip().split(None, 1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""
        ctx = self.state.context

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/help":
            self.console.print(HELP_TEXT)
            return True

        if cmd == "/history":
            self.formatter.format_messages(self.state.messages)
            return True

        if cmd == "/search":
            if arg not in ("on", "off"):
                self.console.print("  Usage: /search on|off")
            else:
                ctx.search_enabled = arg == "on"
                self.console.print(f"  Web search: [bold]{arg}[/bold]")
            return True

        if cmd == "/model":
            if not arg:
                self.console.print(f"  Model: {ctx.model_id or '(server default)'}")
            else:
                ctx.model_id = arg
                self.console.print(f"  Switched to model: [bold]{arg}[/bold]")
            return True

        if cmd == "/reasoning":
            if arg not in ReasoningLevel.ALL:
                self.console.print(f"  Usage: /reasoning {'|'.join(ReasoningLevel.ALL)}")
            else:
                ctx.reasoning_level = arg
                self.console.print(f"  Reasoning: [bold]{arg}[/bold]")
            return True

        if cmd == "/regen":
            target = next(
                (m for m in reversed(self.state.messages) if m.role == "assistant"), None
            )
            if target is None:
                self.console.print("  Nothing to regenerate.")
            else:
                await self._with_stop_on_interrupt(self.state.regenerate(target.id))
            return True

        if cmd == "/edit":
            num, _, text = arg.partition(" ")
            target = self._user_message(int(num)) if num.isdigit() else None
            if target is None or not text.strip():
                self.console.print("  Usage: /edit N text  (N counts your messages from 1)")
                return True
            self.console.print(f"  [dim]was: {message_text(target)[:80]}[/dim]")
            kept = [p for p in target.parts if isinstance(p, FilePart)]
            payload = EditPayload(text=text.strip(), kept_files=kept)
            await self._with_stop_on_interrupt(self.state.edit(target.id, payload))
            return True

        return False

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            "[bold]Parley[/bold] - chat\n"
            f"[dim]Thread {self.state.thread_id}. Type /help for commands, /quit to exit.[/dim]\n"
        )
        if self.state.messages:
            self.formatter.format_messages(self.state.messages)

        while self._running:
            try:
                user_input = await asyncio.get_running_loop().run_in_executor(
                    None, lambda: input("you> ").strip()
                )
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                if await self.handle_command(user_input):
                    continue

            await self.handle_input(user_input)

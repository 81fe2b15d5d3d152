"""
Agent Runtime - run one coding task against Amazon Bedrock from the terminal.
Console output built with Rich.
"""

import asyncio
import argparse
import logging
import os
import sys
from typing import Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape as rich_escape
from rich.prompt import Confirm, Prompt
from rich.table import Table

from backend import LocalBackend
from bedrock_service import BedrockService
from agent import CodingAgent, AgentEvent, TaskHandle
from sessions import SessionStore
from config import app_config, model_config, get_model_name, get_credentials_info

# Configure logging to file so it doesn't interfere with the console
logging.basicConfig(
    filename=app_config.log_file,
    level=getattr(logging, app_config.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ============================================================
# Constants
# ============================================================

TOOL_ICONS = {
    "read_file":            "\U0001f4c4 ",
    "write_file":           "✏️ ",
    "run_terminal_command": "▶ ",
    "search_workspace":     "\U0001f50d ",
    "list_files":           "\U0001f4c2 ",
    "find_definition":      "\U0001f50e ",
    "get_diagnostics":      "\U0001fa7a ",
    "run_subagent":         "\U0001f9ed ",
}

STATUS_STYLES = {
    "running": "#8b949e",
    "success": "#3fb950",
    "error": "#f85149",
    "denied": "#d29922",
}

SEVERITY_STYLES = {
    "critical": "bold #f85149",
    "high": "#f85149",
    "medium": "#d29922",
}


# ============================================================
# Event rendering
# ============================================================

class ConsoleRenderer:
    """Drains a task's event queue onto the console and answers approvals."""

    def __init__(self, console: Console, agent: CodingAgent, show_thinking: bool = False):
        self.console = console
        self.agent = agent
        self.show_thinking = show_thinking
        self._streaming = False

    def _end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    async def consume(self, handle: TaskHandle) -> None:
        while True:
            event: AgentEvent = await handle.events.get()
            await self.render(event)
            if event.type == "done":
                return

    async def render(self, event: AgentEvent) -> None:
        data = event.data or {}

        if event.type == "text_delta":
            self.console.print(event.content, end="", style="#c9d1d9", markup=False, highlight=False)
            self._streaming = True
            return
        if event.type == "thinking_delta":
            return
        self._end_stream()

        if event.type == "thinking" and self.show_thinking:
            self.console.print(f"[italic #8b949e]● thought: {rich_escape(event.content[:400])}[/italic #8b949e]")

        elif event.type == "progress_start" and data.get("title"):
            self.console.print(f"[bold #58a6ff]▸ {rich_escape(data['title'])}[/bold #58a6ff]")

        elif event.type == "tool_action" and data.get("status") != "running":
            name = data.get("tool_name", event.content)
            icon = TOOL_ICONS.get(name, "• ")
            style = STATUS_STYLES.get(data.get("status"), "#8b949e")
            cached = " (cached)" if data.get("cached") else ""
            self.console.print(f"   {icon}[{style}]{rich_escape(name)}{cached} {data.get('status', '')}[/{style}]")

        elif event.type == "approval_request":
            await self._ask_approval(event)

        elif event.type == "context_compacted":
            self.console.print(f"   [#6e7681]{rich_escape(event.content)}[/#6e7681]")

        elif event.type == "warning":
            self.console.print(f"   [#d29922]⚠ {rich_escape(event.content)}[/#d29922]")

        elif event.type == "error":
            self.console.print(f"[bold #f85149]✗ {rich_escape(event.content)}[/bold #f85149]")

        elif event.type == "done":
            reason = data.get("stop_reason", "completed")
            style = "#3fb950" if reason == "completed" else "#d29922"
            self.console.rule(f"[{style}]{reason}[/{style}]")
            if event.content and reason != "error":
                self.console.print(Markdown(event.content))

    async def _ask_approval(self, event: AgentEvent) -> None:
        data = event.data or {}
        request_id = data.get("id")
        severity = data.get("severity", "medium")
        style = SEVERITY_STYLES.get(severity, "#d29922")
        reason = data.get("reason") or ""
        loop = asyncio.get_event_loop()

        if data.get("kind") == "command":
            self.console.print(
                f"[{style}]Command needs approval ({severity}{': ' + rich_escape(reason) if reason else ''})[/{style}]\n"
                f"   $ {rich_escape(data.get('command', ''))}"
            )
            approved = await loop.run_in_executor(None, lambda: Confirm.ask("Run this command?", default=True))
            edited = None
            if approved:
                command = await loop.run_in_executor(
                    None, lambda: Prompt.ask("Command", default=data.get("command", "")),
                )
                if command != data.get("command"):
                    edited = {"command": command}
            self.agent.resolve_approval(request_id, approved, edited)
        else:
            self.console.print(
                f"[{style}]Edit to sensitive file {rich_escape(data.get('path', ''))} needs approval "
                f"({rich_escape(reason)})[/{style}]"
            )
            approved = await loop.run_in_executor(None, lambda: Confirm.ask("Allow this edit?", default=False))
            self.agent.resolve_approval(request_id, approved)


def print_diff_stats(console: Console, agent: CodingAgent, checkpoint_id: Optional[str]) -> bool:
    """Render the checkpoint's changed files. Returns False when there are none."""
    stats = agent.diff_stats(checkpoint_id)
    if not stats:
        return False
    table = Table(title="Changed files", show_edge=False)
    table.add_column("File")
    table.add_column("Action")
    table.add_column("+", style="#3fb950", justify="right")
    table.add_column("-", style="#f85149", justify="right")
    for row in stats:
        table.add_row(row["path"], row["action"], str(row["additions"]), str(row["deletions"]))
    console.print(table)
    return True


# ============================================================
# Entry Point
# ============================================================

async def run_task(args: argparse.Namespace, console: Console) -> int:
    working_dir = os.path.abspath(args.directory)
    store = SessionStore(app_config.sessions_dir)
    session = None
    if args.resume:
        session = store.get_latest(working_dir)
        if session is None:
            console.print("[#d29922]No previous session for this directory; starting a new one.[/#d29922]")

    backend = LocalBackend(working_dir)
    agent = CodingAgent(BedrockService(), backend, store=store, session=session)
    if args.auto_approve and agent.session is not None:
        agent.session.auto_approve_commands = True
        store.save(agent.session)

    model_id = args.model or model_config.model_id
    console.print(f"[#8b949e]{get_model_name(model_id)} • {rich_escape(working_dir)} • {get_credentials_info()}[/#8b949e]")

    handle = await agent.start_task(args.task, model=model_id)
    renderer = ConsoleRenderer(console, agent, show_thinking=args.show_thinking)
    try:
        await renderer.consume(handle)
    except KeyboardInterrupt:
        agent.cancel(handle)
    outcome = await handle.result()

    if outcome.checkpoint_id and print_diff_stats(console, agent, outcome.checkpoint_id):
        keep = await asyncio.get_event_loop().run_in_executor(
            None, lambda: Confirm.ask("Keep these changes?", default=True),
        )
        if keep:
            agent.keep_all_changes(outcome.checkpoint_id)
        else:
            result = agent.undo_all_changes(outcome.checkpoint_id)
            for err in result["errors"]:
                console.print(f"[#f85149]Could not revert {rich_escape(err)}[/#f85149]")
    return 0 if outcome.stop_reason == "completed" else 1


def main():
    parser = argparse.ArgumentParser(
        description="Agent Runtime - run a coding task with Amazon Bedrock",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py "add a --verbose flag to cli.py"
  python main.py -d ~/my-project "fix the failing test"
  python main.py --resume "now update the README"
        """,
    )
    parser.add_argument("task", help="Task for the agent")
    parser.add_argument(
        "-d", "--directory",
        default=app_config.working_directory,
        help="Working directory for the agent (default: current directory)",
    )
    parser.add_argument("-m", "--model", default=None, help="Bedrock model id")
    parser.add_argument("--resume", action="store_true", help="Continue the latest session for this directory")
    parser.add_argument("--no-thinking", action="store_true", help="Disable extended thinking")
    parser.add_argument("--show-thinking", action="store_true", help="Print reasoning summaries")
    parser.add_argument("--auto-approve", action="store_true", help="Auto-approve low and medium risk commands")

    args = parser.parse_args()

    if args.no_thinking:
        model_config.enable_thinking = False

    if not os.path.isdir(os.path.abspath(args.directory)):
        print(f"Error: {os.path.abspath(args.directory)} is not a directory")
        sys.exit(1)

    console = Console()
    try:
        sys.exit(asyncio.run(run_task(args, console)))
    except KeyboardInterrupt:
        console.print("[#d29922]Interrupted[/#d29922]")
        sys.exit(130)


if __name__ == "__main__":
    main()

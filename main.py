"""
Bedrock agent loop - command-line entry point.
Runs one session toward a goal and streams its events to the terminal with Rich.
"""

import asyncio
import argparse
import logging
import os
import sys

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.prompt import Confirm

from bedrock_service import BedrockService, BedrockError
from agent import CodingAgent, AgentEvent, ToolCall, STATUS_COMPLETED
from agent import events as ev
from agent.errors import AgentError
from sessions import SessionStore
from tools import default_registry
from config import agent_config, model_config, get_model_name

# Configure logging to file so it doesn't interleave with terminal output
logging.basicConfig(
    filename="bedrock_agent_loop.log",
    level=getattr(logging, agent_config.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

console = Console()

TOOL_ICONS = {
    "read_file":          "\U0001f4c4 ",
    "write_file":         "✏️ ",
    "edit_file":          "\U0001f527 ",
    "bash_command":       "▶ ",
    "grep_search":        "\U0001f50d ",
    "list_directory":     "\U0001f4c2 ",
    "attempt_completion": "✓ ",
}

STATUS_STYLES = {
    "completed": "green",
    "error": "red",
    "user_stopped": "yellow",
}


# ============================================================
# Event rendering
# ============================================================

def render_event(event: AgentEvent) -> None:
    data = event.data or {}
    if event.type == ev.SESSION_START:
        console.print(f"[bold #79c0ff]● session[/] [#8b949e]{data.get('session_id', '')}[/]")
    elif event.type == ev.ITERATION_START:
        console.print(f"[#6e7681]── iteration {event.content}[/]")
    elif event.type == ev.ASSISTANT_TEXT:
        console.print(Markdown(event.content))
    elif event.type == ev.TOOL_CALL:
        name = data.get("tool_name", event.content)
        args = ", ".join(f"{k}={v!r}" for k, v in (data.get("input") or {}).items())
        if len(args) > 100:
            args = args[:97] + "…"
        console.print(f"   {TOOL_ICONS.get(name, '• ')}[bold]{name}[/] [#8b949e]{rich_escape(args)}[/]")
    elif event.type == ev.TOOL_RESULT:
        mark = "[#3fb950]✓[/]" if data.get("success") else "[#f85149]✗[/]"
        first = (event.content or "").strip().splitlines()[:1]
        summary = first[0][:100] if first else ""
        console.print(f"     {mark} [#8b949e]{rich_escape(summary)}[/]")
    elif event.type == ev.LOOP_DETECTED:
        console.print(f"   [yellow]⚠ loop detected:[/] {rich_escape(event.content)}")
    elif event.type == ev.CONTEXT_TRUNCATED:
        console.print(f"   [#6e7681]context truncated ({rich_escape(event.content)})[/]")
    elif event.type == ev.ERROR:
        console.print(f"[bold red]Error:[/] {rich_escape(event.content)}")


async def ask_approval(call: ToolCall, description: str) -> bool:
    """Blocking Rich prompt, run off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None, lambda: Confirm.ask(f"[yellow]Allow[/] {rich_escape(description)}?", default=False)
    )


# ============================================================
# Entry Point
# ============================================================

async def run_goal(args: argparse.Namespace) -> int:
    working_dir = os.path.abspath(args.directory)
    model_id = args.model or model_config.model_id

    try:
        service = BedrockService(model_id=model_id)
    except (BedrockError, AgentError) as e:
        console.print(f"[bold red]Failed to initialize Bedrock:[/] {e}")
        return 1

    store = SessionStore(working_directory=working_dir, model_id=model_id)
    agent = CodingAgent(
        service,
        registry=default_registry(working_dir),
        working_directory=working_dir,
        model_id=model_id,
        max_iterations=args.max_iterations,
        aggressiveness=args.aggressiveness,
        on_event=render_event,
        request_approval=None if args.yes else ask_approval,
        auto_approve_commands=True if args.yes else None,
        session_store=store,
    )

    console.print(f"[#8b949e]{get_model_name(model_id)} · {working_dir}[/]")
    await agent.start_session(args.goal)
    try:
        session = await agent.wait()
    except asyncio.CancelledError:
        agent.stop_session()
        session = await agent.wait()

    style = STATUS_STYLES.get(session.status, "white")
    if session.final_answer:
        console.print(Panel(Markdown(session.final_answer), title="final answer", border_style=style))
    console.print(f"[{style}]{session.status}[/] after {session.iterations} iteration(s)"
                  + (f": {rich_escape(session.error)}" if session.error else ""))
    return 0 if session.status == STATUS_COMPLETED else 1


def main():
    parser = argparse.ArgumentParser(
        description="Bedrock agent loop - autonomous coding agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py "add a --verbose flag to cli.py"
  python main.py -d ~/my-project "what does the scheduler do?"
  python main.py --yes --max-iterations 20 "fix the failing test"
        """,
    )
    parser.add_argument("goal", help="What the agent should accomplish")
    parser.add_argument(
        "-d", "--directory",
        default=agent_config.working_directory,
        help="Working directory for the agent (default: current directory)",
    )
    parser.add_argument("--model", default=None, help="Bedrock model id")
    parser.add_argument("--max-iterations", type=int, default=agent_config.max_iterations)
    parser.add_argument(
        "--aggressiveness",
        choices=["conservative", "moderate", "aggressive"],
        default=agent_config.context_aggressiveness,
        help="Context truncation aggressiveness",
    )
    parser.add_argument("--yes", action="store_true", help="Approve every tool call without asking")

    args = parser.parse_args()

    if not os.path.isdir(os.path.abspath(args.directory)):
        print(f"Error: {os.path.abspath(args.directory)} is not a directory")
        sys.exit(1)

    try:
        code = asyncio.run(run_goal(args))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/]")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()

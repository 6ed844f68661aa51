#!/usr/bin/env python3
"""
LiveSync CLI - Main Entry Point

Usage:
    livesync generate -P p1 "make a landing page"   # One generation with live progress
    livesync chat -P p1                             # Interactive session on a project
    livesync history -P p1 --export out.json        # Print or export conversation
    livesync --help                                 # Show help

Generation goes over the live channel when it is available and falls back to
the HTTP API otherwise.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from livesync.config import SessionConfig
from livesync.connection import Identity
from livesync.exceptions import LiveSyncError
from livesync.generation import GenerationSession
from livesync.history import MessageRole
from livesync.session import LiveSession
from livesync.status import ConnectionStatusReporter, render_connection, render_session


CHAT_HELP = """[bold]Commands[/bold]
  /retry       Retry the last prompt
  /cancel      Cancel the running generation
  /status      Show connection and generation status
  /stats       Show conversation statistics
  /export [f]  Export conversation to JSON
  /reconnect   Force a reconnect
  /quit        Exit"""


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog="livesync",
        description="LiveSync - live generation sessions with presence",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    generate_parser = subparsers.add_parser("generate", help="Run one generation")
    generate_parser.add_argument("prompt", help="What to generate")

    subparsers.add_parser("chat", help="Interactive generation session")

    history_parser = subparsers.add_parser("history", help="Show conversation history")
    history_parser.add_argument("--export", metavar="FILE", help="Write history to a JSON file")

    for sub in (generate_parser, subparsers.choices["chat"], history_parser):
        sub.add_argument("-P", "--project", required=True, help="Project ID")

    parser.add_argument("--user", help="User ID (or LIVESYNC_USER_ID)")
    parser.add_argument("--token", help="Access token (or LIVESYNC_TOKEN)")
    parser.add_argument("--ws-url", help="Channel URL (default: ws://localhost:3001)")
    parser.add_argument("--api-url", help="HTTP API URL (default: http://localhost:8000/api)")
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument("--version", action="version", version="%(prog)s 1.0.0")

    return parser


def build_config(args: argparse.Namespace) -> SessionConfig:
    config = SessionConfig.load_default()
    if args.config:
        config.load_from_file(args.config)
    if args.user:
        config.user_id = args.user
    if args.token:
        config.auth_token = args.token
    if args.ws_url:
        config.ws_url = args.ws_url
    if args.api_url:
        config.api_base_url = args.api_url
    if args.verbose:
        config.verbose = True
    return config


async def run_generation(session: LiveSession, project_id: str, prompt: str, console: Console) -> GenerationSession:
    """Start a generation and render progress until it finishes"""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting...", total=100)

        def on_update(updated: GenerationSession) -> None:
            if updated.project_id == project_id:
                progress.update(task, completed=updated.progress, description=updated.stage or updated.state.value)

        session.generation.add_listener(on_update)
        try:
            generation = await session.send_message(project_id, prompt)
            if not generation.is_terminal:
                generation = await wait_for_result(session, project_id)
        finally:
            session.generation.remove_listener(on_update)

    return generation


async def wait_for_result(session: LiveSession, project_id: str) -> GenerationSession:
    """Wait for the outcome, giving up when reconnection fails or the fallback timeout passes"""
    return await session.generation.wait_until_settled(project_id, timeout=session.config.fallback_timeout)


def print_result(generation: GenerationSession, console: Console) -> None:
    console.print(render_session(generation))
    if not generation.is_terminal:
        reason = "the live channel was lost" if generation.stalled else "no result arrived in time"
        console.print(f"[yellow]Generation did not finish: {reason}. Use /retry to try again.[/yellow]")
        return
    if generation.result and generation.result.conversational_response:
        console.print(generation.result.conversational_response)


async def open_session(config: SessionConfig, console: Console, project_id: str) -> LiveSession:
    session = LiveSession(config)
    ConnectionStatusReporter(console).attach(session.connection)

    identity = Identity(user_id=config.user_id, token=config.auth_token, user_name=config.user_name)
    connected = await session.login(identity, require_channel=False)
    if not connected:
        console.print("[yellow]Live channel unavailable - using HTTP fallback[/yellow]")

    await session.open_project(project_id)
    return session


async def cmd_generate(config: SessionConfig, console: Console, project_id: str, prompt: str) -> int:
    session = await open_session(config, console, project_id)
    try:
        generation = await run_generation(session, project_id, prompt, console)
        print_result(generation, console)
        return 0 if generation.result else 1
    finally:
        await session.logout()


async def cmd_history(config: SessionConfig, console: Console, project_id: str, export: Optional[str]) -> int:
    session = LiveSession(config)
    await session.history.load(project_id, session.history_provider)

    if export:
        path = session.history.export_to_file(project_id, export)
        console.print(f"[green]✓ Exported to {path}[/green]")
        return 0

    for message in session.history.messages(project_id):
        color = "cyan" if message.role == MessageRole.USER else "green"
        console.print(f"[bold {color}]{message.role.value}[/bold {color}] [dim]{message.timestamp}[/dim]")
        console.print(message.content)
        console.print()
    return 0


async def cmd_chat(config: SessionConfig, console: Console, project_id: str) -> int:
    session = await open_session(config, console, project_id)
    console.print(render_connection(session.connection.get_stats()))
    console.print("[dim]Type a prompt, or /help for commands[/dim]\n")

    history_file = Path(config.history_file)
    history_file.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(history=FileHistory(str(history_file)))

    try:
        while True:
            try:
                user_input = await prompt_session.prompt_async(HTML('<ansicyan><b>></b></ansicyan> '))
            except (EOFError, KeyboardInterrupt):
                break

            text = user_input.strip()
            if not text:
                continue

            cmd, _, arg = text.partition(" ")
            cmd = cmd.lower()

            try:
                if cmd in ("/quit", "/exit", "/q"):
                    break
                elif cmd == "/help":
                    console.print(CHAT_HELP)
                elif cmd == "/status":
                    console.print(render_connection(session.connection.get_stats()))
                    console.print(render_session(session.generation.get_session(project_id)))
                elif cmd == "/stats":
                    for key, value in session.history.stats(project_id).items():
                        console.print(f"  {key}: {value}")
                elif cmd == "/export":
                    path = session.history.export_to_file(project_id, arg.strip() or None)
                    console.print(f"[green]✓ Exported to {path}[/green]")
                elif cmd == "/reconnect":
                    ok = await session.connection.force_reconnect()
                    console.print("[green]✓ Connected[/green]" if ok else "[yellow]Still reconnecting...[/yellow]")
                elif cmd == "/cancel":
                    cancelled = await session.cancel(project_id)
                    console.print("[yellow]Cancelled[/yellow]" if cancelled else "[dim]Nothing to cancel[/dim]")
                elif cmd == "/retry":
                    await session.retry_last(project_id)
                    generation = await wait_for_result(session, project_id)
                    print_result(generation, console)
                else:
                    generation = await run_generation(session, project_id, text, console)
                    print_result(generation, console)
            except LiveSyncError as e:
                console.print(f"[red]{e.message}[/red]")
    finally:
        await session.logout()

    console.print("\n[dim]Goodbye![/dim]")
    return 0


def main():
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args()
    console = Console()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = build_config(args)
    if not config.user_id and args.command != "history":
        console.print("[red]✗ A user ID is required (--user or LIVESYNC_USER_ID)[/red]")
        sys.exit(1)

    try:
        if args.command == "generate":
            code = asyncio.run(cmd_generate(config, console, args.project, args.prompt))
        elif args.command == "chat":
            code = asyncio.run(cmd_chat(config, console, args.project))
        else:
            code = asyncio.run(cmd_history(config, console, args.project, args.export))
    except LiveSyncError as e:
        console.print(f"\n[red]✗ {e.message}[/red]")
        code = 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        code = 130

    sys.exit(code)


if __name__ == "__main__":
    main()

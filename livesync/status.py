"""
LiveSync Status Display

Terminal rendering of connection and generation state:
  - reconnecting / reconnected / gave-up notices
  - generation progress panel
"""

from typing import Any, Dict

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from livesync.connection import ConnectionManager, ConnectionState
from livesync.events import EventType
from livesync.generation import GenerationSession, GenerationState


STATE_STYLES = {
    ConnectionState.CONNECTED: ("●", "green"),
    ConnectionState.CONNECTING: ("◌", "cyan"),
    ConnectionState.RECONNECTING: ("◌", "yellow"),
    ConnectionState.DISCONNECTED: ("○", "red"),
}

GENERATION_STYLES = {
    GenerationState.IDLE: "dim",
    GenerationState.STARTED: "cyan",
    GenerationState.PROGRESS: "cyan",
    GenerationState.COMPLETE: "green",
    GenerationState.ERROR: "red",
    GenerationState.CANCELLED: "yellow",
}


class ConnectionStatusReporter:
    """
    Prints connection lifecycle notices.

    Transient drops show a "reconnecting" notice rather than an error; only
    exhausting every attempt is reported as a failure.

    Usage:
        reporter = ConnectionStatusReporter(console)
        reporter.attach(connection)
    """

    def __init__(self, console: Console):
        self.console = console
        self._was_reconnecting = False

    def attach(self, connection: ConnectionManager) -> None:
        connection.subscribe(EventType.CONNECT, self.on_connect)
        connection.subscribe(EventType.DISCONNECT, self.on_disconnect)
        connection.subscribe(EventType.RECONNECTING, self.on_reconnecting)
        connection.subscribe(EventType.RECONNECT_FAILED, self.on_reconnect_failed)

    def on_connect(self, data: Dict[str, Any]) -> None:
        if (data and data.get("reconnected")) or self._was_reconnecting:
            self.console.print("[green]✓ Reconnected![/green]")
        self._was_reconnecting = False

    def on_disconnect(self, data: Dict[str, Any]) -> None:
        reason = (data or {}).get("reason", "unknown")
        if reason != "client disconnect":
            self.console.print(f"\n[yellow]⚠️  Connection lost ({reason})[/yellow]")

    def on_reconnecting(self, data: Dict[str, Any]) -> None:
        self._was_reconnecting = True
        self.console.print(
            f"[yellow]Reconnecting in {data['delay']:.1f}s... "
            f"(attempt {data['attempt']}/{data['max_attempts']})[/yellow]"
        )

    def on_reconnect_failed(self, data: Dict[str, Any]) -> None:
        self._was_reconnecting = False
        self.console.print(
            f"\n[red]❌ Failed after {data['attempts']} attempts. "
            f"Generation will use HTTP until you reconnect.[/red]"
        )
        self.console.print("[dim]Use '/reconnect' to try again[/dim]")


def render_connection(stats: Dict[str, Any]) -> Text:
    """One-line connection indicator"""
    state = ConnectionState(stats["state"])
    symbol, color = STATE_STYLES[state]
    text = Text()
    text.append(f"{symbol} ", style=color)
    text.append(state.value, style=f"bold {color}")
    if state == ConnectionState.RECONNECTING and stats.get("reconnect_attempts"):
        text.append(
            f" ({stats['reconnect_attempts']}/{stats['max_reconnect_attempts']})",
            style="dim"
        )
    if state == ConnectionState.DISCONNECTED and stats.get("gave_up"):
        text.append(" - gave up", style="red")
    return text


def render_session(session: GenerationSession) -> Panel:
    """Panel summarizing one generation session"""
    color = GENERATION_STYLES[session.state]

    table = Table.grid(padding=(0, 2))
    table.add_column(style="dim")
    table.add_column()
    table.add_row("State", Text(session.state.value, style=f"bold {color}"))
    table.add_row("Progress", f"{session.progress}%")
    if session.stage:
        table.add_row("Stage", session.stage)
    table.add_row("Via", session.transport + (" (stalled)" if session.stalled else ""))

    if session.result:
        table.add_row("Tokens", str(session.result.tokens_used))
        if session.result.response_time_ms is not None:
            table.add_row("Time", f"{session.result.response_time_ms}ms")
    if session.error:
        table.add_row("Error", Text(session.error, style="red"))

    return Panel(
        table,
        title=f"Generation · {session.project_id}",
        border_style=color,
    )

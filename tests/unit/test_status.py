"""
Unit Tests for the terminal status display
"""
import io

import pytest
from rich.console import Console

from livesync.generation import GenerationSession, GenerationState
from livesync.status import ConnectionStatusReporter, render_connection, render_session
from tests.conftest import wait_until


def make_console():
    buffer = io.StringIO()
    return Console(file=buffer, force_terminal=False, width=100), buffer


class TestConnectionStatusReporter:
    """Test lifecycle notices"""

    @pytest.mark.asyncio
    async def test_reconnect_notices(self, connected, server):
        """Test a drop prints lost, reconnecting and reconnected"""
        console, buffer = make_console()
        ConnectionStatusReporter(console).attach(connected)

        await server.drop()
        await wait_until(lambda: server.open_calls == 2 and connected.is_connected)

        output = buffer.getvalue()
        assert "Connection lost" in output
        assert "attempt 1/3" in output
        assert "Reconnected" in output

    @pytest.mark.asyncio
    async def test_client_disconnect_is_quiet(self, connected):
        """Test an intentional disconnect prints nothing"""
        console, buffer = make_console()
        ConnectionStatusReporter(console).attach(connected)

        await connected.disconnect()

        assert buffer.getvalue() == ""

    @pytest.mark.asyncio
    async def test_gave_up_notice(self, connected, server):
        """Test the final failure mentions the HTTP fallback"""
        console, buffer = make_console()
        ConnectionStatusReporter(console).attach(connected)

        server.fail_open = True
        await server.drop()
        await wait_until(lambda: connected.gave_up)

        assert "Failed after 3 attempts" in buffer.getvalue()


class TestRendering:
    """Test rich renderables"""

    def test_render_connection_gave_up(self):
        """Test the disconnected indicator after giving up"""
        text = render_connection({"state": "disconnected", "gave_up": True})

        assert text.plain == "○ disconnected - gave up"

    def test_render_connection_reconnecting(self):
        """Test attempt counts while reconnecting"""
        text = render_connection({"state": "reconnecting", "reconnect_attempts": 2, "max_reconnect_attempts": 5})

        assert text.plain == "◌ reconnecting (2/5)"

    def test_render_session(self):
        """Test the session panel includes state and error"""
        console, buffer = make_console()
        session = GenerationSession(project_id="p1", state=GenerationState.ERROR, error="Model overloaded")

        console.print(render_session(session))

        output = buffer.getvalue()
        assert "p1" in output
        assert "error" in output
        assert "Model overloaded" in output

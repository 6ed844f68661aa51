"""
Unit Tests for RequestCorrelator

Explicit request ids, ack correlation, timeouts and channel loss.
"""
import asyncio

import pytest

from livesync.correlator import RequestCorrelator
from livesync.exceptions import RequestTimeoutError, ServerError, TransportError
from tests.conftest import settle


class TestEmit:
    """Test awaitable emit()"""

    @pytest.mark.asyncio
    async def test_emit_resolves_with_ack_data(self, correlator, connected, server):
        """Test the ack with the matching request id resolves the call"""
        server.auto_ack["get_generation_status"] = {"status": "generating", "progress": 40}

        result = await correlator.emit("get_generation_status", {"projectId": "p1"})

        assert result == {"status": "generating", "progress": 40}
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_emit_sends_explicit_request_id(self, correlator, connected, server):
        """Test each call carries its own request id"""
        server.auto_ack["join_room"] = {"ok": True}

        await correlator.emit("join_room", {"roomId": "project_p1"})
        await correlator.emit("join_room", {"roomId": "project_p2"})

        ids = [frame["request_id"] for frame in server.sent_events("join_room")]
        assert len(ids) == 2
        assert all(ids)
        assert ids[0] != ids[1]

    @pytest.mark.asyncio
    async def test_emit_when_disconnected_fails_immediately(self, correlator, connection, server):
        """Test emit() rejects without waiting for the timeout"""
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(TransportError):
            await correlator.emit("cancel_generation", {"projectId": "p1"}, timeout=5.0)

        assert loop.time() - started < 1.0
        assert server.sent == []
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_error_ack_raises_server_error(self, correlator, connected, server):
        """Test an ack carrying an error rejects the call"""
        server.auto_ack["join_room"] = lambda data: (None, "Room is full")

        with pytest.raises(ServerError) as exc_info:
            await correlator.emit("join_room", {"roomId": "project_p1"})

        assert exc_info.value.message == "Room is full"
        assert exc_info.value.code == "SERVER_ERROR"

    @pytest.mark.asyncio
    async def test_error_inside_ack_data_raises_server_error(self, correlator, connected, server):
        """Test {"error": ...} in the ack payload also rejects"""
        server.auto_ack["cancel_generation"] = {"error": "No active generation"}

        with pytest.raises(ServerError):
            await correlator.emit("cancel_generation", {"projectId": "p1"})


class TestTimeouts:
    """Test calls that never get a reply"""

    @pytest.mark.asyncio
    async def test_timeout_rejects_and_removes_pending_entry(self, correlator, connected, server):
        """Test a request with no ack times out and leaves no pending entry"""
        with pytest.raises(RequestTimeoutError) as exc_info:
            await correlator.emit("get_generation_status", {"projectId": "p1"}, timeout=0.05)

        assert exc_info.value.code == "REQUEST_TIMEOUT"
        assert exc_info.value.details["event"] == "get_generation_status"
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_late_ack_after_timeout_is_ignored(self, correlator, connected, server):
        """Test an ack arriving after the timeout has no effect"""
        with pytest.raises(RequestTimeoutError):
            await correlator.emit("get_generation_status", {"projectId": "p1"}, timeout=0.05)

        request_id = server.sent_events("get_generation_status")[0]["request_id"]
        await server.push("ack", {"status": "completed"}, request_id=request_id)

        assert correlator.pending_count == 0
        assert connected.is_connected

    @pytest.mark.asyncio
    async def test_default_timeout_comes_from_config(self, connection, config):
        """Test the correlator uses request_timeout by default"""
        assert RequestCorrelator(connection).timeout == config.request_timeout
        assert RequestCorrelator(connection, timeout=3.0).timeout == 3.0


class TestChannelLoss:
    """Test pending calls when the channel drops"""

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_calls(self, correlator, connected, server):
        """Test in-flight calls reject with TransportError on channel loss"""
        call = asyncio.create_task(
            correlator.emit("get_generation_status", {"projectId": "p1"}, timeout=5.0)
        )
        await settle()
        assert correlator.pending_count == 1

        await server.drop()

        with pytest.raises(TransportError):
            await call
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_unknown_ack_is_ignored(self, correlator, connected, server):
        """Test an ack for an id nobody waits on is dropped"""
        await server.push("ack", {"ok": True}, request_id="nope")

        assert correlator.pending_count == 0
        assert connected.is_connected


class TestNotify:
    """Test fire-and-forget notify()"""

    @pytest.mark.asyncio
    async def test_notify_sends_without_request_id(self, correlator, connected, server):
        """Test notify() writes one frame and returns True"""
        assert await correlator.notify("typing", {"roomId": "project_p1", "isTyping": True}) is True

        frame = server.sent_events("typing")[0]
        assert frame["request_id"] is None
        assert frame["data"]["isTyping"] is True

    @pytest.mark.asyncio
    async def test_notify_when_disconnected_is_dropped(self, correlator, connection, server):
        """Test notify() returns False instead of raising"""
        assert await correlator.notify("typing", {"roomId": "project_p1"}) is False
        assert server.sent == []

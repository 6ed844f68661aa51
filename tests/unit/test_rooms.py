"""
Unit Tests for RoomBroadcaster

Membership, rejoin after reconnect, broadcasts and inbound presence.
"""
import asyncio

import pytest

from livesync.exceptions import RequestTimeoutError, ServerError
from livesync.rooms import RoomBroadcaster, room_id_for
from tests.conftest import wait_until


@pytest.fixture
def rooms(connection, correlator, server):
    server.auto_ack["join_room"] = {"ok": True}
    server.auto_ack["leave_room"] = {"ok": True}
    return RoomBroadcaster(connection, correlator)


class TestMembership:
    """Test join_room() and leave_room()"""

    @pytest.mark.asyncio
    async def test_join_twice_then_leave_clears_membership(self, rooms, connected, server):
        """Test repeated joins keep one entry and one leave removes it"""
        await rooms.join_room("p1")
        await rooms.join_room("p1")

        assert rooms.active_rooms == ["project_p1"]
        assert len(server.sent_events("join_room")) == 1

        assert await rooms.leave_room("p1") is True

        assert rooms.active_rooms == []
        assert not rooms.is_active("p1")
        assert server.sent_events("leave_room")[0]["data"] == {"roomId": "project_p1"}

    @pytest.mark.asyncio
    async def test_leave_unknown_room_is_noop(self, rooms, connected, server):
        """Test leaving a room that was never joined"""
        assert await rooms.leave_room("p1") is False
        assert server.sent_events("leave_room") == []

    @pytest.mark.asyncio
    async def test_rejected_join_is_not_recorded(self, rooms, connected, server):
        """Test a join the server refuses leaves no membership"""
        server.auto_ack["join_room"] = lambda data: (None, "Forbidden")

        with pytest.raises(ServerError):
            await rooms.join_room("p1")

        assert rooms.active_rooms == []

    @pytest.mark.asyncio
    async def test_unacked_join_times_out(self, rooms, connected, server):
        """Test a join without a reply fails and is not recorded"""
        del server.auto_ack["join_room"]

        with pytest.raises(RequestTimeoutError):
            await rooms.join_room("p1")

        assert not rooms.is_active("p1")

    @pytest.mark.asyncio
    async def test_join_while_disconnected_is_deferred(self, rooms, connection, server, identity):
        """Test a join made offline is sent once the channel connects"""
        await rooms.join_room("p1")
        assert rooms.is_active("p1")
        assert server.sent == []

        await connection.connect(identity)
        await wait_until(lambda: len(server.sent_events("join_room")) == 1)

        assert server.sent_events("join_room")[0]["data"] == {"roomId": "project_p1"}

    @pytest.mark.asyncio
    async def test_leave_failure_is_swallowed(self, rooms, connected, server):
        """Test a failing leave request still clears local membership"""
        await rooms.join_room("p1")
        server.auto_ack["leave_room"] = lambda data: (None, "gone")

        assert await rooms.leave_room("p1") is True
        assert rooms.active_rooms == []

    def test_room_id_for_project(self):
        """Test the wire room name"""
        assert room_id_for("p1") == "project_p1"


class TestRejoin:
    """Test automatic rejoin after reconnection"""

    @pytest.mark.asyncio
    async def test_rooms_rejoined_after_reconnect(self, rooms, connected, server):
        """Test every active room is joined again on the new channel"""
        await rooms.join_room("p1")
        await rooms.join_room("p2")
        await rooms.leave_room("p2")
        await rooms.join_room("p3")

        await server.drop()
        await wait_until(lambda: server.open_calls == 2 and connected.is_connected)
        await wait_until(lambda: len(server.current.sent) >= 3)

        rejoined = [f["data"]["roomId"] for f in server.current.sent if f["event"] == "join_room"]
        assert rejoined == ["project_p1", "project_p3"]
        assert rooms.active_rooms == ["project_p1", "project_p3"]

    @pytest.mark.asyncio
    async def test_room_refused_on_rejoin_is_dropped(self, rooms, connected, server):
        """Test a room the server refuses after reconnect leaves active_rooms"""
        await rooms.join_room("p1")
        await rooms.join_room("p2")

        def refuse_p1(data):
            if data["roomId"] == "project_p1":
                return None, "Project archived"
            return {"ok": True}, None

        server.auto_ack["join_room"] = refuse_p1
        await server.drop()
        await wait_until(lambda: server.open_calls == 2 and connected.is_connected)
        await wait_until(lambda: not rooms.is_active("p1"))

        assert rooms.active_rooms == ["project_p2"]
        assert rooms.get_room("p1") is None

    @pytest.mark.asyncio
    async def test_room_kept_when_rejoin_times_out(self, rooms, connected, server, config):
        """Test an unanswered rejoin keeps the room for the next connect"""
        await rooms.join_room("p1")

        del server.auto_ack["join_room"]
        await server.drop()
        await wait_until(lambda: server.open_calls == 2 and connected.is_connected)
        await wait_until(lambda: any(f["event"] == "join_room" for f in server.current.sent))
        await asyncio.sleep(config.request_timeout + 0.1)

        assert rooms.is_active("p1")

    @pytest.mark.asyncio
    async def test_disconnect_clears_member_presence(self, rooms, connected, server):
        """Test members seen before a drop are forgotten"""
        await rooms.join_room("p1")
        await server.push("user_joined", {"roomId": "project_p1", "userId": "u2", "userName": "Asha"})
        assert "u2" in rooms.get_room("p1").members

        await server.drop()

        assert rooms.get_room("p1").members == {}


class TestBroadcasts:
    """Test fire-and-forget room broadcasts"""

    @pytest.mark.asyncio
    async def test_typing_broadcast(self, rooms, connected, server):
        """Test typing goes out with the room id"""
        assert await rooms.broadcast_typing("p1", True) is True

        frame = server.sent_events("typing")[0]
        assert frame["data"] == {"roomId": "project_p1", "isTyping": True}

    @pytest.mark.asyncio
    async def test_cursor_and_code_change(self, rooms, connected, server):
        """Test cursor and code change payloads"""
        await rooms.broadcast_cursor("p1", {"line": 3, "column": 7})
        await rooms.broadcast_code_change("p1", [{"op": "insert", "text": "<h1>"}])

        assert server.sent_events("cursor_position")[0]["data"]["cursor"] == {"line": 3, "column": 7}
        assert server.sent_events("code_changes")[0]["data"]["changes"][0]["op"] == "insert"

    @pytest.mark.asyncio
    async def test_broadcast_dropped_when_disconnected(self, rooms, connection, server):
        """Test presence is not buffered while offline"""
        assert await rooms.broadcast_typing("p1", True) is False
        assert await rooms.update_presence({"status": "away"}) is False
        assert server.sent == []


class TestInboundPresence:
    """Test member tracking from inbound room events"""

    @pytest.mark.asyncio
    async def test_events_for_active_room_update_presence(self, rooms, connected, server):
        """Test joined, typing, cursor and left events"""
        received = []
        rooms.on("typing", received.append)
        await rooms.join_room("p1")

        await server.push("user_joined", {"roomId": "project_p1", "userId": "u2", "userName": "Asha"})
        await server.push("typing", {"roomId": "project_p1", "userId": "u2", "isTyping": True})
        await server.push("cursor_position", {"roomId": "project_p1", "userId": "u2", "cursor": {"line": 1}})

        room = rooms.get_room("p1")
        member = room.members["u2"]
        assert member.user_name == "Asha"
        assert member.cursor == {"line": 1}
        assert room.typing_members() == ["u2"]
        assert received == [{"roomId": "project_p1", "userId": "u2", "isTyping": True}]

        await server.push("user_left", {"roomId": "project_p1", "userId": "u2"})
        assert room.members == {}

    @pytest.mark.asyncio
    async def test_events_for_inactive_room_are_ignored(self, rooms, connected, server):
        """Test listeners are not called for rooms we are not in"""
        received = []
        rooms.on("code_changes", received.append)

        await server.push("code_changes", {"roomId": "project_p9", "userId": "u2", "changes": []})

        assert received == []

    @pytest.mark.asyncio
    async def test_off_removes_listener(self, rooms, connected, server):
        """Test unregistering a room listener"""
        received = []
        rooms.on("typing", received.append)
        rooms.off("typing", received.append)
        await rooms.join_room("p1")

        await server.push("typing", {"roomId": "project_p1", "userId": "u2", "isTyping": True})

        assert received == []

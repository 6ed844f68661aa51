"""
Room/Presence Broadcaster

Manages real-time collaboration on a shared project:
- Joining and leaving per-project rooms (rejoined after every reconnect)
- Typing, cursor and code-change broadcasts (fire-and-forget)
- Member presence tracking from inbound room events

Presence is ephemeral: nothing is buffered or retried while disconnected.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from livesync.connection import ConnectionManager
from livesync.correlator import RequestCorrelator
from livesync.events import EventRegistry, EventType, Handler
from livesync.exceptions import LiveSyncError, ServerError, ValidationError
from livesync.logging_config import logger


def room_id_for(project_id: str) -> str:
    """Room name used on the wire for a project"""
    return f"project_{project_id}"


@dataclass
class MemberPresence:
    """Transient state of one room member"""
    user_id: str
    user_name: Optional[str] = None
    typing: bool = False
    cursor: Optional[Dict[str, Any]] = None
    last_seen: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Room:
    """Members currently present in a project's room"""
    room_id: str
    project_id: str
    members: Dict[str, MemberPresence] = field(default_factory=dict)

    def touch(self, user_id: str) -> MemberPresence:
        member = self.members.get(user_id)
        if member is None:
            member = MemberPresence(user_id=user_id)
            self.members[user_id] = member
        member.last_seen = datetime.utcnow()
        return member

    def typing_members(self) -> List[str]:
        return [uid for uid, member in self.members.items() if member.typing]


class RoomBroadcaster:
    """
    Room membership and presence on top of the shared connection.

    Usage:
        rooms = RoomBroadcaster(connection, correlator)
        rooms.on("typing", show_typing_indicator)
        await rooms.join_room("p1")
        await rooms.broadcast_typing("p1", True)
    """

    INBOUND_EVENTS = (
        EventType.TYPING,
        EventType.CURSOR_POSITION,
        EventType.CODE_CHANGES,
        EventType.USER_JOINED,
        EventType.USER_LEFT,
    )

    def __init__(self, connection: ConnectionManager, correlator: RequestCorrelator):
        self.connection = connection
        self.correlator = correlator
        # room_id -> Room, in join order
        self._rooms: Dict[str, Room] = {}
        self._listeners = EventRegistry()
        self._lock = asyncio.Lock()
        self._rejoin_task: Optional[asyncio.Task] = None

        connection.subscribe(EventType.CONNECT, self._on_connect)
        connection.subscribe(EventType.DISCONNECT, self._on_disconnect)
        for event in self.INBOUND_EVENTS:
            connection.subscribe(event, self._make_inbound_handler(event))

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    @property
    def active_rooms(self) -> List[str]:
        return list(self._rooms)

    @property
    def active_projects(self) -> List[str]:
        return [room.project_id for room in self._rooms.values()]

    def is_active(self, project_id: str) -> bool:
        return room_id_for(project_id) in self._rooms

    def get_room(self, project_id: str) -> Optional[Room]:
        return self._rooms.get(room_id_for(project_id))

    async def join_room(self, project_id: str) -> Room:
        """
        Join a project's room. Idempotent.

        While disconnected the room is only recorded and gets joined on the
        next connection. A join rejected by the server is not recorded.
        """
        if not project_id:
            raise ValidationError("project_id is required", field="project_id")
        room_id = room_id_for(project_id)

        async with self._lock:
            room = self._rooms.get(room_id)
            if room is not None:
                return room

            if self.connection.is_connected:
                await self.correlator.emit(EventType.JOIN_ROOM, {"roomId": room_id})
                logger.info(f"Joined room: {room_id}")
            else:
                logger.info(f"Channel down; {room_id} will be joined on reconnect")

            room = Room(room_id=room_id, project_id=project_id)
            self._rooms[room_id] = room
            return room

    async def leave_room(self, project_id: str) -> bool:
        """
        Leave a project's room. Idempotent.

        Returns:
            False if the room was not active
        """
        room_id = room_id_for(project_id)

        async with self._lock:
            if self._rooms.pop(room_id, None) is None:
                return False

        if self.connection.is_connected:
            try:
                await self.correlator.emit(EventType.LEAVE_ROOM, {"roomId": room_id})
                logger.info(f"Left room: {room_id}")
            except LiveSyncError as e:
                logger.warning(f"Failed to leave room {room_id}: {e}")
        return True

    async def _rejoin_rooms(self) -> None:
        for room_id in list(self._rooms):
            if not self.connection.is_connected:
                return
            if room_id not in self._rooms:
                continue
            try:
                await self.correlator.emit(EventType.JOIN_ROOM, {"roomId": room_id})
                logger.info(f"Rejoined room: {room_id}")
            except ServerError as e:
                # A refusal is final; timeouts and drops keep the room for the next connect
                self._rooms.pop(room_id, None)
                logger.warning(f"Server refused rejoin of room {room_id}, dropping it: {e.message}")
            except LiveSyncError as e:
                logger.warning(f"Failed to rejoin room {room_id}: {e}")

    def _on_connect(self, data: Any) -> None:
        if not self._rooms:
            return
        if self._rejoin_task is not None and not self._rejoin_task.done():
            self._rejoin_task.cancel()
        # Runs in the background so the connect dispatch is not held up by acks
        self._rejoin_task = asyncio.create_task(self._rejoin_rooms())

    def _on_disconnect(self, data: Any) -> None:
        for room in self._rooms.values():
            room.members.clear()

    # ------------------------------------------------------------------
    # Outbound broadcasts
    # ------------------------------------------------------------------

    async def broadcast_typing(self, project_id: str, is_typing: bool) -> bool:
        return await self.correlator.notify(EventType.TYPING, {
            "roomId": room_id_for(project_id),
            "isTyping": is_typing,
        })

    async def broadcast_cursor(self, project_id: str, cursor: Dict[str, Any]) -> bool:
        return await self.correlator.notify(EventType.CURSOR_POSITION, {
            "roomId": room_id_for(project_id),
            "cursor": cursor,
        })

    async def broadcast_code_change(self, project_id: str, changes: Any) -> bool:
        return await self.correlator.notify(EventType.CODE_CHANGES, {
            "roomId": room_id_for(project_id),
            "changes": changes,
        })

    async def update_presence(self, presence: Dict[str, Any]) -> bool:
        return await self.correlator.notify(EventType.PRESENCE_UPDATE, presence)

    # ------------------------------------------------------------------
    # Inbound presence
    # ------------------------------------------------------------------

    def on(self, event: Any, handler: Handler) -> Handler:
        """Listen for an inbound room event (only delivered for active rooms)"""
        return self._listeners.subscribe(event, handler)

    def off(self, event: Any, handler: Optional[Handler] = None) -> None:
        self._listeners.unsubscribe(event, handler)

    def _make_inbound_handler(self, event: EventType):
        async def handler(data: Any) -> None:
            await self._handle_inbound(event, data)
        handler.__name__ = f"_on_{event.value}"
        return handler

    async def _handle_inbound(self, event: EventType, data: Any) -> None:
        if not isinstance(data, dict):
            return
        room = self._rooms.get(data.get("roomId"))
        if room is None:
            return

        user_id = data.get("userId")
        if user_id:
            if event == EventType.USER_LEFT:
                room.members.pop(user_id, None)
            else:
                member = room.touch(user_id)
                if event == EventType.USER_JOINED:
                    member.user_name = data.get("userName") or member.user_name
                elif event == EventType.TYPING:
                    member.typing = bool(data.get("isTyping"))
                elif event == EventType.CURSOR_POSITION:
                    member.cursor = data.get("cursor")

        await self._listeners.dispatch(event, data)

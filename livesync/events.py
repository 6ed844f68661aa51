"""
Event names and the durable subscription registry.

The registry maps an event name to an ordered set of handlers. Several
subscribers (chat, presence, status) can listen to the same event without
replacing each other, and the registry outlives any single channel.
"""

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from livesync.logging_config import logger


Handler = Callable[[Any], Any]


class EventType(str, Enum):
    """Channel event names"""
    # Connection lifecycle
    AUTH = "auth"
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    AUTH_ERROR = "auth_error"
    ERROR = "error"
    PING = "ping"
    PONG = "pong"
    ACK = "ack"

    # Local lifecycle signals (never sent on the wire)
    RECONNECTING = "reconnecting"
    RECONNECT_FAILED = "reconnect_failed"

    # Generation lifecycle
    GENERATION_STARTED = "generation_started"
    GENERATION_PROGRESS = "generation_progress"
    GENERATION_COMPLETE = "generation_complete"
    GENERATION_ERROR = "generation_error"

    # Client requests
    GENERATE_WEBSITE = "generate_website"
    CANCEL_GENERATION = "cancel_generation"
    GET_GENERATION_STATUS = "get_generation_status"

    # Rooms
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    TYPING = "typing"
    CURSOR_POSITION = "cursor_position"
    CODE_CHANGES = "code_changes"
    PRESENCE_UPDATE = "presence_update"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"


def event_name(event: Any) -> str:
    """Normalize an EventType or plain string to the wire name"""
    if isinstance(event, EventType):
        return event.value
    return str(event)


class EventRegistry:
    """
    Multi-subscriber event map.

    Usage:
        registry = EventRegistry()
        registry.subscribe("generation_progress", on_progress)
        await registry.dispatch("generation_progress", {"progress": 40})
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def subscribe(self, event: Any, handler: Handler) -> Handler:
        """Register a handler. Registering the same handler twice is a no-op."""
        handlers = self._handlers.setdefault(event_name(event), [])
        if handler not in handlers:
            handlers.append(handler)
        return handler

    def unsubscribe(self, event: Any, handler: Optional[Handler] = None) -> None:
        """Remove one handler, or every handler for the event when handler is None"""
        name = event_name(event)
        if handler is None:
            self._handlers.pop(name, None)
            return

        handlers = self._handlers.get(name)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[name]

    def handlers(self, event: Any) -> List[Handler]:
        return list(self._handlers.get(event_name(event), []))

    def events(self) -> List[str]:
        return list(self._handlers)

    def snapshot(self) -> Dict[str, List[Handler]]:
        """Copy of the whole map"""
        return {name: list(handlers) for name, handlers in self._handlers.items()}

    def clear(self) -> None:
        self._handlers.clear()

    async def dispatch(self, event: Any, data: Any = None) -> int:
        """
        Call every handler for the event in registration order.

        Coroutine handlers are awaited. A failing handler is logged and does
        not stop the others.

        Returns:
            Number of handlers called
        """
        name = event_name(event)
        called = 0

        # Iterate over a copy; handlers may (un)subscribe while running
        for handler in self.handlers(name):
            called += 1
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.log_error_with_context(e, context=f"handler for '{name}'")

        return called

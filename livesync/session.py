"""
LiveSession - composition root for one logged-in user

Owns the connection and every component built on it. Create one at login,
close it at logout; nothing here is a process-wide singleton.
"""

from typing import Any, Callable, List, Optional

import httpx

from livesync.config import SessionConfig
from livesync.connection import ConnectionManager, Identity
from livesync.correlator import RequestCorrelator
from livesync.exceptions import ChannelConnectionError, AuthenticationError
from livesync.fallback import FallbackClient
from livesync.generation import GenerationManager, GenerationSession
from livesync.history import ConversationHistoryCache, HistoryProvider, Message
from livesync.logging_config import logger, set_project_id
from livesync.rooms import RoomBroadcaster
from livesync.transport import Transport


class LiveSession:
    """
    Wires the connection, correlator, rooms, generation and history together.

    Usage:
        async with LiveSession(config) as session:
            await session.login(Identity(user_id="u1", token=token))
            await session.open_project("p1")
            await session.send_message("p1", "make a landing page")
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        transport_factory: Optional[Callable[[], Transport]] = None,
        history_provider: Optional[HistoryProvider] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config or SessionConfig.load_default()

        self.connection = ConnectionManager(self.config, transport_factory)
        self.correlator = RequestCorrelator(self.connection, self.config.request_timeout)
        self.rooms = RoomBroadcaster(self.connection, self.correlator)
        self.history = ConversationHistoryCache()
        self.fallback = FallbackClient(self.config, transport=http_transport)
        self.generation = GenerationManager(
            self.connection, self.correlator, self.history, self.fallback
        )
        self.history_provider = history_provider or self.fallback

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    async def login(self, identity: Identity, require_channel: bool = True) -> bool:
        """
        Connect the channel for this user.

        With require_channel=False a failed connect is logged and the session
        keeps working over the HTTP fallback while reconnection runs in the
        background. Auth failures always propagate.

        Returns:
            True if the channel is connected
        """
        if identity.token:
            self.config.auth_token = identity.token
        self.config.user_id = identity.user_id
        self.config.user_name = identity.user_name

        try:
            await self.connection.connect(identity)
        except AuthenticationError:
            raise
        except ChannelConnectionError as e:
            if require_channel:
                raise
            logger.warning(f"Channel unavailable, using HTTP fallback: {e.message}")
            return False
        return True

    async def logout(self) -> None:
        """Tear everything down"""
        for project_id in self.rooms.active_projects:
            await self.rooms.leave_room(project_id)
        await self.connection.disconnect()
        self.config.auth_token = None

    async def open_project(self, project_id: str) -> List[Message]:
        """Seed the project's history and join its room"""
        set_project_id(project_id)
        messages = await self.history.load(project_id, self.history_provider)
        await self.rooms.join_room(project_id)
        return messages

    async def close_project(self, project_id: str) -> None:
        await self.rooms.leave_room(project_id)
        self.generation.clear_session(project_id)

    async def send_message(self, project_id: str, prompt: str) -> GenerationSession:
        """Start a generation using the cached conversation as context"""
        return await self.generation.start_generation(project_id, prompt)

    async def retry_last(self, project_id: str) -> GenerationSession:
        return await self.generation.retry_last(project_id)

    async def cancel(self, project_id: str) -> Optional[GenerationSession]:
        return await self.generation.cancel_generation(project_id)

    def get_stats(self) -> dict:
        return {
            "connection": self.connection.get_stats(),
            "pending_requests": self.correlator.pending_count,
            "active_rooms": self.rooms.active_rooms,
            "active_generations": [s.project_id for s in self.generation.active_sessions()],
        }

    async def __aenter__(self) -> "LiveSession":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.logout()

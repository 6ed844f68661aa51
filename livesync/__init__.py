"""
LiveSync - persistent generation-service sessions

Reconnecting channel, correlated requests, per-project generation state,
room presence and an HTTP fallback for when the channel is down.
"""

from livesync.config import SessionConfig
from livesync.connection import ConnectionManager, ConnectionState, Identity
from livesync.correlator import RequestCorrelator
from livesync.exceptions import (
    AuthenticationError,
    ChannelConnectionError,
    GenerationError,
    GenerationInProgressError,
    LiveSyncError,
    RequestTimeoutError,
    ServerError,
    TransportError,
    ValidationError,
)
from livesync.generation import GenerationManager, GenerationResult, GenerationSession, GenerationState
from livesync.history import ConversationHistoryCache, Message, MessageRole
from livesync.rooms import RoomBroadcaster
from livesync.session import LiveSession

__version__ = "1.0.0"

__all__ = [
    "SessionConfig",
    "ConnectionManager",
    "ConnectionState",
    "Identity",
    "RequestCorrelator",
    "GenerationManager",
    "GenerationResult",
    "GenerationSession",
    "GenerationState",
    "ConversationHistoryCache",
    "Message",
    "MessageRole",
    "RoomBroadcaster",
    "LiveSession",
    "LiveSyncError",
    "AuthenticationError",
    "ChannelConnectionError",
    "GenerationError",
    "GenerationInProgressError",
    "RequestTimeoutError",
    "ServerError",
    "TransportError",
    "ValidationError",
]

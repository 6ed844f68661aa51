"""
Channel transports.

A transport moves JSON frames of the form
``{"event": str, "data": any, "request_id": str?}`` over a message-oriented
connection. The connection manager only depends on the ``Transport``
interface, so any channel that can carry discrete messages will do.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from livesync.exceptions import TransportError
from livesync.logging_config import logger


Frame = Dict[str, Any]


def encode_frame(event: str, data: Any = None, request_id: Optional[str] = None) -> str:
    """Serialize a frame for the wire"""
    frame: Frame = {"event": event, "data": data}
    if request_id:
        frame["request_id"] = request_id
    return json.dumps(frame, default=str)


def decode_frame(raw: Any) -> Optional[Frame]:
    """
    Parse a wire message into a frame.

    Returns None for anything that is not a JSON object with an event name.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None

    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        return None
    return frame


class Transport(ABC):
    """Base class for channel transports"""

    @abstractmethod
    async def open(self, url: str, timeout: float) -> None:
        """Open the underlying connection"""
        pass

    @abstractmethod
    async def send(self, event: str, data: Any = None, request_id: Optional[str] = None) -> None:
        """Send one frame. Raises TransportError when the channel is gone."""
        pass

    @abstractmethod
    async def receive(self) -> Frame:
        """Wait for the next frame. Raises TransportError when the channel closes."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass


class WebSocketTransport(Transport):
    """Transport over a plain WebSocket using the websockets library"""

    def __init__(self, ping_interval: Optional[float] = None):
        # Liveness is handled by the application-level ping/pong
        self.ping_interval = ping_interval
        self._ws = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def open(self, url: str, timeout: float) -> None:
        try:
            self._ws = await websockets.connect(
                url,
                open_timeout=timeout,
                ping_interval=self.ping_interval,
            )
        except (WebSocketException, OSError) as e:
            raise TransportError(f"Could not open channel to {url}: {e}", details={"url": url})

    async def send(self, event: str, data: Any = None, request_id: Optional[str] = None) -> None:
        if self._ws is None:
            raise TransportError()
        try:
            await self._ws.send(encode_frame(event, data, request_id))
        except ConnectionClosed as e:
            raise TransportError(f"Channel closed while sending '{event}': {e}")

    async def receive(self) -> Frame:
        while True:
            if self._ws is None:
                raise TransportError()
            try:
                raw = await self._ws.recv()
            except ConnectionClosed as e:
                raise TransportError(f"Channel closed: {e}")

            frame = decode_frame(raw)
            if frame is not None:
                return frame
            logger.debug(f"Dropping malformed frame: {str(raw)[:100]}")

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except WebSocketException as e:
                logger.debug(f"Error closing channel: {e}")

"""
Connection Manager - Owns the persistent channel to the generation service

Features:
1. In-band auth handshake (connecting -> connected only after the server accepts)
2. Heartbeat with a missed-pong liveness threshold
3. Auto-reconnect with exponential backoff and an attempt cap
4. Durable multi-subscriber handler registry that survives reconnects
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from livesync.config import SessionConfig
from livesync.events import EventRegistry, EventType, Handler, event_name
from livesync.exceptions import (
    AuthenticationError,
    ChannelConnectionError,
    TransportError,
    ValidationError,
)
from livesync.logging_config import logger, set_channel_sid, set_user_id
from livesync.transport import Transport, WebSocketTransport


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class Identity:
    """Who is connecting; sent to the server during the handshake"""
    user_id: str
    token: Optional[str] = None
    user_name: Optional[str] = None


class ConnectionManager:
    """
    Manages the channel lifecycle for one logged-in user.

    Usage:
        manager = ConnectionManager(config)
        manager.subscribe("generation_progress", on_progress)

        await manager.connect(Identity(user_id="u1", token=token))
        ...
        await manager.disconnect()
    """

    def __init__(
        self,
        config: SessionConfig,
        transport_factory: Optional[Callable[[], Transport]] = None
    ):
        self.config = config
        self.transport_factory = transport_factory or WebSocketTransport
        self.registry = EventRegistry()

        self.state = ConnectionState.DISCONNECTED
        self.identity: Optional[Identity] = None
        self.session_id: Optional[str] = None
        self.reconnect_attempts = 0
        self.missed_pongs = 0
        self.last_heartbeat: Optional[float] = None
        self.gave_up = False

        self._transport: Optional[Transport] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._closing = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._transport is not None

    def subscribe(self, event: Any, handler: Handler) -> Handler:
        """Register a durable handler; it stays attached across reconnects"""
        return self.registry.subscribe(event, handler)

    def unsubscribe(self, event: Any, handler: Optional[Handler] = None) -> None:
        self.registry.unsubscribe(event, handler)

    async def connect(self, identity: Identity) -> None:
        """
        Open the channel and authenticate.

        Concurrent callers share one attempt. Raises AuthenticationError when
        the server answers auth_error, ChannelConnectionError on any other
        failure (background reconnection is started in that case).
        """
        if not identity or not identity.user_id:
            raise ValidationError("user_id is required to connect", field="user_id")

        if self.is_connected:
            return

        if self._connect_task is None or self._connect_task.done():
            self.identity = identity
            self._connect_task = asyncio.ensure_future(self._initial_connect())

        await asyncio.shield(self._connect_task)

    async def disconnect(self) -> None:
        """Tear down the channel. Idempotent."""
        self._closing = True

        if self._connect_task is not None and not self._connect_task.done():
            await self._cancel_task(self._connect_task)
        await self._cancel_task(self._reconnect_task)
        await self._stop_background_tasks()

        transport, self._transport = self._transport, None
        was_connected = self.state == ConnectionState.CONNECTED

        if transport is not None:
            await transport.close()

        self.reconnect_attempts = 0
        self.missed_pongs = 0
        self.gave_up = False
        self.session_id = None
        self._set_state(ConnectionState.DISCONNECTED)

        if was_connected:
            logger.log_connection_event("closed", self.state.value)
            await self.registry.dispatch(EventType.DISCONNECT, {"reason": "client disconnect"})

    async def force_reconnect(self) -> bool:
        """
        Drop the current channel (if any) and reconnect immediately.

        Resets the attempt counter and the gave-up flag. If the immediate
        attempt fails, the normal backoff loop takes over.

        Returns:
            True if connected again right away
        """
        if self.identity is None:
            raise ValidationError("Cannot reconnect before connect()", field="identity")

        self._closing = False
        await self._cancel_task(self._reconnect_task)

        transport = self._transport
        if transport is not None:
            await self._drop_transport(transport, "forced reconnect", reconnect=False)

        self.reconnect_attempts = 0
        self.gave_up = False
        self._set_state(ConnectionState.CONNECTING)
        logger.log_connection_event("force_reconnect", self.state.value)

        try:
            transport = await self._open_and_handshake()
        except AuthenticationError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        except (TransportError, asyncio.TimeoutError) as e:
            logger.warning(f"Forced reconnect failed: {e}")
            self._set_state(ConnectionState.RECONNECTING)
            self._schedule_reconnect()
            return False

        await self._on_connected(transport, reconnected=True)
        return True

    async def send(self, event: Any, data: Any = None, request_id: Optional[str] = None) -> None:
        """Write one frame. Raises TransportError when not connected."""
        name = event_name(event)
        transport = self._transport
        if not self.is_connected or transport is None:
            raise TransportError(f"Cannot send '{name}': channel not connected", details={"event": name})

        try:
            await transport.send(name, data, request_id)
        except TransportError as e:
            await self._handle_transport_lost(transport, str(e))
            raise

    def get_stats(self) -> Dict[str, Any]:
        """Get connection statistics"""
        return {
            "state": self.state.value,
            "is_connected": self.is_connected,
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.config.max_reconnect_attempts,
            "last_heartbeat": self.last_heartbeat,
            "missed_pongs": self.missed_pongs,
            "session_id": self.session_id,
            "gave_up": self.gave_up,
            "user_id": self.identity.user_id if self.identity else None,
        }

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def _initial_connect(self) -> None:
        self._closing = False
        self.gave_up = False
        await self._cancel_task(self._reconnect_task)
        self._set_state(ConnectionState.CONNECTING)

        try:
            transport = await self._open_and_handshake()
        except AuthenticationError as e:
            self._set_state(ConnectionState.DISCONNECTED)
            logger.log_connection_event("auth_failed", self.state.value, level=logging.WARNING, reason=e.message)
            raise
        except (TransportError, asyncio.TimeoutError) as e:
            reason = str(e) or "connect timeout"
            self._set_state(ConnectionState.RECONNECTING)
            logger.log_connection_event("connect_failed", self.state.value, level=logging.WARNING, reason=reason)
            self._schedule_reconnect()
            raise ChannelConnectionError(
                f"Could not connect to {self.config.ws_url}: {reason}",
                details={"url": self.config.ws_url}
            ) from e

        await self._on_connected(transport)

    async def _open_and_handshake(self) -> Transport:
        transport = self.transport_factory()
        try:
            await asyncio.wait_for(self._handshake(transport), timeout=self.config.connect_timeout)
        except BaseException:
            await transport.close()
            raise
        return transport

    async def _handshake(self, transport: Transport) -> None:
        identity = self.identity
        await transport.open(self.config.ws_url, self.config.connect_timeout)
        await transport.send(EventType.AUTH.value, {
            "token": identity.token,
            "userId": identity.user_id,
            "userName": identity.user_name,
            "clientVersion": self.config.client_version,
        })

        while True:
            frame = await transport.receive()
            event = frame.get("event")
            data = frame.get("data")

            if event == EventType.CONNECT.value:
                self.session_id = data.get("sid") if isinstance(data, dict) else None
                return
            if event == EventType.AUTH_ERROR.value:
                if isinstance(data, dict):
                    message = data.get("error") or data.get("message")
                else:
                    message = data
                raise AuthenticationError(str(message) if message else "Authentication failed")

            logger.debug(f"Ignoring '{event}' received before handshake completed")

    async def _on_connected(self, transport: Transport, reconnected: bool = False) -> None:
        self._transport = transport
        self.reconnect_attempts = 0
        self.missed_pongs = 0
        self.last_heartbeat = time.time()
        self.gave_up = False
        self._set_state(ConnectionState.CONNECTED)

        set_user_id(self.identity.user_id)
        set_channel_sid(self.session_id)
        logger.log_connection_event(
            "reconnected" if reconnected else "established",
            self.state.value,
            session_id=self.session_id
        )

        self._reader_task = asyncio.create_task(self._read_loop(transport))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(transport))

        await self.registry.dispatch(EventType.CONNECT, {
            "sid": self.session_id,
            "reconnected": reconnected,
        })

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def _read_loop(self, transport: Transport) -> None:
        reason = "channel closed"
        try:
            while True:
                frame = await transport.receive()
                event = frame.get("event")

                if event == EventType.DISCONNECT.value:
                    data = frame.get("data")
                    reason = f"server disconnect: {data.get('reason') if isinstance(data, dict) else data}"
                    break

                await self._handle_frame(frame)
        except TransportError as e:
            reason = str(e)

        await self._handle_transport_lost(transport, reason)

    async def _handle_frame(self, frame: Dict[str, Any]) -> None:
        event = frame["event"]
        data = frame.get("data")

        if event == EventType.PONG.value:
            self.missed_pongs = 0
            self.last_heartbeat = time.time()
        elif event == EventType.ERROR.value:
            logger.warning(f"Server error: {data}")
        elif event == EventType.ACK.value:
            # Correlation needs the request id, so pass the whole frame
            data = frame

        await self.registry.dispatch(event, data)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self, transport: Transport) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            if transport is not self._transport:
                return

            if self.missed_pongs >= self.config.missed_pong_threshold:
                logger.log_connection_event(
                    "heartbeat_timeout", self.state.value, level=logging.WARNING,
                    missed_pongs=self.missed_pongs
                )
                await self._handle_transport_lost(transport, "heartbeat timeout")
                return

            self.missed_pongs += 1
            try:
                await transport.send(EventType.PING.value, {"timestamp": int(time.time() * 1000)})
            except TransportError as e:
                await self._handle_transport_lost(transport, str(e))
                return

    # ------------------------------------------------------------------
    # Disconnect / reconnect
    # ------------------------------------------------------------------

    async def _handle_transport_lost(self, transport: Transport, reason: str) -> None:
        """Unexpected loss of the current transport"""
        if transport is not self._transport:
            return
        await self._drop_transport(transport, reason, reconnect=not self._closing)

    async def _drop_transport(self, transport: Transport, reason: str, reconnect: bool) -> None:
        self._transport = None
        was_connected = self.state == ConnectionState.CONNECTED

        await self._stop_background_tasks()
        await transport.close()

        if reconnect:
            self._set_state(ConnectionState.RECONNECTING)
            logger.log_connection_event("lost", self.state.value, level=logging.WARNING, reason=reason)
        else:
            self._set_state(ConnectionState.DISCONNECTED)

        if was_connected:
            await self.registry.dispatch(EventType.DISCONNECT, {"reason": reason})

        if reconnect:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing or self.identity is None:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    def _get_backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt n (1-based): base * 2^(n-1)"""
        return self.config.reconnect_base_delay * (2 ** (attempt - 1))

    async def _reconnect_loop(self) -> None:
        max_attempts = self.config.max_reconnect_attempts

        while self.reconnect_attempts < max_attempts:
            self.reconnect_attempts += 1
            attempt = self.reconnect_attempts
            delay = self._get_backoff_delay(attempt)

            self._set_state(ConnectionState.RECONNECTING)
            logger.log_connection_event(
                "reconnecting", self.state.value, attempt=attempt, delay=delay
            )
            await self.registry.dispatch(EventType.RECONNECTING, {
                "attempt": attempt,
                "max_attempts": max_attempts,
                "delay": delay,
            })

            await asyncio.sleep(delay)
            if self._closing:
                return

            self._set_state(ConnectionState.CONNECTING)
            try:
                transport = await self._open_and_handshake()
            except AuthenticationError as e:
                logger.error(f"Reconnect rejected by server: {e.message}")
                break
            except (TransportError, asyncio.TimeoutError) as e:
                logger.warning(
                    f"Reconnect attempt {attempt}/{max_attempts} failed: {e or 'timeout'}"
                )
                continue

            # Clear first so a loss during the connect dispatch can schedule again
            self._reconnect_task = None
            await self._on_connected(transport, reconnected=True)
            return

        self.gave_up = True
        self._set_state(ConnectionState.DISCONNECTED)
        logger.log_connection_event(
            "gave_up", self.state.value, level=logging.ERROR, attempts=self.reconnect_attempts
        )
        await self.registry.dispatch(EventType.RECONNECT_FAILED, {
            "attempts": self.reconnect_attempts,
        })

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if state != self.state:
            logger.debug(f"Connection state {self.state.value} -> {state.value}")
            self.state = state

    async def _stop_background_tasks(self) -> None:
        await self._cancel_task(self._heartbeat_task)
        await self._cancel_task(self._reader_task)
        self._heartbeat_task = None
        self._reader_task = None

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

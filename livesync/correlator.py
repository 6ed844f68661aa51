"""
Request/Response Correlator

Turns one-way channel emits into awaitable calls. Each call gets an explicit
request id and a pending future; the server answers with an ``ack`` frame
carrying the same id. Nothing here depends on transport-level acknowledgments.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from livesync.connection import ConnectionManager
from livesync.events import EventType, event_name
from livesync.exceptions import RequestTimeoutError, ServerError, TransportError
from livesync.logging_config import logger


@dataclass
class PendingRequest:
    """One outbound call waiting for its reply"""
    request_id: str
    event: str
    future: asyncio.Future
    deadline: float

    def settle(self, result: Any = None, error: Optional[BaseException] = None) -> bool:
        """Resolve or reject the future. Returns False if it was already settled."""
        if self.future.done():
            return False
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)
        return True


class RequestCorrelator:
    """
    Awaitable request/response on top of the connection manager.

    Usage:
        correlator = RequestCorrelator(connection, timeout=10.0)
        status = await correlator.emit("get_generation_status", {"projectId": "p1"})
    """

    def __init__(self, connection: ConnectionManager, timeout: Optional[float] = None):
        self.connection = connection
        self.timeout = timeout if timeout is not None else connection.config.request_timeout
        self._pending: Dict[str, PendingRequest] = {}

        connection.subscribe(EventType.ACK, self._on_ack)
        connection.subscribe(EventType.DISCONNECT, self._on_disconnect)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    async def emit(self, event: Any, payload: Any = None, timeout: Optional[float] = None) -> Any:
        """
        Send an event and wait for the correlated reply.

        Raises:
            TransportError: channel not connected (raised immediately) or lost mid-call
            RequestTimeoutError: no reply within the timeout
            ServerError: server acknowledged with an error
        """
        name = event_name(event)
        if not self.connection.is_connected:
            raise TransportError(f"Cannot emit '{name}': channel not connected", details={"event": name})

        timeout = timeout if timeout is not None else self.timeout
        loop = asyncio.get_running_loop()
        request_id = uuid.uuid4().hex
        pending = PendingRequest(
            request_id=request_id,
            event=name,
            future=loop.create_future(),
            deadline=loop.time() + timeout,
        )
        self._pending[request_id] = pending

        try:
            await self.connection.send(name, payload, request_id=request_id)
            return await asyncio.wait_for(pending.future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Request '{name}' ({request_id[:8]}) timed out after {timeout:g}s")
            raise RequestTimeoutError(name, timeout)
        except TransportError:
            # The disconnect handler may have already rejected our future
            if pending.future.done() and not pending.future.cancelled():
                pending.future.exception()
            raise
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, event: Any, payload: Any = None) -> bool:
        """
        Fire-and-forget send.

        Returns:
            False if the message was dropped because the channel is down
        """
        name = event_name(event)
        if not self.connection.is_connected:
            logger.debug(f"Dropping '{name}': channel not connected")
            return False
        try:
            await self.connection.send(name, payload)
        except TransportError as e:
            logger.debug(f"Dropping '{name}': {e}")
            return False
        return True

    def _on_ack(self, frame: Dict[str, Any]) -> None:
        request_id = frame.get("request_id") if isinstance(frame, dict) else None
        pending = self._pending.pop(request_id, None) if request_id else None
        if pending is None:
            logger.debug(f"Ignoring ack for unknown or settled request {request_id}")
            return

        data = frame.get("data")
        error = frame.get("error")
        if error is None and isinstance(data, dict):
            error = data.get("error")

        if error:
            pending.settle(error=ServerError(str(error), event=pending.event))
        else:
            pending.settle(result=data)

    def _on_disconnect(self, data: Any) -> None:
        if not self._pending:
            return

        reason = data.get("reason") if isinstance(data, dict) else None
        pending, self._pending = self._pending, {}
        logger.warning(f"Failing {len(pending)} pending request(s): channel lost ({reason})")

        for entry in pending.values():
            entry.settle(error=TransportError(
                f"Channel lost while waiting for '{entry.event}'",
                details={"event": entry.event, "reason": reason}
            ))

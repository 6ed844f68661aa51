"""
Generation Session State Machine

One lifecycle per project:

    idle -> started -> progress* -> complete | error | cancelled

Channel generations return immediately and advance through inbound events.
When the channel is down the request goes through the HTTP fallback and jumps
straight from started to complete or error.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from livesync.connection import ConnectionManager
from livesync.correlator import RequestCorrelator
from livesync.events import EventRegistry, EventType
from livesync.exceptions import (
    GenerationInProgressError,
    LiveSyncError,
    ValidationError,
)
from livesync.history import ConversationHistoryCache
from livesync.logging_config import logger, set_project_id

if TYPE_CHECKING:
    from livesync.fallback import FallbackClient


class GenerationState(str, Enum):
    IDLE = "idle"
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


ACTIVE_STATES = {GenerationState.STARTED, GenerationState.PROGRESS}
TERMINAL_STATES = {GenerationState.COMPLETE, GenerationState.ERROR, GenerationState.CANCELLED}

CHANNEL = "channel"
FALLBACK = "fallback"


@dataclass
class GenerationResult:
    """Outcome of a completed generation"""
    conversational_response: str = ""
    generated_artifact: Optional[str] = None
    tokens_used: int = 0
    response_time_ms: Optional[int] = None
    conversation_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "GenerationResult":
        """Build from the camelCase wire format; anything but a dict counts as empty"""
        if not isinstance(payload, dict):
            payload = {}
        conversation_id = payload.get("conversationId")
        return cls(
            conversational_response=payload.get("conversationalResponse") or "",
            generated_artifact=payload.get("generatedArtifact", payload.get("htmlCode")),
            tokens_used=payload.get("tokensUsed") or 0,
            response_time_ms=payload.get("responseTimeMs", payload.get("responseTime")),
            conversation_id=str(conversation_id) if conversation_id is not None else None,
        )


@dataclass
class GenerationSession:
    """Lifecycle of one generation request for a project"""
    project_id: str
    prompt: str = ""
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: GenerationState = GenerationState.IDLE
    progress: int = 0
    stage: str = ""
    result: Optional[GenerationResult] = None
    error: Optional[str] = None
    transport: str = CHANNEL
    stalled: bool = False
    started_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    _finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "session_id": self.session_id,
            "state": self.state.value,
            "progress": self.progress,
            "stage": self.stage,
            "error": self.error,
            "transport": self.transport,
            "stalled": self.stalled,
            "result": self.result.__dict__ if self.result else None,
        }


SessionListener = Callable[[GenerationSession], Any]


class GenerationManager:
    """
    Drives generation sessions for every open project.

    Usage:
        manager = GenerationManager(connection, correlator, history, fallback)
        session = await manager.start_generation("p1", "make a landing page")
        await manager.wait_until_finished("p1")
    """

    def __init__(
        self,
        connection: ConnectionManager,
        correlator: RequestCorrelator,
        history: ConversationHistoryCache,
        fallback: "FallbackClient"
    ):
        self.connection = connection
        self.correlator = correlator
        self.history = history
        self.fallback = fallback
        self._sessions: Dict[str, GenerationSession] = {}
        self._listeners = EventRegistry()

        connection.subscribe(EventType.GENERATION_STARTED, self._on_started)
        connection.subscribe(EventType.GENERATION_PROGRESS, self._on_progress)
        connection.subscribe(EventType.GENERATION_COMPLETE, self._on_complete)
        connection.subscribe(EventType.GENERATION_ERROR, self._on_error)
        connection.subscribe(EventType.DISCONNECT, self._on_disconnect)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, project_id: str) -> GenerationSession:
        """Current session, or a fresh idle one if nothing was dispatched"""
        session = self._sessions.get(project_id)
        if session is None:
            return GenerationSession(project_id=project_id)
        return session

    def active_sessions(self) -> List[GenerationSession]:
        return [s for s in self._sessions.values() if s.is_active]

    def add_listener(self, listener: SessionListener) -> SessionListener:
        """Called with the session after every state change"""
        return self._listeners.subscribe("session_updated", listener)

    def remove_listener(self, listener: SessionListener) -> None:
        self._listeners.unsubscribe("session_updated", listener)

    async def wait_until_finished(self, project_id: str, timeout: Optional[float] = None) -> GenerationSession:
        """Wait for the project's current session to reach a terminal state"""
        session = self._sessions.get(project_id)
        if session is None:
            return self.get_session(project_id)
        await asyncio.wait_for(session._finished.wait(), timeout=timeout)
        return session

    async def wait_until_settled(self, project_id: str, timeout: Optional[float] = None) -> GenerationSession:
        """
        Wait for a terminal state, but stop early once waiting is pointless:
        the session stalled and reconnection gave up. Also returns on timeout.

        The returned session may still be active; callers check is_terminal.
        """
        session = self._sessions.get(project_id)
        if session is None or session.is_terminal:
            return self.get_session(project_id)

        gave_up = asyncio.Event()

        def on_reconnect_failed(data: Any) -> None:
            gave_up.set()

        if self.connection.gave_up:
            gave_up.set()
        self.connection.subscribe(EventType.RECONNECT_FAILED, on_reconnect_failed)

        finished = asyncio.ensure_future(session._finished.wait())
        abandoned = asyncio.ensure_future(gave_up.wait())
        try:
            await asyncio.wait({finished, abandoned}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            finished.cancel()
            abandoned.cancel()
            self.connection.unsubscribe(EventType.RECONNECT_FAILED, on_reconnect_failed)

        if not session.is_terminal:
            logger.log_generation_event(
                project_id, "unsettled", session.progress,
                stalled=session.stalled, gave_up=self.connection.gave_up
            )
        return session

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start_generation(
        self,
        project_id: str,
        prompt: str,
        history: Optional[List[Dict[str, str]]] = None
    ) -> GenerationSession:
        """
        Dispatch a generation request.

        Over the channel this returns as soon as the request is sent; the
        session then advances through inbound events. Without a channel the
        HTTP fallback is awaited and the returned session is terminal.

        Raises:
            ValidationError: missing project id or blank prompt
            GenerationInProgressError: project already has an active session
        """
        if not project_id:
            raise ValidationError("project_id is required", field="project_id")
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt cannot be empty", field="prompt")

        self._ensure_available(project_id)

        context = history if history is not None else self.history.as_context(project_id)
        self.history.append_user(project_id, prompt)
        return await self._dispatch(project_id, prompt, context)

    async def retry_last(self, project_id: str) -> GenerationSession:
        """
        Resubmit the most recent user message as a new session.

        The history before that message is sent as context; no duplicate user
        message is recorded. A stalled session may be replaced, an active one
        may not.
        """
        last = self.history.last_user_message(project_id)
        if last is None:
            raise ValidationError(f"No user message to retry for project '{project_id}'", field="project_id")

        self._ensure_available(project_id)

        context = self.history.as_context(project_id, before=last.id)
        logger.log_generation_event(project_id, "retry")
        return await self._dispatch(project_id, last.content, context)

    async def cancel_generation(self, project_id: str) -> Optional[GenerationSession]:
        """
        Ask the service to cancel the active generation.

        Returns None when there is nothing to cancel. Errors from the cancel
        request propagate and leave the session untouched.
        """
        session = self._sessions.get(project_id)
        if session is None or not session.is_active:
            return None

        await self.correlator.emit(EventType.CANCEL_GENERATION, {
            "projectId": project_id,
            "sessionId": session.session_id,
        })

        # A completion may have raced the ack
        if self._sessions.get(project_id) is session and session.is_active:
            session.stage = "cancelled"
            await self._transition(session, GenerationState.CANCELLED)
        return session

    async def request_status(self, project_id: str) -> Any:
        """Ask the service for the current generation status"""
        return await self.correlator.emit(EventType.GET_GENERATION_STATUS, {"projectId": project_id})

    def clear_session(self, project_id: str) -> None:
        """Forget the project's session; later events for it are ignored"""
        session = self._sessions.pop(project_id, None)
        if session is not None:
            session._finished.set()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _ensure_available(self, project_id: str) -> None:
        current = self._sessions.get(project_id)
        if current is not None and current.is_active and not current.stalled:
            raise GenerationInProgressError(project_id)

    async def _dispatch(self, project_id: str, prompt: str, context: List[Dict[str, str]]) -> GenerationSession:
        previous = self._sessions.get(project_id)
        if previous is not None:
            previous._finished.set()

        # The slot is claimed as Started before the first await; a concurrent
        # start or an early server event sees an active session, never Idle.
        session = GenerationSession(
            project_id=project_id,
            prompt=prompt,
            stage="initializing",
            state=GenerationState.STARTED,
            transport=CHANNEL if self.connection.is_connected else FALLBACK,
        )
        self._sessions[project_id] = session
        set_project_id(project_id)
        logger.log_generation_event(project_id, GenerationState.STARTED.value, transport=session.transport)
        await self._notify(session)

        if session.transport == CHANNEL and self._is_current(session) and session.is_active:
            sent = await self.correlator.notify(EventType.GENERATE_WEBSITE, {
                "type": EventType.GENERATE_WEBSITE.value,
                "projectId": project_id,
                "sessionId": session.session_id,
                "message": prompt,
                "conversationHistory": context,
            })
            if sent or not self._is_current(session) or not session.is_active:
                return session
            logger.warning(f"Channel dropped while dispatching generation for {project_id}; using fallback")
            session.transport = FALLBACK
            session.stalled = False

        if self._is_current(session) and session.is_active:
            await self._run_fallback(session, context)
        return session

    async def _run_fallback(self, session: GenerationSession, context: List[Dict[str, str]]) -> None:
        try:
            result = await self.fallback.generate(session.project_id, session.prompt, context)
        except LiveSyncError as e:
            if self._is_current(session) and session.is_active:
                await self._fail(session, e.message)
            return

        if self._is_current(session) and session.is_active:
            await self._complete(session, result)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def _resolve(self, data: Any) -> Optional[GenerationSession]:
        """Find the active session an inbound event belongs to"""
        if not isinstance(data, dict):
            data = {}

        project_id = data.get("projectId")
        if project_id is None:
            channel_sessions = [
                s for s in self._sessions.values()
                if s.is_active and s.transport == CHANNEL
            ]
            if len(channel_sessions) != 1:
                logger.debug("Dropping generation event without projectId")
                return None
            session = channel_sessions[0]
        else:
            session = self._sessions.get(project_id)

        if session is None or not session.is_active or session.transport != CHANNEL:
            return None

        session_id = data.get("sessionId")
        if session_id and session_id != session.session_id:
            logger.debug(f"Dropping event for superseded session {session_id}")
            return None

        return session

    async def _on_started(self, data: Any) -> None:
        session = self._resolve(data)
        if session is None or session.state != GenerationState.STARTED:
            return
        session.stage = "initializing"
        session.updated_at = time.time()
        logger.log_generation_event(session.project_id, "started")
        await self._notify(session)

    async def _on_progress(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        session = self._resolve(data)
        if session is None or session.stalled:
            return

        try:
            progress = int(data.get("progress", 0))
        except (TypeError, ValueError):
            logger.debug(f"Ignoring progress with bad value: {data.get('progress')!r}")
            return
        progress = max(0, min(progress, 100))

        if progress < session.progress:
            return

        session.progress = progress
        session.stage = data.get("stage") or "generating"
        await self._transition(session, GenerationState.PROGRESS)

    async def _on_complete(self, data: Any) -> None:
        session = self._resolve(data)
        if session is None:
            return
        result = data.get("result") if isinstance(data, dict) else None
        await self._complete(session, GenerationResult.from_payload(result or {}))

    async def _on_error(self, data: Any) -> None:
        session = self._resolve(data)
        if session is None:
            return
        message = data.get("error") if isinstance(data, dict) else None
        await self._fail(session, message or "Generation failed")

    def _on_disconnect(self, data: Any) -> None:
        for session in self._sessions.values():
            if session.is_active and session.transport == CHANNEL and not session.stalled:
                session.stalled = True
                logger.log_generation_event(session.project_id, "stalled", session.progress)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _complete(self, session: GenerationSession, result: GenerationResult) -> None:
        session.result = result
        session.progress = 100
        session.stage = "complete"
        self.history.append_assistant(
            session.project_id,
            result.conversational_response,
            artifact=result.generated_artifact,
            tokens_used=result.tokens_used,
            response_time_ms=result.response_time_ms,
            conversation_id=result.conversation_id,
        )
        await self._transition(session, GenerationState.COMPLETE, tokens_used=result.tokens_used)

    async def _fail(self, session: GenerationSession, message: str) -> None:
        session.error = message
        session.stage = ""
        await self._transition(session, GenerationState.ERROR, error=message)

    async def _transition(self, session: GenerationSession, state: GenerationState, **extra) -> None:
        session.state = state
        session.updated_at = time.time()
        if state != GenerationState.PROGRESS:
            logger.log_generation_event(session.project_id, state.value, session.progress, **extra)
        if session.is_terminal:
            session._finished.set()
        await self._notify(session)

    async def _notify(self, session: GenerationSession) -> None:
        await self._listeners.dispatch("session_updated", session)

    def _is_current(self, session: GenerationSession) -> bool:
        return self._sessions.get(session.project_id) is session


__all__ = [
    "GenerationState",
    "GenerationResult",
    "GenerationSession",
    "GenerationManager",
]

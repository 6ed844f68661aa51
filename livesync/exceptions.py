"""
Custom Exceptions for LiveSync
==============================

Use these instead of generic Exception so callers can tell a dropped channel
from a slow server or a failed generation.

Usage:
    from livesync.exceptions import RequestTimeoutError, TransportError

    try:
        await correlator.emit("cancel_generation", {"projectId": project_id})
    except RequestTimeoutError as e:
        logger.warning(f"Cancel timed out: {e}")
"""

from typing import Optional, Any, Dict


class LiveSyncError(Exception):
    """Base exception for all LiveSync errors"""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Connection Errors
# ============================================

class ChannelConnectionError(LiveSyncError):
    """Initial connect or handshake failed"""

    def __init__(self, message: str = "Connection failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONNECTION_FAILED", details=details)


class AuthenticationError(ChannelConnectionError):
    """Server rejected the handshake with auth_error"""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message)
        self.code = "AUTH_FAILED"


class TransportError(LiveSyncError):
    """Channel is down or dropped mid-call"""

    def __init__(self, message: str = "Channel not connected", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="TRANSPORT_ERROR", details=details)


class RequestTimeoutError(LiveSyncError):
    """Correlated call got no reply in time"""

    def __init__(self, event: str, timeout: float):
        super().__init__(
            f"Event '{event}' timed out after {timeout:g}s",
            code="REQUEST_TIMEOUT",
            details={"event": event, "timeout": timeout}
        )


class ServerError(LiveSyncError):
    """Server acknowledged a request with an explicit error"""

    def __init__(self, message: str, event: Optional[str] = None):
        super().__init__(
            message,
            code="SERVER_ERROR",
            details={"event": event} if event else {}
        )


# ============================================
# Generation Errors
# ============================================

class GenerationError(LiveSyncError):
    """Service reported a generation failure"""

    def __init__(self, message: str = "Generation failed", status_code: Optional[int] = None):
        super().__init__(
            message,
            code="GENERATION_FAILED",
            details={"status_code": status_code} if status_code else {}
        )


class GenerationInProgressError(LiveSyncError):
    """A generation is already running for this project"""

    def __init__(self, project_id: str):
        super().__init__(
            f"Generation already in progress for project '{project_id}'",
            code="GENERATION_IN_PROGRESS",
            details={"project_id": project_id}
        )


# ============================================
# Validation Errors
# ============================================

class ValidationError(LiveSyncError):
    """Input validation failed"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field} if field else {}
        )

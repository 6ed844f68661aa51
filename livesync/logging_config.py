"""
LiveSync - Centralized Logging Configuration

Plain text on stderr for interactive use, JSON lines when
LIVESYNC_ENVIRONMENT=production. Every record carries the user, project and
channel session it was emitted under.
"""

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional


user_id_var: ContextVar[str] = ContextVar('user_id', default='')
project_id_var: ContextVar[str] = ContextVar('project_id', default='')
channel_sid_var: ContextVar[str] = ContextVar('channel_sid', default='')

# LogRecord attributes that are not user supplied extras
_RECORD_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


def set_user_id(user_id: str) -> None:
    user_id_var.set(user_id or '')


def set_project_id(project_id: str) -> None:
    project_id_var.set(project_id or '')


def set_channel_sid(sid: Optional[str]) -> None:
    """Server-assigned id of the current channel"""
    channel_sid_var.set(sid or '')


def log_context() -> Dict[str, str]:
    """Non-empty context values for the current task"""
    context = {
        "user_id": user_id_var.get(),
        "project_id": project_id_var.get(),
        "channel_sid": channel_sid_var.get(),
    }
    return {key: value for key, value in context.items() if value}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with context and extras flattened in"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(log_context())

        if record.exc_info and record.exc_info[0]:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and not key.startswith('_') and key not in entry:
                entry[key] = value

        return json.dumps(entry, default=str)


class ContextualFormatter(logging.Formatter):
    """Readable lines with user/project/channel placeholders filled in"""

    def format(self, record: logging.LogRecord) -> str:
        record.user_id = user_id_var.get() or '-'
        record.project_id = project_id_var.get() or '-'
        record.channel_sid = channel_sid_var.get() or '-'
        return super().format(record)


class LiveSyncLogger(logging.Logger):
    """
    Logger with helpers for the two lifecycles worth tracing: the channel and
    generation sessions.
    """

    def log_connection_event(self, event: str, state: str, attempt: int = 0,
                             level: int = logging.INFO, **kwargs) -> None:
        """Channel transition, e.g. established, lost, reconnecting, gave_up"""
        suffix = f" [attempt {attempt}]" if attempt else ""
        self.log(
            level,
            f"Channel {event} -> {state}{suffix}",
            extra={
                "event_type": "connection",
                "connection_event": event,
                "connection_state": state,
                "attempt": attempt,
                **kwargs
            }
        )

    def log_generation_event(self, project_id: str, event: str,
                             progress: int = 0, **kwargs) -> None:
        """Generation session transition for one project"""
        suffix = f" at {progress}%" if progress else ""
        self.info(
            f"Generation {event} [{project_id}]{suffix}",
            extra={
                "event_type": "generation",
                "generation_event": event,
                "generation_project": project_id,
                "progress": progress,
                **kwargs
            }
        )

    def log_error_with_context(self, error: Exception, context: Optional[str] = None,
                               **kwargs) -> None:
        """Unexpected exception, logged with traceback"""
        self.error(
            f"{type(error).__name__} in {context or 'livesync'}: {error}",
            exc_info=error,
            extra={
                "event_type": "error",
                "error_type": type(error).__name__,
                "error_context": context,
                **kwargs
            }
        )


def setup_logging(
    level: Optional[str] = None,
    environment: Optional[str] = None,
    log_file: Optional[str] = None
) -> LiveSyncLogger:
    """
    Configure the ``livesync`` logger.

    Arguments fall back to LIVESYNC_LOG_LEVEL, LIVESYNC_ENVIRONMENT and
    LIVESYNC_LOG_FILE.
    """
    level = level or os.environ.get("LIVESYNC_LOG_LEVEL", "INFO")
    environment = environment or os.environ.get("LIVESYNC_ENVIRONMENT", "development")
    log_file = log_file or os.environ.get("LIVESYNC_LOG_FILE")
    structured = environment == "production"

    logging.setLoggerClass(LiveSyncLogger)
    logger = logging.getLogger("livesync")
    logger.__class__ = LiveSyncLogger
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False
    logger.handlers.clear()

    if structured:
        console_formatter = file_formatter = JSONFormatter()
    else:
        console_formatter = ContextualFormatter("%(levelname)-8s | %(message)s")
        file_formatter = ContextualFormatter(
            "%(asctime)s | %(levelname)-8s | %(user_id)s | %(project_id)s | "
            "%(channel_sid)s | %(funcName)s:%(lineno)d | %(message)s"
        )

    # stderr keeps stdout free for CLI output; interactive runs only show problems
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.INFO if structured else logging.WARNING)
    console.setFormatter(console_formatter)
    logger.addHandler(console)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=3)
        rotating.setLevel(logging.DEBUG)
        rotating.setFormatter(file_formatter)
        logger.addHandler(rotating)

    for noisy in ("websockets", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger


logger: LiveSyncLogger = setup_logging()


__all__ = [
    'logger',
    'setup_logging',
    'log_context',
    'set_user_id',
    'set_project_id',
    'set_channel_sid',
    'LiveSyncLogger',
]

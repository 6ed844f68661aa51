"""
Conversation History Cache - Ordered conversation turns per project

The cache is seeded from the history service when a project is opened and is
appended to locally on every completed generation. Durable persistence happens
server-side.
"""

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from livesync.exceptions import ValidationError
from livesync.logging_config import logger


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def _now_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


@dataclass
class Message:
    """A conversation turn"""
    id: str
    role: MessageRole
    content: str
    timestamp: str
    artifact: Optional[str] = None
    tokens_used: int = 0
    response_time_ms: Optional[int] = None
    conversation_id: Optional[str] = None

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(
            id=f"user-{uuid.uuid4().hex[:12]}",
            role=MessageRole.USER,
            content=content,
            timestamp=_now_iso(),
        )

    @classmethod
    def assistant(
        cls,
        content: str,
        artifact: Optional[str] = None,
        tokens_used: int = 0,
        response_time_ms: Optional[int] = None,
        conversation_id: Optional[str] = None
    ) -> "Message":
        return cls(
            id=f"ai-{uuid.uuid4().hex[:12]}",
            role=MessageRole.ASSISTANT,
            content=content,
            timestamp=_now_iso(),
            artifact=artifact,
            tokens_used=tokens_used,
            response_time_ms=response_time_ms,
            conversation_id=conversation_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        data = dict(data)
        data["role"] = MessageRole(data["role"])
        return cls(**data)


class HistoryProvider(ABC):
    """Source of stored conversations for a project"""

    @abstractmethod
    async def fetch_conversations(self, project_id: str) -> List[Dict[str, Any]]:
        """
        Return stored conversations oldest first. Each row has
        user_message, ai_response and optionally id, generated_code,
        tokens_used, response_time_ms, created_at.
        """
        pass


class ConversationHistoryCache:
    """
    Append-only message lists keyed by project id.

    Usage:
        cache = ConversationHistoryCache()
        await cache.load("p1", provider)
        cache.append_user("p1", "make a landing page")
        context = cache.as_context("p1")
    """

    def __init__(self):
        self._messages: Dict[str, List[Message]] = {}

    def has_project(self, project_id: str) -> bool:
        return project_id in self._messages

    def projects(self) -> List[str]:
        return list(self._messages)

    async def load(self, project_id: str, provider: HistoryProvider) -> List[Message]:
        """Seed the cache for a project from the history service"""
        conversations = await provider.fetch_conversations(project_id)
        return self.seed(project_id, conversations)

    def seed(self, project_id: str, conversations: List[Dict[str, Any]]) -> List[Message]:
        """
        Replace the cached messages for a project with stored conversations.

        Each stored conversation becomes a user message followed by the
        assistant reply.
        """
        self._require_project(project_id)

        messages: List[Message] = []
        for conv in conversations:
            conv_id = conv.get("id")
            created_at = conv.get("created_at") or _now_iso()
            key = conv_id if conv_id is not None else uuid.uuid4().hex[:12]

            messages.append(Message(
                id=f"user-{key}",
                role=MessageRole.USER,
                content=conv.get("user_message", ""),
                timestamp=created_at,
            ))
            messages.append(Message(
                id=f"ai-{key}",
                role=MessageRole.ASSISTANT,
                content=conv.get("ai_response", ""),
                timestamp=created_at,
                artifact=conv.get("generated_code"),
                tokens_used=conv.get("tokens_used") or 0,
                response_time_ms=conv.get("response_time_ms"),
                conversation_id=str(conv_id) if conv_id is not None else None,
            ))

        self._messages[project_id] = messages
        logger.info(f"Loaded {len(conversations)} conversation(s) for project {project_id}")
        return list(messages)

    def append(self, project_id: str, message: Message) -> Message:
        self._require_project(project_id)
        self._messages.setdefault(project_id, []).append(message)
        return message

    def append_user(self, project_id: str, content: str) -> Message:
        return self.append(project_id, Message.user(content))

    def append_assistant(self, project_id: str, content: str, **kwargs) -> Message:
        return self.append(project_id, Message.assistant(content, **kwargs))

    def messages(self, project_id: str) -> List[Message]:
        return list(self._messages.get(project_id, []))

    def last_user_message(self, project_id: str) -> Optional[Message]:
        for message in reversed(self._messages.get(project_id, [])):
            if message.role == MessageRole.USER:
                return message
        return None

    def as_context(self, project_id: str, before: Optional[str] = None) -> List[Dict[str, str]]:
        """
        Role/content pairs to send as conversationHistory.

        Args:
            before: message id; only messages preceding it are included
        """
        context = []
        for message in self._messages.get(project_id, []):
            if before is not None and message.id == before:
                break
            context.append({"role": message.role.value, "content": message.content})
        return context

    def stats(self, project_id: str) -> Dict[str, Any]:
        """Chat statistics for a project"""
        messages = self._messages.get(project_id, [])
        user_messages = [m for m in messages if m.role == MessageRole.USER]
        ai_messages = [m for m in messages if m.role == MessageRole.ASSISTANT]
        timed = [m.response_time_ms for m in ai_messages if m.response_time_ms]

        return {
            "total_messages": len(messages),
            "user_messages": len(user_messages),
            "ai_messages": len(ai_messages),
            "total_tokens": sum(m.tokens_used or 0 for m in messages),
            "avg_response_time_ms": sum(timed) / len(ai_messages) if ai_messages else 0,
            "conversation_turns": len(ai_messages),
        }

    def export_history(self, project_id: str) -> Dict[str, Any]:
        """Serializable snapshot of a project's conversation"""
        return {
            "projectId": project_id,
            "exportedAt": _now_iso(),
            "messages": [
                {
                    "role": m.role.value,
                    "content": m.content,
                    "timestamp": m.timestamp,
                    "tokensUsed": m.tokens_used,
                    "responseTime": m.response_time_ms,
                }
                for m in self._messages.get(project_id, [])
            ],
        }

    def export_to_file(self, project_id: str, path: Optional[str] = None) -> Path:
        """Write the snapshot as JSON and return the file path"""
        snapshot = self.export_history(project_id)
        target = Path(path) if path else Path(
            f"conversation-{project_id}-{int(datetime.utcnow().timestamp())}.json"
        )
        target.parent.mkdir(parents=True, exist_ok=True)

        with open(target, 'w') as f:
            json.dump(snapshot, f, indent=2)

        logger.info(f"Exported {len(snapshot['messages'])} message(s) to {target}")
        return target

    @staticmethod
    def _require_project(project_id: str) -> None:
        if not project_id:
            raise ValidationError("project_id is required", field="project_id")

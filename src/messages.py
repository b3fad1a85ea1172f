"""
Chat Message Module

Append-only conversation history for knowledge-base chats.

- Session ids are random, ``session_<32 hex chars>``
- Messages are immutable once written
- The caller IP is only stored when the knowledge base opts in
- Old messages are removed by an age-based retention job

Usage:
    service = MessageService(repository)
    session_id = generate_session_id()
    service.save_exchange(kb, session_id, "Hi", "Hello!", user_id=None)
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any, Literal

from src.models import KnowledgeBase, new_id, utcnow

logger = logging.getLogger(__name__)


SESSION_ID_PATTERN = re.compile(r"^session_[0-9a-f]{32}$")


def generate_session_id() -> str:
    """Mint a new random session id."""
    return f"session_{uuid.uuid4().hex}"


def is_valid_session_id(session_id: Optional[str]) -> bool:
    return bool(session_id) and SESSION_ID_PATTERN.match(session_id) is not None


def trim_history(history: Optional[List[Dict[str, str]]], max_turns: int) -> List[Dict[str, str]]:
    """
    Keep the most recent ``max_turns`` history entries.

    Entries without a user/assistant role or with empty content are dropped.
    """
    cleaned = [
        {"role": item["role"], "content": item["content"]}
        for item in (history or [])
        if item.get("role") in ("user", "assistant") and item.get("content")
    ]
    if max_turns <= 0:
        return []
    return cleaned[-max_turns:]


@dataclass(frozen=True)
class ChatMessage:
    """
    A single persisted chat turn.

    Attributes:
        knowledge_base_id: Knowledge base the chat belongs to
        session_id: Groups a visitor's turns
        role: "user" or "assistant"
        content: The message text
        user_id: Authenticated user, or None for anonymous visitors
        created_at: Write time
        metadata: model, response_time, sources, user_agent, ip_address
    """
    knowledge_base_id: str
    session_id: str
    role: Literal["user", "assistant"]
    content: str
    user_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "knowledge_base_id": self.knowledge_base_id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            id=data["id"],
            knowledge_base_id=data["knowledge_base_id"],
            session_id=data["session_id"],
            user_id=data.get("user_id"),
            role=data["role"],
            content=data["content"],
            created_at=created_at or utcnow(),
            metadata=dict(data.get("metadata", {})),
        )


class MessageService:
    """
    Writes and reads chat history through the repository.

    The service never edits a stored message; history only grows until the
    retention job removes whole messages by age.
    """

    def __init__(self, repository, retention_days: int = 90, store_ip_default: bool = False):
        self.repository = repository
        self.retention_days = retention_days
        self.store_ip_default = store_ip_default

    def _should_store_ip(self, knowledge_base: Optional[KnowledgeBase]) -> bool:
        if knowledge_base is None:
            return self.store_ip_default
        return knowledge_base.store_ip_address

    def save_message(
        self,
        knowledge_base: KnowledgeBase,
        session_id: str,
        role: str,
        content: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> ChatMessage:
        """Persist one message, dropping the IP unless the knowledge base allows it."""
        metadata = {k: v for k, v in (metadata or {}).items() if v is not None}
        if ip_address and self._should_store_ip(knowledge_base):
            metadata["ip_address"] = ip_address

        message = ChatMessage(
            knowledge_base_id=knowledge_base.id,
            session_id=session_id,
            role=role,  # type: ignore
            content=content,
            user_id=user_id,
            metadata=metadata,
        )
        self.repository.save_message(message)
        return message

    def save_exchange(
        self,
        knowledge_base: KnowledgeBase,
        session_id: str,
        user_message: str,
        assistant_message: str,
        user_id: Optional[str] = None,
        model: Optional[str] = None,
        sources: Optional[List[Dict[str, Any]]] = None,
        response_time: Optional[float] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        error: Optional[str] = None,
    ) -> List[ChatMessage]:
        """Persist the user turn followed by the assistant turn."""
        user_turn = self.save_message(
            knowledge_base,
            session_id,
            "user",
            user_message,
            user_id=user_id,
            metadata={"user_agent": user_agent},
            ip_address=ip_address,
        )
        assistant_turn = self.save_message(
            knowledge_base,
            session_id,
            "assistant",
            assistant_message,
            user_id=user_id,
            metadata={
                "model": model,
                "sources": sources,
                "response_time": response_time,
                "user_agent": user_agent,
                "error": error,
            },
            ip_address=ip_address,
        )
        logger.debug(f"Saved exchange for session {session_id} on {knowledge_base.id}")
        return [user_turn, assistant_turn]

    def get_messages(
        self,
        knowledge_base_id: str,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ChatMessage]:
        return self.repository.get_messages(
            knowledge_base_id,
            session_id=session_id,
            user_id=user_id,
            limit=limit,
            offset=offset,
            start=start,
            end=end,
        )

    def get_sessions(self, knowledge_base_id: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Summarize sessions: id, message count, first and last message time.

        Most recently active sessions come first.
        """
        return self.repository.get_sessions(knowledge_base_id, user_id=user_id)

    def count(self, knowledge_base_id: str) -> int:
        return self.repository.count_messages(knowledge_base_id)

    def delete_old_messages(self, retention_days: Optional[int] = None) -> int:
        """Delete every message older than the retention window."""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        deleted = self.repository.delete_messages_before(cutoff)
        logger.info(f"Deleted {deleted} messages older than {days} days")
        return deleted

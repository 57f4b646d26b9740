"""Session and message records for the live console conversation state."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

DEFAULT_MESSAGE_TYPE = "text"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return uuid4().hex


class MessageRole(str, Enum):
    """Closed set of speakers allowed in a session transcript."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


ALLOWED_ROLES = frozenset(role.value for role in MessageRole)


class Message(BaseModel):
    role: MessageRole
    content: str = Field(min_length=1)
    type: str = DEFAULT_MESSAGE_TYPE
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)


class MessageInput(BaseModel):
    """Untrusted message payload; validated by the session service before use."""
    role: Optional[str] = None
    content: Optional[str] = None
    type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SessionCreateOptions(BaseModel):
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


class Session(BaseModel):
    session_id: str = Field(default_factory=new_session_id)
    conversation_id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    preferences: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    messages: List[Message] = Field(default_factory=list)

    @property
    def is_anonymous(self) -> bool:
        return not self.user_id

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None


class SessionStats(BaseModel):
    message_count: int
    age_in_hours: float
    last_activity_minutes_ago: float

    @classmethod
    def for_session(cls, session: Session, now: Optional[datetime] = None) -> "SessionStats":
        now = now or utcnow()
        return cls(
            message_count=len(session.messages),
            age_in_hours=(now - session.created_at).total_seconds() / 3600,
            last_activity_minutes_ago=(now - session.last_activity_at).total_seconds() / 60,
        )

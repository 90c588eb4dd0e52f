"""Data model for sessions, turns and completion payloads."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    @classmethod
    def coerce(cls, value: object) -> "TurnRole":
        """Map arbitrary role labels onto a known role, defaulting to user."""
        if isinstance(value, TurnRole):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.USER


@dataclass
class ConversationSession:
    owner_id: str
    tenant_id: str
    title: str
    model_name: str = "gpt-3.5-turbo"
    system_directive: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "tenant_id": self.tenant_id,
            "title": self.title,
            "model_name": self.model_name,
            "system_directive": self.system_directive,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "message_count": self.message_count,
        }


@dataclass
class Turn:
    """One role-tagged message within a session.

    ``id`` and ``created_at`` are assigned by the store when the turn is
    appended; until then they are ``None``.
    """

    session_id: str
    role: TurnRole
    content: str
    author_id: Optional[str] = None
    model_name: Optional[str] = None
    token_count: Optional[int] = None
    is_deleted: bool = False
    is_edited: bool = False
    is_truncated: bool = False
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "author_id": self.author_id,
            "role": self.role.value,
            "content": self.content,
            "model_name": self.model_name,
            "token_count": self.token_count,
            "is_deleted": self.is_deleted,
            "is_edited": self.is_edited,
            "is_truncated": self.is_truncated,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class PromptMessage:
    role: TurnRole
    content: str

    def to_wire(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: str
    description: str = ""
    context_window: int = 4096
    supports_streaming: bool = True
    is_available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "description": self.description,
            "context_window": self.context_window,
            "supports_streaming": self.supports_streaming,
            "is_available": self.is_available,
        }


@dataclass
class CompletionRequest:
    session_id: str
    message: str
    model_name: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionResult:
    message_id: str
    content: str
    model_used: Optional[str]
    token_count: Optional[int]
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ExchangeResult:
    session_id: str
    user_turn: Turn
    assistant_turn: Turn

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_message": self.user_turn.to_dict(),
            "assistant_message": self.assistant_turn.to_dict(),
        }

"""Persistence collaborator for sessions and turns."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta
from typing import Dict, List, Optional, Protocol

from .models import ConversationSession, Turn, new_id, utcnow

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    """Storage operations the conversation service relies on."""

    async def get_session(self, session_id: str) -> Optional[ConversationSession]:
        ...

    async def add_session(self, session: ConversationSession) -> ConversationSession:
        ...

    async def update_session(self, session: ConversationSession) -> ConversationSession:
        ...

    async def touch_session(self, session_id: str) -> Optional[ConversationSession]:
        """Bump ``updated_at`` and ``message_count`` only; inactive sessions are left alone."""
        ...

    async def list_sessions(self, owner_id: str) -> List[ConversationSession]:
        ...

    async def list_turns(self, session_id: str) -> List[Turn]:
        ...

    async def append_turn(self, turn: Turn) -> Turn:
        """Durably store one turn; assigns ``id`` and timestamps."""
        ...


class InMemoryConversationStore:
    """Process-local store keeping sessions and turns in dictionaries.

    Turn timestamps within a session are strictly increasing: if the clock
    has not advanced past the previous turn, the new turn is stamped one
    microsecond after it.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, ConversationSession] = {}
        self._turns: Dict[str, List[Turn]] = {}

    async def get_session(self, session_id: str) -> Optional[ConversationSession]:
        session = self._sessions.get(session_id)
        return replace(session) if session else None

    async def add_session(self, session: ConversationSession) -> ConversationSession:
        if session.id in self._sessions:
            raise ValueError(f"Session '{session.id}' already exists")
        self._sessions[session.id] = replace(session)
        self._turns.setdefault(session.id, [])
        return replace(session)

    async def update_session(self, session: ConversationSession) -> ConversationSession:
        if session.id not in self._sessions:
            raise KeyError(f"No session stored under '{session.id}'")
        stored = replace(session, message_count=self._live_count(session.id))
        self._sessions[session.id] = stored
        return replace(stored)

    async def touch_session(self, session_id: str) -> Optional[ConversationSession]:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"No session stored under '{session_id}'")
        if not session.is_active:
            return None
        session.updated_at = utcnow()
        session.message_count = self._live_count(session_id)
        return replace(session)

    async def list_sessions(self, owner_id: str) -> List[ConversationSession]:
        return [replace(s) for s in self._sessions.values() if s.owner_id == owner_id]

    async def list_turns(self, session_id: str) -> List[Turn]:
        return [replace(t) for t in self._turns.get(session_id, [])]

    async def append_turn(self, turn: Turn) -> Turn:
        if turn.session_id not in self._sessions:
            raise KeyError(f"No session stored under '{turn.session_id}'")
        history = self._turns.setdefault(turn.session_id, [])
        created = utcnow()
        if history and history[-1].created_at and created <= history[-1].created_at:
            created = history[-1].created_at + timedelta(microseconds=1)
        stored = replace(turn, id=turn.id or new_id(), created_at=created, updated_at=created)
        history.append(stored)
        session = self._sessions[turn.session_id]
        session.message_count = self._live_count(turn.session_id)
        logger.debug("Stored %s turn %s in session %s", stored.role.value, stored.id, stored.session_id)
        return replace(stored)

    def _live_count(self, session_id: str) -> int:
        return sum(1 for t in self._turns.get(session_id, []) if not t.is_deleted)

"""Exception taxonomy for conversation exchanges."""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .models import Turn


class ConversationError(Exception):
    """Base class for all errors raised by the conversation module."""


class ValidationFailure(ConversationError):
    """Bad input or a session the caller may not use. Never retried."""


class SessionNotFound(ValidationFailure):
    """Session is missing, deleted, or not owned by the caller."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' not found or access denied")
        self.session_id = session_id


class BackendUnavailable(ConversationError):
    """Transport failure or non-success status from a completion backend."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NoCompletionProduced(ConversationError):
    """The backend answered successfully but returned zero choices."""


class PersistenceFailure(ConversationError):
    """The assistant reply was generated but could not be stored.

    ``content`` holds the generated text so callers can still show it;
    ``user_turn`` is the turn that was already committed for the exchange.
    """

    def __init__(self, message: str, *, content: str, user_turn: "Turn") -> None:
        super().__init__(message)
        self.content = content
        self.user_turn = user_turn

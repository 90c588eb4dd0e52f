"""Conversation module for streaming chat completions with durable history.

This package assembles a session's history into a prompt, routes it to one of
several pluggable completion backends (an OpenAI-compatible HTTP endpoint by
default), and records both sides of every exchange with token counts. The
primary entry points are ``conversation_module.api.create_app`` for running
the HTTP service and ``conversation_module.service.ConversationService`` for
embedding the engine directly into Python code.
"""

from .config import BackendConfig, ConversationConfig
from .errors import (
    BackendUnavailable,
    ConversationError,
    NoCompletionProduced,
    PersistenceFailure,
    SessionNotFound,
    ValidationFailure,
)
from .llm_client import RemoteTextBackend
from .orchestrator import BackendRegistry, CompletionOrchestrator, StaticCredentialResolver
from .service import ConversationService
from .store import InMemoryConversationStore

__all__ = [
    "BackendConfig",
    "BackendRegistry",
    "BackendUnavailable",
    "CompletionOrchestrator",
    "ConversationConfig",
    "ConversationError",
    "ConversationService",
    "InMemoryConversationStore",
    "NoCompletionProduced",
    "PersistenceFailure",
    "RemoteTextBackend",
    "SessionNotFound",
    "StaticCredentialResolver",
    "ValidationFailure",
]

"""High level orchestration for conversation exchanges with streaming and persistence."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple

from .assembler import ConversationAssembler
from .config import ConversationConfig
from .errors import ConversationError, PersistenceFailure, SessionNotFound, ValidationFailure
from .models import (
    CompletionRequest,
    ConversationSession,
    ExchangeResult,
    ModelInfo,
    PromptMessage,
    Turn,
    TurnRole,
    utcnow,
)
from .orchestrator import CompletionOrchestrator
from .store import ConversationStore

logger = logging.getLogger(__name__)

DeltaSink = Callable[[str], Awaitable[None]]


class ExchangeState(str, Enum):
    IDLE = "idle"
    VALIDATING_SESSION = "validating_session"
    PERSISTING_USER_TURN = "persisting_user_turn"
    ASSEMBLING_CONTEXT = "assembling_context"
    AWAITING_BACKEND = "awaiting_backend"
    STREAMING_DELTAS = "streaming_deltas"
    RECEIVING_WHOLE_REPLY = "receiving_whole_reply"
    PERSISTING_ASSISTANT_TURN = "persisting_assistant_turn"
    UPDATING_SESSION_METADATA = "updating_session_metadata"
    DONE = "done"
    SESSION_NOT_FOUND = "session_not_found"
    BACKEND_FAILURE = "backend_failure"
    CANCELLED = "cancelled"


@dataclass
class StreamingExchange:
    """Filled in by :meth:`ConversationService.iter_message` as the exchange progresses."""

    session_id: str
    state: ExchangeState = ExchangeState.IDLE
    user_turn: Optional[Turn] = None
    assistant_turn: Optional[Turn] = None
    delivered: int = 0


class ConversationService:
    """Core conversation engine used by both the API and direct Python consumers.

    The user turn is written before the backend is called and is kept even if
    the backend then fails, so the record shows every message a user sent.
    """

    def __init__(
        self,
        orchestrator: CompletionOrchestrator,
        store: ConversationStore,
        config: Optional[ConversationConfig] = None,
        *,
        assembler: Optional[ConversationAssembler] = None,
    ) -> None:
        self.config = config or ConversationConfig()
        self.orchestrator = orchestrator
        self.store = store
        self.assembler = assembler or ConversationAssembler()

    # ---------- Sessions ----------
    async def create_session(
        self,
        owner_id: str,
        tenant_id: str,
        title: str,
        *,
        model_name: Optional[str] = None,
        system_directive: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ConversationSession:
        if not title or not title.strip():
            raise ValidationFailure("title is required")
        model = model_name or self.config.default_model
        if not self.orchestrator.is_model_available(tenant_id, model):
            raise ValidationFailure(f"Model '{model}' is not available")

        session = ConversationSession(
            owner_id=owner_id,
            tenant_id=tenant_id,
            title=title.strip(),
            model_name=model,
            system_directive=system_directive,
            temperature=self.config.default_temperature if temperature is None else temperature,
            max_tokens=max_tokens or self.config.default_max_tokens,
        )
        session = await self.store.add_session(session)
        logger.info("Created session %s for user %s (model %s)", session.id, owner_id, model)
        return session

    async def get_session(self, session_id: str, user_id: str) -> ConversationSession:
        return await self._owned_session(session_id, user_id)

    async def list_sessions(self, owner_id: str) -> List[ConversationSession]:
        """Return the caller's active sessions, most recently updated first."""
        sessions = [s for s in await self.store.list_sessions(owner_id) if s.is_active]
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    async def update_session(
        self,
        session_id: str,
        user_id: str,
        *,
        title: Optional[str] = None,
        model_name: Optional[str] = None,
        system_directive: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ConversationSession:
        session = await self._owned_session(session_id, user_id)
        if title:
            session.title = title
        if model_name:
            if not self.orchestrator.is_model_available(session.tenant_id, model_name):
                raise ValidationFailure(f"Model '{model_name}' is not available")
            session.model_name = model_name
        if system_directive:
            session.system_directive = system_directive
        if temperature is not None:
            session.temperature = temperature
        if max_tokens is not None:
            session.max_tokens = max_tokens
        session.updated_at = utcnow()
        return await self.store.update_session(session)

    async def delete_session(self, session_id: str, user_id: str) -> None:
        """Tombstone the session; its turns stay in the store."""
        session = await self._owned_session(session_id, user_id)
        session.is_active = False
        session.updated_at = utcnow()
        await self.store.update_session(session)
        logger.info("Deleted session %s", session_id)

    async def get_turns(
        self,
        session_id: str,
        user_id: str,
        *,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> List[Turn]:
        await self._owned_session(session_id, user_id)
        size = page_size or self.config.default_page_size
        if page < 1 or size < 1:
            raise ValidationFailure("page and page_size must be positive")
        turns = [t for t in await self.store.list_turns(session_id) if not t.is_deleted]
        start = (page - 1) * size
        return turns[start : start + size]

    def list_models(self, tenant_id: str) -> List[ModelInfo]:
        return self.orchestrator.list_models(tenant_id)

    # ---------- Exchanges ----------
    async def send_message(self, session_id: str, user_id: str, message: str) -> ExchangeResult:
        """Send ``message`` and wait for the whole reply."""
        exchange = StreamingExchange(session_id=session_id)
        session, user_turn, context, request = await self._begin_exchange(exchange, user_id, message)

        self._transition(exchange, ExchangeState.AWAITING_BACKEND)
        try:
            result = await self.orchestrator.generate(session.tenant_id, request, context)
        except ConversationError:
            self._transition(exchange, ExchangeState.BACKEND_FAILURE)
            logger.exception("Completion failed for session %s; user turn %s kept", session_id, user_turn.id)
            raise
        self._transition(exchange, ExchangeState.RECEIVING_WHOLE_REPLY)

        assistant_turn = await self._finish_exchange(exchange, session, user_turn, result.content)
        return ExchangeResult(session_id=session_id, user_turn=user_turn, assistant_turn=assistant_turn)

    async def stream_message(self, session_id: str, user_id: str, message: str, sink: DeltaSink) -> Optional[Turn]:
        """Forward each delta to ``sink`` as it arrives and return the stored reply.

        The next delta is not read until ``sink`` returns.
        """
        exchange = StreamingExchange(session_id=session_id)
        deltas = self.iter_message(session_id, user_id, message, exchange=exchange)
        try:
            async for delta in deltas:
                await sink(delta)
        finally:
            await deltas.aclose()
        return exchange.assistant_turn

    async def iter_message(
        self,
        session_id: str,
        user_id: str,
        message: str,
        *,
        exchange: Optional[StreamingExchange] = None,
    ) -> AsyncIterator[str]:
        """Yield reply deltas; the assistant turn is stored once the stream ends.

        If the consumer stops early or the task is cancelled, the partial
        reply is dropped unless ``persist_partial_on_cancel`` is set, in which
        case it is stored with ``is_truncated=True``.
        """
        exchange = exchange or StreamingExchange(session_id=session_id)
        session, user_turn, context, request = await self._begin_exchange(exchange, user_id, message)
        request.stream = True

        self._transition(exchange, ExchangeState.AWAITING_BACKEND)
        parts: List[str] = []
        stream = self.orchestrator.generate_streaming(session.tenant_id, request, context)
        try:
            async for delta in stream:
                if not parts:
                    self._transition(exchange, ExchangeState.STREAMING_DELTAS)
                parts.append(delta)
                exchange.delivered += 1
                yield delta
        except (asyncio.CancelledError, GeneratorExit):
            self._transition(exchange, ExchangeState.CANCELLED)
            await self._handle_interrupted(exchange, session, user_turn, "".join(parts))
            raise
        except ConversationError:
            self._transition(exchange, ExchangeState.BACKEND_FAILURE)
            logger.exception(
                "Streaming failed for session %s after %d delta(s); user turn %s kept",
                session_id,
                len(parts),
                user_turn.id,
            )
            raise
        finally:
            await stream.aclose()

        await self._finish_exchange(exchange, session, user_turn, "".join(parts))

    # ---------- Internals ----------
    async def _owned_session(self, session_id: str, user_id: str) -> ConversationSession:
        session = await self.store.get_session(session_id)
        if session is None or not session.is_active or session.owner_id != user_id:
            raise SessionNotFound(session_id)
        return session

    async def _begin_exchange(
        self,
        exchange: StreamingExchange,
        user_id: str,
        message: str,
    ) -> Tuple[ConversationSession, Turn, List[PromptMessage], CompletionRequest]:
        self._transition(exchange, ExchangeState.VALIDATING_SESSION)
        if not message or not message.strip():
            raise ValidationFailure("message is required")
        try:
            session = await self._owned_session(exchange.session_id, user_id)
        except SessionNotFound:
            self._transition(exchange, ExchangeState.SESSION_NOT_FOUND)
            raise
        prior_turns = await self.store.list_turns(session.id)

        self._transition(exchange, ExchangeState.PERSISTING_USER_TURN)
        token_count = await self.orchestrator.count_tokens(message, session.model_name)
        user_turn = await self.store.append_turn(
            Turn(
                session_id=session.id,
                role=TurnRole.USER,
                content=message,
                author_id=user_id,
                token_count=token_count,
            )
        )
        exchange.user_turn = user_turn

        self._transition(exchange, ExchangeState.ASSEMBLING_CONTEXT)
        context = self.assembler.context(session, prior_turns)
        request = CompletionRequest(
            session_id=session.id,
            message=message,
            model_name=session.model_name,
            temperature=session.temperature,
            max_tokens=session.max_tokens,
        )
        return session, user_turn, context, request

    async def _finish_exchange(
        self,
        exchange: StreamingExchange,
        session: ConversationSession,
        user_turn: Turn,
        content: str,
        *,
        truncated: bool = False,
    ) -> Turn:
        self._transition(exchange, ExchangeState.PERSISTING_ASSISTANT_TURN)
        token_count = await self.orchestrator.count_tokens(content, session.model_name)
        try:
            assistant_turn = await self.store.append_turn(
                Turn(
                    session_id=session.id,
                    role=TurnRole.ASSISTANT,
                    content=content,
                    model_name=session.model_name,
                    token_count=token_count,
                    is_truncated=truncated,
                )
            )
        except Exception as exc:
            logger.exception("Failed to store assistant reply for session %s", session.id)
            raise PersistenceFailure(
                f"Reply for session '{session.id}' was generated but not stored",
                content=content,
                user_turn=user_turn,
            ) from exc
        exchange.assistant_turn = assistant_turn

        self._transition(exchange, ExchangeState.UPDATING_SESSION_METADATA)
        try:
            await self.store.touch_session(session.id)
        except Exception:
            logger.exception("Failed to update metadata for session %s", session.id)

        self._transition(exchange, ExchangeState.DONE)
        logger.info(
            "Exchange complete for session %s (%d reply token(s)%s)",
            session.id,
            token_count,
            ", truncated" if truncated else "",
        )
        return assistant_turn

    async def _handle_interrupted(
        self,
        exchange: StreamingExchange,
        session: ConversationSession,
        user_turn: Turn,
        partial: str,
    ) -> None:
        if not self.config.persist_partial_on_cancel or not partial:
            logger.info(
                "Stream for session %s stopped after %d delta(s); partial reply discarded",
                session.id,
                exchange.delivered,
            )
            return
        try:
            await self._finish_exchange(exchange, session, user_turn, partial, truncated=True)
        except PersistenceFailure:
            logger.exception("Partial reply for session %s could not be stored", session.id)

    @staticmethod
    def _transition(exchange: StreamingExchange, state: ExchangeState) -> None:
        logger.debug("Session %s: %s -> %s", exchange.session_id, exchange.state.value, state.value)
        exchange.state = state

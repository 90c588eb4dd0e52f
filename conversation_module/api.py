"""FastAPI entry point for the conversation module."""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, validator
import uvicorn

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
from .utils import setup_logging

logger = logging.getLogger(__name__)


class CreateSessionRequest(BaseModel):
    title: str = Field(..., max_length=200)
    model: Optional[str] = Field(None, max_length=100)
    system_prompt: Optional[str] = Field(None, max_length=1000)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1, le=8000)

    @validator("title")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class UpdateSessionRequest(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    model: Optional[str] = Field(None, max_length=100)
    system_prompt: Optional[str] = Field(None, max_length=1000)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1, le=8000)


class MessageRequest(BaseModel):
    message: str = Field(..., description="User message to send to the model.")

    @validator("message")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class TokenCountRequest(BaseModel):
    text: str
    model: Optional[str] = Field(None, max_length=100)


def _http_error(exc: ConversationError) -> HTTPException:
    if isinstance(exc, SessionNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationFailure):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (BackendUnavailable, NoCompletionProduced)):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, PersistenceFailure):
        return HTTPException(status_code=500, detail={"message": str(exc), "content": exc.content})
    return HTTPException(status_code=500, detail="Chat request failed")


def build_service(config: Optional[ConversationConfig] = None) -> ConversationService:
    """Wire the default backend, registry, orchestrator and in-memory store."""
    config = config or ConversationConfig()
    registry = BackendRegistry()
    registry.register(RemoteTextBackend(config.backend))
    credentials = StaticCredentialResolver(config.backend.api_key or config.credential_placeholder)
    orchestrator = CompletionOrchestrator(registry, credentials=credentials, default_model=config.default_model)
    return ConversationService(orchestrator, InMemoryConversationStore(), config)


def create_app(
    config: Optional[ConversationConfig] = None,
    *,
    service: Optional[ConversationService] = None,
    log_dir: Optional[str] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    service = service or build_service(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        for backend in service.orchestrator.registry.backends:
            close = getattr(backend, "close", None)
            if close is not None:
                await close()

    app = FastAPI(title="Conversation Module", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/models")
    async def models(tenant_id: str = Header(..., alias="X-Tenant-Id")):
        return [m.to_dict() for m in app.state.service.list_models(tenant_id)]

    @app.post("/count-tokens")
    async def count_tokens(request: TokenCountRequest):
        count = await app.state.service.orchestrator.count_tokens(request.text, request.model)
        return {"count": count}

    @app.post("/sessions", status_code=201)
    async def create_session(
        request: CreateSessionRequest,
        user_id: str = Header(..., alias="X-User-Id"),
        tenant_id: str = Header(..., alias="X-Tenant-Id"),
    ):
        try:
            session = await app.state.service.create_session(
                user_id,
                tenant_id,
                request.title,
                model_name=request.model,
                system_directive=request.system_prompt,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        except ConversationError as exc:
            raise _http_error(exc) from exc
        return session.to_dict()

    @app.get("/sessions")
    async def list_sessions(user_id: str = Header(..., alias="X-User-Id")):
        return [s.to_dict() for s in await app.state.service.list_sessions(user_id)]

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str, user_id: str = Header(..., alias="X-User-Id")):
        try:
            session = await app.state.service.get_session(session_id, user_id)
        except ConversationError as exc:
            raise _http_error(exc) from exc
        return session.to_dict()

    @app.put("/sessions/{session_id}")
    async def update_session(
        session_id: str,
        request: UpdateSessionRequest,
        user_id: str = Header(..., alias="X-User-Id"),
    ):
        try:
            session = await app.state.service.update_session(
                session_id,
                user_id,
                title=request.title,
                model_name=request.model,
                system_directive=request.system_prompt,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        except ConversationError as exc:
            raise _http_error(exc) from exc
        return session.to_dict()

    @app.delete("/sessions/{session_id}", status_code=204)
    async def delete_session(session_id: str, user_id: str = Header(..., alias="X-User-Id")):
        try:
            await app.state.service.delete_session(session_id, user_id)
        except ConversationError as exc:
            raise _http_error(exc) from exc

    @app.get("/sessions/{session_id}/messages")
    async def get_messages(
        session_id: str,
        page: int = Query(1, ge=1),
        page_size: int = Query(50, ge=1, le=500),
        user_id: str = Header(..., alias="X-User-Id"),
    ):
        try:
            turns = await app.state.service.get_turns(session_id, user_id, page=page, page_size=page_size)
        except ConversationError as exc:
            raise _http_error(exc) from exc
        return [t.to_dict() for t in turns]

    @app.post("/sessions/{session_id}/messages")
    async def send_message(
        session_id: str,
        request: MessageRequest,
        user_id: str = Header(..., alias="X-User-Id"),
    ):
        try:
            result = await app.state.service.send_message(session_id, user_id, request.message)
        except ConversationError as exc:
            raise _http_error(exc) from exc
        except Exception as exc:
            logger.exception("Chat request failed")
            raise HTTPException(status_code=500, detail="Chat request failed") from exc
        return result.to_dict()

    @app.post("/sessions/{session_id}/messages/stream")
    async def stream_message(
        session_id: str,
        request: MessageRequest,
        user_id: str = Header(..., alias="X-User-Id"),
    ):
        deltas = app.state.service.iter_message(session_id, user_id, request.message)
        # Pull the first delta here so lookup and backend errors still get a status code.
        try:
            first: Optional[str] = await deltas.__anext__()
        except StopAsyncIteration:
            first = None
        except ConversationError as exc:
            await deltas.aclose()
            raise _http_error(exc) from exc

        async def body():
            try:
                if first is not None:
                    yield first
                async for delta in deltas:
                    yield delta
            except ConversationError:
                logger.exception("Stream for session %s ended with an error", session_id)
            finally:
                await deltas.aclose()

        return StreamingResponse(
            body(),
            media_type="text/plain",
            headers={"Cache-Control": "no-cache"},
        )

    return app


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the conversation service with streaming responses.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8004, help="Port to bind.")
    parser.add_argument("--log_dir", help="Directory for application logs.")
    parser.add_argument(
        "--llm_endpoint", default="https://api.openai.com/v1/chat/completions", help="Chat-completions endpoint."
    )
    parser.add_argument("--llm_provider", default="openai", help="Provider name reported in the model catalog.")
    parser.add_argument("--llm_model", default="gpt-3.5-turbo", help="Default model for new sessions.")
    parser.add_argument("--api_key", help="Credential sent to the backend for every tenant.")
    parser.add_argument("--request_timeout", type=int, default=60, help="Timeout for LLM calls (seconds).")
    parser.add_argument(
        "--persist_partial_on_cancel",
        action="store_true",
        help="Store a cancelled stream's partial reply as a truncated turn.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    config = ConversationConfig(
        backend=BackendConfig(
            endpoint=args.llm_endpoint,
            provider=args.llm_provider,
            api_key=args.api_key,
            request_timeout=args.request_timeout,
            default_model=args.llm_model,
        ),
        default_model=args.llm_model,
        persist_partial_on_cancel=args.persist_partial_on_cancel,
    )

    app = create_app(config, log_dir=args.log_dir)
    logger.info("Starting conversation service on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()

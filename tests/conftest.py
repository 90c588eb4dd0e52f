"""Shared fixtures for conversation module tests."""

from __future__ import annotations

import asyncio
import json
from typing import Callable, List, Optional, Sequence

import httpx
import pytest

from conversation_module.config import BackendConfig, ConversationConfig
from conversation_module.gateway import CompletionGateway
from conversation_module.llm_client import RemoteTextBackend
from conversation_module.models import CompletionResult, ModelInfo, new_id
from conversation_module.orchestrator import BackendRegistry, CompletionOrchestrator, StaticCredentialResolver
from conversation_module.service import ConversationService
from conversation_module.store import InMemoryConversationStore

ENDPOINT = "http://llm.test/v1/chat/completions"


class FakeBackend(CompletionGateway):
    """Scripted backend: fixed reply, fixed deltas, optional failure points."""

    def __init__(
        self,
        name: str = "fake",
        models: Sequence[str] = ("gpt-3.5-turbo",),
        *,
        reply: str = "Hi there",
        deltas: Sequence[str] = ("Hi", " there"),
        error: Optional[Exception] = None,
        fail_after: Optional[int] = None,
        hold: Optional[asyncio.Event] = None,
    ) -> None:
        self.name = name
        self._models = [ModelInfo(m, m.upper(), name) for m in models]
        self.reply = reply
        self.deltas = list(deltas)
        self.error = error
        self.fail_after = fail_after
        self.hold = hold
        self.calls: List[dict] = []

    def list_models(self):
        return list(self._models)

    async def generate(self, credential, request, prior_turns):
        self.calls.append({"credential": credential, "request": request, "prior": list(prior_turns)})
        if self.error is not None:
            raise self.error
        return CompletionResult(new_id(), self.reply, request.model_name, None)

    async def generate_streaming(self, credential, request, prior_turns):
        self.calls.append({"credential": credential, "request": request, "prior": list(prior_turns)})
        if self.error is not None and self.fail_after is None:
            raise self.error
        for index, delta in enumerate(self.deltas):
            if self.fail_after is not None and index == self.fail_after:
                raise self.error
            yield delta
        if self.hold is not None:
            await self.hold.wait()


def sse_body(*frames: str) -> bytes:
    """Render frames as a server-sent-events body."""
    return "".join(f"{frame}\n\n" for frame in frames).encode("utf-8")


def delta_frame(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]})


def make_remote_backend(handler: Callable[[httpx.Request], httpx.Response], **config) -> RemoteTextBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteTextBackend(BackendConfig(endpoint=ENDPOINT, **config), http_client=client)


def make_service(
    *backends: CompletionGateway,
    store: Optional[InMemoryConversationStore] = None,
    config: Optional[ConversationConfig] = None,
) -> ConversationService:
    registry = BackendRegistry()
    for backend in backends:
        registry.register(backend)
    orchestrator = CompletionOrchestrator(registry, credentials=StaticCredentialResolver("test-key"))
    return ConversationService(orchestrator, store or InMemoryConversationStore(), config)


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def service(backend, store):
    return make_service(backend, store=store)

"""Aggregate several completion backends behind one facade."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .errors import BackendUnavailable
from .gateway import CompletionGateway, estimate_tokens
from .models import CompletionRequest, CompletionResult, ModelInfo, PromptMessage

logger = logging.getLogger(__name__)

SelectionStrategy = Callable[[Sequence[CompletionGateway], str], Optional[CompletionGateway]]


def first_supporting(backends: Sequence[CompletionGateway], model_name: str) -> Optional[CompletionGateway]:
    """Pick the first registered backend that serves ``model_name``."""
    for backend in backends:
        if backend.supports_model(model_name):
            return backend
    return None


class CredentialResolver(Protocol):
    async def resolve(self, tenant_id: str, backend: CompletionGateway) -> str:
        ...


class StaticCredentialResolver:
    """Resolves credentials from a fixed mapping, falling back to a placeholder."""

    def __init__(self, placeholder: str = "placeholder-key", credentials: Optional[Mapping[str, str]] = None) -> None:
        self.placeholder = placeholder
        self.credentials = dict(credentials or {})

    async def resolve(self, tenant_id: str, backend: CompletionGateway) -> str:
        return self.credentials.get(tenant_id) or self.placeholder


class BackendRegistry:
    """Backends known to the process, with explicit model/tenant bindings.

    Lookup order for a model: tenant-specific binding, then model-wide
    binding, then the selection strategy over every registered backend in
    registration order.
    """

    def __init__(self, strategy: SelectionStrategy = first_supporting) -> None:
        self.strategy = strategy
        self._backends: Dict[str, CompletionGateway] = {}
        self._bindings: Dict[Tuple[Optional[str], str], str] = {}

    @property
    def backends(self) -> List[CompletionGateway]:
        return list(self._backends.values())

    def register(self, backend: CompletionGateway) -> CompletionGateway:
        if backend.name in self._backends:
            raise ValueError(f"Backend '{backend.name}' is already registered")
        self._backends[backend.name] = backend
        logger.info("Registered completion backend %s (%d model(s))", backend.name, len(backend.list_models()))
        return backend

    def get(self, name: str) -> CompletionGateway:
        try:
            return self._backends[name]
        except KeyError:
            raise KeyError(f"No backend registered under '{name}'") from None

    def bind(self, model_name: str, backend_name: str, *, tenant_id: Optional[str] = None) -> None:
        self.get(backend_name)
        self._bindings[(tenant_id, model_name.lower())] = backend_name

    def select(self, model_name: str, tenant_id: Optional[str] = None) -> Optional[CompletionGateway]:
        key = model_name.lower()
        scopes = (tenant_id, None) if tenant_id is not None else (None,)
        for scope in scopes:
            bound = self._bindings.get((scope, key))
            if bound:
                return self._backends[bound]
        return self.strategy(self.backends, model_name)


class CompletionOrchestrator:
    """Routes completion calls to a backend and merges their catalogs."""

    def __init__(
        self,
        registry: BackendRegistry,
        *,
        credentials: Optional[CredentialResolver] = None,
        default_model: str = "gpt-3.5-turbo",
    ) -> None:
        self.registry = registry
        self.credentials = credentials or StaticCredentialResolver()
        self.default_model = default_model

    def list_models(self, tenant_id: Optional[str] = None) -> List[ModelInfo]:
        seen = set()
        models: List[ModelInfo] = []
        for backend in self.registry.backends:
            for model in backend.list_models():
                if model.id.lower() in seen:
                    continue
                seen.add(model.id.lower())
                models.append(model)
        return models

    def is_model_available(self, tenant_id: str, model_name: str) -> bool:
        return self.registry.select(model_name, tenant_id) is not None

    async def _route(self, tenant_id: str, model_name: str) -> Tuple[CompletionGateway, str]:
        backend = self.registry.select(model_name, tenant_id)
        if backend is None:
            raise BackendUnavailable(f"No backend available for model '{model_name}'")
        credential = await self.credentials.resolve(tenant_id, backend)
        logger.debug("Routing model %s for tenant %s to backend %s", model_name, tenant_id, backend.name)
        return backend, credential

    async def generate(
        self,
        tenant_id: str,
        request: CompletionRequest,
        prior_turns: Sequence[PromptMessage] = (),
    ) -> CompletionResult:
        backend, credential = await self._route(tenant_id, request.model_name or self.default_model)
        return await backend.generate(credential, request, prior_turns)

    async def generate_streaming(
        self,
        tenant_id: str,
        request: CompletionRequest,
        prior_turns: Sequence[PromptMessage] = (),
    ) -> AsyncIterator[str]:
        backend, credential = await self._route(tenant_id, request.model_name or self.default_model)
        stream = backend.generate_streaming(credential, request, prior_turns)
        try:
            async for chunk in stream:
                yield chunk
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def count_tokens(self, text: str, model_name: Optional[str] = None) -> int:
        for backend in self.registry.backends:
            if not model_name or backend.supports_model(model_name):
                return await backend.count_tokens(text, model_name)
        return estimate_tokens(text)

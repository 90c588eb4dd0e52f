"""Capability contract every pluggable completion backend satisfies."""

from __future__ import annotations

import abc
import math
from typing import AsyncIterator, List, Optional, Sequence

from .models import CompletionRequest, CompletionResult, ModelInfo, PromptMessage


def estimate_tokens(text: str) -> int:
    """Rough token estimation (4 chars ~ 1 token), rounded up."""
    return math.ceil(len(text or "") / 4)


class CompletionGateway(abc.ABC):
    """Uniform interface over a remote text-generation service.

    ``prior_turns`` is the assembled context *without* the new user message;
    implementations append ``request.message`` as the final user turn.
    """

    name: str = "base"

    @abc.abstractmethod
    def list_models(self) -> List[ModelInfo]:
        """Return the static model catalog served by this backend."""

    @abc.abstractmethod
    async def generate(
        self,
        credential: str,
        request: CompletionRequest,
        prior_turns: Sequence[PromptMessage],
    ) -> CompletionResult:
        """Return the full reply in one unit."""

    @abc.abstractmethod
    def generate_streaming(
        self,
        credential: str,
        request: CompletionRequest,
        prior_turns: Sequence[PromptMessage],
    ) -> AsyncIterator[str]:
        """Return a single-use async iterator of text deltas."""

    async def count_tokens(self, text: str, model_name: Optional[str] = None) -> int:
        return estimate_tokens(text)

    def supports_model(self, model_name: str) -> bool:
        if not model_name:
            return False
        wanted = model_name.lower()
        return any(model.id.lower() == wanted for model in self.list_models())

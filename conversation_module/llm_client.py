"""HTTP backend for chat-completions endpoints with streaming support."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Sequence, Union

import httpx

from .config import BackendConfig
from .errors import BackendUnavailable, NoCompletionProduced
from .gateway import CompletionGateway
from .models import CompletionRequest, CompletionResult, ModelInfo, PromptMessage, new_id, utcnow

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

OPENAI_MODELS: List[ModelInfo] = [
    ModelInfo("gpt-4", "GPT-4", "openai", "Most capable GPT-4 model", 8192),
    ModelInfo("gpt-4-turbo", "GPT-4 Turbo", "openai", "GPT-4 Turbo with improved speed and cost", 128000),
    ModelInfo("gpt-4o", "GPT-4o", "openai", "GPT-4 Omni model", 128000),
    ModelInfo("gpt-4o-mini", "GPT-4o Mini", "openai", "Faster and cheaper GPT-4o", 128000),
    ModelInfo("gpt-3.5-turbo", "GPT-3.5 Turbo", "openai", "Fast and cost-effective model", 16385),
    ModelInfo("gpt-3.5-turbo-16k", "GPT-3.5 Turbo 16K", "openai", "GPT-3.5 with extended context", 16385),
]


# ---------- Stream frame results ----------
@dataclass(frozen=True)
class Delta:
    text: str


@dataclass(frozen=True)
class Skip:
    reason: str
    raw: str = ""


@dataclass(frozen=True)
class End:
    pass


@dataclass(frozen=True)
class FrameError:
    message: str


FrameResult = Union[Delta, Skip, End, FrameError]


def parse_frame(raw_line: Union[str, bytes]) -> FrameResult:
    """Classify one line of a streamed completion body."""
    if isinstance(raw_line, bytes):
        raw_line = raw_line.decode("utf-8", errors="replace")
    line = raw_line.strip()
    if not line:
        return Skip("blank")
    if not line.startswith(DATA_PREFIX):
        return Skip("no data marker", line)

    data = line[len(DATA_PREFIX):].strip()
    if data == DONE_SENTINEL:
        return End()

    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return Skip("invalid json", data)
    if not isinstance(payload, dict):
        return Skip("unexpected payload shape", data)

    error = payload.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        return FrameError(message or "backend reported an error")

    choices = payload.get("choices") or []
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return Skip("no choices", data)
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    if not content:
        return Skip("empty delta", data)
    return Delta(str(content))


class RemoteTextBackend(CompletionGateway):
    """Talks to an OpenAI-compatible chat-completions endpoint over HTTP.

    A single ``httpx.AsyncClient`` is shared by every request made through the
    backend. Pass ``http_client`` to supply one (tests use a mock transport);
    otherwise the backend creates and owns it.
    """

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        *,
        models: Optional[Sequence[ModelInfo]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or BackendConfig()
        self.name = self.config.provider
        catalog = list(models) if models is not None else list(OPENAI_MODELS)
        if not any(m.id.lower() == self.config.default_model.lower() for m in catalog):
            catalog.append(ModelInfo(self.config.default_model, self.config.default_model, self.config.provider))
        self._models = catalog
        self._client = http_client
        self._owns_client = http_client is None

    def list_models(self) -> List[ModelInfo]:
        return list(self._models)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout)
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _build_payload(
        self,
        request: CompletionRequest,
        prior_turns: Sequence[PromptMessage],
        *,
        stream: bool,
    ) -> Dict[str, object]:
        messages = [turn.to_wire() for turn in prior_turns]
        messages.append({"role": "user", "content": request.message})
        return {
            "model": request.model_name or self.config.default_model,
            "messages": messages,
            "max_tokens": request.max_tokens or self.config.default_max_tokens,
            "temperature": (
                request.temperature if request.temperature is not None else self.config.default_temperature
            ),
            "stream": stream,
        }

    @staticmethod
    def _headers(credential: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credential}", "Content-Type": "application/json"}

    async def generate(
        self,
        credential: str,
        request: CompletionRequest,
        prior_turns: Sequence[PromptMessage],
    ) -> CompletionResult:
        """Return a full completion (no streaming)."""
        payload = self._build_payload(request, prior_turns, stream=False)
        logger.debug("Requesting non-streaming completion for %d message(s)", len(payload["messages"]))
        client = await self._get_client()
        try:
            response = await client.post(self.config.endpoint, json=payload, headers=self._headers(credential))
        except httpx.HTTPError as exc:
            logger.error("Completion request to %s failed: %s", self.config.endpoint, exc)
            raise BackendUnavailable(f"{self.name} request failed: {exc}") from exc

        if response.is_error:
            logger.error("%s API error: %s - %s", self.name, response.status_code, response.text)
            raise BackendUnavailable(
                f"{self.name} API error: {response.status_code}", status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise BackendUnavailable(f"{self.name} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise BackendUnavailable(f"{self.name} returned an unexpected payload shape")

        choices = data.get("choices") or []
        if not isinstance(choices, list):
            raise BackendUnavailable(f"{self.name} returned malformed choices")
        if not choices:
            raise NoCompletionProduced(f"No response from {self.name}")
        if not isinstance(choices[0], dict):
            raise BackendUnavailable(f"{self.name} returned malformed choices")
        message = choices[0].get("message") or {}
        if not isinstance(message, dict):
            raise BackendUnavailable(f"{self.name} returned a malformed message")
        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        return CompletionResult(
            message_id=new_id(),
            content=message.get("content", "") or "",
            model_used=data.get("model") or payload["model"],
            token_count=usage.get("total_tokens"),
            created_at=utcnow(),
        )

    async def generate_streaming(
        self,
        credential: str,
        request: CompletionRequest,
        prior_turns: Sequence[PromptMessage],
    ) -> AsyncIterator[str]:
        """Yield text deltas from the model as they arrive."""
        payload = self._build_payload(request, prior_turns, stream=True)
        logger.info("Streaming chat completion to %s using model %s", self.config.endpoint, payload["model"])
        client = await self._get_client()
        skipped = 0
        try:
            async with client.stream(
                "POST", self.config.endpoint, json=payload, headers=self._headers(credential)
            ) as response:
                if response.is_error:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error("%s API error: %s - %s", self.name, response.status_code, body)
                    raise BackendUnavailable(
                        f"{self.name} API error: {response.status_code}", status_code=response.status_code
                    )

                async for line in response.aiter_lines():
                    frame = parse_frame(line)
                    if isinstance(frame, Delta):
                        yield frame.text
                    elif isinstance(frame, End):
                        break
                    elif isinstance(frame, FrameError):
                        raise BackendUnavailable(f"{self.name} stream error: {frame.message}")
                    else:
                        if frame.raw:
                            skipped += 1
                            logger.debug("Skipping stream frame (%s): %s", frame.reason, frame.raw)
        except httpx.HTTPError as exc:
            logger.error("Streaming request to %s failed: %s", self.config.endpoint, exc)
            raise BackendUnavailable(f"{self.name} stream failed: {exc}") from exc
        if skipped:
            logger.debug("Stream finished with %d skipped frame(s)", skipped)

"""Tests for the HTTP completion backend and its stream frame parser."""

from __future__ import annotations

import json

import httpx
import pytest

from conversation_module.errors import BackendUnavailable, NoCompletionProduced
from conversation_module.llm_client import Delta, End, FrameError, Skip, parse_frame
from conversation_module.models import CompletionRequest, PromptMessage, TurnRole

from conftest import ENDPOINT, delta_frame, make_remote_backend, sse_body


def _request(**extra):
    return CompletionRequest(session_id="s1", message="Hello", model_name="gpt-4o", **extra)


async def _collect(stream):
    return [chunk async for chunk in stream]


# ── Frame parsing ─────────────────────────────────────────────────────────────

class TestParseFrame:
    def test_delta(self):
        assert parse_frame(delta_frame("He")) == Delta("He")

    def test_bytes_input(self):
        assert parse_frame(delta_frame("llo").encode()) == Delta("llo")

    def test_done_sentinel(self):
        assert parse_frame("data: [DONE]") == End()

    def test_blank_and_unmarked_lines_skipped(self):
        assert isinstance(parse_frame(""), Skip)
        assert isinstance(parse_frame(": keep-alive"), Skip)
        assert isinstance(parse_frame("event: message"), Skip)

    def test_malformed_json_skipped(self):
        frame = parse_frame('data: {"choices": [')
        assert isinstance(frame, Skip)
        assert frame.reason == "invalid json"

    def test_empty_delta_skipped(self):
        frame = parse_frame("data: " + json.dumps({"choices": [{"delta": {"role": "assistant"}}]}))
        assert isinstance(frame, Skip)

    def test_no_choices_skipped(self):
        assert isinstance(parse_frame('data: {"choices": []}'), Skip)
        assert isinstance(parse_frame("data: [1, 2]"), Skip)

    def test_error_payload(self):
        frame = parse_frame('data: {"error": {"message": "rate limited"}}')
        assert frame == FrameError("rate limited")


# ── One-shot generation ───────────────────────────────────────────────────────

class TestGenerate:
    @pytest.mark.asyncio
    async def test_success_builds_wire_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "model": "gpt-4o",
                    "choices": [{"message": {"role": "assistant", "content": "Hi!"}}],
                    "usage": {"total_tokens": 12},
                },
            )

        backend = make_remote_backend(handler)
        prior = [PromptMessage(TurnRole.SYSTEM, "Be nice."), PromptMessage(TurnRole.USER, "earlier")]
        result = await backend.generate("sk-test", _request(temperature=0.2, max_tokens=50), prior)

        assert result.content == "Hi!"
        assert result.model_used == "gpt-4o"
        assert result.token_count == 12
        assert result.message_id
        assert seen["url"] == ENDPOINT
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"] == {
            "model": "gpt-4o",
            "messages": [
                {"role": "system", "content": "Be nice."},
                {"role": "user", "content": "earlier"},
                {"role": "user", "content": "Hello"},
            ],
            "max_tokens": 50,
            "temperature": 0.2,
            "stream": False,
        }

    @pytest.mark.asyncio
    async def test_defaults_applied(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        backend = make_remote_backend(handler)
        await backend.generate("k", CompletionRequest(session_id="s", message="x"), [])
        assert bodies[0]["model"] == "gpt-3.5-turbo"
        assert bodies[0]["max_tokens"] == 1000
        assert bodies[0]["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_server_error(self):
        backend = make_remote_backend(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(BackendUnavailable) as info:
            await backend.generate("k", _request(), [])
        assert info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        backend = make_remote_backend(handler)
        with pytest.raises(BackendUnavailable):
            await backend.generate("k", _request(), [])

    @pytest.mark.asyncio
    async def test_zero_choices(self):
        backend = make_remote_backend(lambda request: httpx.Response(200, json={"choices": []}))
        with pytest.raises(NoCompletionProduced):
            await backend.generate("k", _request(), [])

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [["nope"], {"choices": ["text"]}, {"choices": "text"}, {"choices": [{"message": "text"}]}],
    )
    async def test_malformed_body(self, body):
        backend = make_remote_backend(lambda request: httpx.Response(200, json=body))
        with pytest.raises(BackendUnavailable):
            await backend.generate("k", _request(), [])


# ── Streaming generation ──────────────────────────────────────────────────────

class TestGenerateStreaming:
    @pytest.mark.asyncio
    async def test_yields_deltas_until_done(self):
        body = sse_body(
            delta_frame("He"),
            "data: {not json",
            delta_frame("llo"),
            "data: [DONE]",
            delta_frame("ignored"),
        )
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        backend = make_remote_backend(handler)
        chunks = await _collect(backend.generate_streaming("k", _request(), []))
        assert chunks == ["He", "llo"]
        assert seen["body"]["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_without_sentinel_ends_with_body(self):
        backend = make_remote_backend(lambda request: httpx.Response(200, content=sse_body(delta_frame("a"))))
        assert await _collect(backend.generate_streaming("k", _request(), [])) == ["a"]

    @pytest.mark.asyncio
    async def test_non_success_status_fails_before_any_delta(self):
        backend = make_remote_backend(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(BackendUnavailable) as info:
            await _collect(backend.generate_streaming("k", _request(), []))
        assert info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_error_frame_raises(self):
        body = sse_body(delta_frame("partial"), 'data: {"error": {"message": "overloaded"}}')
        backend = make_remote_backend(lambda request: httpx.Response(200, content=body))
        received = []
        with pytest.raises(BackendUnavailable, match="overloaded"):
            async for chunk in backend.generate_streaming("k", _request(), []):
                received.append(chunk)
        assert received == ["partial"]


# ── Catalog ───────────────────────────────────────────────────────────────────

class TestCatalog:
    def test_supports_model_case_insensitive(self):
        backend = make_remote_backend(lambda request: httpx.Response(200))
        assert backend.supports_model("GPT-4o")
        assert not backend.supports_model("claude-3")
        assert not backend.supports_model("")

    def test_default_model_added_to_catalog(self):
        backend = make_remote_backend(lambda request: httpx.Response(200), default_model="qwen2.5-instruct")
        assert backend.supports_model("qwen2.5-instruct")

    @pytest.mark.asyncio
    async def test_count_tokens_estimate(self):
        backend = make_remote_backend(lambda request: httpx.Response(200))
        assert await backend.count_tokens("abcde") == 2
        assert await backend.count_tokens("") == 0

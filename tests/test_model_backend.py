"""Tests for the provider adapters and failure classification.

Upstream HTTP is replaced with ``httpx.MockTransport`` so each adapter's
request shape, stream parsing and error mapping are checked end to end.
"""

import json

import httpx
import pytest

from chatgateway.service.model_backend import (
    AUTH_OR_CONFIG,
    MODEL_UNAVAILABLE,
    PROVIDER_ERROR,
    RATE_LIMITED,
    AnthropicBackend,
    CompletionRequest,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    GeminiBackend,
    OpenAIBackend,
    TokenUsage,
    classify_failure,
    estimate_usage,
    is_reasoning_model,
)


def _sse(*frames) -> bytes:
    return "".join(f"data: {json.dumps(frame)}\n\n" for frame in frames).encode()


def _sse_response(body: bytes, status: int = 200) -> httpx.Response:
    return httpx.Response(status, content=body, headers={"content-type": "text/event-stream"})


async def _collect(backend, request):
    return [event async for event in backend.stream(request)]


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc(request)
        return self.response

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


def _read_timeout(request):
    return httpx.ReadTimeout("timed out", request=request)


def _connect_error(request):
    return httpx.ConnectError("connection refused", request=request)


class TestHelpers:
    def test_reasoning_model_detection(self):
        assert is_reasoning_model("o1")
        assert is_reasoning_model("o3-mini")
        assert is_reasoning_model("o4-mini")
        assert not is_reasoning_model("gpt-4o")
        assert not is_reasoning_model("gpt-4o-mini")
        assert not is_reasoning_model("omni")

    def test_estimate_usage_rounds_up(self):
        usage = estimate_usage([{"role": "user", "content": "hi"}], "abcdefghi")
        assert usage.completion_tokens == 3
        assert usage.prompt_tokens > 0
        assert usage.total_tokens == usage.prompt_tokens + usage.completion_tokens

    def test_estimate_usage_measures_compact_json(self):
        # '[{"role":"user","content":"hi"}]' is 32 characters
        usage = estimate_usage([{"role": "user", "content": "hi"}], "")
        assert usage.prompt_tokens == 8
        assert usage.completion_tokens == 0

    def test_estimate_usage_does_not_inflate_non_ascii(self):
        # 30 characters of JSON framing plus 20 CJK characters
        usage = estimate_usage([{"role": "user", "content": "你好世界" * 5}], "")
        assert usage.prompt_tokens == 13

    def test_estimate_usage_counts_astral_characters_as_two(self):
        usage = estimate_usage([{"role": "user", "content": "😀😀"}], "😀😀")
        assert usage.prompt_tokens == 9
        assert usage.completion_tokens == 1

    def test_token_usage_to_dict(self):
        assert TokenUsage(1, 2, 3).to_dict() == {
            "promptTokens": 1,
            "completionTokens": 2,
            "totalTokens": 3,
        }


class TestClassification:
    def test_429_is_rate_limited(self):
        event = classify_failure("anthropic", "claude-3-5-haiku-20241022", status=429)
        assert event.kind == RATE_LIMITED
        assert "Anthropic API rate limits" in event.message

    def test_quota_body_wins_over_403(self):
        event = classify_failure(
            "gemini", "gemini-2.0-flash", status=403, body="Quota exceeded for metric"
        )
        assert event.kind == RATE_LIMITED

    def test_auth_statuses(self):
        assert classify_failure("openai", "gpt-4o", status=401).kind == AUTH_OR_CONFIG
        assert classify_failure("openai", "gpt-4o", status=403).kind == AUTH_OR_CONFIG

    def test_invalid_gemini_key_body(self):
        event = classify_failure(
            "gemini",
            "gemini-2.0-flash",
            status=400,
            body='{"message": "API key not valid. Please pass a valid API key."}',
        )
        assert event.kind == AUTH_OR_CONFIG

    def test_404_is_model_unavailable(self):
        event = classify_failure("openai", "gpt-4.1-nano", status=404)
        assert event.kind == MODEL_UNAVAILABLE
        assert "gpt-4.1-nano" in event.message

    def test_other_failures_are_sanitized(self):
        event = classify_failure(
            "gemini", "gemini-2.0-flash", status=500, body="boom at key=abcdefgh12345"
        )
        assert event.kind == PROVIDER_ERROR
        assert event.message.startswith("Gemini API error: 500 - ")
        assert "abcdefgh12345" not in event.message


class TestOpenAIBackend:
    def _backend(self, recorder, **kwargs):
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        return OpenAIBackend(
            api_key="sk-test",
            base_url="https://openai.test/v1",
            http_client=client,
            **kwargs,
        )

    def test_standard_payload_uses_defaults(self):
        backend = OpenAIBackend(api_key="sk-test", default_max_tokens=4000)
        payload = backend.build_payload(
            CompletionRequest(model="gpt-4o", messages=[{"role": "user", "content": "hi"}])
        )
        assert payload["max_tokens"] == 4000
        assert payload["temperature"] == 0.7
        assert "max_completion_tokens" not in payload

    def test_explicit_zero_temperature_is_kept(self):
        backend = OpenAIBackend(api_key="sk-test")
        payload = backend.build_payload(
            CompletionRequest(model="gpt-4o", messages=[], temperature=0.0, max_tokens=10)
        )
        assert payload["temperature"] == 0.0
        assert payload["max_tokens"] == 10

    def test_reasoning_payload_drops_sampling_controls(self):
        backend = OpenAIBackend(api_key="sk-test", reasoning_effort="high")
        payload = backend.build_payload(
            CompletionRequest(model="o3-mini", messages=[], temperature=0.2)
        )
        assert payload["max_completion_tokens"] == 25000
        assert payload["reasoning_effort"] == "high"
        assert "temperature" not in payload
        assert "max_tokens" not in payload

    async def test_stream_yields_content_then_done(self):
        base = {"id": "chatcmpl-1", "object": "chat.completion.chunk", "created": 1, "model": "gpt-4o-mini"}
        body = _sse(
            {**base, "choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hel"}, "finish_reason": None}]},
            {**base, "choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {**base, "choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 2, "total_tokens": 11}},
        ) + b"data: [DONE]\n\n"
        recorder = Recorder(_sse_response(body))
        backend = self._backend(recorder)

        events = await _collect(
            backend,
            CompletionRequest(model="gpt-4o-mini", messages=[{"role": "user", "content": "hi"}]),
        )
        await backend.aclose()

        assert [e.text for e in events if isinstance(e, ContentEvent)] == ["Hel", "lo"]
        done = events[-1]
        assert isinstance(done, DoneEvent)
        assert done.full_text == "Hello"
        assert done.usage == TokenUsage(9, 2, 11)
        assert done.model_id == "gpt-4o-mini"
        sent = recorder.last_json
        assert sent["stream"] is True
        assert sent["stream_options"] == {"include_usage": True}
        assert str(recorder.requests[-1].url) == "https://openai.test/v1/chat/completions"

    async def test_rate_limit_status(self):
        recorder = Recorder(
            httpx.Response(429, json={"error": {"message": "Rate limit reached", "type": "requests"}})
        )
        backend = self._backend(recorder)
        events = await _collect(backend, CompletionRequest(model="gpt-4o", messages=[]))
        assert len(events) == 1
        assert events[0].kind == RATE_LIMITED
        assert len(recorder.requests) == 1

    async def test_missing_model_status(self):
        recorder = Recorder(
            httpx.Response(
                404,
                json={"error": {"message": "The model does not exist", "type": "invalid_request_error"}},
            )
        )
        backend = self._backend(recorder)
        events = await _collect(backend, CompletionRequest(model="gpt-4.1-nano", messages=[]))
        assert events[-1].kind == MODEL_UNAVAILABLE

    async def test_missing_key_never_calls_upstream(self):
        recorder = Recorder(_sse_response(b""))
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        backend = OpenAIBackend(api_key=None, http_client=client)
        events = await _collect(backend, CompletionRequest(model="gpt-4o", messages=[]))
        assert events == [events[0]]
        assert events[0].kind == AUTH_OR_CONFIG
        assert recorder.requests == []


class TestAnthropicBackend:
    def _backend(self, recorder, **kwargs):
        return AnthropicBackend(
            api_key="ant-key",
            base_url="https://anthropic.test/v1",
            transport=httpx.MockTransport(recorder),
            **kwargs,
        )

    def test_payload_lifts_system_prompt(self):
        backend = AnthropicBackend(api_key="k", base_url="https://anthropic.test/v1")
        payload = backend.build_payload(
            CompletionRequest(
                model="claude-3-5-haiku-20241022",
                messages=[
                    {"role": "system", "content": "Be terse"},
                    {"role": "user", "content": "Hi"},
                ],
                temperature=0.0,
            )
        )
        assert payload["system"] == "Be terse"
        assert payload["messages"] == [{"role": "user", "content": "Hi"}]
        assert payload["max_tokens"] == 4000
        assert payload["temperature"] == 0.0
        assert payload["stream"] is True

    async def test_stream_parses_deltas_and_usage(self):
        body = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 25, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": " there"}},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 15}},
            {"type": "message_stop"},
        )
        recorder = Recorder(_sse_response(body))
        backend = self._backend(recorder, api_version="2023-06-01")

        events = await _collect(
            backend,
            CompletionRequest(
                model="claude-3-5-haiku-20241022", messages=[{"role": "user", "content": "Hi"}]
            ),
        )
        await backend.aclose()

        assert [e.text for e in events[:-1]] == ["Hi", " there"]
        assert events[-1] == DoneEvent(
            "Hi there", TokenUsage(25, 15, 40), "claude-3-5-haiku-20241022"
        )
        sent = recorder.requests[-1]
        assert str(sent.url) == "https://anthropic.test/v1/messages"
        assert sent.headers["x-api-key"] == "ant-key"
        assert sent.headers["anthropic-version"] == "2023-06-01"

    async def test_in_stream_error_frame(self):
        body = _sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Par"}},
            {"type": "error", "error": {"type": "rate_limit_error", "message": "Slow down"}},
        )
        backend = self._backend(Recorder(_sse_response(body)))
        events = await _collect(
            backend, CompletionRequest(model="claude-3-5-haiku-20241022", messages=[])
        )
        assert isinstance(events[0], ContentEvent)
        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].kind == RATE_LIMITED
        assert not any(isinstance(e, DoneEvent) for e in events)

    async def test_http_error_status(self):
        recorder = Recorder(
            httpx.Response(
                401,
                json={"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}},
            )
        )
        events = await _collect(
            self._backend(recorder),
            CompletionRequest(model="claude-3-5-haiku-20241022", messages=[]),
        )
        assert events == [events[0]]
        assert events[0].kind == AUTH_OR_CONFIG

    async def test_read_timeout(self):
        backend = self._backend(Recorder(exc=_read_timeout))
        events = await _collect(
            backend, CompletionRequest(model="claude-3-5-haiku-20241022", messages=[])
        )
        assert events[0].kind == PROVIDER_ERROR
        assert "did not respond in time" in events[0].message

    async def test_connect_failure(self):
        backend = self._backend(Recorder(exc=_connect_error))
        events = await _collect(
            backend, CompletionRequest(model="claude-3-5-haiku-20241022", messages=[])
        )
        assert events[0].kind == PROVIDER_ERROR
        assert "Could not reach Anthropic" in events[0].message

    async def test_missing_usage_is_estimated(self):
        body = _sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "abcd"}},
            {"type": "message_stop"},
        )
        events = await _collect(
            self._backend(Recorder(_sse_response(body))),
            CompletionRequest(model="claude-3-5-haiku-20241022", messages=[]),
        )
        done = events[-1]
        assert done.usage.completion_tokens == 1
        assert done.usage.total_tokens == done.usage.prompt_tokens + 1


class TestGeminiBackend:
    def _backend(self, recorder):
        return GeminiBackend(
            api_key="g-key",
            base_url="https://gemini.test/v1beta",
            transport=httpx.MockTransport(recorder),
        )

    def test_payload_maps_roles(self):
        backend = GeminiBackend(api_key="g-key", base_url="https://gemini.test/v1beta")
        payload = backend.build_payload(
            CompletionRequest(
                model="gemini-2.0-flash",
                messages=[
                    {"role": "system", "content": "You are helpful"},
                    {"role": "user", "content": "Hi"},
                    {"role": "assistant", "content": "Hello"},
                    {"role": "user", "content": "Again"},
                ],
                max_tokens=256,
            )
        )
        assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]
        assert payload["systemInstruction"] == {"parts": [{"text": "You are helpful"}]}
        assert payload["generationConfig"] == {"maxOutputTokens": 256, "temperature": 0.7}

    async def test_stream_parses_candidates_and_usage(self):
        body = _sse(
            {"candidates": [{"content": {"parts": [{"text": "Bon"}], "role": "model"}}]},
            {
                "candidates": [{"content": {"parts": [{"text": "jour"}], "role": "model"}}],
                "usageMetadata": {"promptTokenCount": 9, "candidatesTokenCount": 4, "totalTokenCount": 13},
            },
        )
        recorder = Recorder(_sse_response(body))
        backend = self._backend(recorder)
        events = await _collect(
            backend,
            CompletionRequest(model="gemini-2.0-flash", messages=[{"role": "user", "content": "hi"}]),
        )
        await backend.aclose()

        assert events[-1] == DoneEvent("Bonjour", TokenUsage(9, 4, 13), "gemini-2.0-flash")
        sent = recorder.requests[-1]
        assert sent.url.path == "/v1beta/models/gemini-2.0-flash:streamGenerateContent"
        assert sent.url.params["alt"] == "sse"
        assert "key" not in sent.url.params
        assert sent.headers["x-goog-api-key"] == "g-key"

    async def test_invalid_key_response(self):
        recorder = Recorder(
            httpx.Response(
                400,
                json={
                    "error": {
                        "code": 400,
                        "message": "API key not valid. Please pass a valid API key.",
                        "status": "INVALID_ARGUMENT",
                    }
                },
            )
        )
        events = await _collect(
            self._backend(recorder), CompletionRequest(model="gemini-2.0-flash", messages=[])
        )
        assert events[0].kind == AUTH_OR_CONFIG
        assert "g-key" not in events[0].message

    async def test_error_frame_inside_stream(self):
        body = _sse({"error": {"code": 429, "message": "Resource has been exhausted", "status": "RESOURCE_EXHAUSTED"}})
        events = await _collect(
            self._backend(Recorder(_sse_response(body))),
            CompletionRequest(model="gemini-2.0-flash", messages=[]),
        )
        assert events[-1].kind == RATE_LIMITED

    async def test_missing_key(self):
        backend = GeminiBackend(api_key=None, base_url="https://gemini.test/v1beta")
        events = await _collect(backend, CompletionRequest(model="gemini-2.0-flash", messages=[]))
        assert events[0].kind == AUTH_OR_CONFIG

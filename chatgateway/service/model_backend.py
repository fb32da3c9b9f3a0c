from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union

import httpx
from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
)

from chatgateway.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)

OPENAI_MODELS = frozenset(
    {
        "gpt-4o-mini",
        "gpt-4o",
        "gpt-4.1",
        "gpt-4.1-mini",
        "gpt-4.1-nano",
        "gpt-4-turbo",
        "o3",
        "o3-mini",
        "o4-mini",
    }
)

CLAUDE_MODELS = frozenset(
    {
        "claude-opus-4-20250514",
        "claude-sonnet-4-20250514",
        "claude-3-7-sonnet-20250219",
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
    }
)

GEMINI_MODELS = frozenset(
    {
        "gemini-2.0-flash",
        "gemini-1.5-flash",
        "gemini-1.5-pro",
        "gemini-2.5-flash",
        "gemini-2.5-pro",
    }
)

ALL_MODELS = OPENAI_MODELS | CLAUDE_MODELS | GEMINI_MODELS

# o1 / o3 / o4 families, bare or suffixed ("o3", "o4-mini")
_REASONING_MODEL = re.compile(r"^o[134](?:-|$)")

# classified failure kinds carried by ErrorEvent
AUTH_OR_CONFIG = "AUTH_OR_CONFIG"
MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
RATE_LIMITED = "RATE_LIMITED"
PROVIDER_ERROR = "PROVIDER_ERROR"

_PROVIDER_LABELS = {"openai": "OpenAI", "anthropic": "Anthropic", "gemini": "Gemini"}

_RATE_LIMIT_MARKERS = ("quota", "rate limit", "rate_limit", "resource_exhausted")
_BAD_KEY_MARKERS = ("api key not valid", "api_key_invalid", "invalid x-api-key")


def is_reasoning_model(model: str) -> bool:
    return bool(_REASONING_MODEL.match(model or ""))


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(frozen=True)
class ContentEvent:
    text: str


@dataclass(frozen=True)
class DoneEvent:
    full_text: str
    usage: TokenUsage
    model_id: str


@dataclass(frozen=True)
class ErrorEvent:
    kind: str
    message: str


StreamEvent = Union[ContentEvent, DoneEvent, ErrorEvent]


@dataclass
class CompletionRequest:
    """Provider-neutral completion input.

    ``max_tokens`` and ``temperature`` left as ``None`` fall back to the
    backend defaults; an explicit ``0`` is honoured.
    """

    model: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


class ProviderBackend(Protocol):
    """Interface shared by the three provider families."""

    provider: str

    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]: ...

    async def aclose(self) -> None: ...


def _utf16_length(text: str) -> int:
    # matches JavaScript string length, which counts UTF-16 code units
    return len(text.encode("utf-16-le")) // 2


def estimate_usage(messages: List[Dict[str, Any]], output: str) -> TokenUsage:
    """Rough 4-characters-per-token estimate for providers that report no usage.

    Prompt length is taken over compact JSON with characters kept as-is, so
    non-ASCII text is not inflated by ``\\uXXXX`` escapes.
    """

    serialized = json.dumps(messages, separators=(",", ":"), ensure_ascii=False)
    prompt = math.ceil(_utf16_length(serialized) / 4)
    completion = math.ceil(_utf16_length(output) / 4)
    return TokenUsage(prompt, completion, prompt + completion)


def classify_failure(
    provider: str,
    model: str,
    *,
    status: Optional[int] = None,
    body: str = "",
) -> ErrorEvent:
    """Map an HTTP status and error body onto a stable failure kind."""

    label = _PROVIDER_LABELS.get(provider, provider)
    lowered = (body or "").lower()
    if status == 429 or any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return ErrorEvent(
            RATE_LIMITED,
            f"We've hit {label} API rate limits! Please try again in a few minutes, "
            "or use a different model like GPT-4o-mini or Claude 3.5 Haiku.",
        )
    if status in (401, 403) or any(marker in lowered for marker in _BAD_KEY_MARKERS):
        return ErrorEvent(
            AUTH_OR_CONFIG,
            f"{label} rejected the gateway credentials. "
            "Check the configured API key and account access.",
        )
    if status == 404:
        return ErrorEvent(
            MODEL_UNAVAILABLE,
            f"{label} model {model} is not available. "
            "This might be a model access issue; try a different model.",
        )
    detail = sanitize_error_message(body) if body else "no response body"
    prefix = f"{label} API error: {status}" if status else f"{label} API error"
    return ErrorEvent(PROVIDER_ERROR, f"{prefix} - {detail}")


def _missing_key(provider: str) -> ErrorEvent:
    label = _PROVIDER_LABELS.get(provider, provider)
    return ErrorEvent(
        AUTH_OR_CONFIG, f"{label} API key is not configured on this gateway."
    )


def _transport_failure(provider: str, exc: Exception) -> ErrorEvent:
    label = _PROVIDER_LABELS.get(provider, provider)
    if isinstance(exc, (httpx.TimeoutException, APITimeoutError)):
        return ErrorEvent(
            PROVIDER_ERROR, f"{label} did not respond in time. Please try again."
        )
    return ErrorEvent(
        PROVIDER_ERROR, f"Could not reach {label}. Please try again shortly."
    )


def _split_system(messages: List[Dict[str, str]]) -> tuple[str, List[Dict[str, str]]]:
    system_parts = []
    turns = []
    for msg in messages:
        if msg.get("role") == "system":
            if msg.get("content"):
                system_parts.append(msg["content"])
        else:
            turns.append({"role": msg.get("role", "user"), "content": msg.get("content", "")})
    return "\n\n".join(system_parts), turns


async def _iter_sse_json(response: httpx.Response) -> AsyncIterator[dict]:
    """Yield decoded JSON payloads from ``data:`` lines of an SSE body."""

    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if not payload or payload == "[DONE]":
            continue
        try:
            decoded = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("provider_sse_unparseable", preview=payload[:80])
            continue
        if isinstance(decoded, dict):
            yield decoded


class OpenAIBackend:
    """Streams chat completions through the official ``openai`` SDK."""

    provider = "openai"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        default_max_tokens: int = 4000,
        default_temperature: float = 0.7,
        reasoning_max_completion_tokens: int = 25000,
        reasoning_effort: str = "medium",
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout or httpx.Timeout(60.0, connect=10.0)
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature
        self.reasoning_max_completion_tokens = reasoning_max_completion_tokens
        self.reasoning_effort = reasoning_effort
        self._http_client = http_client
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
                http_client=self._http_client,
            )
        return self._client

    def build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": m.get("role", "user"), "content": m.get("content", "")}
                for m in request.messages
            ],
        }
        if is_reasoning_model(request.model):
            # reasoning models reject temperature and penalty controls
            payload["max_completion_tokens"] = (
                request.max_tokens
                if request.max_tokens is not None
                else self.reasoning_max_completion_tokens
            )
            payload["reasoning_effort"] = self.reasoning_effort
        else:
            payload["max_tokens"] = (
                request.max_tokens
                if request.max_tokens is not None
                else self.default_max_tokens
            )
            payload["temperature"] = (
                request.temperature
                if request.temperature is not None
                else self.default_temperature
            )
        return payload

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        if not self.api_key:
            yield _missing_key(self.provider)
            return
        payload = self.build_payload(request)
        chunks: List[str] = []
        usage: Optional[TokenUsage] = None
        upstream = None
        try:
            upstream = await self._get_client().chat.completions.create(
                **payload,
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in upstream:
                if getattr(chunk, "usage", None):
                    usage = TokenUsage(
                        prompt_tokens=chunk.usage.prompt_tokens or 0,
                        completion_tokens=chunk.usage.completion_tokens or 0,
                        total_tokens=chunk.usage.total_tokens or 0,
                    )
                for choice in chunk.choices or []:
                    text = choice.delta.content if choice.delta else None
                    if text:
                        chunks.append(text)
                        yield ContentEvent(text)
        except APIStatusError as exc:
            logger.warning(
                "provider_http_error",
                provider=self.provider,
                model=request.model,
                status_code=exc.status_code,
            )
            yield classify_failure(
                self.provider, request.model, status=exc.status_code, body=str(exc.message)
            )
            return
        except APIConnectionError as exc:
            logger.warning(
                "provider_transport_error",
                provider=self.provider,
                model=request.model,
                error_type=type(exc).__name__,
            )
            yield _transport_failure(self.provider, exc)
            return
        except APIError as exc:
            # error objects sent inside an already-open stream
            yield classify_failure(self.provider, request.model, body=str(exc.message))
            return
        finally:
            if upstream is not None:
                await upstream.close()
        full_text = "".join(chunks)
        yield DoneEvent(
            full_text, usage or estimate_usage(request.messages, full_text), request.model
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class _HttpBackend:
    """Shared plumbing for providers called over raw ``httpx`` streams."""

    provider = "http"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str,
        timeout: Optional[httpx.Timeout] = None,
        default_max_tokens: int = 4000,
        default_temperature: float = 0.7,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or httpx.Timeout(60.0, connect=10.0)
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    def _max_tokens(self, request: CompletionRequest) -> int:
        if request.max_tokens is not None:
            return request.max_tokens
        return self.default_max_tokens

    def _temperature(self, request: CompletionRequest) -> float:
        if request.temperature is not None:
            return request.temperature
        return self.default_temperature

    async def _read_error(self, response: httpx.Response, model: str) -> ErrorEvent:
        body = (await response.aread()).decode("utf-8", errors="replace")
        logger.warning(
            "provider_http_error",
            provider=self.provider,
            model=model,
            status_code=response.status_code,
        )
        return classify_failure(
            self.provider, model, status=response.status_code, body=body
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class AnthropicBackend(_HttpBackend):
    """Anthropic Messages API over server-sent events."""

    provider = "anthropic"

    # status implied by the ``type`` of an in-stream error frame
    _ERROR_TYPE_STATUS = {
        "authentication_error": 401,
        "permission_error": 403,
        "not_found_error": 404,
        "rate_limit_error": 429,
    }

    def __init__(self, *, api_version: str = "2023-06-01", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_version = api_version

    def build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        system, turns = _split_system(request.messages)
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": turns,
            "max_tokens": self._max_tokens(request),
            "temperature": self._temperature(request),
            "stream": True,
        }
        if system:
            payload["system"] = system
        return payload

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        if not self.api_key:
            yield _missing_key(self.provider)
            return
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }
        chunks: List[str] = []
        prompt_tokens: Optional[int] = None
        completion_tokens: Optional[int] = None
        try:
            async with self._get_client().stream(
                "POST",
                f"{self.base_url}/messages",
                json=self.build_payload(request),
                headers=headers,
            ) as response:
                if response.status_code >= 400:
                    yield await self._read_error(response, request.model)
                    return
                async for frame in _iter_sse_json(response):
                    frame_type = frame.get("type")
                    if frame_type == "message_start":
                        usage = (frame.get("message") or {}).get("usage") or {}
                        if usage.get("input_tokens") is not None:
                            prompt_tokens = int(usage["input_tokens"])
                    elif frame_type == "content_block_delta":
                        text = (frame.get("delta") or {}).get("text")
                        if text:
                            chunks.append(text)
                            yield ContentEvent(text)
                    elif frame_type == "message_delta":
                        usage = frame.get("usage") or {}
                        if usage.get("output_tokens") is not None:
                            completion_tokens = int(usage["output_tokens"])
                    elif frame_type == "error":
                        error = frame.get("error") or {}
                        yield classify_failure(
                            self.provider,
                            request.model,
                            status=self._ERROR_TYPE_STATUS.get(error.get("type", "")),
                            body=json.dumps(error),
                        )
                        return
        except httpx.TransportError as exc:
            logger.warning(
                "provider_transport_error",
                provider=self.provider,
                model=request.model,
                error_type=type(exc).__name__,
            )
            yield _transport_failure(self.provider, exc)
            return
        full_text = "".join(chunks)
        if prompt_tokens is None and completion_tokens is None:
            usage_total = estimate_usage(request.messages, full_text)
        else:
            prompt = prompt_tokens or 0
            completion = completion_tokens or 0
            usage_total = TokenUsage(prompt, completion, prompt + completion)
        yield DoneEvent(full_text, usage_total, request.model)


class GeminiBackend(_HttpBackend):
    """Google Gemini ``streamGenerateContent`` with ``alt=sse``."""

    provider = "gemini"

    def build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        system, turns = _split_system(request.messages)
        payload: Dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if turn["role"] == "assistant" else "user",
                    "parts": [{"text": turn["content"]}],
                }
                for turn in turns
            ],
            "generationConfig": {
                "maxOutputTokens": self._max_tokens(request),
                "temperature": self._temperature(request),
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        if not self.api_key:
            yield _missing_key(self.provider)
            return
        chunks: List[str] = []
        usage: Optional[TokenUsage] = None
        try:
            async with self._get_client().stream(
                "POST",
                f"{self.base_url}/models/{request.model}:streamGenerateContent",
                params={"alt": "sse"},
                headers={"x-goog-api-key": self.api_key},
                json=self.build_payload(request),
            ) as response:
                if response.status_code >= 400:
                    yield await self._read_error(response, request.model)
                    return
                async for frame in _iter_sse_json(response):
                    if "error" in frame:
                        error = frame.get("error") or {}
                        yield classify_failure(
                            self.provider,
                            request.model,
                            status=error.get("code"),
                            body=json.dumps(error),
                        )
                        return
                    candidates = frame.get("candidates") or []
                    if candidates:
                        parts = (candidates[0].get("content") or {}).get("parts") or []
                        for part in parts:
                            text = part.get("text")
                            if text:
                                chunks.append(text)
                                yield ContentEvent(text)
                    meta = frame.get("usageMetadata")
                    if meta:
                        prompt = int(meta.get("promptTokenCount") or 0)
                        completion = int(meta.get("candidatesTokenCount") or 0)
                        usage = TokenUsage(
                            prompt,
                            completion,
                            int(meta.get("totalTokenCount") or prompt + completion),
                        )
        except httpx.TransportError as exc:
            logger.warning(
                "provider_transport_error",
                provider=self.provider,
                model=request.model,
                error_type=type(exc).__name__,
            )
            yield _transport_failure(self.provider, exc)
            return
        full_text = "".join(chunks)
        yield DoneEvent(
            full_text, usage or estimate_usage(request.messages, full_text), request.model
        )


__all__ = [
    "ALL_MODELS",
    "AUTH_OR_CONFIG",
    "AnthropicBackend",
    "CLAUDE_MODELS",
    "CompletionRequest",
    "ContentEvent",
    "DoneEvent",
    "ErrorEvent",
    "GEMINI_MODELS",
    "GeminiBackend",
    "MODEL_UNAVAILABLE",
    "OPENAI_MODELS",
    "OpenAIBackend",
    "PROVIDER_ERROR",
    "ProviderBackend",
    "RATE_LIMITED",
    "StreamEvent",
    "TokenUsage",
    "classify_failure",
    "estimate_usage",
    "is_reasoning_model",
]

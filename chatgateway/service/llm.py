from __future__ import annotations

from typing import AsyncIterator, Dict, FrozenSet, List, Optional, Tuple

import httpx

from chatgateway.config import Settings
from chatgateway.logging import get_logger
from chatgateway.service.errors import ProviderError, ValidationError
from chatgateway.service.model_backend import (
    CLAUDE_MODELS,
    GEMINI_MODELS,
    OPENAI_MODELS,
    RATE_LIMITED,
    AnthropicBackend,
    CompletionRequest,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    GeminiBackend,
    OpenAIBackend,
    ProviderBackend,
    StreamEvent,
)

logger = get_logger(__name__)


class LLMService:
    """Routes a model id to the provider backend that serves it.

    Routing is one registry of ``(model set, backend)`` pairs; call sites never
    inspect model names themselves.
    """

    def __init__(self, routes: List[Tuple[FrozenSet[str], ProviderBackend]]) -> None:
        self._routes = list(routes)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMService":
        timeout = httpx.Timeout(
            settings.provider_read_timeout_seconds,
            connect=settings.provider_connect_timeout_seconds,
        )
        return cls(
            [
                (
                    OPENAI_MODELS,
                    OpenAIBackend(
                        api_key=settings.openai_api_key,
                        base_url=settings.openai_base_url,
                        timeout=timeout,
                        default_max_tokens=settings.default_max_tokens,
                        default_temperature=settings.default_temperature,
                        reasoning_max_completion_tokens=settings.reasoning_max_completion_tokens,
                        reasoning_effort=settings.reasoning_effort,
                    ),
                ),
                (
                    CLAUDE_MODELS,
                    AnthropicBackend(
                        api_key=settings.anthropic_api_key,
                        base_url=settings.anthropic_base_url,
                        api_version=settings.anthropic_version,
                        timeout=timeout,
                        default_max_tokens=settings.default_max_tokens,
                        default_temperature=settings.default_temperature,
                    ),
                ),
                (
                    GEMINI_MODELS,
                    GeminiBackend(
                        api_key=settings.gemini_api_key,
                        base_url=settings.gemini_base_url,
                        timeout=timeout,
                        default_max_tokens=settings.default_max_tokens,
                        default_temperature=settings.default_temperature,
                    ),
                ),
            ]
        )

    def resolve(self, model: str) -> Optional[ProviderBackend]:
        for models, backend in self._routes:
            if model in models:
                return backend
        return None

    def provider_for(self, model: str) -> Optional[str]:
        backend = self.resolve(model)
        return backend.provider if backend else None

    def routable_models(self) -> Dict[str, str]:
        """Map every routable model id to its provider name."""

        routed: Dict[str, str] = {}
        for models, backend in self._routes:
            for model in sorted(models):
                routed.setdefault(model, backend.provider)
        return routed

    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        backend = self.resolve(request.model)
        if backend is None:
            raise ValidationError(
                f"Unsupported model: {request.model}",
                detail={"model": request.model},
            )
        return backend.stream(request)

    async def complete(self, request: CompletionRequest) -> DoneEvent:
        """Drain a stream into its final event; provider failures raise."""

        events = self.stream(request)
        try:
            async for event in events:
                if isinstance(event, ContentEvent):
                    continue
                if isinstance(event, ErrorEvent):
                    logger.warning(
                        "completion_failed", model=request.model, kind=event.kind
                    )
                    raise ProviderError(
                        event.message,
                        status_code=429 if event.kind == RATE_LIMITED else 502,
                        error_code=event.kind,
                    )
                if isinstance(event, DoneEvent):
                    return event
        finally:
            await events.aclose()
        raise ProviderError(
            f"{request.model} returned no completion", detail={"model": request.model}
        )

    async def aclose(self) -> None:
        for _, backend in self._routes:
            await backend.aclose()

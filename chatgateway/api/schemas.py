from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Maximum characters accepted in a single chat message
MAX_MESSAGE_CHARS = 100_000

_VALID_ERROR_CODES = frozenset(
    {
        "INVALID_REQUEST",
        "STREAMING_ONLY",
        "AUTHENTICATION_FAILED",
        "FORBIDDEN",
        "MODEL_NOT_ALLOWED",
        "NOT_FOUND",
        "CONFLICT",
        "RATE_LIMITED",
        "DAILY_LIMIT_EXCEEDED",
        "MONTHLY_LIMIT_EXCEEDED",
        "AUTH_OR_CONFIG",
        "MODEL_UNAVAILABLE",
        "PROVIDER_ERROR",
        "DATABASE_OPERATION_FAILED",
        "INTERNAL_ERROR",
    }
)


class ErrorBody(BaseModel):
    """Error payload with a stable, client-switchable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Wrapper for every JSON (non-stream) response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessageIn(BaseModel):
    role: str = Field(..., max_length=16)
    content: str = Field(..., max_length=MAX_MESSAGE_CHARS)


class ChatCompletionRequest(_CamelModel):
    """Body of ``POST /v1/chat/completions``.

    Fields are lenient on purpose so the orchestrator reports the first
    problem in a fixed order (``stream`` before anything else).
    """

    model: str = Field("", max_length=128)
    messages: List[ChatMessageIn] = Field(default_factory=list)
    conversation_id: str = Field("", max_length=128)
    max_tokens: Optional[int] = Field(None, ge=1, le=200_000)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    stream: Optional[bool] = None


class ExampleRequest(_CamelModel):
    user_request: str = Field(..., min_length=1, max_length=4000)
    task_type: str = Field("general", max_length=32)
    example_number: int = Field(1, ge=1, le=10)


class EnhanceRequest(_CamelModel):
    user_request: str = Field(..., min_length=1, max_length=4000)
    task_type: str = Field("general", max_length=32)
    user_role: str = Field("", max_length=200)
    current_prompt: str = Field(..., min_length=1, max_length=MAX_MESSAGE_CHARS)


class MessageOut(_CamelModel):
    id: str
    role: str
    content: str
    sequence_number: int
    model_used: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    created_at: datetime


class ConversationOut(_CamelModel):
    id: str
    title: str
    model_history: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    messages: List[MessageOut] = Field(default_factory=list)


class RenameConversationRequest(_CamelModel):
    # trimming and the real length cap happen in the conversation service
    title: str = Field(..., max_length=1000)


class ModelInfo(_CamelModel):
    id: str
    provider: str
    required_tier: Optional[str] = None
    allowed: bool = False


class UsageWindow(_CamelModel):
    current: int
    limit: int
    percentage: int
    reset_time: str


class UsageResponse(_CamelModel):
    tier: str
    daily_messages: UsageWindow
    monthly_tokens: UsageWindow
    allowed_models: List[str] = Field(default_factory=list)
    today: Optional[Dict[str, Any]] = None


class TokenUsageOut(_CamelModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ExampleResponse(_CamelModel):
    example: str
    model: str
    usage: TokenUsageOut


class EnhanceResponse(_CamelModel):
    enhanced_prompt: str
    model: str
    usage: TokenUsageOut

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from chatgateway.logging import get_logger
from chatgateway.service.conversations import ConversationService
from chatgateway.service.errors import (
    DatabaseOperationError,
    ServiceError,
    StreamingOnlyError,
    ValidationError,
)
from chatgateway.service.llm import LLMService
from chatgateway.service.model_backend import (
    PROVIDER_ERROR,
    CompletionRequest,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
)
from chatgateway.service.quota import QuotaLedger, QuotaSnapshot
from chatgateway.service.usage import UsageAccountant
from chatgateway.storage.models import Message

_ROLES = {"system", "user", "assistant"}

Disconnected = Callable[[], Awaitable[bool]]


@dataclass
class ChatRequest:
    model: str
    messages: List[Dict[str, Any]]
    conversation_id: str
    stream: Optional[bool] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


@dataclass
class Exchange:
    """A validated, quota-checked exchange whose user turn is already stored."""

    account_id: str
    conversation_id: str
    request: CompletionRequest
    user_message: Message
    assistant_sequence: int
    quota: QuotaSnapshot

    @property
    def model(self) -> str:
        return self.request.model


def error_frame(kind: str, message: str) -> dict:
    return {"type": "error", "error": kind, "message": message}


class ChatOrchestrator:
    """Drives one chat exchange from validation to its terminal stream frame.

    ``prepare`` covers every step that can still answer with a plain JSON error;
    ``stream`` runs once the event stream is open and reports failures as a
    final ``error`` frame instead.
    """

    def __init__(
        self,
        *,
        quota: QuotaLedger,
        llm: LLMService,
        conversations: ConversationService,
        usage: UsageAccountant,
        max_messages_per_request: int = 200,
    ) -> None:
        self.quota = quota
        self.llm = llm
        self.conversations = conversations
        self.usage = usage
        self.max_messages_per_request = max_messages_per_request
        self.logger = get_logger(__name__)

    def _validate(self, request: ChatRequest) -> List[Dict[str, str]]:
        if request.stream is not True:
            raise StreamingOnlyError(
                "Chat completions are only available as a stream; set stream to true."
            )
        model = (request.model or "").strip()
        if not model:
            raise ValidationError("model is required", detail={"field": "model"})
        if self.llm.resolve(model) is None:
            raise ValidationError(
                f"Unsupported model: {model}", detail={"field": "model", "model": model}
            )
        if not (request.conversation_id or "").strip():
            raise ValidationError(
                "conversationId is required", detail={"field": "conversationId"}
            )
        if not request.messages:
            raise ValidationError(
                "messages must not be empty", detail={"field": "messages"}
            )
        if len(request.messages) > self.max_messages_per_request:
            raise ValidationError(
                "too many messages in one request",
                detail={"field": "messages", "max": self.max_messages_per_request},
            )
        cleaned: List[Dict[str, str]] = []
        for idx, msg in enumerate(request.messages):
            role = msg.get("role")
            content = msg.get("content")
            if role not in _ROLES or not isinstance(content, str):
                raise ValidationError(
                    "each message needs a role and string content",
                    detail={"field": f"messages[{idx}]"},
                )
            cleaned.append({"role": role, "content": content})
        last = cleaned[-1]
        if last["role"] != "user" or not last["content"].strip():
            raise ValidationError(
                "the last message must be a non-empty user message",
                detail={"field": "messages"},
            )
        return cleaned

    def prepare(self, account_id: str, request: ChatRequest) -> Exchange:
        messages = self._validate(request)
        model = request.model.strip()
        conversation_id = request.conversation_id.strip()

        snapshot = self.quota.check_and_reserve(account_id, model)

        try:
            self.conversations.ensure(conversation_id, account_id)
            first_seq = self.conversations.reserve_sequences(conversation_id, 2)
            user_message = self.conversations.persist_message(
                conversation_id,
                role="user",
                content=messages[-1]["content"],
                sequence_number=first_seq,
            )
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error(
                "user_message_persist_failed",
                conversation_id=conversation_id,
                account_id=account_id,
                error=str(exc),
            )
            raise DatabaseOperationError(
                "Failed to save your message. Please try again.",
                detail={"conversationId": conversation_id},
            ) from exc

        self.logger.info(
            "exchange_prepared",
            account_id=account_id,
            conversation_id=conversation_id,
            model=model,
            tier=snapshot.tier,
            user_sequence=first_seq,
        )
        return Exchange(
            account_id=account_id,
            conversation_id=conversation_id,
            request=CompletionRequest(
                model=model,
                messages=messages,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
            ),
            user_message=user_message,
            assistant_sequence=first_seq + 1,
            quota=snapshot,
        )

    async def stream(
        self, exchange: Exchange, is_disconnected: Optional[Disconnected] = None
    ) -> AsyncIterator[dict]:
        """Yield content frames followed by exactly one ``done`` or ``error`` frame.

        Closing this generator (or a client disconnect) closes the provider
        stream; nothing is recorded for an abandoned exchange.
        """

        events = self.llm.stream(exchange.request)
        try:
            async for event in events:
                if is_disconnected is not None and await is_disconnected():
                    self.logger.info(
                        "client_disconnected",
                        conversation_id=exchange.conversation_id,
                        model=exchange.model,
                    )
                    return
                if isinstance(event, ContentEvent):
                    yield {"type": "content", "content": event.text}
                elif isinstance(event, ErrorEvent):
                    self.logger.warning(
                        "exchange_failed",
                        conversation_id=exchange.conversation_id,
                        model=exchange.model,
                        kind=event.kind,
                    )
                    yield error_frame(event.kind, event.message)
                    return
                elif isinstance(event, DoneEvent):
                    yield self._complete(exchange, event)
                    return
            yield error_frame(
                PROVIDER_ERROR, "The provider closed the stream before finishing."
            )
        except Exception as exc:
            self.logger.error(
                "exchange_crashed",
                conversation_id=exchange.conversation_id,
                model=exchange.model,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            yield error_frame("INTERNAL_ERROR", "An unexpected error occurred.")
        finally:
            await events.aclose()

    def _complete(self, exchange: Exchange, done: DoneEvent) -> dict:
        usage = done.usage
        try:
            ai_message = self.conversations.persist_message(
                exchange.conversation_id,
                role="assistant",
                content=done.full_text,
                sequence_number=exchange.assistant_sequence,
                model_used=done.model_id,
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
            )
        except Exception as exc:
            self.logger.error(
                "assistant_message_persist_failed",
                conversation_id=exchange.conversation_id,
                sequence_number=exchange.assistant_sequence,
                error=str(exc),
            )
            return error_frame(
                DatabaseOperationError.error_code,
                "The response was generated but could not be saved. Please try again.",
            )

        self.usage.record(
            exchange.account_id,
            tokens=usage.total_tokens,
            messages=1,
            model_id=done.model_id,
        )

        try:
            self.conversations.update_title_if_default(
                exchange.conversation_id, exchange.user_message.content
            )
        except Exception as exc:
            self.logger.warning(
                "conversation_title_update_failed",
                conversation_id=exchange.conversation_id,
                error=str(exc),
            )
        try:
            self.conversations.append_model_history(exchange.conversation_id, done.model_id)
        except Exception as exc:
            self.logger.warning(
                "model_history_update_failed",
                conversation_id=exchange.conversation_id,
                error=str(exc),
            )

        self.logger.info(
            "exchange_completed",
            conversation_id=exchange.conversation_id,
            model=done.model_id,
            total_tokens=usage.total_tokens,
        )
        return {
            "type": "done",
            "content": done.full_text,
            "usage": usage.to_dict(),
            "model": done.model_id,
            "messageIds": {
                "userMessage": exchange.user_message.id,
                "aiMessage": ai_message.id,
            },
        }

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from chatgateway.api.schemas import (
    ChatCompletionRequest,
    ConversationOut,
    EnhanceRequest,
    EnhanceResponse,
    Envelope,
    ExampleRequest,
    ExampleResponse,
    MessageOut,
    ModelInfo,
    RenameConversationRequest,
    UsageResponse,
    UsageWindow,
)
from chatgateway.logging import get_correlation_id, get_logger
from chatgateway.service.auth import AuthContext
from chatgateway.service.errors import AuthenticationError
from chatgateway.service.orchestrator import ChatRequest
from chatgateway.service.quota import required_tier_for
from chatgateway.service.runtime import check_rate_limit, get_runtime
from chatgateway.storage.models import Conversation, Message

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _ok(data) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return envelope


def _sse(frame: dict) -> str:
    return f"data: {json.dumps(frame)}\n\n"


async def get_account(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    try:
        return runtime.auth.authenticate(authorization)
    except AuthenticationError as exc:
        raise _http_error("AUTHENTICATION_FAILED", exc.message, status_code=401)


async def _enforce_chat_rate_limit(runtime, account_id: str) -> None:
    limit = runtime.settings.chat_rate_limit_per_minute
    allowed, _, retry_after = await check_rate_limit(
        runtime, f"chat:{account_id}", limit, 60, return_remaining=True
    )
    if not allowed:
        raise _http_error(
            "RATE_LIMITED",
            "Too many requests. Please slow down and try again shortly.",
            status_code=429,
            details={"retryAfterSeconds": retry_after},
            headers={"Retry-After": str(max(1, retry_after))},
        )


def _message_out(message: Message) -> MessageOut:
    return MessageOut(
        id=message.id,
        role=message.role,
        content=message.content,
        sequence_number=message.sequence_number,
        model_used=message.model_used,
        input_tokens=message.input_tokens,
        output_tokens=message.output_tokens,
        total_tokens=message.total_tokens,
        created_at=message.created_at,
    )


def _conversation_out(conv: Conversation, messages: list[Message]) -> dict:
    return ConversationOut(
        id=conv.id,
        title=conv.title,
        model_history=conv.model_history,
        created_at=conv.created_at,
        updated_at=conv.updated_at,
        messages=[_message_out(m) for m in messages],
    ).model_dump(by_alias=True, mode="json")


@router.post("/chat/completions")
async def chat_completions(
    body: ChatCompletionRequest,
    request: Request,
    principal: AuthContext = Depends(get_account),
):
    runtime = get_runtime()
    await _enforce_chat_rate_limit(runtime, principal.account_id)
    exchange = runtime.chat.prepare(
        principal.account_id,
        ChatRequest(
            model=body.model,
            messages=[m.model_dump() for m in body.messages],
            conversation_id=body.conversation_id,
            stream=body.stream,
            max_tokens=body.max_tokens,
            temperature=body.temperature,
        ),
    )

    async def event_stream() -> AsyncIterator[str]:
        frames = runtime.chat.stream(exchange, is_disconnected=request.is_disconnected)
        try:
            async for frame in frames:
                yield _sse(frame)
        finally:
            await frames.aclose()

    return StreamingResponse(
        event_stream(), media_type="text/event-stream", headers=_SSE_HEADERS
    )


@router.post("/helpers/example", response_model=Envelope)
async def generate_example(body: ExampleRequest, principal: AuthContext = Depends(get_account)):
    runtime = get_runtime()
    result = await runtime.helpers.generate_example(
        principal.account_id,
        user_request=body.user_request,
        task_type=body.task_type,
        example_number=body.example_number,
    )
    return _ok(ExampleResponse.model_validate(result).model_dump(by_alias=True))


@router.post("/helpers/enhance", response_model=Envelope)
async def enhance_prompt(body: EnhanceRequest, principal: AuthContext = Depends(get_account)):
    runtime = get_runtime()
    result = await runtime.helpers.enhance_prompt(
        principal.account_id,
        user_request=body.user_request,
        task_type=body.task_type,
        user_role=body.user_role,
        current_prompt=body.current_prompt,
    )
    return _ok(EnhanceResponse.model_validate(result).model_dump(by_alias=True))


@router.get("/usage", response_model=Envelope)
async def get_usage(principal: AuthContext = Depends(get_account)):
    runtime = get_runtime()
    snapshot = runtime.quota.usage_snapshot(principal.account_id)
    record = runtime.store.get_usage_record(principal.account_id, snapshot.today)
    today = None
    if record:
        today = {
            "date": record.day.isoformat(),
            "tokensUsed": record.tokens_used,
            "messagesSent": record.messages_sent,
            "modelsUsed": dict(record.models_used),
            "costIncurred": round(record.cost_incurred, 6),
        }
    payload = UsageResponse(
        tier=snapshot.tier,
        daily_messages=UsageWindow(**_window(snapshot.daily_usage())),
        monthly_tokens=UsageWindow(**_window(snapshot.monthly_usage())),
        allowed_models=sorted(snapshot.limits.allowed_models),
        today=today,
    )
    return _ok(payload.model_dump(by_alias=True))


def _window(usage: dict) -> dict:
    return {
        "current": usage["current"],
        "limit": usage["limit"],
        "percentage": usage["percentage"],
        "reset_time": usage["resetTime"],
    }


@router.get("/models", response_model=Envelope)
async def list_models(principal: AuthContext = Depends(get_account)):
    runtime = get_runtime()
    snapshot = runtime.quota.usage_snapshot(principal.account_id)
    models = [
        ModelInfo(
            id=model_id,
            provider=provider,
            required_tier=required_tier_for(model_id),
            allowed=snapshot.limits.allows(model_id),
        ).model_dump(by_alias=True)
        for model_id, provider in sorted(runtime.llm.routable_models().items())
    ]
    return _ok({"tier": snapshot.tier, "models": models})


@router.get("/conversations", response_model=Envelope)
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    principal: AuthContext = Depends(get_account),
):
    runtime = get_runtime()
    items = runtime.conversations.list_with_messages(principal.account_id, limit=limit)
    return _ok({"items": [_conversation_out(conv, msgs) for conv, msgs in items]})


@router.get("/conversations/{conversation_id}", response_model=Envelope)
async def get_conversation(conversation_id: str, principal: AuthContext = Depends(get_account)):
    runtime = get_runtime()
    conv, messages = runtime.conversations.get_with_messages(
        conversation_id, principal.account_id
    )
    return _ok(_conversation_out(conv, messages))


@router.patch("/conversations/{conversation_id}", response_model=Envelope)
async def rename_conversation(
    conversation_id: str,
    body: RenameConversationRequest,
    principal: AuthContext = Depends(get_account),
):
    runtime = get_runtime()
    runtime.conversations.rename(conversation_id, principal.account_id, body.title)
    conv, messages = runtime.conversations.get_with_messages(
        conversation_id, principal.account_id
    )
    return _ok(_conversation_out(conv, messages))


@router.delete("/conversations/{conversation_id}", response_model=Envelope)
async def delete_conversation(
    conversation_id: str, principal: AuthContext = Depends(get_account)
):
    runtime = get_runtime()
    runtime.conversations.delete(conversation_id, principal.account_id)
    return _ok({"deleted": 1, "conversationId": conversation_id})


@router.delete("/conversations", response_model=Envelope)
async def delete_all_conversations(principal: AuthContext = Depends(get_account)):
    runtime = get_runtime()
    deleted = runtime.conversations.delete_all(principal.account_id)
    return _ok(
        {"deleted": deleted, "at": datetime.now(timezone.utc).isoformat()}
    )

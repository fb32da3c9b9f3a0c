"""Tests for the chat exchange lifecycle.

Covers:
- Validation order (streaming first, then model, conversation, messages)
- Persistence and accounting on a completed exchange
- Failure isolation: provider errors, disconnects, database failures
"""

from datetime import date

import pytest

from conftest import scripted_llm_service

from chatgateway.service.conversations import ConversationService
from chatgateway.service.errors import (
    DailyLimitExceededError,
    DatabaseOperationError,
    ForbiddenError,
    ModelNotAllowedError,
    StreamingOnlyError,
    ValidationError,
)
from chatgateway.service.model_backend import AUTH_OR_CONFIG, ContentEvent, ErrorEvent
from chatgateway.service.orchestrator import ChatOrchestrator, ChatRequest
from chatgateway.service.quota import QuotaLedger
from chatgateway.service.usage import UsageAccountant
from chatgateway.storage.memory import MemoryStore

TODAY = date(2025, 6, 1)


class FailingAssistantStore(MemoryStore):
    """Rejects assistant turns to simulate a write failure after generation."""

    def insert_message(self, message):
        if message.role == "assistant":
            raise RuntimeError("disk full")
        return super().insert_message(message)


class FailingUsageStore(MemoryStore):
    def upsert_usage_record(self, *args, **kwargs):
        raise RuntimeError("usage table locked")


def _build(store):
    llm, backends = scripted_llm_service()
    orchestrator = ChatOrchestrator(
        quota=QuotaLedger(store, clock=lambda: TODAY),
        llm=llm,
        conversations=ConversationService(store),
        usage=UsageAccountant(store, clock=lambda: TODAY),
        max_messages_per_request=5,
    )
    return orchestrator, backends


def _request(**overrides):
    params = {
        "model": "gpt-4o-mini",
        "messages": [{"role": "user", "content": "What is the capital of Peru?"}],
        "conversation_id": "conv-1",
        "stream": True,
    }
    params.update(overrides)
    return ChatRequest(**params)


async def _drain(orchestrator, exchange, is_disconnected=None):
    return [frame async for frame in orchestrator.stream(exchange, is_disconnected)]


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestValidation:
    """Each malformed request fails with the first applicable error."""

    def test_stream_flag_is_checked_first(self, store):
        orchestrator, _ = _build(store)
        for stream in (None, False):
            with pytest.raises(StreamingOnlyError) as excinfo:
                orchestrator.prepare("acct", _request(stream=stream, model="", messages=[]))
            assert excinfo.value.error_code == "STREAMING_ONLY"
            assert excinfo.value.status_code == 400

    def test_missing_model(self, store):
        orchestrator, _ = _build(store)
        with pytest.raises(ValidationError) as excinfo:
            orchestrator.prepare("acct", _request(model="  ", conversation_id=""))
        assert excinfo.value.detail["field"] == "model"

    def test_unroutable_model(self, store):
        orchestrator, _ = _build(store)
        with pytest.raises(ValidationError) as excinfo:
            orchestrator.prepare("acct", _request(model="gpt-3.5-turbo"))
        assert "Unsupported model" in excinfo.value.message

    def test_missing_conversation_id(self, store):
        orchestrator, _ = _build(store)
        with pytest.raises(ValidationError) as excinfo:
            orchestrator.prepare("acct", _request(conversation_id="", messages=[]))
        assert excinfo.value.detail["field"] == "conversationId"

    def test_empty_messages(self, store):
        orchestrator, _ = _build(store)
        with pytest.raises(ValidationError) as excinfo:
            orchestrator.prepare("acct", _request(messages=[]))
        assert excinfo.value.detail["field"] == "messages"

    def test_too_many_messages(self, store):
        orchestrator, _ = _build(store)
        messages = [{"role": "user", "content": "hi"}] * 6
        with pytest.raises(ValidationError) as excinfo:
            orchestrator.prepare("acct", _request(messages=messages))
        assert excinfo.value.detail["max"] == 5

    def test_unknown_role(self, store):
        orchestrator, _ = _build(store)
        with pytest.raises(ValidationError):
            orchestrator.prepare(
                "acct", _request(messages=[{"role": "tool", "content": "x"}])
            )

    def test_last_message_must_be_user(self, store):
        orchestrator, _ = _build(store)
        with pytest.raises(ValidationError):
            orchestrator.prepare(
                "acct",
                _request(
                    messages=[
                        {"role": "user", "content": "hi"},
                        {"role": "assistant", "content": "hello"},
                    ]
                ),
            )
        with pytest.raises(ValidationError):
            orchestrator.prepare(
                "acct", _request(messages=[{"role": "user", "content": "   "}])
            )

    def test_validation_failure_writes_nothing(self, store):
        orchestrator, _ = _build(store)
        with pytest.raises(ValidationError):
            orchestrator.prepare("acct", _request(messages=[]))
        assert store.get_conversation("conv-1") is None

    def test_quota_rejection_writes_nothing(self, store):
        orchestrator, _ = _build(store)
        with pytest.raises(ModelNotAllowedError):
            orchestrator.prepare("acct", _request(model="gpt-4o"))
        assert store.get_conversation("conv-1") is None

    def test_daily_limit_blocks_before_persisting(self, store):
        orchestrator, _ = _build(store)
        orchestrator.quota.usage_snapshot("acct")
        store.increment_account_usage("acct", 0, 25)
        with pytest.raises(DailyLimitExceededError):
            orchestrator.prepare("acct", _request())
        assert store.get_conversation("conv-1") is None

    def test_foreign_conversation(self, store):
        orchestrator, _ = _build(store)
        store.ensure_account("someone-else")
        store.create_conversation_if_absent("conv-1", "someone-else")
        with pytest.raises(ForbiddenError):
            orchestrator.prepare("acct", _request())


class TestExchange:
    async def test_completed_exchange(self, store):
        orchestrator, backends = _build(store)
        exchange = orchestrator.prepare("acct", _request())
        frames = await _drain(orchestrator, exchange)

        assert frames[:2] == [
            {"type": "content", "content": "Hello"},
            {"type": "content", "content": " world"},
        ]
        done = frames[-1]
        assert done["type"] == "done"
        assert done["content"] == "Hello world"
        assert done["model"] == "gpt-4o-mini"
        assert done["usage"] == {"promptTokens": 12, "completionTokens": 8, "totalTokens": 20}
        assert done["messageIds"]["userMessage"] == exchange.user_message.id

        messages = store.list_messages("conv-1")
        assert [(m.role, m.sequence_number) for m in messages] == [
            ("user", 1),
            ("assistant", 2),
        ]
        assert messages[1].id == done["messageIds"]["aiMessage"]
        assert messages[1].model_used == "gpt-4o-mini"
        assert messages[1].total_tokens == 20

        account = store.get_account("acct")
        assert account.monthly_tokens_used == 20
        assert account.daily_messages_sent == 1
        record = store.get_usage_record("acct", TODAY)
        assert record.models_used == {"gpt-4o-mini": 1}

        conv = store.get_conversation("conv-1")
        assert conv.title == "What is the capital of Peru?"
        assert conv.model_history == ["gpt-4o-mini"]
        assert backends["openai"].streams_closed == 1

    async def test_history_is_forwarded_but_only_last_turn_stored(self, store):
        orchestrator, backends = _build(store)
        history = [
            {"role": "system", "content": "Answer briefly."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "Tell me a joke"},
        ]
        exchange = orchestrator.prepare("acct", _request(messages=history))
        await _drain(orchestrator, exchange)
        assert backends["openai"].requests[0].messages == history
        assert [m.content for m in store.list_messages("conv-1")] == [
            "Tell me a joke",
            "Hello world",
        ]

    async def test_second_exchange_continues_sequence(self, store):
        orchestrator, _ = _build(store)
        for _ in range(2):
            exchange = orchestrator.prepare("acct", _request())
            await _drain(orchestrator, exchange)
        assert [m.sequence_number for m in store.list_messages("conv-1")] == [1, 2, 3, 4]
        conv = store.get_conversation("conv-1")
        assert conv.title == "What is the capital of Peru?"

    async def test_model_history_tracks_distinct_models(self, store):
        orchestrator, _ = _build(store)
        for model in ("gpt-4o-mini", "gemini-2.0-flash", "gpt-4o-mini"):
            exchange = orchestrator.prepare("acct", _request(model=model))
            await _drain(orchestrator, exchange)
        assert store.get_conversation("conv-1").model_history == [
            "gpt-4o-mini",
            "gemini-2.0-flash",
        ]

    async def test_generation_params_pass_through(self, store):
        orchestrator, backends = _build(store)
        exchange = orchestrator.prepare(
            "acct", _request(model="claude-3-5-haiku-20241022", max_tokens=64, temperature=0.0)
        )
        await _drain(orchestrator, exchange)
        sent = backends["anthropic"].requests[0]
        assert sent.max_tokens == 64
        assert sent.temperature == 0.0


class TestFailureIsolation:
    async def test_provider_error_ends_stream_without_recording(self, store):
        orchestrator, backends = _build(store)
        backends["openai"].failure = ErrorEvent(AUTH_OR_CONFIG, "bad key")
        exchange = orchestrator.prepare("acct", _request())
        frames = await _drain(orchestrator, exchange)

        assert frames[-1] == {"type": "error", "error": AUTH_OR_CONFIG, "message": "bad key"}
        assert not any(f["type"] == "done" for f in frames)
        assert [m.role for m in store.list_messages("conv-1")] == ["user"]
        account = store.get_account("acct")
        assert account.monthly_tokens_used == 0
        assert account.daily_messages_sent == 0

    async def test_failed_exchange_leaves_sequence_gap(self, store):
        orchestrator, backends = _build(store)
        backends["openai"].failure = ErrorEvent(AUTH_OR_CONFIG, "bad key")
        await _drain(orchestrator, orchestrator.prepare("acct", _request()))
        backends["openai"].failure = None
        await _drain(orchestrator, orchestrator.prepare("acct", _request()))
        assert [m.sequence_number for m in store.list_messages("conv-1")] == [1, 3, 4]

    async def test_stream_without_terminal_event(self, store):
        orchestrator, backends = _build(store)
        backends["openai"].events = [ContentEvent("partial")]
        frames = await _drain(orchestrator, orchestrator.prepare("acct", _request()))
        assert frames[-1]["type"] == "error"
        assert frames[-1]["error"] == "PROVIDER_ERROR"

    async def test_client_disconnect_stops_everything(self, store):
        orchestrator, backends = _build(store)
        exchange = orchestrator.prepare("acct", _request())
        seen = []

        async def is_disconnected():
            seen.append(True)
            return len(seen) > 1

        frames = await _drain(orchestrator, exchange, is_disconnected)
        assert frames == [{"type": "content", "content": "Hello"}]
        assert backends["openai"].streams_closed == 1
        assert [m.role for m in store.list_messages("conv-1")] == ["user"]
        assert store.get_account("acct").monthly_tokens_used == 0

    async def test_consumer_closing_early_closes_provider(self, store):
        orchestrator, backends = _build(store)
        frames = orchestrator.stream(orchestrator.prepare("acct", _request()))
        first = await frames.__anext__()
        assert first["type"] == "content"
        await frames.aclose()
        assert backends["openai"].streams_closed == 1
        assert store.get_account("acct").daily_messages_sent == 0

    async def test_assistant_persist_failure(self, tmp_path):
        store = FailingAssistantStore(fs_root=str(tmp_path))
        orchestrator, _ = _build(store)
        frames = await _drain(orchestrator, orchestrator.prepare("acct", _request()))
        assert frames[-1]["type"] == "error"
        assert frames[-1]["error"] == "DATABASE_OPERATION_FAILED"
        assert store.get_account("acct").monthly_tokens_used == 0

    async def test_usage_failure_does_not_fail_exchange(self, tmp_path):
        store = FailingUsageStore(fs_root=str(tmp_path))
        orchestrator, _ = _build(store)
        frames = await _drain(orchestrator, orchestrator.prepare("acct", _request()))
        assert frames[-1]["type"] == "done"
        assert len(store.list_messages("conv-1")) == 2

    def test_user_persist_failure_is_a_database_error(self, tmp_path):
        class BrokenStore(MemoryStore):
            def insert_message(self, message):
                raise RuntimeError("connection reset")

        orchestrator, _ = _build(BrokenStore(fs_root=str(tmp_path)))
        with pytest.raises(DatabaseOperationError) as excinfo:
            orchestrator.prepare("acct", _request())
        assert excinfo.value.status_code == 500

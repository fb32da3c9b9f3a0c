from __future__ import annotations

import uuid
from typing import List, Optional, Tuple

from chatgateway.logging import get_logger
from chatgateway.service.errors import (
    DatabaseOperationError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from chatgateway.storage.errors import ConstraintViolation
from chatgateway.storage.models import Conversation, Message, utcnow

TITLE_MAX_CHARS = 50
RENAME_MAX_CHARS = 200


def title_from_message(content: str) -> str:
    text = " ".join((content or "").split())
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


class ConversationService:
    """The only writer of conversations and message sequence numbers."""

    def __init__(self, store) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    def ensure(self, conversation_id: str, account_id: str) -> Conversation:
        """Get-or-create; a conversation owned by someone else is forbidden."""

        try:
            conv = self.store.create_conversation_if_absent(conversation_id, account_id)
        except ConstraintViolation as exc:
            raise DatabaseOperationError(
                "Failed to create conversation", detail=exc.detail
            ) from exc
        if conv.account_id != account_id:
            self.logger.warning(
                "conversation_owner_mismatch",
                conversation_id=conversation_id,
                account_id=account_id,
            )
            raise ForbiddenError(
                "Conversation belongs to another account",
                detail={"conversationId": conversation_id},
            )
        return conv

    def reserve_sequences(self, conversation_id: str, count: int = 2) -> int:
        return self.store.reserve_sequences(conversation_id, count)

    def next_sequence(self, conversation_id: str) -> int:
        return self.store.max_sequence(conversation_id) + 1

    def persist_message(
        self,
        conversation_id: str,
        *,
        role: str,
        content: str,
        sequence_number: int,
        model_used: Optional[str] = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            sequence_number=sequence_number,
            model_used=model_used,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            created_at=utcnow(),
        )
        return self.store.insert_message(message)

    def update_title_if_default(self, conversation_id: str, candidate: str) -> bool:
        title = title_from_message(candidate)
        if not title:
            return False
        return self.store.update_title_if_default(conversation_id, title)

    def append_model_history(self, conversation_id: str, model_id: str) -> bool:
        return self.store.append_model_history(conversation_id, model_id)

    def get_with_messages(
        self, conversation_id: str, account_id: str
    ) -> Tuple[Conversation, List[Message]]:
        conv = self.store.get_conversation(conversation_id, account_id=account_id)
        if not conv:
            raise NotFoundError(
                "conversation not found", detail={"conversationId": conversation_id}
            )
        return conv, self.store.list_messages(conversation_id)

    def list_with_messages(
        self, account_id: str, limit: int = 50
    ) -> List[Tuple[Conversation, List[Message]]]:
        return [
            (conv, self.store.list_messages(conv.id))
            for conv in self.store.list_conversations(account_id, limit=limit)
        ]

    def rename(self, conversation_id: str, account_id: str, title: str) -> Conversation:
        """Set a caller-chosen title; auto-titling never overwrites it afterwards."""

        cleaned = " ".join((title or "").split())
        if not cleaned:
            raise ValidationError(
                "title must not be blank", detail={"conversationId": conversation_id}
            )
        if len(cleaned) > RENAME_MAX_CHARS:
            raise ValidationError(
                f"title must be at most {RENAME_MAX_CHARS} characters",
                detail={"conversationId": conversation_id},
            )
        conv = self.store.rename_conversation(conversation_id, account_id, cleaned)
        if conv is None:
            raise NotFoundError(
                "conversation not found", detail={"conversationId": conversation_id}
            )
        self.logger.info(
            "conversation_renamed", conversation_id=conversation_id, account_id=account_id
        )
        return conv

    def delete(self, conversation_id: str, account_id: str) -> None:
        if not self.store.delete_conversation(conversation_id, account_id):
            raise NotFoundError(
                "conversation not found", detail={"conversationId": conversation_id}
            )
        self.logger.info(
            "conversation_deleted", conversation_id=conversation_id, account_id=account_id
        )

    def delete_all(self, account_id: str) -> int:
        deleted = self.store.delete_conversations(account_id)
        self.logger.info("conversations_cleared", account_id=account_id, deleted=deleted)
        return deleted

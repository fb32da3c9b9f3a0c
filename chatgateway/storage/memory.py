from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from chatgateway.logging import get_logger
from chatgateway.storage.errors import ConstraintViolation
from chatgateway.storage.models import (
    DEFAULT_CONVERSATION_TITLE,
    Account,
    Conversation,
    Message,
    UsageRecord,
    utcnow,
)


class MemoryStore:
    """In-process record store used for local development and the test suite.

    Every mutation runs under one ``RLock`` so the conditional updates
    (quota resets, sequence reservation, title/model-history writes) behave like
    their single-statement Postgres counterparts. State is mirrored to a JSON
    file under ``fs_root`` so a dev server keeps its data across restarts.
    """

    def __init__(self, fs_root: str = "/tmp/chatgateway") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.usage_records: Dict[Tuple[str, date], UsageRecord] = {}
        # RLock so helpers can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        parsed = datetime.fromisoformat(raw)
        # state written before timestamps carried an offset is UTC
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    @staticmethod
    def _serialize_date(value: Optional[date]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _deserialize_date(raw: Optional[str]) -> Optional[date]:
        return date.fromisoformat(raw) if raw else None

    # accounts
    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            # hand out copies so callers never see later in-place mutations
            return replace(account) if account else None

    def ensure_account(
        self,
        account_id: str,
        *,
        tier: str = "free",
        billing_period_start: Optional[date] = None,
    ) -> Account:
        with self._data_lock:
            existing = self.accounts.get(account_id)
            if existing:
                return replace(existing)
            account = Account(
                id=account_id,
                tier=tier,
                billing_period_start=billing_period_start or utcnow().date(),
            )
            self.accounts[account_id] = account
            self._persist_state()
            return replace(account)

    def set_account_tier(
        self,
        account_id: str,
        tier: str,
        *,
        billing_period_start: Optional[date] = None,
    ) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            account.tier = tier
            if billing_period_start:
                account.billing_period_start = billing_period_start
            self._persist_state()
            return replace(account)

    def apply_daily_reset(self, account_id: str, today: date) -> bool:
        """Zero the daily counter once per UTC day; returns True if this call reset it."""
        with self._data_lock:
            account = self._require_account(account_id)
            if account.last_daily_reset is not None and account.last_daily_reset >= today:
                return False
            account.daily_messages_sent = 0
            account.last_daily_reset = today
            self._persist_state()
            return True

    def apply_monthly_reset(
        self, account_id: str, anniversary: date, today: date
    ) -> bool:
        """Zero the monthly counter once per anniversary period."""
        with self._data_lock:
            account = self._require_account(account_id)
            if (
                account.last_monthly_reset is not None
                and account.last_monthly_reset >= anniversary
            ):
                return False
            account.monthly_tokens_used = 0
            account.last_monthly_reset = today
            self._persist_state()
            return True

    def increment_account_usage(
        self, account_id: str, tokens: int, messages: int
    ) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            account.monthly_tokens_used = max(0, account.monthly_tokens_used + tokens)
            account.daily_messages_sent = max(0, account.daily_messages_sent + messages)
            self._persist_state()

    def _require_account(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if not account:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return account

    # usage tracking
    def upsert_usage_record(
        self,
        account_id: str,
        day: date,
        *,
        tokens: int,
        messages: int,
        model_id: str,
        cost: float,
    ) -> UsageRecord:
        with self._data_lock:
            self._require_account(account_id)
            key = (account_id, day)
            record = self.usage_records.get(key)
            if record is None:
                record = UsageRecord(account_id=account_id, day=day)
                self.usage_records[key] = record
            record.tokens_used += tokens
            record.messages_sent += messages
            record.models_used[model_id] = record.models_used.get(model_id, 0) + 1
            record.cost_incurred += cost
            self._persist_state()
            return replace(record, models_used=dict(record.models_used))

    def get_usage_record(self, account_id: str, day: date) -> Optional[UsageRecord]:
        with self._data_lock:
            record = self.usage_records.get((account_id, day))
            if not record:
                return None
            return replace(record, models_used=dict(record.models_used))

    # conversations
    def create_conversation_if_absent(
        self, conversation_id: str, account_id: str
    ) -> Conversation:
        """Insert a conversation unless the id is taken; returns the stored row."""
        with self._data_lock:
            self._require_account(account_id)
            existing = self.conversations.get(conversation_id)
            if existing is None:
                now = utcnow()
                existing = Conversation(
                    id=conversation_id,
                    account_id=account_id,
                    created_at=now,
                    updated_at=now,
                )
                self.conversations[conversation_id] = existing
                self.messages[conversation_id] = []
                self._persist_state()
            return replace(existing, model_history=list(existing.model_history))

    def get_conversation(
        self, conversation_id: str, *, account_id: Optional[str] = None
    ) -> Optional[Conversation]:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                return None
            if account_id and conv.account_id != account_id:
                return None
            return replace(conv, model_history=list(conv.model_history))

    def list_conversations(self, account_id: str, limit: int = 50) -> List[Conversation]:
        with self._data_lock:
            owned = [c for c in self.conversations.values() if c.account_id == account_id]
            owned.sort(key=lambda c: c.updated_at, reverse=True)
            return [
                replace(c, model_history=list(c.model_history)) for c in owned[:limit]
            ]

    def reserve_sequences(self, conversation_id: str, count: int = 2) -> int:
        """Hand out ``count`` consecutive sequence numbers and return the first."""
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            start = max(conv.sequence_counter, self._max_sequence(conversation_id))
            conv.sequence_counter = start + count
            conv.updated_at = utcnow()
            self._persist_state()
            return start + 1

    def max_sequence(self, conversation_id: str) -> int:
        with self._data_lock:
            return self._max_sequence(conversation_id)

    def _max_sequence(self, conversation_id: str) -> int:
        return max(
            (m.sequence_number for m in self.messages.get(conversation_id, [])),
            default=0,
        )

    def update_title_if_default(self, conversation_id: str, title: str) -> bool:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv or conv.title != DEFAULT_CONVERSATION_TITLE:
                return False
            conv.title = title
            conv.updated_at = utcnow()
            self._persist_state()
            return True

    def append_model_history(self, conversation_id: str, model_id: str) -> bool:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv or model_id in conv.model_history:
                return False
            conv.model_history.append(model_id)
            conv.updated_at = utcnow()
            self._persist_state()
            return True

    def rename_conversation(
        self, conversation_id: str, account_id: str, title: str
    ) -> Optional[Conversation]:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv or conv.account_id != account_id:
                return None
            conv.title = title
            conv.updated_at = utcnow()
            self._persist_state()
            return conv

    def delete_conversation(self, conversation_id: str, account_id: str) -> bool:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv or conv.account_id != account_id:
                return False
            del self.conversations[conversation_id]
            self.messages.pop(conversation_id, None)
            self._persist_state()
            return True

    def delete_conversations(self, account_id: str) -> int:
        with self._data_lock:
            doomed = [
                cid for cid, c in self.conversations.items() if c.account_id == account_id
            ]
            for cid in doomed:
                del self.conversations[cid]
                self.messages.pop(cid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # messages
    def insert_message(self, message: Message) -> Message:
        with self._data_lock:
            if message.conversation_id not in self.conversations:
                raise ConstraintViolation(
                    "conversation not found",
                    {"conversation_id": message.conversation_id},
                )
            bucket = self.messages.setdefault(message.conversation_id, [])
            if any(m.sequence_number == message.sequence_number for m in bucket):
                raise ConstraintViolation(
                    "duplicate sequence number",
                    {
                        "conversation_id": message.conversation_id,
                        "sequence_number": message.sequence_number,
                    },
                )
            stored = replace(message)
            bucket.append(stored)
            bucket.sort(key=lambda m: m.sequence_number)
            conv = self.conversations[message.conversation_id]
            conv.updated_at = stored.created_at
            self._persist_state()
            return replace(stored)

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._data_lock:
            return [replace(m) for m in self.messages.get(conversation_id, [])]

    # persistence
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "conversations": [
                self._serialize_conversation(c) for c in self.conversations.values()
            ],
            "messages": [
                self._serialize_message(m)
                for msgs in self.messages.values()
                for m in msgs
            ],
            "usage_records": [
                self._serialize_usage_record(r) for r in self.usage_records.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.conversations = {
            c["id"]: self._deserialize_conversation(c)
            for c in data.get("conversations", [])
        }
        self.messages = {cid: [] for cid in self.conversations}
        for msg_data in data.get("messages", []):
            msg = self._deserialize_message(msg_data)
            self.messages.setdefault(msg.conversation_id, []).append(msg)
        for convo_messages in self.messages.values():
            convo_messages.sort(key=lambda m: m.sequence_number)
        self.usage_records = {}
        for record_data in data.get("usage_records", []):
            record = self._deserialize_usage_record(record_data)
            self.usage_records[(record.account_id, record.day)] = record
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            conversations=len(self.conversations),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "tier": account.tier,
            "monthly_tokens_used": account.monthly_tokens_used,
            "daily_messages_sent": account.daily_messages_sent,
            "billing_period_start": self._serialize_date(account.billing_period_start),
            "last_daily_reset": self._serialize_date(account.last_daily_reset),
            "last_monthly_reset": self._serialize_date(account.last_monthly_reset),
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            tier=data.get("tier", "free"),
            monthly_tokens_used=data.get("monthly_tokens_used", 0),
            daily_messages_sent=data.get("daily_messages_sent", 0),
            billing_period_start=self._deserialize_date(data.get("billing_period_start"))
            or utcnow().date(),
            last_daily_reset=self._deserialize_date(data.get("last_daily_reset")),
            last_monthly_reset=self._deserialize_date(data.get("last_monthly_reset")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_conversation(self, conversation: Conversation) -> dict:
        return {
            "id": conversation.id,
            "account_id": conversation.account_id,
            "title": conversation.title,
            "model_history": list(conversation.model_history),
            "sequence_counter": conversation.sequence_counter,
            "created_at": self._serialize_datetime(conversation.created_at),
            "updated_at": self._serialize_datetime(conversation.updated_at),
        }

    def _deserialize_conversation(self, data: dict) -> Conversation:
        return Conversation(
            id=data["id"],
            account_id=data["account_id"],
            title=data.get("title") or DEFAULT_CONVERSATION_TITLE,
            model_history=list(data.get("model_history") or []),
            sequence_counter=data.get("sequence_counter", 0),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_message(self, message: Message) -> dict:
        return {
            "id": message.id,
            "conversation_id": message.conversation_id,
            "role": message.role,
            "content": message.content,
            "sequence_number": message.sequence_number,
            "model_used": message.model_used,
            "input_tokens": message.input_tokens,
            "output_tokens": message.output_tokens,
            "total_tokens": message.total_tokens,
            "created_at": self._serialize_datetime(message.created_at),
        }

    def _deserialize_message(self, data: dict) -> Message:
        return Message(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=data["role"],
            content=data["content"],
            sequence_number=data["sequence_number"],
            model_used=data.get("model_used"),
            input_tokens=data.get("input_tokens", 0),
            output_tokens=data.get("output_tokens", 0),
            total_tokens=data.get("total_tokens", 0),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_usage_record(self, record: UsageRecord) -> dict:
        return {
            "account_id": record.account_id,
            "day": record.day.isoformat(),
            "tokens_used": record.tokens_used,
            "messages_sent": record.messages_sent,
            "models_used": dict(record.models_used),
            "cost_incurred": record.cost_incurred,
        }

    def _deserialize_usage_record(self, data: dict) -> UsageRecord:
        return UsageRecord(
            account_id=data["account_id"],
            day=date.fromisoformat(data["day"]),
            tokens_used=data.get("tokens_used", 0),
            messages_sent=data.get("messages_sent", 0),
            models_used=dict(data.get("models_used") or {}),
            cost_incurred=float(data.get("cost_incurred", 0.0)),
        )
